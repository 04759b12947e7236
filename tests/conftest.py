"""
Test configuration and fixtures.

Provides:
- a fresh SQLite database per test (config.DB_PATH points into tmp_path)
- factories for district users and templates
- a Flask test client with seeded accounts and a login helper
"""
import itertools

import pytest

import config
import db
import templates as tpl
import users


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    path = tmp_path / "collect.db"
    monkeypatch.setattr(config, "DB_PATH", str(path))
    monkeypatch.setattr(config, "JWT_SECRET", "test-secret-0123456789abcdef0123456789")
    monkeypatch.setattr(config, "ADMIN_EMAIL", "")
    monkeypatch.setattr(config, "SMTP_HOST", "")
    db.init_db()
    return path


def raw_exec(sql, params=()):
    """Writes straight to the database, bypassing the store (legacy/corrupt data)."""
    with db.get_conn() as conn:
        conn.execute(sql, params)
        conn.commit()


def raw_rows(sql, params=()):
    with db.get_conn() as conn:
        return [dict(r) for r in conn.execute(sql, params).fetchall()]


@pytest.fixture
def admin_id():
    return users.create_user("admin", "hash", role="admin")


@pytest.fixture
def make_district():
    seq = itertools.count(1)

    def _make(name=None):
        n = next(seq)
        return users.create_user(f"district_{n}", "hash", role="district", district_name=name or f"District {n}")

    return _make


@pytest.fixture
def make_template(admin_id):
    def _make(name="Crop Report", fields=(), publish=True):
        tid = tpl.create_template(name, created_by=admin_id)
        for f in fields:
            if isinstance(f, str):
                tpl.add_field(tid, f)
            else:
                tpl.add_field(tid, **f)
        if publish:
            tpl.publish_template(tid)
        return tid

    return _make


# =============================================================================
# HTTP
# =============================================================================

@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(config, "ADMIN_USERNAME", "admin")
    monkeypatch.setattr(config, "ADMIN_PASSWORD", "admin-pass-1")
    monkeypatch.setattr(config, "DISTRICT_DEFAULT_PASSWORD", "district-pass-1")

    from app import app, bootstrap

    bootstrap()
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c


@pytest.fixture
def login(client):
    def _login(username, password):
        resp = client.post("/api/login", json={"username": username, "password": password})
        assert resp.status_code == 200, resp.get_json()
        return {"Authorization": f"Bearer {resp.get_json()['token']}"}

    return _login


@pytest.fixture
def admin_headers(login):
    return login("admin", "admin-pass-1")
