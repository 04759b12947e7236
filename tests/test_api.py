import smtplib

import allocator
import config
import mailer
from conftest import raw_exec, raw_rows


def _district_id(client, headers, username):
    rows = client.get("/api/admin/users?role=district", headers=headers).get_json()
    return next(u["id"] for u in rows if u["username"] == username)


def _published_template(client, headers, name="Crop Report", fields=({"label": "Yield (qtl)", "type": "number", "required": True},)):
    tid = client.post("/api/admin/templates", json={"name": name}, headers=headers).get_json()["id"]
    for f in fields:
        assert client.post(f"/api/admin/templates/{tid}/fields", json=f, headers=headers).status_code == 200
    assert client.post(f"/api/admin/templates/{tid}/publish", headers=headers).status_code == 200
    return tid


def test_health_is_public(client):
    assert client.get("/api/health").get_json() == {"ok": True}


def test_api_requires_token(client):
    resp = client.get("/api/admin/templates")
    assert resp.status_code == 401
    resp = client.get("/api/admin/templates", headers={"Authorization": "Bearer nonsense"})
    assert resp.status_code == 401


def test_login_errors(client):
    assert client.post("/api/login", json={"username": "admin"}).status_code == 400
    resp = client.post("/api/login", json={"username": "admin", "password": "wrong"})
    assert resp.status_code == 401
    assert resp.get_json() == {"error": "Invalid credentials."}


def test_roles_are_enforced(client, login, admin_headers):
    district = login("washim", "district-pass-1")

    assert client.get("/api/admin/templates", headers=district).status_code == 403
    assert client.get("/api/district/assignments", headers=admin_headers).status_code == 403
    me = client.get("/api/me", headers=district).get_json()
    assert me["role"] == "district"
    assert me["district_name"] == "वाशिम / Washim"


def test_seeded_accounts(client, admin_headers):
    rows = client.get("/api/admin/users", headers=admin_headers).get_json()
    names = {u["username"] for u in rows}
    assert {"admin", "amravati_rural", "amravati_city", "buldhana", "washim", "yavatmal", "akola"} == names
    assert all("password_hash" not in u for u in rows)


def test_create_user_rejects_duplicates(client, admin_headers):
    body = {"username": "nagpur", "password": "pw", "district_name": "Nagpur"}
    assert client.post("/api/admin/users", json=body, headers=admin_headers).status_code == 200
    resp = client.post("/api/admin/users", json=body, headers=admin_headers)
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "Username already exists."}
    bad_role = client.post("/api/admin/users", json={"username": "x", "password": "p", "role": "root"}, headers=admin_headers)
    assert bad_role.status_code == 400


def test_end_to_end_crop_report(client, login, admin_headers):
    tid = client.post("/api/admin/templates", json={"name": "Crop Report"}, headers=admin_headers).get_json()["id"]
    detail = client.get(f"/api/admin/templates/{tid}", headers=admin_headers).get_json()
    assert detail["published"] is False

    client.post(
        f"/api/admin/templates/{tid}/fields",
        json={"label": "Yield (qtl)", "type": "number", "required": True},
        headers=admin_headers,
    )
    client.post(f"/api/admin/templates/{tid}/publish", headers=admin_headers)
    d_id = _district_id(client, admin_headers, "akola")
    resp = client.post(f"/api/admin/templates/{tid}/assign", json={"districtUserIds": [d_id]}, headers=admin_headers)
    assert resp.get_json()["assignments_created"] == 1

    district = login("akola", "district-pass-1")
    aid = client.get("/api/district/assignments", headers=district).get_json()[0]["id"]
    a = client.get(f"/api/district/assignments/{aid}", headers=district).get_json()
    assert [f["label"] for f in a["fields"]] == ["Yield (qtl)"]
    assert a["values"] == [{"field_key": "yield_qtl", "value": ""}]

    resp = client.put(
        f"/api/district/assignments/{aid}",
        json={"values": [{"field_key": "yield_qtl", "value": "120"}]},
        headers=district,
    )
    assert resp.status_code == 200

    resp = client.post(f"/api/district/assignments/{aid}/send", headers=district)
    body = resp.get_json()
    assert resp.status_code == 200
    assert body["message"] == "Sent"
    assert {"label": "Yield (qtl)", "value": "120"} in body["submission"]["rows"]

    sub = client.get(f"/api/admin/submissions/{aid}", headers=admin_headers).get_json()
    assert sub["status"] == "sent"
    assert sub["sent_at"]

    assert client.post(f"/api/admin/submissions/{aid}/unlock", headers=admin_headers).status_code == 200
    sub = client.get(f"/api/admin/submissions/{aid}", headers=admin_headers).get_json()
    assert sub["status"] == "draft"
    assert sub["sent_at"] is None


def test_send_with_missing_required_field(client, login, admin_headers):
    tid = _published_template(client, admin_headers)
    client.post(
        f"/api/admin/templates/{tid}/assign",
        json={"districtUserIds": [_district_id(client, admin_headers, "washim")]},
        headers=admin_headers,
    )
    district = login("washim", "district-pass-1")
    aid = client.get("/api/district/assignments", headers=district).get_json()[0]["id"]

    resp = client.post(f"/api/district/assignments/{aid}/send", headers=district)

    assert resp.status_code == 400
    assert resp.get_json() == {"error": "Required fields missing: Yield (qtl)"}
    assert client.get(f"/api/district/assignments/{aid}", headers=district).get_json()["status"] == "draft"


def test_cross_district_access_is_not_found(client, login, admin_headers):
    tid = _published_template(client, admin_headers)
    client.post(
        f"/api/admin/templates/{tid}/assign",
        json={"districtUserIds": [_district_id(client, admin_headers, "washim")]},
        headers=admin_headers,
    )
    aid = client.get("/api/admin/submissions", headers=admin_headers).get_json()[0]["id"]
    intruder = login("akola", "district-pass-1")

    assert client.get(f"/api/district/assignments/{aid}", headers=intruder).status_code == 404
    resp = client.put(
        f"/api/district/assignments/{aid}",
        json={"values": [{"field_key": "yield_qtl", "value": "1"}]},
        headers=intruder,
    )
    assert resp.status_code == 404
    assert client.post(f"/api/district/assignments/{aid}/send", headers=intruder).status_code == 404


def test_assign_validation(client, admin_headers):
    tid = client.post("/api/admin/templates", json={"name": "Draft"}, headers=admin_headers).get_json()["id"]

    resp = client.post(f"/api/admin/templates/{tid}/assign", json={"districtUserIds": []}, headers=admin_headers)
    assert resp.status_code == 400
    resp = client.post(f"/api/admin/templates/{tid}/assign", json={"districtUserIds": [1]}, headers=admin_headers)
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "Publish the template before assigning."}


def _sent_submission(client, login, admin_headers, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_EMAIL", "admin@example.org")
    tid = _published_template(client, admin_headers, fields=({"label": "Remarks"},))
    client.post(
        f"/api/admin/templates/{tid}/assign",
        json={"districtUserIds": [_district_id(client, admin_headers, "buldhana")]},
        headers=admin_headers,
    )
    district = login("buldhana", "district-pass-1")
    aid = client.get("/api/district/assignments", headers=district).get_json()[0]["id"]
    return client.post(f"/api/district/assignments/{aid}/send", headers=district), aid


def test_email_failure_does_not_fail_send(client, login, admin_headers, monkeypatch):
    def broken(to, subject, html_body):
        raise smtplib.SMTPException("connection refused")

    monkeypatch.setattr(mailer, "send_submission_email", broken)
    resp, aid = _sent_submission(client, login, admin_headers, monkeypatch)

    assert resp.status_code == 200
    assert resp.get_json()["message"] == "Sent (email failed; check logs)"
    assert client.get(f"/api/admin/submissions/{aid}", headers=admin_headers).get_json()["status"] == "sent"


def test_email_delivered_message(client, login, admin_headers, monkeypatch):
    sent = []

    def fake(to, subject, html_body):
        sent.append((to, subject, html_body))
        return {"ok": True}

    monkeypatch.setattr(mailer, "send_submission_email", fake)
    resp, _ = _sent_submission(client, login, admin_headers, monkeypatch)

    assert resp.get_json()["message"] == "Sent (email delivered)"
    to, subject, html_body = sent[0]
    assert to == "admin@example.org"
    assert subject == "Submission: बुलढाणा / Buldhana - Crop Report"
    assert "Remarks" in html_body


def test_field_update_and_delete(client, admin_headers):
    tid = _published_template(client, admin_headers)
    fid = client.get(f"/api/admin/templates/{tid}", headers=admin_headers).get_json()["fields"][0]["id"]

    resp = client.put(f"/api/admin/fields/{fid}", json={"label": "Yield", "options": None}, headers=admin_headers)
    field = resp.get_json()["field"]
    assert field["label"] == "Yield"
    assert field["field_key"] == "yield_qtl"
    assert field["required"] is True
    assert field["options"] == []

    assert client.delete(f"/api/admin/fields/{fid}", headers=admin_headers).status_code == 200
    assert client.delete(f"/api/admin/fields/{fid}", headers=admin_headers).status_code == 404


def test_template_rename_list_and_delete(client, admin_headers):
    tid = _published_template(client, admin_headers)
    assert client.put(f"/api/admin/templates/{tid}", json={"name": "Kharif"}, headers=admin_headers).status_code == 200

    rows = client.get("/api/admin/templates", headers=admin_headers).get_json()
    assert [(r["name"], r["field_count"]) for r in rows] == [("Kharif", 1)]

    resp = client.delete(f"/api/admin/templates/{tid}", headers=admin_headers)
    assert resp.get_json()["deleted"]["templates"] == 1
    assert client.get(f"/api/admin/templates/{tid}", headers=admin_headers).status_code == 404


def test_csv_exports(client, login, admin_headers):
    tid = _published_template(client, admin_headers, fields=({"label": "Yield (qtl)"}, {"label": "Remarks"}))
    client.post(
        f"/api/admin/templates/{tid}/assign",
        json={"districtUserIds": [_district_id(client, admin_headers, "yavatmal")]},
        headers=admin_headers,
    )
    district = login("yavatmal", "district-pass-1")
    aid = client.get("/api/district/assignments", headers=district).get_json()[0]["id"]
    client.put(
        f"/api/district/assignments/{aid}",
        json={"values": [{"field_key": "remarks", "value": 'rain, "late"\nsowing'}]},
        headers=district,
    )

    resp = client.get(f"/api/admin/submissions/{aid}/export.csv", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.headers["Content-Type"].startswith("text/csv")
    assert 'filename="submission_' in resp.headers["Content-Disposition"]
    assert resp.get_data(as_text=True) == 'Field,Value\r\nYield (qtl),\r\nRemarks,"rain, ""late""\nsowing"\r\n'

    resp = client.get(f"/api/admin/templates/{tid}/export.csv", headers=admin_headers)
    lines = resp.get_data(as_text=True).split("\r\n")
    assert lines[0] == "District,Username,Status,Sent at,Yield (qtl),Remarks"
    assert lines[1].startswith("यवतमाळ / Yavatmal,yavatmal,draft,,,")


def test_unknown_submission(client, admin_headers):
    assert client.get("/api/admin/submissions/999", headers=admin_headers).status_code == 404
    assert client.post("/api/admin/submissions/999/unlock", headers=admin_headers).status_code == 404
    assert client.get("/api/admin/submissions/999/export.csv", headers=admin_headers).status_code == 404


def test_oversized_ids_are_not_found(client, login, admin_headers):
    huge = "99999999999999999999999"

    assert client.get(f"/api/admin/templates/{huge}", headers=admin_headers).status_code == 404
    assert client.delete(f"/api/admin/templates/{huge}", headers=admin_headers).status_code == 404
    assert client.put(f"/api/admin/fields/{huge}", json={"label": "x"}, headers=admin_headers).status_code == 404
    assert client.get(f"/api/admin/submissions/{huge}", headers=admin_headers).status_code == 404
    assert client.post(f"/api/admin/submissions/{huge}/unlock", headers=admin_headers).status_code == 404
    district = login("akola", "district-pass-1")
    assert client.get(f"/api/district/assignments/{huge}", headers=district).status_code == 404


def test_allocator_failure_is_a_server_error_and_creates_nothing(client, admin_headers, monkeypatch):
    def corrupting_check(entity):
        raw_exec(
            "INSERT INTO _counters (id, value) VALUES (?, 'corrupted') "
            "ON CONFLICT(id) DO UPDATE SET value=excluded.value",
            (entity,),
        )

    monkeypatch.setattr(allocator, "health_check", corrupting_check)

    resp = client.post("/api/admin/templates", json={"name": "Crop Report"}, headers=admin_headers)

    assert resp.status_code == 500
    assert resp.get_json() == {"error": "Counter 'templates' is corrupted and could not be repaired."}
    assert raw_rows("SELECT id FROM templates") == []
