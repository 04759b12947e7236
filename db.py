# db.py - District Collect
# SQLite storage: connection factory, schema bootstrap, indexes
#
# Every entity table has two identities:
#   doc_id  storage-native row identity (never exposed)
#   id      application surrogate key, handed out by allocator.next_id()
# `id` is loosely typed: drifted/corrupted values survive a
# restart and can be repaired instead of crashing the bootstrap.

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from typing import List

import config

logger = logging.getLogger(__name__)


ENTITY_TABLES = ("users", "templates", "fields", "assignments", "values_kv")


def get_conn() -> sqlite3.Connection:
    conn = sqlite3.connect(config.DB_PATH, timeout=config.DB_TIMEOUT)
    conn.row_factory = sqlite3.Row
    return conn


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _table_exists(conn: sqlite3.Connection, table: str) -> bool:
    cur = conn.cursor()
    cur.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=? LIMIT 1",
        (table,),
    )
    return cur.fetchone() is not None


def _cols(conn: sqlite3.Connection, table: str) -> List[str]:
    cur = conn.cursor()
    cur.execute(f"PRAGMA table_info({table})")
    return [r["name"] for r in cur.fetchall()]


def table_columns(table: str) -> List[str]:
    with get_conn() as conn:
        return _cols(conn, table)


def _add_column_if_missing(conn: sqlite3.Connection, table: str, col_def_sql: str) -> None:
    """
    col_def_sql example: "sent_at TEXT"
    """
    col_name = col_def_sql.strip().split()[0]
    existing = _cols(conn, table)
    if col_name in existing:
        return
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_def_sql}")


def init_db() -> None:
    """
    Safe init:
    - Creates tables if missing
    - Adds new columns to older databases
    Indexes are created separately (ensure_indexes) after id repair.
    """
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL")

        # Counter value has no declared type: a corrupted value is kept as-is
        # so the allocator can see it and repair it.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS _counters (
              id TEXT PRIMARY KEY,
              value
            )
            """
        )

        if not _table_exists(conn, "users"):
            cur.execute(
                """
                CREATE TABLE users (
                  doc_id INTEGER PRIMARY KEY AUTOINCREMENT,
                  id INTEGER,
                  username TEXT NOT NULL UNIQUE,
                  password_hash TEXT NOT NULL,
                  role TEXT NOT NULL,
                  district_name TEXT
                )
                """
            )
        else:
            _add_column_if_missing(conn, "users", "district_name TEXT")

        if not _table_exists(conn, "templates"):
            cur.execute(
                """
                CREATE TABLE templates (
                  doc_id INTEGER PRIMARY KEY AUTOINCREMENT,
                  id INTEGER,
                  name TEXT NOT NULL,
                  published INTEGER NOT NULL DEFAULT 0,
                  created_by INTEGER,
                  created_at TEXT,
                  updated_at TEXT
                )
                """
            )
        else:
            _add_column_if_missing(conn, "templates", "published INTEGER NOT NULL DEFAULT 0")
            _add_column_if_missing(conn, "templates", "created_by INTEGER")
            _add_column_if_missing(conn, "templates", "created_at TEXT")
            _add_column_if_missing(conn, "templates", "updated_at TEXT")

        if not _table_exists(conn, "fields"):
            cur.execute(
                """
                CREATE TABLE fields (
                  doc_id INTEGER PRIMARY KEY AUTOINCREMENT,
                  id INTEGER,
                  template_id INTEGER NOT NULL,
                  field_key TEXT NOT NULL,
                  label TEXT NOT NULL,
                  type TEXT NOT NULL DEFAULT 'text',
                  required INTEGER NOT NULL DEFAULT 0,
                  options TEXT,
                  order_index INTEGER NOT NULL DEFAULT 0,
                  UNIQUE (template_id, field_key)
                )
                """
            )
        else:
            _add_column_if_missing(conn, "fields", "required INTEGER NOT NULL DEFAULT 0")
            _add_column_if_missing(conn, "fields", "options TEXT")
            _add_column_if_missing(conn, "fields", "order_index INTEGER NOT NULL DEFAULT 0")

        if not _table_exists(conn, "assignments"):
            cur.execute(
                """
                CREATE TABLE assignments (
                  doc_id INTEGER PRIMARY KEY AUTOINCREMENT,
                  id INTEGER,
                  template_id INTEGER NOT NULL,
                  district_user_id INTEGER NOT NULL,
                  status TEXT NOT NULL DEFAULT 'draft',
                  sent_at TEXT,
                  created_at TEXT,
                  updated_at TEXT,
                  UNIQUE (template_id, district_user_id)
                )
                """
            )
        else:
            _add_column_if_missing(conn, "assignments", "sent_at TEXT")
            _add_column_if_missing(conn, "assignments", "created_at TEXT")
            _add_column_if_missing(conn, "assignments", "updated_at TEXT")

        if not _table_exists(conn, "values_kv"):
            cur.execute(
                """
                CREATE TABLE values_kv (
                  doc_id INTEGER PRIMARY KEY AUTOINCREMENT,
                  id INTEGER,
                  assignment_id INTEGER NOT NULL,
                  field_key TEXT NOT NULL,
                  value TEXT NOT NULL DEFAULT '',
                  updated_at TEXT,
                  UNIQUE (assignment_id, field_key)
                )
                """
            )
        else:
            _add_column_if_missing(conn, "values_kv", "updated_at TEXT")

        conn.commit()


_INDEXES = [
    ("users.id unique", "CREATE UNIQUE INDEX IF NOT EXISTS ux_users_id ON users(id)"),
    ("templates.id unique", "CREATE UNIQUE INDEX IF NOT EXISTS ux_templates_id ON templates(id)"),
    ("fields.id unique", "CREATE UNIQUE INDEX IF NOT EXISTS ux_fields_id ON fields(id)"),
    ("assignments.id unique", "CREATE UNIQUE INDEX IF NOT EXISTS ux_assignments_id ON assignments(id)"),
    ("values_kv.id unique", "CREATE UNIQUE INDEX IF NOT EXISTS ux_values_kv_id ON values_kv(id)"),
    # Already declared inline on fresh tables; needed for databases created before.
    ("users.username unique", "CREATE UNIQUE INDEX IF NOT EXISTS ux_users_username ON users(username)"),
    ("fields.template_id+field_key unique", "CREATE UNIQUE INDEX IF NOT EXISTS ux_fields_template_key ON fields(template_id, field_key)"),
    ("assignments template+duser unique", "CREATE UNIQUE INDEX IF NOT EXISTS ux_assignments_template_duser ON assignments(template_id, district_user_id)"),
    ("values_kv assignment+field unique", "CREATE UNIQUE INDEX IF NOT EXISTS ux_values_kv_assignment_key ON values_kv(assignment_id, field_key)"),
    ("templates.updated_at", "CREATE INDEX IF NOT EXISTS ix_templates_updated ON templates(updated_at)"),
    ("fields.template_id+order_index", "CREATE INDEX IF NOT EXISTS ix_fields_template_order ON fields(template_id, order_index)"),
    ("assignments.duser+updated", "CREATE INDEX IF NOT EXISTS ix_assignments_duser_updated ON assignments(district_user_id, updated_at)"),
]


def ensure_indexes() -> int:
    """
    Creates the lookup and id-uniqueness indexes.
    A failure (e.g. legacy duplicates) is logged and skipped so a dirty
    database never blocks startup. Returns the number of failures.
    """
    failed = 0
    with get_conn() as conn:
        for name, sql in _INDEXES:
            try:
                conn.execute(sql)
                conn.commit()
            except sqlite3.DatabaseError as e:
                conn.rollback()
                failed += 1
                logger.warning("Index create failed (%s): %s", name, e)
    return failed
