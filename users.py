# users.py - District Collect
# Admin and district accounts

from __future__ import annotations

import sqlite3
from typing import Any, Dict, List, Optional

from allocator import as_id, next_id
from db import get_conn
from errors import ValidationError


ROLES = ("admin", "district")

_PUBLIC_COLS = "id, username, role, district_name"


def create_user(
    username: str,
    password_hash: str,
    role: str = "district",
    district_name: Optional[str] = None,
) -> int:
    username = str(username or "").strip()
    if not username:
        raise ValidationError("username required.")
    if role not in ROLES:
        raise ValidationError("Invalid role.")
    uid = next_id("users")
    try:
        with get_conn() as conn:
            conn.execute(
                """
                INSERT INTO users (id, username, password_hash, role, district_name)
                VALUES (?, ?, ?, ?, ?)
                """,
                (uid, username, str(password_hash), role, (district_name or "").strip() or None),
            )
            conn.commit()
    except sqlite3.IntegrityError as e:
        raise ValidationError("Username already exists.") from e
    return uid


def get_user_by_name(username: str) -> Optional[Dict[str, Any]]:
    """Full row, password_hash included (login needs it)."""
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            "SELECT id, username, password_hash, role, district_name FROM users WHERE username=? LIMIT 1",
            (str(username or "").strip(),),
        )
        row = cur.fetchone()
    return dict(row) if row else None


def get_user(user_id: Any) -> Optional[Dict[str, Any]]:
    uid = as_id(user_id)
    if uid is None:
        return None
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(f"SELECT {_PUBLIC_COLS} FROM users WHERE id=? LIMIT 1", (uid,))
        row = cur.fetchone()
    return dict(row) if row else None


def list_users(role: Optional[str] = None) -> List[Dict[str, Any]]:
    where = ""
    params: List[Any] = []
    if role:
        where = "WHERE role=?"
        params.append(role)
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            f"SELECT {_PUBLIC_COLS} FROM users {where} ORDER BY id DESC",
            tuple(params),
        )
        return [dict(r) for r in cur.fetchall()]


def display_name(user: Optional[Dict[str, Any]]) -> str:
    if not user:
        return ""
    return user.get("district_name") or user.get("username") or ""
