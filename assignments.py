# assignments.py - District Collect
# Template -> district fan-out, and the read side of assignments/submissions

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

import templates as tpl
from allocator import as_id, next_id
from db import get_conn, now_iso
from errors import InvalidState, NotFound
from users import display_name, get_user


STATUS_DRAFT = "draft"
STATUS_SENT = "sent"

_ASSIGNMENT_SELECT = (
    "SELECT id, template_id, district_user_id, status, sent_at, created_at, updated_at FROM assignments"
)


# -------------------------------------------------
# Fan-out
# -------------------------------------------------

def _district_exists(conn, user_id: int) -> bool:
    cur = conn.execute("SELECT 1 FROM users WHERE id=? AND role='district' LIMIT 1", (user_id,))
    return cur.fetchone() is not None


def _upsert_assignment(template_id: int, user_id: int) -> Tuple[int, bool]:
    """Returns (assignment id, created). An existing assignment only gets its updated_at bumped."""
    ts = now_iso()
    with get_conn() as conn:
        row = conn.execute(
            "SELECT id FROM assignments WHERE template_id=? AND district_user_id=? LIMIT 1",
            (template_id, user_id),
        ).fetchone()
        if row:
            conn.execute("UPDATE assignments SET updated_at=? WHERE id=?", (ts, row["id"]))
            conn.commit()
            return int(row["id"]), False

    new_id = next_id("assignments")
    with get_conn() as conn:
        cur = conn.execute(
            """
            INSERT INTO assignments (id, template_id, district_user_id, status, sent_at, created_at, updated_at)
            VALUES (?, ?, ?, 'draft', NULL, ?, ?)
            ON CONFLICT (template_id, district_user_id) DO NOTHING
            """,
            (new_id, template_id, user_id, ts, ts),
        )
        created = cur.rowcount == 1
        if not created:
            # A concurrent assign() got there first; use its row.
            row = conn.execute(
                "SELECT id FROM assignments WHERE template_id=? AND district_user_id=? LIMIT 1",
                (template_id, user_id),
            ).fetchone()
            new_id = int(row["id"])
        conn.commit()
    return new_id, created


def _ensure_value_entries(assignment_id: int, field_keys: List[str]) -> int:
    """Adds an empty value for every key that has none yet. Never overwrites. Returns rows added."""
    with get_conn() as conn:
        existing = {
            r["field_key"]
            for r in conn.execute("SELECT field_key FROM values_kv WHERE assignment_id=?", (assignment_id,))
        }
    added = 0
    for key in field_keys:
        if key in existing:
            continue
        vid = next_id("values_kv")
        with get_conn() as conn:
            cur = conn.execute(
                """
                INSERT INTO values_kv (id, assignment_id, field_key, value, updated_at)
                VALUES (?, ?, ?, '', ?)
                ON CONFLICT (assignment_id, field_key) DO NOTHING
                """,
                (vid, assignment_id, key, now_iso()),
            )
            added += cur.rowcount
            conn.commit()
    return added


def assign(template_id: Any, district_user_ids: Iterable[Any]) -> Dict[str, Any]:
    """
    One assignment per (template, district user) and one value entry per
    (assignment, field). Safe to rerun after a partial failure: an existing
    assignment keeps its status and existing values keep their content.
    Unknown or non-district user ids are skipped, not rejected.
    """
    t = tpl.get_template(template_id)
    if not t:
        raise NotFound("Template not found.")
    if not t["published"]:
        raise InvalidState("Publish the template before assigning.")

    field_keys = [f["field_key"] for f in tpl.list_fields(t["id"])]
    summary: Dict[str, Any] = {"assignments_created": 0, "values_created": 0, "skipped": []}

    for raw_uid in district_user_ids:
        uid = as_id(raw_uid)
        if uid is None:
            summary["skipped"].append(raw_uid)
            continue
        with get_conn() as conn:
            ok = _district_exists(conn, uid)
        if not ok:
            summary["skipped"].append(uid)
            continue

        assignment_id, created = _upsert_assignment(t["id"], uid)
        if created:
            summary["assignments_created"] += 1
        summary["values_created"] += _ensure_value_entries(assignment_id, field_keys)

    return summary


# -------------------------------------------------
# Reads
# -------------------------------------------------

def get_assignment(assignment_id: Any, district_user_id: Any = None) -> Optional[Dict[str, Any]]:
    """With district_user_id set, only an assignment owned by that user is returned."""
    aid = as_id(assignment_id)
    if aid is None:
        return None
    where = "id=?"
    params: List[Any] = [aid]
    if district_user_id is not None:
        uid = as_id(district_user_id)
        if uid is None:
            return None
        where += " AND district_user_id=?"
        params.append(uid)
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(f"{_ASSIGNMENT_SELECT} WHERE {where} LIMIT 1", tuple(params))
        row = cur.fetchone()
    return dict(row) if row else None


def value_map(assignment_id: int) -> Dict[str, str]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("SELECT field_key, value FROM values_kv WHERE assignment_id=?", (int(assignment_id),))
        return {r["field_key"]: (r["value"] if r["value"] is not None else "") for r in cur.fetchall()}


def list_values(assignment_id: int) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            "SELECT field_key, value FROM values_kv WHERE assignment_id=? ORDER BY id ASC",
            (int(assignment_id),),
        )
        return [dict(r) for r in cur.fetchall()]


def list_submissions() -> List[Dict[str, Any]]:
    # Inner joins: assignments whose template or user is gone are not listed.
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT a.id, a.template_id, a.district_user_id, a.status, a.sent_at, a.updated_at,
                   t.name AS template_name,
                   u.username AS district_username,
                   COALESCE(u.district_name, u.username) AS district_name
            FROM assignments a
            JOIN templates t ON t.id = a.template_id
            JOIN users u ON u.id = a.district_user_id
            ORDER BY a.updated_at DESC, a.id DESC
            """
        )
        return [dict(r) for r in cur.fetchall()]


def list_template_assignments(template_id: int) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT a.id, a.status, a.sent_at, a.updated_at,
                   u.username AS district_username,
                   COALESCE(u.district_name, u.username) AS district_name
            FROM assignments a
            JOIN users u ON u.id = a.district_user_id
            WHERE a.template_id=?
            ORDER BY district_name ASC, a.id ASC
            """,
            (int(template_id),),
        )
        return [dict(r) for r in cur.fetchall()]


def get_submission_detail(assignment_id: Any) -> Optional[Dict[str, Any]]:
    a = get_assignment(assignment_id)
    if not a:
        return None
    t = tpl.get_template(a["template_id"])
    vmap = value_map(a["id"])
    return {
        "id": a["id"],
        "status": a["status"],
        "sent_at": a["sent_at"],
        "updated_at": a["updated_at"],
        "template_name": t["name"] if t else "",
        "district_name": display_name(get_user(a["district_user_id"])),
        "values": [
            {"field_key": f["field_key"], "label": f["label"], "value": vmap.get(f["field_key"], "")}
            for f in tpl.list_fields(a["template_id"])
        ],
    }


def submission_rows(assignment_id: Any) -> List[Dict[str, str]]:
    """Ordered {label, value} rows: what exports and notifications are built from."""
    detail = get_submission_detail(assignment_id)
    if not detail:
        raise NotFound("Submission not found.")
    return [{"label": v["label"], "value": v["value"]} for v in detail["values"]]


def list_district_assignments(district_user_id: Any) -> List[Dict[str, Any]]:
    uid = as_id(district_user_id)
    if uid is None:
        return []
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT a.id, a.status, a.sent_at, a.updated_at, t.name AS template_name
            FROM assignments a
            JOIN templates t ON t.id = a.template_id
            WHERE a.district_user_id=?
            ORDER BY a.updated_at DESC, a.id DESC
            """,
            (uid,),
        )
        return [dict(r) for r in cur.fetchall()]


def get_district_assignment(assignment_id: Any, district_user_id: Any) -> Dict[str, Any]:
    a = get_assignment(assignment_id, district_user_id)
    if not a:
        raise NotFound("Assignment not found.")
    t = tpl.get_template(a["template_id"])
    return {
        "id": a["id"],
        "template_name": t["name"] if t else "",
        "status": a["status"],
        "sent_at": a["sent_at"],
        "updated_at": a["updated_at"],
        "fields": tpl.list_fields(a["template_id"]),
        "values": list_values(a["id"]),
    }
