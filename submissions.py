# submissions.py - District Collect
# Per-assignment submission state: draft -> sent -> (admin unlock) -> draft

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List

import templates as tpl
from allocator import next_id
from assignments import STATUS_DRAFT, STATUS_SENT, get_assignment, value_map
from db import get_conn, now_iso
from errors import InvalidState, NotFound, ValidationError
from users import display_name, get_user


@dataclass
class SubmissionPayload:
    """Read-only summary of a sent submission, handed to the notification sink."""

    district_name: str
    template_name: str
    sent_at: str
    rows: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _owned_draft(assignment_id: Any, district_user_id: Any, sent_message: str) -> Dict[str, Any]:
    a = get_assignment(assignment_id, district_user_id)
    if not a:
        # Someone else's assignment looks exactly like a missing one.
        raise NotFound("Assignment not found.")
    if a["status"] == STATUS_SENT:
        raise InvalidState(sent_message)
    return a


def save_values(assignment_id: Any, district_user_id: Any, values: Iterable[Dict[str, Any]]) -> int:
    """
    Upserts {field_key, value} pairs for a draft assignment owned by the caller.
    Keys are not checked against the template. Returns how many pairs were written.
    """
    a = _owned_draft(assignment_id, district_user_id, "Already sent. Ask admin to unlock.")
    ts = now_iso()

    pairs = []
    for v in values or []:
        if not isinstance(v, dict) or not v.get("field_key"):
            continue
        raw = v.get("value")
        pairs.append((str(v["field_key"]), "" if raw is None else str(raw)))

    with get_conn() as conn:
        existing = {
            r["field_key"]
            for r in conn.execute("SELECT field_key FROM values_kv WHERE assignment_id=?", (a["id"],))
        }

    for key, value in pairs:
        if key in existing:
            with get_conn() as conn:
                conn.execute(
                    "UPDATE values_kv SET value=?, updated_at=? WHERE assignment_id=? AND field_key=?",
                    (value, ts, a["id"], key),
                )
                conn.commit()
            continue
        vid = next_id("values_kv")
        with get_conn() as conn:
            conn.execute(
                """
                INSERT INTO values_kv (id, assignment_id, field_key, value, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (assignment_id, field_key) DO UPDATE SET
                  value=excluded.value,
                  updated_at=excluded.updated_at
                """,
                (vid, a["id"], key, value, ts),
            )
            conn.commit()
        existing.add(key)

    with get_conn() as conn:
        conn.execute("UPDATE assignments SET updated_at=? WHERE id=?", (ts, a["id"]))
        conn.commit()
    return len(pairs)


def send(assignment_id: Any, district_user_id: Any) -> SubmissionPayload:
    """
    draft -> sent, if every required field has a non-blank value.
    On a missing required value nothing is written.
    """
    a = _owned_draft(assignment_id, district_user_id, "Already sent.")
    fields = tpl.list_fields(a["template_id"])
    vmap = {k: (v or "").strip() for k, v in value_map(a["id"]).items()}

    missing = [f["label"] for f in fields if f["required"] and not vmap.get(f["field_key"])]
    if missing:
        raise ValidationError("Required fields missing: " + ", ".join(missing))

    ts = now_iso()
    with get_conn() as conn:
        cur = conn.execute(
            "UPDATE assignments SET status=?, sent_at=?, updated_at=? WHERE id=? AND status=?",
            (STATUS_SENT, ts, ts, a["id"], STATUS_DRAFT),
        )
        conn.commit()
    if cur.rowcount != 1:
        # Lost a race with another send() for the same assignment.
        raise InvalidState("Already sent.")

    t = tpl.get_template(a["template_id"])
    return SubmissionPayload(
        district_name=display_name(get_user(a["district_user_id"])),
        template_name=t["name"] if t else "",
        sent_at=ts,
        rows=[{"label": f["label"], "value": vmap.get(f["field_key"], "")} for f in fields],
    )


def unlock(assignment_id: Any) -> None:
    """Admin only. Back to draft whatever the current state."""
    a = get_assignment(assignment_id)
    if not a:
        raise NotFound("Submission not found.")
    with get_conn() as conn:
        conn.execute(
            "UPDATE assignments SET status=?, sent_at=NULL, updated_at=? WHERE id=?",
            (STATUS_DRAFT, now_iso(), a["id"]),
        )
        conn.commit()
