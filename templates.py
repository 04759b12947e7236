# templates.py - District Collect
# Template builder: templates, fields, publish, cascade delete

from __future__ import annotations

import json
import re
import secrets
import sqlite3
import string
from typing import Any, Dict, List, Optional

from allocator import as_id, next_id, repair_ids
from db import get_conn, now_iso
from errors import NotFound, ValidationError


FIELD_TYPES = ("text", "textarea", "number", "date", "select")

_KEY_ALPHABET = string.ascii_lowercase + string.digits


# -------------------------------------------------
# Helpers
# -------------------------------------------------

def _rand(n: int) -> str:
    return "".join(secrets.choice(_KEY_ALPHABET) for _ in range(n))


def slug_key(label: str) -> str:
    """
    "Yield (qtl)" -> "yield_qtl". Non-ASCII text (e.g. Devanagari) is dropped;
    a label with nothing left gets a random "field_xxxxxx" key.
    """
    base = str(label or "").strip().encode("ascii", "ignore").decode("ascii").lower()
    cleaned = re.sub(r"[^a-z0-9]+", "_", base).strip("_")
    return cleaned or "field_" + _rand(6)


def _parse_options(raw: Any) -> List[str]:
    if isinstance(raw, list):
        return [str(o) for o in raw]
    if not raw:
        return []
    try:
        val = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return [str(o) for o in val] if isinstance(val, list) else []


def _template_dict(row: sqlite3.Row) -> Dict[str, Any]:
    d = dict(row)
    d["published"] = bool(d.get("published"))
    return d


def _field_dict(row: sqlite3.Row) -> Dict[str, Any]:
    d = dict(row)
    d["required"] = bool(d.get("required"))
    d["options"] = _parse_options(d.get("options"))
    return d


def _touch_template(conn: sqlite3.Connection, template_id: int) -> None:
    conn.execute("UPDATE templates SET updated_at=? WHERE id=?", (now_iso(), int(template_id)))


def _next_order_index(template_id: int) -> int:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            "SELECT COALESCE(MAX(order_index), 0) + 1 AS n FROM fields WHERE template_id=?",
            (int(template_id),),
        )
        return int(cur.fetchone()["n"])


# -------------------------------------------------
# Templates
# -------------------------------------------------

_TEMPLATE_SELECT = "SELECT id, name, published, created_by, created_at, updated_at FROM templates"


def create_template(name: str, created_by: Optional[int] = None) -> int:
    name = str(name or "").strip()
    if not name:
        raise ValidationError("name required.")
    # Keep existing ids consistent before handing out the next one.
    repair_ids("templates")
    tid = next_id("templates")
    now = now_iso()
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO templates (id, name, published, created_by, created_at, updated_at)
            VALUES (?, ?, 0, ?, ?, ?)
            """,
            (tid, name, as_id(created_by), now, now),
        )
        conn.commit()
    return tid


def get_template(template_id: Any) -> Optional[Dict[str, Any]]:
    tid = as_id(template_id)
    if tid is None:
        return None
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(f"{_TEMPLATE_SELECT} WHERE id=? LIMIT 1", (tid,))
        row = cur.fetchone()
    return _template_dict(row) if row else None


def _require_template(template_id: Any) -> Dict[str, Any]:
    tpl = get_template(template_id)
    if not tpl:
        raise NotFound("Template not found.")
    return tpl


def list_templates() -> List[Dict[str, Any]]:
    """
    All templates with a field_count, most recently updated first.
    Unusable ids are repaired first; anything still not a positive integer is left out.
    """
    repair_ids("templates")
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT t.id, t.name, t.published, t.created_by, t.created_at, t.updated_at,
                   (SELECT COUNT(*) FROM fields f WHERE f.template_id = t.id) AS field_count
            FROM templates t
            WHERE typeof(t.id)='integer' AND t.id > 0
            ORDER BY t.updated_at DESC, t.id DESC
            """
        )
        return [_template_dict(r) for r in cur.fetchall()]


def list_fields(template_id: int) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT id, template_id, field_key, label, type, required, options, order_index
            FROM fields
            WHERE template_id=?
            ORDER BY order_index ASC, id ASC
            """,
            (int(template_id),),
        )
        return [_field_dict(r) for r in cur.fetchall()]


def get_template_detail(template_id: Any) -> Optional[Dict[str, Any]]:
    tpl = get_template(template_id)
    if not tpl:
        return None
    tpl["fields"] = list_fields(tpl["id"])
    return tpl


def update_template(template_id: Any, name: str) -> None:
    tpl = _require_template(template_id)
    name = str(name or "").strip()
    if not name:
        raise ValidationError("name required.")
    with get_conn() as conn:
        conn.execute(
            "UPDATE templates SET name=?, updated_at=? WHERE id=?",
            (name, now_iso(), tpl["id"]),
        )
        conn.commit()


def publish_template(template_id: Any) -> None:
    """draft -> published. There is no way back."""
    tpl = _require_template(template_id)
    with get_conn() as conn:
        conn.execute(
            "UPDATE templates SET published=1, updated_at=? WHERE id=?",
            (now_iso(), tpl["id"]),
        )
        conn.commit()


def delete_template_cascade(template_id: Any) -> Dict[str, int]:
    """
    Deletes values -> assignments -> fields -> template, committing each step.
    Not transactional: a crash leaves the template in place, so rerunning
    finishes the job. Safe to call on an already-deleted template.
    """
    tid = as_id(template_id)
    if tid is None:
        raise NotFound("Template not found.")
    steps = [
        ("values", "DELETE FROM values_kv WHERE assignment_id IN (SELECT id FROM assignments WHERE template_id=?)"),
        ("assignments", "DELETE FROM assignments WHERE template_id=?"),
        ("fields", "DELETE FROM fields WHERE template_id=?"),
        ("templates", "DELETE FROM templates WHERE id=?"),
    ]
    counts: Dict[str, int] = {}
    for name, sql in steps:
        with get_conn() as conn:
            cur = conn.execute(sql, (tid,))
            counts[name] = cur.rowcount
            conn.commit()
    return counts


# -------------------------------------------------
# Fields
# -------------------------------------------------

_FIELD_SELECT = "SELECT id, template_id, field_key, label, type, required, options, order_index FROM fields"


def add_field(
    template_id: Any,
    label: str,
    type: str = "text",
    required: bool = False,
    options: Optional[List[str]] = None,
) -> Dict[str, Any]:
    tpl = _require_template(template_id)
    label = str(label or "").strip()
    if not label:
        raise ValidationError("label required.")
    ftype = type if type in FIELD_TYPES else "text"
    order_index = _next_order_index(tpl["id"])
    fid = next_id("fields")
    key = slug_key(label)
    opts = json.dumps(_parse_options(options or []))

    def _insert(field_key: str) -> None:
        with get_conn() as conn:
            conn.execute(
                """
                INSERT INTO fields (id, template_id, field_key, label, type, required, options, order_index)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (fid, tpl["id"], field_key, label, ftype, 1 if required else 0, opts, order_index),
            )
            _touch_template(conn, tpl["id"])
            conn.commit()

    try:
        _insert(key)
    except sqlite3.IntegrityError:
        # Same key already on this template: one retry with a random suffix.
        key = f"{key}_{_rand(3)}"
        try:
            _insert(key)
        except sqlite3.IntegrityError as e:
            raise ValidationError("Could not generate a unique field key.") from e

    return get_field(fid)


def get_field(field_id: Any) -> Optional[Dict[str, Any]]:
    fid = as_id(field_id)
    if fid is None:
        return None
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(f"{_FIELD_SELECT} WHERE id=? LIMIT 1", (fid,))
        row = cur.fetchone()
    return _field_dict(row) if row else None


def update_field(
    field_id: Any,
    label: Optional[str] = None,
    type: Optional[str] = None,
    required: Optional[bool] = None,
    options: Any = None,
) -> Dict[str, Any]:
    """
    Partial update; None leaves a value as it was. field_key is never
    regenerated, even when the label changes.
    """
    f = get_field(field_id)
    if not f:
        raise NotFound("Field not found.")

    sets = []
    values: List[Any] = []
    if label is not None:
        sets.append("label=?")
        values.append(str(label))
    if type is not None:
        sets.append("type=?")
        values.append(type if type in FIELD_TYPES else f["type"])
    if required is not None:
        sets.append("required=?")
        values.append(1 if required else 0)
    if options is not None:
        sets.append("options=?")
        values.append(json.dumps(_parse_options(options) if isinstance(options, list) else []))

    with get_conn() as conn:
        if sets:
            conn.execute(f"UPDATE fields SET {', '.join(sets)} WHERE id=?", (*values, f["id"]))
        _touch_template(conn, f["template_id"])
        conn.commit()
    return get_field(f["id"])


def delete_field(field_id: Any) -> None:
    """Values already entered under this field's key are kept."""
    f = get_field(field_id)
    if not f:
        raise NotFound("Field not found.")
    with get_conn() as conn:
        conn.execute("DELETE FROM fields WHERE id=?", (f["id"],))
        _touch_template(conn, f["template_id"])
        conn.commit()
