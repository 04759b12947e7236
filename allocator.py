# allocator.py - District Collect
# Integer surrogate ids per entity type, backed by the _counters table.
#
# The counter is a cache of `counter >= max(id)`; it is re-validated before
# every allocation instead of being trusted.

from __future__ import annotations

import math
from typing import Any, Dict, Optional, Union

from db import ENTITY_TABLES, get_conn, now_iso, table_columns
from errors import AllocatorFailure


Number = Union[int, float]

# Largest value an SQLite INTEGER column can hold.
MAX_ID = 2**63 - 1


def _table_for(entity: str) -> str:
    # Table names are interpolated into SQL, so only known entities pass.
    if entity not in ENTITY_TABLES:
        raise ValueError(f"Unknown entity type: {entity!r}")
    return entity


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _number(value: Any) -> Optional[Number]:
    """
    Numeric view of a stored value. None for NULL, blobs, non-numeric text,
    NaN, inf, and anything outside the SQLite INTEGER range.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if -MAX_ID <= value <= MAX_ID else None
    if isinstance(value, float):
        n = value
    elif isinstance(value, str):
        try:
            n = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(n) or not -MAX_ID <= n <= MAX_ID:
        return None
    return n


def as_id(value: Any) -> Optional[int]:
    """
    The one place surrogate ids are parsed.
    Accepts ints, integral floats and numeric strings; returns a positive int or None.
    """
    n = _number(value)
    if n is None:
        return None
    if isinstance(n, float):
        if not n.is_integer():
            return None
        n = int(n)
    return n if n > 0 else None


def _max_existing_id(conn, table: str) -> int:
    best: Number = 0
    for row in conn.execute(f"SELECT id FROM {table} WHERE id IS NOT NULL"):
        n = _number(row["id"])
        if n is not None and n > best:
            best = n
    return int(math.floor(best))


def read_counter(entity: str) -> Any:
    """Raw persisted counter value (None if the record is missing)."""
    _table_for(entity)
    with get_conn() as conn:
        row = conn.execute("SELECT value FROM _counters WHERE id=?", (entity,)).fetchone()
    return row["value"] if row else None


def health_check(entity: str) -> int:
    """
    Makes the counter for `entity` an integer >= the largest numeric id in its table.

    Runs under BEGIN IMMEDIATE so no other writer can increment between the
    read and the repair; a concurrent allocation is never rolled back.
    Writes nothing when the counter is already healthy. Returns its value.
    """
    table = _table_for(entity)
    with get_conn() as conn:
        conn.execute("BEGIN IMMEDIATE")
        max_id = _max_existing_id(conn, table)
        row = conn.execute("SELECT value FROM _counters WHERE id=?", (entity,)).fetchone()
        raw = row["value"] if row else None
        current = _number(raw)
        healthy = max_id if current is None else max(int(math.floor(current)), max_id)

        if row is None:
            conn.execute("INSERT INTO _counters (id, value) VALUES (?, ?)", (entity, healthy))
        elif not _is_int(raw) or raw != healthy:
            conn.execute("UPDATE _counters SET value=? WHERE id=?", (healthy, entity))
        conn.commit()
    return healthy


def _increment(entity: str) -> Optional[int]:
    # Single statement: the engine serializes it, so two callers never read
    # the same post-increment value. A non-integer counter is left untouched.
    with get_conn() as conn:
        cur = conn.execute(
            """
            UPDATE _counters
            SET value = value + 1
            WHERE id=? AND typeof(value)='integer'
            RETURNING value
            """,
            (entity,),
        )
        rows = cur.fetchall()
        conn.commit()
    if not rows:
        return None
    value = rows[0]["value"]
    return value if _is_int(value) else None


def next_id(entity: str) -> int:
    _table_for(entity)
    for _attempt in range(2):
        health_check(entity)
        value = _increment(entity)
        if value is not None:
            return value
    raise AllocatorFailure(f"Counter '{entity}' is corrupted and could not be repaired.")


def repair_ids(entity: str) -> int:
    """
    Fixes rows of `entity` whose id is unusable:
    - numeric but stored as text/real -> normalized to the integer in place
    - missing, NULL, non-numeric, fractional, out of range, <= 0, or a
      duplicate of an earlier row (doc_id order) -> a fresh id from next_id()
    Only `id` and `updated_at` (where the table has it) are written, and only
    while the row still holds the id that was read; a row another caller
    already repaired is left alone.
    Returns how many rows changed.
    """
    table = _table_for(entity)
    has_updated_at = "updated_at" in table_columns(table)

    with get_conn() as conn:
        rows = conn.execute(f"SELECT doc_id, id FROM {table} ORDER BY doc_id ASC").fetchall()

    seen = set()
    normalize = []
    reassign = []
    for r in rows:
        raw = r["id"]
        n = as_id(raw)
        if n is None or n in seen:
            reassign.append((r["doc_id"], raw))
            continue
        seen.add(n)
        if not _is_int(raw):
            normalize.append((n, r["doc_id"], raw))

    if not normalize and not reassign:
        return 0

    ts = now_iso()
    set_sql = "id=?, updated_at=?" if has_updated_at else "id=?"

    def _write(new_id: int, doc_id: int, old_id: Any) -> int:
        params = (new_id, ts) if has_updated_at else (new_id,)
        with get_conn() as conn:
            cur = conn.execute(
                f"UPDATE {table} SET {set_sql} WHERE doc_id=? AND id IS ?",
                params + (doc_id, old_id),
            )
            conn.commit()
        return cur.rowcount

    changed = 0
    for new_id, doc_id, old_id in normalize:
        changed += _write(new_id, doc_id, old_id)
    for doc_id, old_id in reassign:
        changed += _write(next_id(entity), doc_id, old_id)
    return changed


def repair_all() -> Dict[str, int]:
    """Startup repair: heal every counter, then fix every unusable id. Returns {entity: rows_changed}."""
    summary: Dict[str, int] = {}
    for entity in ENTITY_TABLES:
        health_check(entity)
        summary[entity] = repair_ids(entity)
    return summary
