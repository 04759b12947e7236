# exports.py - District Collect
# CSV exports of submissions (one assignment, or a whole template)

from __future__ import annotations

import csv
import io
from typing import Any, List, Sequence

import assignments as asg
import templates as tpl
from errors import NotFound


def rows_to_csv(rows: Sequence[Sequence[Any]]) -> str:
    """
    RFC-4180 style: CRLF line ends, fields containing a comma, quote or
    newline are quoted, quotes doubled.
    """
    buf = io.StringIO()
    w = csv.writer(buf, quoting=csv.QUOTE_MINIMAL, lineterminator="\r\n")
    for r in rows:
        w.writerow(["" if v is None else v for v in r])
    return buf.getvalue()


def export_submission_csv(assignment_id: Any) -> str:
    rows: List[List[Any]] = [["Field", "Value"]]
    rows.extend([r["label"], r["value"]] for r in asg.submission_rows(assignment_id))
    return rows_to_csv(rows)


def export_template_csv(template_id: Any) -> str:
    """
    One line per assignment of the template, one column per field (field order).
    Values under keys of deleted fields are not exported.
    """
    t = tpl.get_template(template_id)
    if not t:
        raise NotFound("Template not found.")
    fields = tpl.list_fields(t["id"])

    header = ["District", "Username", "Status", "Sent at"] + [f["label"] for f in fields]
    rows: List[List[Any]] = [header]
    for a in asg.list_template_assignments(t["id"]):
        vmap = asg.value_map(a["id"])
        rows.append(
            [a["district_name"], a["district_username"], a["status"], a["sent_at"] or ""]
            + [vmap.get(f["field_key"], "") for f in fields]
        )
    return rows_to_csv(rows)


def export_filename(*parts: str) -> str:
    base = "_".join(p for p in parts if p)
    clean = "".join(c if (c.isascii() and c.isalnum()) or c in "-_." else "_" for c in base.replace(" ", "_"))
    return (clean or "export") + ".csv"
