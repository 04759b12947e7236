# app.py - District Collect
# JSON API: admin template builder, district data entry, submissions review

from __future__ import annotations

import logging
import os
from typing import Any, Dict

from flask import Flask, g, jsonify, make_response, request
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

import allocator
import assignments as asg
import config
import exports as exp
import mailer
import submissions as subs
import templates as tpl
import users
from auth import require_role, sign_token, user_from_request
from db import ensure_indexes, init_db
from errors import CollectError, ValidationError
from seed import seed

logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = 1 * 1024 * 1024  # 1MB
app.json.sort_keys = False

# Reachable without a token; everything else under /api needs one.
PUBLIC_API_PATHS = ("/api/login", "/api/health")


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def bootstrap() -> Dict[str, int]:
    """
    Startup order matters: ids are repaired before the unique id indexes are
    created, and seeding (which allocates ids) comes last.
    """
    configure_logging()
    os.makedirs(os.path.dirname(os.path.abspath(config.DB_PATH)), exist_ok=True)
    init_db()
    repaired = allocator.repair_all()
    if any(repaired.values()):
        logger.warning("Repaired entity ids at startup: %s", repaired)
    else:
        logger.info("Entity ids healthy")
    failed = ensure_indexes()
    if failed:
        logger.warning("%d index(es) could not be created; see warnings above", failed)
    seed()
    return repaired


def _body() -> Dict[str, Any]:
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else {}


def _csv_response(text: str, filename: str):
    resp = make_response(text)
    resp.headers["Content-Type"] = "text/csv; charset=utf-8"
    resp.headers["Content-Disposition"] = f'attachment; filename="{filename}"'
    return resp


# ---------------------------
# Request hooks / errors
# ---------------------------

@app.before_request
def _before_request_load_user():
    g.user = None
    if not request.path.startswith("/api") or request.path in PUBLIC_API_PATHS:
        return None
    g.user = user_from_request()
    if not g.user:
        return jsonify({"error": "Not authenticated."}), 401
    return None


@app.after_request
def _after_request_no_cache(response):
    if request.path.startswith("/api"):
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
        response.headers["Pragma"] = "no-cache"
    return response


@app.errorhandler(CollectError)
def _handle_collect_error(e: CollectError):
    if e.status >= 500:
        logger.error("%s on %s %s: %s", type(e).__name__, request.method, request.path, e.message)
    return jsonify({"error": e.message}), e.status


@app.errorhandler(HTTPException)
def _handle_http_error(e: HTTPException):
    return jsonify({"error": e.description}), e.code


@app.errorhandler(Exception)
def _handle_unexpected(e: Exception):
    logger.exception("API error on %s %s", request.method, request.path)
    return jsonify({"error": "Server error. Check logs."}), 500


# ---------------------------
# Public
# ---------------------------

@app.route("/api/health", methods=["GET"])
def api_health():
    return jsonify({"ok": True})


@app.route("/api/login", methods=["POST"])
def api_login():
    data = _body()
    username = str(data.get("username") or "").strip()
    password = str(data.get("password") or "")
    if not username or not password:
        return jsonify({"error": "Username and password required."}), 400

    user = users.get_user_by_name(username)
    if not user or not check_password_hash(user["password_hash"], password):
        return jsonify({"error": "Invalid credentials."}), 401

    return jsonify(
        {
            "token": sign_token(user),
            "user": {
                "id": user["id"],
                "username": user["username"],
                "role": user["role"],
                "district_name": user.get("district_name") or None,
            },
        }
    )


@app.route("/api/me", methods=["GET"])
def api_me():
    return jsonify(g.user)


# ---------------------------
# Admin: users
# ---------------------------

@app.route("/api/admin/users", methods=["GET"])
@require_role("admin")
def api_admin_users():
    role = (request.args.get("role") or "").strip() or None
    return jsonify(users.list_users(role=role))


@app.route("/api/admin/users", methods=["POST"])
@require_role("admin")
def api_admin_create_user():
    data = _body()
    username = str(data.get("username") or "").strip()
    password = str(data.get("password") or "")
    if not username or not password:
        raise ValidationError("username and password required.")
    uid = users.create_user(
        username=username,
        password_hash=generate_password_hash(password),
        role=data.get("role") or "district",
        district_name=data.get("district_name"),
    )
    return jsonify({"id": uid})


# ---------------------------
# Admin: templates + fields
# ---------------------------

@app.route("/api/admin/templates", methods=["GET"])
@require_role("admin")
def api_admin_templates():
    return jsonify(tpl.list_templates())


@app.route("/api/admin/templates", methods=["POST"])
@require_role("admin")
def api_admin_create_template():
    tid = tpl.create_template(_body().get("name"), created_by=g.user["id"])
    return jsonify({"id": tid})


@app.route("/api/admin/templates/<int:template_id>", methods=["GET"])
@require_role("admin")
def api_admin_template(template_id: int):
    detail = tpl.get_template_detail(template_id)
    if not detail:
        return jsonify({"error": "Template not found."}), 404
    return jsonify(detail)


@app.route("/api/admin/templates/<int:template_id>", methods=["PUT"])
@require_role("admin")
def api_admin_update_template(template_id: int):
    tpl.update_template(template_id, _body().get("name"))
    return jsonify({"ok": True})


@app.route("/api/admin/templates/<int:template_id>", methods=["DELETE"])
@require_role("admin")
def api_admin_delete_template(template_id: int):
    deleted = tpl.delete_template_cascade(template_id)
    return jsonify({"ok": True, "deleted": deleted})


@app.route("/api/admin/templates/<int:template_id>/fields", methods=["POST"])
@require_role("admin")
def api_admin_add_field(template_id: int):
    data = _body()
    field = tpl.add_field(
        template_id,
        label=data.get("label"),
        type=data.get("type") or "text",
        required=bool(data.get("required")),
        options=data.get("options") if isinstance(data.get("options"), list) else None,
    )
    return jsonify({"ok": True, "field": field})


@app.route("/api/admin/fields/<int:field_id>", methods=["PUT"])
@require_role("admin")
def api_admin_update_field(field_id: int):
    data = _body()
    options = None
    if "options" in data:
        options = data["options"] if isinstance(data["options"], list) else []
    field = tpl.update_field(
        field_id,
        label=data.get("label"),
        type=data.get("type"),
        required=bool(data["required"]) if "required" in data else None,
        options=options,
    )
    return jsonify({"ok": True, "field": field})


@app.route("/api/admin/fields/<int:field_id>", methods=["DELETE"])
@require_role("admin")
def api_admin_delete_field(field_id: int):
    tpl.delete_field(field_id)
    return jsonify({"ok": True})


@app.route("/api/admin/templates/<int:template_id>/publish", methods=["POST"])
@require_role("admin")
def api_admin_publish(template_id: int):
    tpl.publish_template(template_id)
    return jsonify({"ok": True})


@app.route("/api/admin/templates/<int:template_id>/assign", methods=["POST"])
@require_role("admin")
def api_admin_assign(template_id: int):
    ids = _body().get("districtUserIds")
    if not isinstance(ids, list) or not ids:
        raise ValidationError("districtUserIds required.")
    result = asg.assign(template_id, ids)
    return jsonify({"ok": True, **result})


@app.route("/api/admin/templates/<int:template_id>/export.csv", methods=["GET"])
@require_role("admin")
def api_admin_template_export(template_id: int):
    text = exp.export_template_csv(template_id)
    name = (tpl.get_template(template_id) or {}).get("name", "")
    return _csv_response(text, exp.export_filename("template", name))


# ---------------------------
# Admin: submissions
# ---------------------------

@app.route("/api/admin/submissions", methods=["GET"])
@require_role("admin")
def api_admin_submissions():
    return jsonify(asg.list_submissions())


@app.route("/api/admin/submissions/<int:assignment_id>", methods=["GET"])
@require_role("admin")
def api_admin_submission(assignment_id: int):
    detail = asg.get_submission_detail(assignment_id)
    if not detail:
        return jsonify({"error": "Submission not found."}), 404
    return jsonify(detail)


@app.route("/api/admin/submissions/<int:assignment_id>/export.csv", methods=["GET"])
@require_role("admin")
def api_admin_submission_export(assignment_id: int):
    detail = asg.get_submission_detail(assignment_id)
    if not detail:
        return jsonify({"error": "Submission not found."}), 404
    text = exp.export_submission_csv(assignment_id)
    return _csv_response(
        text,
        exp.export_filename("submission", detail["district_name"], detail["template_name"]),
    )


@app.route("/api/admin/submissions/<int:assignment_id>/unlock", methods=["POST"])
@require_role("admin")
def api_admin_unlock(assignment_id: int):
    subs.unlock(assignment_id)
    return jsonify({"ok": True})


# ---------------------------
# District
# ---------------------------

@app.route("/api/district/assignments", methods=["GET"])
@require_role("district")
def api_district_assignments():
    return jsonify(asg.list_district_assignments(g.user["id"]))


@app.route("/api/district/assignments/<int:assignment_id>", methods=["GET"])
@require_role("district")
def api_district_assignment(assignment_id: int):
    return jsonify(asg.get_district_assignment(assignment_id, g.user["id"]))


@app.route("/api/district/assignments/<int:assignment_id>", methods=["PUT"])
@require_role("district")
def api_district_save(assignment_id: int):
    values = _body().get("values")
    if not isinstance(values, list):
        raise ValidationError("values[] required.")
    subs.save_values(assignment_id, g.user["id"], values)
    return jsonify({"ok": True})


def _notify_admin(payload: subs.SubmissionPayload) -> str:
    """Best effort. Returns the message suffix; never raises."""
    admin_email = config.ADMIN_EMAIL
    if not admin_email:
        return ""
    html_body = mailer.build_submission_email_html(
        payload.district_name, payload.template_name, payload.sent_at, payload.rows
    )
    subject = mailer.submission_subject(payload.district_name, payload.template_name)
    try:
        result = mailer.send_submission_email(admin_email, subject, html_body)
    except Exception:
        # The submission is already committed; delivery is informational only.
        logger.warning("Submission email to %s failed", admin_email, exc_info=True)
        return " (email failed; check logs)"
    if result.get("ok"):
        return " (email delivered)"
    return " (email failed; check logs)"


@app.route("/api/district/assignments/<int:assignment_id>/send", methods=["POST"])
@require_role("district")
def api_district_send(assignment_id: int):
    payload = subs.send(assignment_id, g.user["id"])
    suffix = _notify_admin(payload)
    return jsonify({"ok": True, "message": "Sent" + suffix, "submission": payload.to_dict()})


if __name__ == "__main__":
    bootstrap()
    app.run(host=config.HOST, port=config.PORT, debug=config.DEBUG)
