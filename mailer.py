# mailer.py - District Collect
# Submission notification email (SMTP)

from __future__ import annotations

import html
import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, List

import config

logger = logging.getLogger(__name__)


def is_configured() -> bool:
    return bool(config.SMTP_HOST and config.SMTP_PORT and config.SMTP_USER and config.SMTP_PASS)


def send_submission_email(to: str, subject: str, html_body: str) -> Dict[str, Any]:
    """
    {"ok": True} when handed to the SMTP server,
    {"ok": False, "skipped": True} when SMTP isn't configured.
    Transport errors propagate; the caller decides how much they matter.
    """
    if not is_configured():
        logger.info("Email not configured; would send %r to %s", subject, to)
        logger.debug("HTML preview: %s", html_body[:400])
        return {"ok": False, "skipped": True}

    msg = EmailMessage()
    msg["From"] = config.SMTP_FROM or config.SMTP_USER
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content("This message contains an HTML submission summary.")
    msg.add_alternative(html_body, subtype="html")

    with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=config.SMTP_TIMEOUT) as server:
        if config.SMTP_TLS:
            server.starttls()
        server.login(config.SMTP_USER, config.SMTP_PASS)
        server.send_message(msg)
    return {"ok": True}


def submission_subject(district_name: str, template_name: str) -> str:
    return f"Submission: {district_name} - {template_name}"


def build_submission_email_html(
    district_name: str,
    template_name: str,
    sent_at: str,
    rows: List[Dict[str, str]],
) -> str:
    e = html.escape
    body_rows = "".join(
        f"<tr><td>{e(str(r.get('label', '')))}</td><td>{e(str(r.get('value', '')))}</td></tr>"
        for r in rows
    )
    return f"""
    <div style="font-family:Arial,sans-serif; line-height:1.4">
      <h2>District Submission</h2>
      <p><b>District:</b> {e(district_name)}</p>
      <p><b>Template:</b> {e(template_name)}</p>
      <p><b>Sent at:</b> {e(sent_at)}</p>
      <table border="1" cellpadding="8" cellspacing="0" style="border-collapse:collapse">
        <thead><tr><th align="left">Field</th><th align="left">Value</th></tr></thead>
        <tbody>{body_rows}</tbody>
      </table>
    </div>
    """
