# auth.py - District Collect
# Bearer JWT issue/verify and role guards for the JSON API.
# The token carries the identity; requests never hit the users table to authenticate.

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Any, Dict, Optional

import jwt
from flask import g, jsonify, request

import config

_ALGORITHM = "HS256"
_fallback_secret: Optional[str] = None


def jwt_secret() -> str:
    """Configured secret, or a per-process random one (tokens then die with the process)."""
    global _fallback_secret
    if config.JWT_SECRET:
        return config.JWT_SECRET
    if _fallback_secret is None:
        _fallback_secret = secrets.token_urlsafe(32)
    return _fallback_secret


def sign_token(user: Dict[str, Any]) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "id": user["id"],
        "username": user["username"],
        "role": user["role"],
        "district_name": user.get("district_name") or None,
        "iat": now,
        "exp": now + timedelta(days=config.TOKEN_TTL_DAYS),
    }
    return jwt.encode(payload, jwt_secret(), algorithm=_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """
    Raises:
        jwt.InvalidTokenError: bad signature, expired, malformed
    """
    return jwt.decode(token, jwt_secret(), algorithms=[_ALGORITHM])


def user_from_request() -> Optional[Dict[str, Any]]:
    hdr = request.headers.get("Authorization", "")
    if not hdr.startswith("Bearer "):
        return None
    try:
        payload = decode_token(hdr[7:].strip())
    except jwt.InvalidTokenError:
        return None
    return {
        "id": payload.get("id"),
        "username": payload.get("username"),
        "role": payload.get("role"),
        "district_name": payload.get("district_name"),
    }


def require_role(role: str):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = getattr(g, "user", None)
            if not user:
                return jsonify({"error": "Not authenticated."}), 401
            if user.get("role") != role:
                return jsonify({"error": "Forbidden."}), 403
            return fn(*args, **kwargs)

        return wrapper

    return decorator
