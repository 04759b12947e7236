# seed.py - District Collect
# Idempotent admin + default district accounts

from __future__ import annotations

import logging
from typing import Optional

from werkzeug.security import generate_password_hash

import config
from users import create_user, get_user_by_name

logger = logging.getLogger(__name__)


DEFAULT_DISTRICTS = [
    ("amravati_rural", "अमरावती ग्रामीण / Amravati Rural"),
    ("amravati_city", "अमरावती शहर / Amravati City"),
    ("buldhana", "बुलढाणा / Buldhana"),
    ("washim", "वाशिम / Washim"),
    ("yavatmal", "यवतमाळ / Yavatmal"),
    ("akola", "अकोला / Akola"),
]


def ensure_user(username: str, password: str, role: str, district_name: Optional[str] = None) -> int:
    existing = get_user_by_name(username)
    if existing:
        return int(existing["id"])
    return create_user(
        username=username,
        password_hash=generate_password_hash(password),
        role=role,
        district_name=district_name,
    )


def seed() -> bool:
    """Returns False (and logs) when the seed credentials aren't configured."""
    if not config.ADMIN_USERNAME or not config.ADMIN_PASSWORD or not config.DISTRICT_DEFAULT_PASSWORD:
        logger.warning(
            "Seed skipped: set DCOLLECT_ADMIN_USERNAME, DCOLLECT_ADMIN_PASSWORD "
            "and DCOLLECT_DISTRICT_DEFAULT_PASSWORD"
        )
        return False

    ensure_user(config.ADMIN_USERNAME, config.ADMIN_PASSWORD, "admin")
    for username, name in DEFAULT_DISTRICTS:
        ensure_user(username, config.DISTRICT_DEFAULT_PASSWORD, "district", district_name=name)
    return True
