"""
Identifier generation for geofences, cases, timeline entries and leads.
"""

import secrets
import string
from datetime import datetime
from typing import Optional

from safezone.utils.timeutils import utc_now

_ALPHABET = string.ascii_lowercase + string.digits


def _random_suffix(length: int) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def generate_geofence_id() -> str:
    return f"gf_{int(utc_now().timestamp() * 1000)}_{_random_suffix(9)}"


def generate_case_id(now: Optional[datetime] = None) -> str:
    """Human-readable case id, e.g. CASE-20261018-K3P9QZ."""
    now = now or utc_now()
    return f"CASE-{now.strftime('%Y%m%d')}-{_random_suffix(6).upper()}"


def generate_timeline_id() -> str:
    return f"timeline_{int(utc_now().timestamp() * 1000)}_{_random_suffix(9)}"


def generate_lead_id() -> str:
    return f"lead_{int(utc_now().timestamp() * 1000)}_{_random_suffix(9)}"
