"""Cooldown reads, no-show countdowns and pseudonymous rider identity.

The penalty counter itself is an atomic upsert in ``PenaltyRepository``.
"""

from __future__ import annotations

import hashlib
import math
from datetime import datetime
from typing import Optional

from .entities import CooldownStatus, as_utc


def cooldown_status(
    cooldown_until: Optional[datetime], *, now: datetime
) -> CooldownStatus:
    """A passed deadline reads as "not in cooldown"; no cleanup write needed."""
    cooldown_until = as_utc(cooldown_until)
    if cooldown_until is None or cooldown_until <= now:
        return CooldownStatus(is_in_cooldown=False)

    remaining = math.ceil((cooldown_until - now).total_seconds() / 60)
    return CooldownStatus(
        is_in_cooldown=True,
        cooldown_until=cooldown_until,
        remaining_minutes=remaining,
    )


def remaining_deadline_seconds(deadline: datetime, *, now: datetime) -> int:
    remaining = (as_utc(deadline) - now).total_seconds()
    return max(0, math.ceil(remaining))


def rider_identifier_hash(event_id: int, rider_name: str, origin: str) -> str:
    """SHA-256 of event + normalised name + client origin; no PII is stored."""
    raw = f"{event_id}:{rider_name.lower().strip()}:{origin}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
