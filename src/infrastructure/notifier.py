"""Emergency notification sink."""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class EmergencyNotifier:
    """
    Delivers emergency alerts to event admins.

    Push / SMS delivery lives outside this service; the default sink writes a
    structured log line with a maps link that an alerting pipeline can pick up.
    """

    async def notify(
        self,
        *,
        event_id: int,
        emergency_id: int,
        triggered_by: str,
        triggered_by_name: str,
        latitude: float | None,
        longitude: float | None,
        admin_email: str | None = None,
    ) -> None:
        location = (
            f"https://maps.google.com/?q={latitude},{longitude}"
            if latitude is not None and longitude is not None
            else "location unavailable"
        )
        logger.warning(
            "EMERGENCY #%s in event %s raised by %s %s (%s), notify %s",
            emergency_id,
            event_id,
            triggered_by,
            triggered_by_name,
            location,
            admin_email or "event admins",
        )
