"""Rider terms acceptance, keyed by the pseudonymous rider hash."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.domain.entities import NotFound, utcnow
from src.infrastructure.models import RiderConsentModel
from src.infrastructure.repositories import ConsentRepository, EventRepository

logger = logging.getLogger(__name__)


class ConsentService:
    def __init__(
        self, session: AsyncSession, *, clock: Callable[[], datetime] = utcnow
    ):
        self.session = session
        self.consents = ConsentRepository(session)
        self.events = EventRepository(session)
        self.clock = clock

    async def check_consent(self, event_id: int, rider_hash: str) -> bool:
        return await self.consents.get(event_id, rider_hash) is not None

    async def record_consent(
        self, event_id: int, rider_hash: str, ip_address: Optional[str] = None
    ) -> RiderConsentModel:
        if await self.events.get_by_id(event_id) is None:
            raise NotFound(f"Event {event_id} not found")
        return await self.consents.insert_if_absent(
            event_id, rider_hash, ip_address, self.clock()
        )

    async def list_event_consents(self, event_id: int) -> list[RiderConsentModel]:
        return await self.consents.list_for_event(event_id)
