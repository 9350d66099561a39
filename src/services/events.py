"""Event (party) management and access codes."""

from __future__ import annotations

import logging
import secrets
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.domain.entities import InvalidRideRequest, NotFound
from src.infrastructure.models import EventModel
from src.infrastructure.repositories import EventRepository

logger = logging.getLogger(__name__)

# No 0/O or 1/I, so codes survive being read aloud
ACCESS_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ACCESS_CODE_LENGTH = 6


def generate_access_code() -> str:
    return "".join(
        secrets.choice(ACCESS_CODE_ALPHABET) for _ in range(ACCESS_CODE_LENGTH)
    )


class EventService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.events = EventRepository(session)

    async def create_event(
        self,
        *,
        event_name: str,
        organization_name: str,
        start_time: datetime,
        end_time: datetime,
        admin_email: Optional[str] = None,
        batch_mode_enabled: bool = False,
    ) -> EventModel:
        if end_time <= start_time:
            raise InvalidRideRequest("Event must end after it starts")

        code = generate_access_code()
        while await self.events.access_code_exists(code):
            code = generate_access_code()

        event = await self.events.create(
            event_name=event_name,
            organization_name=organization_name,
            access_code=code,
            start_time=start_time,
            end_time=end_time,
            admin_email=admin_email,
            batch_mode_enabled=batch_mode_enabled,
            is_active=True,
        )
        logger.info("Created event %s (%s)", event.id, code)
        return event

    async def get_event(self, event_id: int) -> EventModel:
        event = await self.events.get_by_id(event_id)
        if event is None:
            raise NotFound(f"Event {event_id} not found")
        return event

    async def get_event_by_access_code(self, code: str) -> EventModel:
        event = await self.events.get_active_by_access_code(code.strip())
        if event is None:
            raise NotFound("No active event with that access code")
        return event

    async def set_event_active(self, event_id: int, is_active: bool) -> EventModel:
        return await self.events.update(
            await self.get_event(event_id), is_active=is_active
        )

    async def set_batch_mode(self, event_id: int, enabled: bool) -> EventModel:
        return await self.events.update(
            await self.get_event(event_id), batch_mode_enabled=enabled
        )
