"""Emergency alerts raised by riders or drivers."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.domain.entities import InvalidTransition, NotFound, utcnow
from src.domain.enums import EmergencyTrigger
from src.infrastructure.models import EmergencyEventModel
from src.infrastructure.notifier import EmergencyNotifier
from src.infrastructure.repositories import EmergencyRepository, EventRepository

logger = logging.getLogger(__name__)


class EmergencyService:
    def __init__(
        self,
        session: AsyncSession,
        notifier: Optional[EmergencyNotifier] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.emergencies = EmergencyRepository(session)
        self.events = EventRepository(session)
        self.notifier = notifier or EmergencyNotifier()
        self.clock = clock

    async def trigger_emergency(
        self,
        *,
        event_id: int,
        triggered_by: EmergencyTrigger,
        triggered_by_name: str,
        ride_request_id: Optional[int] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> EmergencyEventModel:
        event = await self.events.get_by_id(event_id)
        if event is None:
            raise NotFound(f"Event {event_id} not found")

        emergency = await self.emergencies.create(
            event_id=event_id,
            ride_request_id=ride_request_id,
            triggered_by=EmergencyTrigger(triggered_by),
            triggered_by_name=triggered_by_name,
            timestamp=self.clock(),
            latitude=latitude,
            longitude=longitude,
            resolved=False,
        )
        await self.notifier.notify(
            event_id=event_id,
            emergency_id=emergency.id,
            triggered_by=EmergencyTrigger(triggered_by).value,
            triggered_by_name=triggered_by_name,
            latitude=latitude,
            longitude=longitude,
            admin_email=event.admin_email,
        )
        return emergency

    async def list_active_emergencies(self, event_id: int) -> list[EmergencyEventModel]:
        return await self.emergencies.list_for_event(event_id, unresolved_only=True)

    async def list_emergencies(self, event_id: int) -> list[EmergencyEventModel]:
        return await self.emergencies.list_for_event(event_id)

    async def resolve_emergency(
        self, emergency_id: int, resolved_by: str, notes: Optional[str] = None
    ) -> EmergencyEventModel:
        emergency = await self.emergencies.get_by_id(emergency_id)
        if emergency is None:
            raise NotFound(f"Emergency {emergency_id} not found")
        if emergency.resolved:
            raise InvalidTransition(f"Emergency {emergency_id} is already resolved")

        logger.info("Emergency %s resolved by %s", emergency_id, resolved_by)
        return await self.emergencies.update(
            emergency,
            resolved=True,
            resolved_at=self.clock(),
            resolved_by=resolved_by,
            notes=notes,
        )
