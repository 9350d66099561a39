"""Event analytics: loads an event's history and runs the domain aggregations."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from src.domain.analytics import (
    EventAnalytics,
    compute_event_analytics,
    ride_status_breakdown,
    ride_volume_by_hour,
)
from src.domain.entities import NotFound
from src.infrastructure.repositories import (
    BatchRepository,
    DriverRepository,
    EventRepository,
    RideRepository,
)


class AnalyticsService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.events = EventRepository(session)
        self.rides = RideRepository(session)
        self.drivers = DriverRepository(session)
        self.batches = BatchRepository(session)

    async def _require_event(self, event_id: int) -> None:
        if await self.events.get_by_id(event_id) is None:
            raise NotFound(f"Event {event_id} not found")

    async def get_event_analytics(self, event_id: int) -> EventAnalytics:
        await self._require_event(event_id)
        rides = await self.rides.get_for_event(event_id)
        batches = await self.batches.get_for_event(event_id)
        item_counts = await self.batches.count_items([b.id for b in batches])
        return compute_event_analytics(
            rides,
            batches,
            item_counts,
            active_drivers=await self.drivers.count_online(event_id),
        )

    async def get_ride_volume_by_hour(self, event_id: int) -> list[dict]:
        await self._require_event(event_id)
        return ride_volume_by_hour(await self.rides.get_for_event(event_id))

    async def get_ride_status_breakdown(self, event_id: int) -> list[dict]:
        await self._require_event(event_id)
        return ride_status_breakdown(await self.rides.get_for_event(event_id))
