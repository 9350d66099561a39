"""Driver presence within an event: status, location, membership."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.domain.entities import InvalidTransition, NotFound, utcnow
from src.domain.enums import DriverStatus
from src.infrastructure.models import DriverModel, RideRequestModel
from src.infrastructure.repositories import (
    BatchRepository,
    DriverRepository,
    EventRepository,
    RideRepository,
)

logger = logging.getLogger(__name__)


class DriverService:
    def __init__(
        self,
        session: AsyncSession,
        *,
        default_max_capacity: int = settings.default_max_capacity,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.drivers = DriverRepository(session)
        self.events = EventRepository(session)
        self.rides = RideRepository(session)
        self.batches = BatchRepository(session)
        self.default_max_capacity = default_max_capacity
        self.clock = clock

    async def get_driver(self, driver_id: int) -> DriverModel:
        driver = await self.drivers.get_by_id(driver_id)
        if driver is None:
            raise NotFound(f"Driver {driver_id} not found")
        return driver

    async def add_driver_to_event(
        self,
        event_id: int,
        driver_name: str,
        max_capacity: Optional[int] = None,
    ) -> DriverModel:
        if await self.events.get_by_id(event_id) is None:
            raise NotFound(f"Event {event_id} not found")
        driver = await self.drivers.create(
            event_id=event_id,
            driver_name=driver_name.strip(),
            is_online=False,
            current_status=DriverStatus.OFFLINE,
            max_capacity=max_capacity or self.default_max_capacity,
            current_passenger_load=0,
        )
        logger.info("Driver %s joined event %s", driver.id, event_id)
        return driver

    async def list_event_drivers(self, event_id: int) -> list[DriverModel]:
        return await self.drivers.list_for_event(event_id)

    async def _is_busy(self, driver_id: int) -> bool:
        return (
            await self.rides.get_active_for_driver(driver_id) is not None
            or await self.batches.get_active_for_driver(driver_id) is not None
        )

    async def set_driver_status(
        self, driver_id: int, status: DriverStatus
    ) -> DriverModel:
        driver = await self.get_driver(driver_id)
        status = DriverStatus(status)
        if status is DriverStatus.ASSIGNED:
            raise InvalidTransition("Drivers are only assigned by dispatch")
        if await self._is_busy(driver_id):
            raise InvalidTransition(
                f"Driver {driver_id} has an active ride and cannot go {status.value}"
            )
        return await self.drivers.update(
            driver,
            current_status=status,
            is_online=status is not DriverStatus.OFFLINE,
        )

    async def update_driver_location(
        self, driver_id: int, lat: float, lng: float
    ) -> DriverModel:
        driver = await self.get_driver(driver_id)
        return await self.drivers.update(
            driver,
            current_lat=lat,
            current_lng=lng,
            last_location_update=self.clock(),
        )

    async def remove_driver(self, driver_id: int) -> None:
        driver = await self.get_driver(driver_id)
        if DriverStatus(driver.current_status) is not DriverStatus.OFFLINE:
            raise InvalidTransition("Only offline drivers can be removed")
        await self.drivers.delete(driver)
        logger.info("Driver %s removed", driver_id)

    async def get_driver_current_ride(
        self, driver_id: int
    ) -> Optional[RideRequestModel]:
        await self.get_driver(driver_id)
        return await self.rides.get_active_for_driver(driver_id)
