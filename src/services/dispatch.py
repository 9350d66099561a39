"""
Single-ride dispatcher
======================

Strategy
--------
1. Take the **oldest** waiting ride (FIFO fairness).
2. Among online, available drivers with a known location, choose the one
   with the smallest great-circle distance to the pickup.  Ties keep the
   first driver in primary-key order.
3. Claim the driver (``available -> assigned`` conditional write), then
   move the ride to ``assigned``.  If the ride was taken in the meantime
   the driver claim is undone.

The ETA stamped on assignment is the plain straight-line estimate at
30 km/h; the routing provider is not consulted here.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.domain.distance import distance_km
from src.domain.entities import (
    DispatchResult,
    InvalidTransition,
    NotFound,
)
from src.domain.enums import RideStatus
from src.domain.eta import straight_line_eta_minutes
from src.infrastructure.models import DriverModel, RideRequestModel
from src.infrastructure.repositories import DriverRepository, RideRepository
from src.services.ride_state import RideStateMachine

logger = logging.getLogger(__name__)


class Dispatcher:
    def __init__(
        self,
        session: AsyncSession,
        state_machine: Optional[RideStateMachine] = None,
        *,
        average_speed_kmh: float = settings.average_speed_kmh,
        iteration_cap: int = settings.dispatch_iteration_cap,
    ):
        self.session = session
        self.rides = RideRepository(session)
        self.drivers = DriverRepository(session)
        self.state_machine = state_machine or RideStateMachine(session)
        self.average_speed_kmh = average_speed_kmh
        self.iteration_cap = iteration_cap

    async def find_nearest_driver(
        self, event_id: int, lat: float, lng: float
    ) -> Optional[tuple[DriverModel, float]]:
        """Nearest dispatchable driver and its distance in km, or ``None``."""
        best: Optional[tuple[DriverModel, float]] = None
        for driver in await self.drivers.get_available_located(event_id):
            km = distance_km(driver.current_lat, driver.current_lng, lat, lng)
            if best is None or km < best[1]:
                best = (driver, km)
        return best

    async def assign(
        self,
        ride: RideRequestModel,
        driver: DriverModel,
        eta_minutes: Optional[int] = None,
    ) -> bool:
        """Claim ``driver`` and assign ``ride``; ``False`` if either race is lost."""
        if not await self.drivers.claim(driver):
            logger.debug("Driver %s was claimed concurrently", driver.id)
            return False

        try:
            await self.state_machine.transition(
                ride.id, RideStatus.ASSIGNED, driver.id
            )
        except InvalidTransition:
            await self.drivers.release(driver.id)
            logger.debug("Ride %s was taken concurrently; driver released", ride.id)
            return False

        if eta_minutes is not None:
            await self.rides.update(ride, driver_eta_minutes=eta_minutes)
        return True

    async def assign_ride(self, ride_id: int, driver_id: int) -> DispatchResult:
        """Manual assignment of a specific ride to a specific driver."""
        ride = await self.rides.get_by_id(ride_id)
        if ride is None:
            raise NotFound(f"Ride {ride_id} not found")
        driver = await self.drivers.get_by_id(driver_id)
        if driver is None or driver.event_id != ride.event_id:
            raise NotFound(f"Driver {driver_id} not found for event {ride.event_id}")

        km = eta = None
        if driver.current_lat is not None and driver.current_lng is not None:
            km = distance_km(
                driver.current_lat, driver.current_lng, ride.pickup_lat, ride.pickup_lng
            )
            eta = straight_line_eta_minutes(km, self.average_speed_kmh)

        if not await self.assign(ride, driver, eta):
            raise InvalidTransition(
                f"Driver {driver_id} is not available for ride {ride_id}"
            )
        return DispatchResult(
            assigned=True,
            ride_id=ride.id,
            driver_id=driver.id,
            distance_km=km,
            eta_minutes=eta,
        )

    async def smart_dispatch(self, event_id: int) -> DispatchResult:
        ride = await self.rides.get_oldest_waiting(event_id)
        if ride is None:
            return DispatchResult(assigned=False)

        nearest = await self.find_nearest_driver(
            event_id, ride.pickup_lat, ride.pickup_lng
        )
        if nearest is None:
            return DispatchResult(assigned=False, ride_id=ride.id)

        driver, km = nearest
        eta = straight_line_eta_minutes(km, self.average_speed_kmh)
        if not await self.assign(ride, driver, eta):
            return DispatchResult(assigned=False, ride_id=ride.id)

        logger.info(
            "Dispatched ride %s to driver %s (%.2f km, eta %d min)",
            ride.id,
            driver.id,
            km,
            eta,
        )
        return DispatchResult(
            assigned=True,
            ride_id=ride.id,
            driver_id=driver.id,
            distance_km=km,
            eta_minutes=eta,
        )

    async def dispatch_all_rides(self, event_id: int) -> int:
        """
        Repeat ``smart_dispatch`` until nothing more can be matched.

        Bounded by ``min(waiting, available)`` measured up front and by the
        hard iteration cap, so it terminates even if a dispatch keeps failing.
        """
        waiting = await self.rides.count_waiting(event_id)
        available = await self.drivers.count_available(event_id)
        budget = min(waiting, available, self.iteration_cap)

        assigned = 0
        for _ in range(budget):
            result = await self.smart_dispatch(event_id)
            if not result.assigned:
                break
            assigned += 1

        if assigned:
            logger.info("Dispatch-all for event %s: %d assigned", event_id, assigned)
        return assigned
