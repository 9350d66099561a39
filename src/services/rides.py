"""Ride requests: intake, queue position and wait estimates."""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.domain.entities import (
    ConsentRequired,
    CooldownActive,
    EventInactive,
    InvalidRideRequest,
    NotFound,
    as_utc,
    utcnow,
)
from src.domain.enums import RideStatus
from src.domain.safety import cooldown_status
from src.infrastructure.models import RideRequestModel
from src.infrastructure.repositories import (
    ConsentRepository,
    DriverRepository,
    EventRepository,
    PenaltyRepository,
    RideRepository,
)
from src.services.ride_state import RideStateMachine

logger = logging.getLogger(__name__)


class RideService:
    def __init__(
        self,
        session: AsyncSession,
        state_machine: Optional[RideStateMachine] = None,
        *,
        max_passengers: int = settings.max_passengers_per_trip,
        default_wait_minutes: int = settings.default_wait_minutes,
        default_ride_duration_minutes: float = settings.default_ride_duration_minutes,
        min_wait_minutes: int = settings.min_wait_estimate_minutes,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.rides = RideRepository(session)
        self.drivers = DriverRepository(session)
        self.events = EventRepository(session)
        self.consents = ConsentRepository(session)
        self.penalties = PenaltyRepository(session)
        self.state_machine = state_machine or RideStateMachine(session, clock=clock)
        self.max_passengers = max_passengers
        self.default_wait_minutes = default_wait_minutes
        self.default_ride_duration_minutes = default_ride_duration_minutes
        self.min_wait_minutes = min_wait_minutes
        self.clock = clock

    async def create_ride(
        self,
        *,
        event_id: int,
        rider_name: str,
        pickup_address: str,
        pickup_lat: float,
        pickup_lng: float,
        passenger_count: int = 1,
        rider_identifier_hash: Optional[str] = None,
    ) -> RideRequestModel:
        event = await self.events.get_by_id(event_id)
        if event is None:
            raise NotFound(f"Event {event_id} not found")
        if not event.is_active:
            raise EventInactive(f"Event {event_id} is not accepting rides")
        if not 1 <= passenger_count <= self.max_passengers:
            raise InvalidRideRequest(
                f"passenger_count must be between 1 and {self.max_passengers}"
            )

        if rider_identifier_hash:
            if await self.consents.get(event_id, rider_identifier_hash) is None:
                raise ConsentRequired("Rider must accept the terms first")
            penalty = await self.penalties.get(event_id, rider_identifier_hash)
            if penalty is not None:
                status = cooldown_status(penalty.cooldown_until, now=self.clock())
                if status.is_in_cooldown:
                    raise CooldownActive(status.remaining_minutes)

        ride = await self.rides.create(
            event_id=event_id,
            rider_name=rider_name.strip(),
            pickup_address=pickup_address,
            pickup_lat=pickup_lat,
            pickup_lng=pickup_lng,
            passenger_count=passenger_count,
            status=RideStatus.WAITING,
            rider_confirmed=False,
            rider_identifier_hash=rider_identifier_hash,
        )
        logger.info("Ride %s requested for event %s", ride.id, event_id)
        return ride

    async def get_ride(self, ride_id: int) -> RideRequestModel:
        ride = await self.rides.get_by_id(ride_id)
        if ride is None:
            raise NotFound(f"Ride {ride_id} not found")
        return ride

    async def list_event_rides(self, event_id: int) -> list[RideRequestModel]:
        return await self.rides.get_for_event(event_id)

    async def cancel_ride(self, ride_id: int) -> RideRequestModel:
        return await self.state_machine.transition(ride_id, RideStatus.CANCELLED)

    async def get_queue_position(self, ride_id: int) -> tuple[int, int]:
        """``(position, total)`` among waiting rides; position 0 if not waiting."""
        ride = await self.get_ride(ride_id)
        waiting = await self.rides.get_waiting(ride.event_id)
        ids = [r.id for r in waiting]
        position = ids.index(ride_id) + 1 if ride_id in ids else 0
        return position, len(ids)

    async def _average_ride_minutes(self, event_id: int) -> float:
        recent = await self.rides.get_recent_completed(event_id, limit=20)
        if not recent:
            return self.default_ride_duration_minutes
        total = sum(
            (as_utc(r.completion_timestamp) - as_utc(r.arrival_timestamp)).total_seconds()
            / 60
            for r in recent
        )
        return total / len(recent)

    async def estimate_wait_minutes(self, event_id: int, ride_id: int) -> int:
        """
        Rough wait: rides ahead split across available drivers, times the
        recent average ride duration.  0 for a ride no longer waiting.
        """
        try:
            waiting = await self.rides.get_waiting(event_id)
        except SQLAlchemyError:
            logger.warning("Queue unreadable for event %s", event_id, exc_info=True)
            return self.default_wait_minutes

        ids = [r.id for r in waiting]
        if ride_id not in ids:
            return 0
        rides_ahead = ids.index(ride_id)

        drivers = await self.drivers.count_available(event_id)
        avg_duration = await self._average_ride_minutes(event_id)
        estimate = math.ceil(rides_ahead / max(drivers, 1) * avg_duration)
        return max(estimate, self.min_wait_minutes)

    async def update_all_wait_estimates(self, event_id: int) -> int:
        waiting = await self.rides.get_waiting(event_id)
        for ride in waiting:
            minutes = await self.estimate_wait_minutes(event_id, ride.id)
            await self.rides.update(ride, estimated_wait_minutes=minutes)
        return len(waiting)
