"""
Safety / no-show engine
=======================

When a driver marks a ride ``arrived`` the rider gets a short window
(default 3 minutes) to confirm presence.  Rides still unconfirmed after the
deadline are swept to ``no_show``; each no-show bumps the rider's penalty
counter, and reaching the threshold (default 2) starts a cooldown (default
15 minutes) during which the rider may not request rides.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.domain.changes import ChangeEvent
from src.domain.entities import CooldownStatus, DispatchError, NotFound, utcnow
from src.domain.enums import RideStatus
from src.domain.safety import cooldown_status, remaining_deadline_seconds
from src.infrastructure.models import RideRequestModel, RiderPenaltyModel
from src.infrastructure.repositories import (
    PenaltyRepository,
    RideRepository,
    pop_changes,
)
from src.services.ride_state import RideStateMachine

logger = logging.getLogger(__name__)

ChangePublisher = Callable[[list[ChangeEvent]], Awaitable[object]]


@dataclass(frozen=True)
class NoShowOutcome:
    ride_id: int
    success: bool
    error: Optional[str] = None


@dataclass
class SweepResult:
    total: int = 0
    outcomes: list[NoShowOutcome] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return sum(1 for o in self.outcomes if o.success)


class SafetyService:
    def __init__(
        self,
        session: AsyncSession,
        state_machine: Optional[RideStateMachine] = None,
        *,
        threshold: int = settings.no_show_threshold,
        cooldown_minutes: int = settings.cooldown_minutes,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.rides = RideRepository(session)
        self.penalties = PenaltyRepository(session)
        self.state_machine = state_machine or RideStateMachine(session, clock=clock)
        self.threshold = threshold
        self.cooldown_minutes = cooldown_minutes
        self.clock = clock

    async def confirm_rider_presence(self, ride_id: int) -> bool:
        """Rider is at the car: ``arrived -> in_progress``.  No-op otherwise."""
        ride = await self.rides.get_by_id(ride_id)
        if ride is None or RideStatus(ride.status) is not RideStatus.ARRIVED:
            return False
        await self.state_machine.transition(ride_id, RideStatus.IN_PROGRESS)
        return True

    async def seconds_until_no_show(self, ride_id: int) -> Optional[int]:
        """Countdown for an arrived, unconfirmed ride; ``None`` otherwise."""
        ride = await self.rides.get_by_id(ride_id)
        if ride is None:
            raise NotFound(f"Ride {ride_id} not found")
        if (
            RideStatus(ride.status) is not RideStatus.ARRIVED
            or ride.rider_confirmed
            or ride.arrival_deadline_timestamp is None
        ):
            return None
        return remaining_deadline_seconds(
            ride.arrival_deadline_timestamp, now=self.clock()
        )

    async def get_expired_no_show_rides(self) -> list[RideRequestModel]:
        return await self.rides.get_expired_no_shows(self.clock())

    async def process_no_show(
        self,
        ride_id: int,
        event_id: int,
        rider_hash: Optional[str],
        driver_id: Optional[int] = None,
    ) -> Optional[RiderPenaltyModel]:
        """Mark the ride ``no_show`` (freeing the driver) and penalise the rider."""
        await self.state_machine.transition(ride_id, RideStatus.NO_SHOW, driver_id)
        logger.info("Ride %s marked no-show", ride_id)

        if not rider_hash:
            return None

        penalty = await self.penalties.increment_no_show(
            event_id,
            rider_hash,
            now=self.clock(),
            threshold=self.threshold,
            cooldown_minutes=self.cooldown_minutes,
        )
        if penalty.cooldown_until is not None and penalty.no_show_count == 0:
            status = cooldown_status(penalty.cooldown_until, now=self.clock())
            if status.is_in_cooldown:
                logger.info(
                    "Rider %s... in cooldown for event %s until %s",
                    rider_hash[:8],
                    event_id,
                    status.cooldown_until.isoformat(),
                )
        return penalty

    async def get_rider_penalty(
        self, event_id: int, rider_hash: str
    ) -> Optional[RiderPenaltyModel]:
        return await self.penalties.get(event_id, rider_hash)

    async def get_cooldown_status(
        self, event_id: int, rider_hash: str
    ) -> CooldownStatus:
        penalty = await self.penalties.get(event_id, rider_hash)
        if penalty is None:
            return CooldownStatus(is_in_cooldown=False)
        return cooldown_status(penalty.cooldown_until, now=self.clock())


async def run_no_show_sweep(
    session_factory: async_sessionmaker,
    *,
    publish: Optional[ChangePublisher] = None,
    **service_options,
) -> SweepResult:
    """
    Process every expired arrival, one transaction per ride.

    A failure on one ride is logged and recorded; the sweep carries on.
    """
    async with session_factory() as session:
        expired = [
            (r.id, r.event_id, r.rider_identifier_hash, r.assigned_driver_id)
            for r in await SafetyService(
                session, **service_options
            ).get_expired_no_show_rides()
        ]

    result = SweepResult(total=len(expired))
    for ride_id, event_id, rider_hash, driver_id in expired:
        async with session_factory() as session:
            try:
                await SafetyService(session, **service_options).process_no_show(
                    ride_id, event_id, rider_hash, driver_id
                )
                await session.commit()
            except (DispatchError, SQLAlchemyError) as e:
                await session.rollback()
                logger.warning("No-show processing failed for ride %s: %s", ride_id, e)
                result.outcomes.append(NoShowOutcome(ride_id, False, str(e)))
                continue
            changes = pop_changes(session)

        if publish is not None and changes:
            await publish(changes)
        result.outcomes.append(NoShowOutcome(ride_id, True))

    if result.total:
        logger.info(
            "No-show sweep: %d/%d processed", result.processed, result.total
        )
    return result
