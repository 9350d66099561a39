"""
Ride state machine
==================

``RideStateMachine.transition`` is the only path by which a ride's status
changes.  It validates the edge, applies the per-edge field update with a
conditional write, and then handles the driver side of terminal states:

* **Solo ride** -- the driver goes back to ``available``.
* **Batch member** -- cancel / no-show gives the ride's seats back (load is
  floored at 0); completion keeps the driver on the trip.  When no active
  member remains the batch is settled and the driver freed with load 0.
  When every remaining member is already picked up, a pending batch moves
  to ``in_progress``.

All writes share the caller's session, so the ride update and its driver /
batch side effects commit or roll back together.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.domain.entities import InvalidTransition, NotFound, plan_transition, utcnow
from src.domain.enums import (
    ACTIVE_BATCH_STATUSES,
    TERMINAL_RIDE_STATUSES,
    BatchStatus,
    RideStatus,
)
from src.infrastructure.models import RideBatchModel, RideRequestModel
from src.infrastructure.repositories import (
    BatchRepository,
    DriverRepository,
    RideRepository,
)

logger = logging.getLogger(__name__)


class RideStateMachine:
    def __init__(
        self,
        session: AsyncSession,
        *,
        no_show_window_minutes: int = settings.no_show_window_minutes,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.rides = RideRepository(session)
        self.drivers = DriverRepository(session)
        self.batches = BatchRepository(session)
        self.no_show_window_minutes = no_show_window_minutes
        self.clock = clock

    async def transition(
        self,
        ride_id: int,
        new_status: RideStatus,
        driver_id: Optional[int] = None,
        *,
        settle_batch: bool = True,
    ) -> RideRequestModel:
        """
        Move a ride to ``new_status``.

        Raises ``NotFound`` for an unknown ride and ``InvalidTransition`` for
        an edge outside the table or a lost race; the ride is then unchanged.
        """
        ride = await self.rides.get_by_id(ride_id)
        if ride is None:
            raise NotFound(f"Ride {ride_id} not found")

        new_status = RideStatus(new_status)
        observed = RideStatus(ride.status)
        holding_driver = ride.assigned_driver_id
        if (
            new_status in TERMINAL_RIDE_STATUSES
            and holding_driver is not None
            and driver_id is not None
            and driver_id != holding_driver
        ):
            raise InvalidTransition(
                f"Ride {ride_id} is held by driver {holding_driver}, not {driver_id}"
            )

        change = plan_transition(
            observed,
            new_status,
            now=self.clock(),
            no_show_window_minutes=self.no_show_window_minutes,
            driver_id=driver_id,
        )
        if not await self.rides.apply_transition(ride, observed, change):
            raise InvalidTransition(
                f"Ride {ride_id} changed concurrently (was {observed.value})"
            )

        logger.info(
            "Ride %s: %s -> %s", ride_id, observed.value, new_status.value
        )

        if new_status in TERMINAL_RIDE_STATUSES:
            await self._on_terminal(
                ride,
                new_status,
                holding_driver if holding_driver is not None else driver_id,
                settle_batch,
            )
        return ride

    async def _on_terminal(
        self,
        ride: RideRequestModel,
        new_status: RideStatus,
        driver_id: Optional[int],
        settle_batch: bool,
    ) -> None:
        if ride.batch_id is None:
            if driver_id is not None:
                await self.drivers.release(driver_id)
            return

        if driver_id is not None and new_status is not RideStatus.COMPLETED:
            await self.drivers.decrement_load(driver_id, ride.passenger_count)

        if settle_batch:
            batch = await self.batches.get_by_id(ride.batch_id)
            if batch is not None:
                await self.settle_batch(batch)

    async def settle_batch(self, batch: RideBatchModel) -> None:
        """Advance or close a batch after one of its members changed."""
        status = BatchStatus(batch.status)
        if status not in ACTIVE_BATCH_STATUSES:
            return

        members = await self.rides.get_in_batch(batch.id)
        active = [
            r for r in members if RideStatus(r.status) not in TERMINAL_RIDE_STATUSES
        ]

        if not active:
            any_completed = any(
                RideStatus(r.status) is RideStatus.COMPLETED for r in members
            )
            target = BatchStatus.COMPLETED if any_completed else BatchStatus.CANCELLED
            if target is BatchStatus.COMPLETED and status is BatchStatus.PENDING:
                await self.batches.set_status(
                    batch, BatchStatus.PENDING, BatchStatus.IN_PROGRESS
                )
                status = BatchStatus.IN_PROGRESS
            await self.batches.set_status(batch, status, target)
            if batch.driver_id is not None:
                await self.drivers.release(batch.driver_id, reset_load=True)
            logger.info("Batch %s settled as %s", batch.id, target.value)
            return

        if status is BatchStatus.PENDING:
            items = {
                item.ride_request_id: item
                for item in await self.batches.get_items(batch.id)
            }
            if all(
                items.get(r.id) is not None and items[r.id].picked_up for r in active
            ):
                await self.batches.set_status(
                    batch, BatchStatus.PENDING, BatchStatus.IN_PROGRESS
                )
                logger.info("Batch %s: all pickups done", batch.id)
