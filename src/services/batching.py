"""
Batch dispatcher
================

Groups nearby waiting rides into multi-stop trips for one driver.

Flow per cluster (``batch_dispatch``)
-------------------------------------
1. Drivers with at least ``min(cluster passengers, 4)`` free seats.
2. The one closest to the cluster's average pickup wins.
3. Rides are taken greedily in creation order while they fit.
4. ``create_batch`` persists batch, items, ride updates and the driver
   assignment.  A cluster whose batch fails is logged and skipped; its
   writes are rolled back to a SAVEPOINT.

Pickup order inside a batch is nearest-neighbour from the driver, with
cumulative ETAs from the estimator.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.domain.batching import (
    cluster_rides,
    plan_pickup_order,
    select_rides_within_capacity,
)
from src.domain.distance import distance_km
from src.domain.entities import (
    BatchDispatchResult,
    CapacityExceeded,
    DispatchError,
    InvalidTransition,
    NotFound,
    RideCluster,
    utcnow,
)
from src.domain.enums import (
    TERMINAL_RIDE_STATUSES,
    BatchStatus,
    RideStatus,
)
from src.infrastructure.models import (
    DriverModel,
    RideBatchItemModel,
    RideBatchModel,
    RideRequestModel,
)
from src.infrastructure.repositories import (
    BatchRepository,
    DriverRepository,
    RideRepository,
    discard_changes_since,
)
from src.services.eta import EtaEstimator
from src.services.ride_state import RideStateMachine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _PendingRide:
    # detached snapshot; survives a SAVEPOINT rollback expiring ORM rows
    id: int
    pickup_lat: float
    pickup_lng: float
    passenger_count: int
    created_at: Optional[datetime]


@dataclass(frozen=True)
class BatchDetails:
    batch: RideBatchModel
    items: list[RideBatchItemModel]
    rides: list[RideRequestModel]


@dataclass(frozen=True)
class BatchPosition:
    batch_id: int
    position: int
    total_stops: int
    estimated_arrival: Optional[datetime]


class BatchDispatcher:
    def __init__(
        self,
        session: AsyncSession,
        estimator: Optional[EtaEstimator] = None,
        state_machine: Optional[RideStateMachine] = None,
        *,
        grid_precision: int = settings.cluster_grid_precision,
        max_passengers_per_trip: int = settings.max_passengers_per_trip,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.rides = RideRepository(session)
        self.drivers = DriverRepository(session)
        self.batches = BatchRepository(session)
        self.estimator = estimator or EtaEstimator()
        self.state_machine = state_machine or RideStateMachine(session, clock=clock)
        self.grid_precision = grid_precision
        self.max_passengers_per_trip = max_passengers_per_trip
        self.clock = clock

    # ── Clustering ────────────────────────────────────────────────────

    async def _pending_rides(self, event_id: int) -> list[_PendingRide]:
        return [
            _PendingRide(
                id=r.id,
                pickup_lat=r.pickup_lat,
                pickup_lng=r.pickup_lng,
                passenger_count=r.passenger_count,
                created_at=r.created_at,
            )
            for r in await self.rides.get_waiting(event_id, unbatched_only=True)
        ]

    async def cluster_waiting_rides(self, event_id: int) -> list[RideCluster]:
        return cluster_rides(await self._pending_rides(event_id), self.grid_precision)

    async def find_drivers_with_capacity(
        self, event_id: int, required: int
    ) -> list[DriverModel]:
        return await self.drivers.get_with_capacity(event_id, required)

    # ── Dispatch ──────────────────────────────────────────────────────

    async def batch_dispatch(self, event_id: int) -> BatchDispatchResult:
        pending = await self._pending_rides(event_id)
        by_id = {r.id: r for r in pending}
        clusters = cluster_rides(pending, self.grid_precision)

        batches_created = rides_assigned = 0
        for cluster in clusters:
            required = min(cluster.total_passengers, self.max_passengers_per_trip)
            drivers = await self.find_drivers_with_capacity(event_id, required)
            if not drivers:
                continue

            # min() keeps the first of equals, i.e. the capacity ordering
            driver = min(
                drivers,
                key=lambda d: distance_km(
                    d.current_lat, d.current_lng, cluster.avg_lat, cluster.avg_lng
                ),
            )
            driver_id = driver.id
            free_seats = driver.max_capacity - driver.current_passenger_load
            selected = select_rides_within_capacity(
                [by_id[ride_id] for ride_id in cluster.ride_ids], free_seats
            )
            if not selected:
                continue

            mark = len(self.session.info.get("changes", []))
            try:
                async with self.session.begin_nested():
                    await self.create_batch(
                        event_id, driver_id, [r.id for r in selected]
                    )
            except (DispatchError, SQLAlchemyError) as e:
                discard_changes_since(self.session, mark)
                logger.warning(
                    "Skipping cluster %s (driver %s): %s",
                    cluster.cluster_key,
                    driver_id,
                    e,
                )
                continue

            batches_created += 1
            rides_assigned += len(selected)

        if batches_created:
            logger.info(
                "Batch dispatch for event %s: %d batches, %d rides",
                event_id,
                batches_created,
                rides_assigned,
            )
        return BatchDispatchResult(
            batches_created=batches_created, rides_assigned=rides_assigned
        )

    async def create_batch(
        self, event_id: int, driver_id: int, ride_ids: Sequence[int]
    ) -> RideBatchModel:
        rides = await self.rides.get_by_ids(ride_ids)
        missing = set(ride_ids) - {r.id for r in rides}
        if missing:
            raise NotFound(f"Rides not found: {sorted(missing)}")

        driver = await self.drivers.get_by_id(driver_id)
        if driver is None or driver.event_id != event_id:
            raise NotFound(f"Driver {driver_id} not found for event {event_id}")
        if driver.current_lat is None or driver.current_lng is None:
            raise NotFound(f"Driver {driver_id} has no location")

        for ride in rides:
            if ride.event_id != event_id:
                raise NotFound(f"Ride {ride.id} is not part of event {event_id}")
            if RideStatus(ride.status) is not RideStatus.WAITING or ride.batch_id:
                raise InvalidTransition(f"Ride {ride.id} is not waiting to be batched")

        total = sum(r.passenger_count for r in rides)
        free_seats = driver.max_capacity - driver.current_passenger_load
        if total > free_seats:
            raise CapacityExceeded(
                f"Batch needs {total} seats, driver {driver_id} has {free_seats}"
            )
        if not await self.drivers.claim(driver):
            raise InvalidTransition(f"Driver {driver_id} is not available")

        start = (driver.current_lat, driver.current_lng)
        plan = plan_pickup_order(start[0], start[1], rides)
        etas = await self.estimator.calculate_batch_etas(
            start, [(stop.lat, stop.lng) for stop in plan]
        )

        batch = await self.batches.create(
            event_id=event_id, driver_id=driver_id, total_passengers=total
        )
        batch_id = batch.id
        now = self.clock()
        try:
            await self.batches.add_items(
                batch,
                [
                    (stop.ride_id, stop.order, now + timedelta(minutes=eta))
                    for stop, eta in zip(plan, etas)
                ],
            )
        except SQLAlchemyError:
            await self.batches.delete(batch_id, event_id)
            logger.warning("Batch %s items failed; batch removed", batch_id)
            raise

        rides_by_id = {r.id: r for r in rides}
        for stop, eta in zip(plan, etas):
            ride = rides_by_id[stop.ride_id]
            await self.rides.update(
                ride, batch_id=batch_id, pickup_sequence_index=stop.order
            )
            await self.state_machine.transition(
                ride.id, RideStatus.ASSIGNED, driver_id
            )
            await self.rides.update(ride, driver_eta_minutes=eta)

        await self.drivers.update(driver, current_passenger_load=total)

        logger.info(
            "Created batch %s: driver %s, %d rides, %d passengers",
            batch_id,
            driver_id,
            len(rides),
            total,
        )
        return batch

    # ── Progress ──────────────────────────────────────────────────────

    async def mark_pickup_complete(self, item_id: int) -> RideBatchItemModel:
        item = await self.batches.get_item(item_id)
        if item is None:
            raise NotFound(f"Batch item {item_id} not found")
        if item.picked_up:
            return item

        batch = await self.batches.get_by_id(item.batch_id)
        ride = await self.rides.get_by_id(item.ride_request_id)
        status = RideStatus(ride.status)
        if status in TERMINAL_RIDE_STATUSES:
            raise InvalidTransition(f"Ride {ride.id} is already {status.value}")

        if status is RideStatus.ASSIGNED:
            await self.state_machine.transition(ride.id, RideStatus.ARRIVED)
            status = RideStatus.ARRIVED
        if status is RideStatus.ARRIVED:
            await self.state_machine.transition(ride.id, RideStatus.IN_PROGRESS)

        await self.batches.update_item(
            item, batch.event_id, picked_up=True, picked_up_at=self.clock()
        )
        await self.state_machine.settle_batch(batch)
        return item

    async def complete_batch(self, batch_id: int) -> RideBatchModel:
        batch = await self.batches.get_by_id(batch_id)
        if batch is None:
            raise NotFound(f"Batch {batch_id} not found")
        if BatchStatus(batch.status) is not BatchStatus.IN_PROGRESS:
            raise InvalidTransition(
                f"Batch {batch_id} is {BatchStatus(batch.status).value}, "
                "not in_progress"
            )

        for ride in await self.rides.get_in_batch(batch_id):
            if RideStatus(ride.status) not in TERMINAL_RIDE_STATUSES:
                await self.state_machine.transition(
                    ride.id, RideStatus.COMPLETED, settle_batch=False
                )

        if not await self.batches.set_status(
            batch, BatchStatus.IN_PROGRESS, BatchStatus.COMPLETED
        ):
            raise InvalidTransition(f"Batch {batch_id} changed concurrently")
        if batch.driver_id is not None:
            await self.drivers.release(batch.driver_id, reset_load=True)

        logger.info("Completed batch %s", batch_id)
        return batch

    # ── Reads ─────────────────────────────────────────────────────────

    async def get_batch(self, batch_id: int) -> BatchDetails:
        batch = await self.batches.get_by_id(batch_id)
        if batch is None:
            raise NotFound(f"Batch {batch_id} not found")
        return BatchDetails(
            batch=batch,
            items=await self.batches.get_items(batch_id),
            rides=await self.rides.get_in_batch(batch_id),
        )

    async def get_driver_active_batch(self, driver_id: int) -> Optional[BatchDetails]:
        batch = await self.batches.get_active_for_driver(driver_id)
        if batch is None:
            return None
        return await self.get_batch(batch.id)

    async def get_ride_batch_position(self, ride_id: int) -> Optional[BatchPosition]:
        ride = await self.rides.get_by_id(ride_id)
        if ride is None:
            raise NotFound(f"Ride {ride_id} not found")
        if ride.batch_id is None:
            return None

        items = await self.batches.get_items(ride.batch_id)
        for item in items:
            if item.ride_request_id == ride_id:
                return BatchPosition(
                    batch_id=ride.batch_id,
                    position=item.pickup_order_index + 1,
                    total_stops=len(items),
                    estimated_arrival=item.estimated_arrival_time,
                )
        return None
