"""Batch dispatch: clustering into multi-stop trips and batch progress."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from src.domain.changes import ChangeKind, EntityType
from src.domain.entities import ExternalProviderUnavailable, InvalidTransition, NotFound
from src.domain.enums import BatchStatus, DriverStatus, RideStatus
from src.infrastructure.models import RideBatchModel
from src.services.batching import BatchDispatcher
from src.services.eta import EtaEstimator
from tests.conftest import T0, make_driver, make_event, make_ride


class FlakyEstimator(EtaEstimator):
    """Fails the first batch ETA request, then behaves normally."""

    def __init__(self):
        super().__init__()
        self.calls = 0

    async def calculate_batch_etas(self, start, stops):
        self.calls += 1
        if self.calls == 1:
            raise ExternalProviderUnavailable("provider down")
        return await super().calculate_batch_etas(start, stops)


async def _two_ride_batch(session, clock=None):
    event = await make_event(session)
    far = await make_ride(session, event.id, lat=30.001, lng=-97.0, passengers=1)
    near = await make_ride(
        session, event.id, lat=30.0, lng=-97.0, passengers=2,
        created_at=T0 + timedelta(seconds=1),
    )
    driver = await make_driver(session, event.id, lat=30.0, lng=-97.0, max_capacity=4)
    kwargs = {"clock": clock} if clock else {}
    dispatcher = BatchDispatcher(session, **kwargs)
    result = await dispatcher.batch_dispatch(event.id)
    return dispatcher, result, event, driver, near, far


class TestBatchDispatch:
    @pytest.mark.asyncio
    async def test_creates_one_batch_ordered_nearest_first(self, db_session):
        dispatcher, result, event, driver, near, far = await _two_ride_batch(db_session)

        assert result.batches_created == 1
        assert result.rides_assigned == 2

        details = await dispatcher.get_driver_active_batch(driver.id)
        assert details is not None
        assert details.batch.total_passengers == 3
        assert details.batch.status == BatchStatus.PENDING
        assert [i.ride_request_id for i in details.items] == [near.id, far.id]
        assert [i.pickup_order_index for i in details.items] == [0, 1]

        await db_session.refresh(near)
        await db_session.refresh(far)
        assert near.pickup_sequence_index == 0
        assert far.pickup_sequence_index == 1
        assert near.status == RideStatus.ASSIGNED
        assert far.assigned_driver_id == driver.id
        # co-located legs hit the 2 minute floor, cumulatively
        assert (near.driver_eta_minutes, far.driver_eta_minutes) == (2, 4)

        await db_session.refresh(driver)
        assert driver.current_status == DriverStatus.ASSIGNED
        assert driver.current_passenger_load == 3

    @pytest.mark.asyncio
    async def test_greedy_fill_leaves_overflow_waiting(self, db_session):
        event = await make_event(db_session)
        rides = [
            await make_ride(
                db_session, event.id, passengers=2, created_at=T0 + timedelta(seconds=i)
            )
            for i in range(3)
        ]
        await make_driver(db_session, event.id, max_capacity=4)

        result = await BatchDispatcher(db_session).batch_dispatch(event.id)

        assert result.rides_assigned == 2
        await db_session.refresh(rides[2])
        assert rides[2].status == RideStatus.WAITING
        assert rides[2].batch_id is None

    @pytest.mark.asyncio
    async def test_no_driver_with_enough_seats(self, db_session):
        event = await make_event(db_session)
        await make_ride(db_session, event.id, passengers=3)
        await make_driver(db_session, event.id, max_capacity=2)

        result = await BatchDispatcher(db_session).batch_dispatch(event.id)
        assert result.batches_created == 0

    @pytest.mark.asyncio
    async def test_large_cluster_only_needs_one_full_car(self, db_session):
        event = await make_event(db_session)
        for i in range(3):
            await make_ride(
                db_session, event.id, passengers=3, created_at=T0 + timedelta(seconds=i)
            )
        await make_driver(db_session, event.id, max_capacity=4)

        result = await BatchDispatcher(db_session).batch_dispatch(event.id)
        assert result.batches_created == 1
        assert result.rides_assigned == 1

    @pytest.mark.asyncio
    async def test_failed_cluster_is_rolled_back_and_skipped(self, db_session):
        event = await make_event(db_session)
        first = await make_ride(db_session, event.id, lat=30.0, lng=-97.0)
        second = await make_ride(
            db_session, event.id, lat=31.0, lng=-96.0,
            created_at=T0 + timedelta(minutes=1),
        )
        d1 = await make_driver(db_session, event.id, name="d1", lat=30.0, lng=-97.0)
        d2 = await make_driver(db_session, event.id, name="d2", lat=31.0, lng=-96.0)
        db_session.info.pop("changes", None)

        result = await BatchDispatcher(db_session, FlakyEstimator()).batch_dispatch(
            event.id
        )

        assert result.batches_created == 1
        await db_session.refresh(first)
        await db_session.refresh(second)
        await db_session.refresh(d1)
        await db_session.refresh(d2)
        assert first.status == RideStatus.WAITING
        assert d1.current_status == DriverStatus.AVAILABLE
        assert second.status == RideStatus.ASSIGNED
        assert d2.current_status == DriverStatus.ASSIGNED

        inserted = [
            c
            for c in db_session.info.get("changes", [])
            if c.entity is EntityType.RIDE_BATCH and c.kind is ChangeKind.INSERTED
        ]
        assert len(inserted) == 1

    @pytest.mark.asyncio
    async def test_item_failure_removes_batch(self, db_session):
        event = await make_event(db_session)
        ride = await make_ride(db_session, event.id)
        driver = await make_driver(db_session, event.id)
        dispatcher = BatchDispatcher(db_session)
        dispatcher.batches.add_items = AsyncMock(side_effect=SQLAlchemyError("boom"))

        with pytest.raises(SQLAlchemyError):
            await dispatcher.create_batch(event.id, driver.id, [ride.id])

        count = await db_session.execute(select(func.count()).select_from(RideBatchModel))
        assert count.scalar() == 0

    @pytest.mark.asyncio
    async def test_create_batch_rejects_non_waiting_ride(self, db_session):
        event = await make_event(db_session)
        ride = await make_ride(db_session, event.id, status=RideStatus.CANCELLED)
        driver = await make_driver(db_session, event.id)

        with pytest.raises(InvalidTransition):
            await BatchDispatcher(db_session).create_batch(event.id, driver.id, [ride.id])
        await db_session.refresh(driver)
        assert driver.current_status == DriverStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_create_batch_rejects_driver_from_another_event(self, db_session):
        event = await make_event(db_session)
        other = await make_event(db_session, access_code="PARTY2")
        ride = await make_ride(db_session, event.id)
        driver = await make_driver(db_session, other.id)

        with pytest.raises(NotFound):
            await BatchDispatcher(db_session).create_batch(event.id, driver.id, [ride.id])

        await db_session.refresh(ride)
        await db_session.refresh(driver)
        assert ride.status == RideStatus.WAITING
        assert ride.batch_id is None
        assert driver.current_status == DriverStatus.AVAILABLE
        count = await db_session.execute(select(func.count()).select_from(RideBatchModel))
        assert count.scalar() == 0


class TestBatchProgress:
    @pytest.mark.asyncio
    async def test_pickups_then_completion(self, db_session, clock):
        dispatcher, _, _, driver, near, far = await _two_ride_batch(db_session, clock)
        details = await dispatcher.get_driver_active_batch(driver.id)
        batch_id = details.batch.id

        with pytest.raises(InvalidTransition):
            await dispatcher.complete_batch(batch_id)

        first_item, second_item = details.items
        await dispatcher.mark_pickup_complete(first_item.id)
        await db_session.refresh(near)
        assert near.status == RideStatus.IN_PROGRESS
        assert (await dispatcher.get_batch(batch_id)).batch.status == BatchStatus.PENDING

        # picking up twice is harmless
        await dispatcher.mark_pickup_complete(first_item.id)

        await dispatcher.mark_pickup_complete(second_item.id)
        assert (
            await dispatcher.get_batch(batch_id)
        ).batch.status == BatchStatus.IN_PROGRESS

        clock.advance(minutes=12)
        batch = await dispatcher.complete_batch(batch_id)

        assert batch.status == BatchStatus.COMPLETED
        for ride in (near, far):
            await db_session.refresh(ride)
            assert ride.status == RideStatus.COMPLETED
            assert ride.assigned_driver_id is None
        await db_session.refresh(driver)
        assert driver.current_status == DriverStatus.AVAILABLE
        assert driver.current_passenger_load == 0
        assert await dispatcher.get_driver_active_batch(driver.id) is None

    @pytest.mark.asyncio
    async def test_batch_position(self, db_session):
        dispatcher, _, _, _, near, far = await _two_ride_batch(db_session)

        position = await dispatcher.get_ride_batch_position(far.id)

        assert position.position == 2
        assert position.total_stops == 2
        assert position.estimated_arrival is not None

    @pytest.mark.asyncio
    async def test_unbatched_ride_has_no_position(self, db_session):
        event = await make_event(db_session)
        ride = await make_ride(db_session, event.id)
        assert await BatchDispatcher(db_session).get_ride_batch_position(ride.id) is None

    @pytest.mark.asyncio
    async def test_cancelled_member_cannot_be_picked_up(self, db_session):
        dispatcher, _, _, driver, near, _ = await _two_ride_batch(db_session)
        details = await dispatcher.get_driver_active_batch(driver.id)

        await dispatcher.state_machine.transition(near.id, RideStatus.CANCELLED)
        await db_session.refresh(driver)
        assert driver.current_passenger_load == 1

        with pytest.raises(InvalidTransition):
            await dispatcher.mark_pickup_complete(details.items[0].id)
