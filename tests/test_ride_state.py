"""Ride state transitions: the edge table and the service-level side effects."""

from datetime import timedelta

import pytest

from src.domain.entities import InvalidTransition, NotFound, plan_transition
from src.domain.enums import (
    RIDE_TRANSITIONS,
    BatchStatus,
    DriverStatus,
    RideStatus,
)
from src.infrastructure.models import RideBatchModel
from src.services.ride_state import RideStateMachine
from tests.conftest import T0, make_driver, make_event, make_ride


ALL_PAIRS = [(a, b) for a in RideStatus for b in RideStatus]


class TestTransitionTable:
    @pytest.mark.parametrize("current,new", ALL_PAIRS)
    def test_every_pair_matches_the_table(self, current, new):
        allowed = new in RIDE_TRANSITIONS[current]
        if allowed:
            plan_transition(current, new, now=T0, driver_id=7)
        else:
            with pytest.raises(InvalidTransition):
                plan_transition(current, new, now=T0, driver_id=7)

    def test_terminal_states_have_no_exits(self):
        for status in (RideStatus.COMPLETED, RideStatus.CANCELLED, RideStatus.NO_SHOW):
            assert RIDE_TRANSITIONS[status] == set()

    def test_in_progress_can_still_be_cancelled(self):
        assert RideStatus.CANCELLED in RIDE_TRANSITIONS[RideStatus.IN_PROGRESS]

    def test_assign_requires_driver(self):
        with pytest.raises(InvalidTransition):
            plan_transition(RideStatus.WAITING, RideStatus.ASSIGNED, now=T0)

    def test_arrival_starts_no_show_window(self):
        change = plan_transition(
            RideStatus.ASSIGNED, RideStatus.ARRIVED, now=T0, no_show_window_minutes=3
        )
        assert change.arrival_timestamp == T0
        assert change.arrival_deadline_timestamp == T0 + timedelta(minutes=3)
        assert change.rider_confirmed is False

    def test_completion_stamps_time_and_clears_driver(self):
        change = plan_transition(RideStatus.IN_PROGRESS, RideStatus.COMPLETED, now=T0)
        values = change.values()
        assert values["completion_timestamp"] == T0
        assert values["assigned_driver_id"] is None

    def test_in_progress_confirms_rider(self):
        change = plan_transition(RideStatus.ARRIVED, RideStatus.IN_PROGRESS, now=T0)
        assert change.values()["rider_confirmed"] is True


class TestRideStateMachine:
    @pytest.mark.asyncio
    async def test_unknown_ride(self, db_session, clock):
        with pytest.raises(NotFound):
            await RideStateMachine(db_session, clock=clock).transition(
                999, RideStatus.CANCELLED
            )

    @pytest.mark.asyncio
    async def test_full_solo_lifecycle_frees_driver(self, db_session, clock):
        event = await make_event(db_session)
        driver = await make_driver(db_session, event.id, status=DriverStatus.ASSIGNED)
        ride = await make_ride(db_session, event.id)
        machine = RideStateMachine(db_session, clock=clock)

        await machine.transition(ride.id, RideStatus.ASSIGNED, driver.id)
        assert ride.assigned_driver_id == driver.id

        await machine.transition(ride.id, RideStatus.ARRIVED)
        assert ride.arrival_deadline_timestamp is not None

        clock.advance(minutes=1)
        await machine.transition(ride.id, RideStatus.IN_PROGRESS)
        clock.advance(minutes=9)
        await machine.transition(ride.id, RideStatus.COMPLETED)

        await db_session.refresh(driver)
        assert ride.status == RideStatus.COMPLETED
        assert ride.assigned_driver_id is None
        assert ride.completion_timestamp is not None
        assert driver.current_status == DriverStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_invalid_edge_leaves_ride_unchanged(self, db_session, clock):
        event = await make_event(db_session)
        ride = await make_ride(db_session, event.id)
        with pytest.raises(InvalidTransition):
            await RideStateMachine(db_session, clock=clock).transition(
                ride.id, RideStatus.COMPLETED
            )
        await db_session.refresh(ride)
        assert ride.status == RideStatus.WAITING

    @pytest.mark.asyncio
    async def test_terminal_edge_with_wrong_driver_is_rejected(self, db_session, clock):
        event = await make_event(db_session)
        real = await make_driver(db_session, event.id, name="real", status=DriverStatus.ASSIGNED)
        other = await make_driver(db_session, event.id, name="other", status=DriverStatus.ASSIGNED)
        ride = await make_ride(db_session, event.id)
        machine = RideStateMachine(db_session, clock=clock)
        await machine.transition(ride.id, RideStatus.ASSIGNED, real.id)

        with pytest.raises(InvalidTransition):
            await machine.transition(ride.id, RideStatus.CANCELLED, other.id)

        await db_session.refresh(ride)
        await db_session.refresh(real)
        await db_session.refresh(other)
        assert ride.status == RideStatus.ASSIGNED
        assert real.current_status == DriverStatus.ASSIGNED
        assert other.current_status == DriverStatus.ASSIGNED

    @pytest.mark.asyncio
    async def test_terminal_edge_frees_the_holding_driver(self, db_session, clock):
        event = await make_event(db_session)
        real = await make_driver(db_session, event.id, name="real", status=DriverStatus.ASSIGNED)
        ride = await make_ride(db_session, event.id)
        machine = RideStateMachine(db_session, clock=clock)
        await machine.transition(ride.id, RideStatus.ASSIGNED, real.id)

        await machine.transition(ride.id, RideStatus.CANCELLED)

        await db_session.refresh(real)
        assert real.current_status == DriverStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_cancelled_batch_member_returns_seats(self, db_session, clock):
        event = await make_event(db_session)
        driver = await make_driver(
            db_session, event.id, status=DriverStatus.ASSIGNED, load=3
        )
        batch = RideBatchModel(
            event_id=event.id,
            driver_id=driver.id,
            status=BatchStatus.PENDING,
            total_passengers=3,
        )
        db_session.add(batch)
        await db_session.flush()
        a = await make_ride(db_session, event.id, passengers=2)
        b = await make_ride(db_session, event.id, passengers=1)
        machine = RideStateMachine(db_session, clock=clock)
        for index, ride in enumerate((a, b)):
            ride.batch_id = batch.id
            ride.pickup_sequence_index = index
            await db_session.flush()
            await machine.transition(ride.id, RideStatus.ASSIGNED, driver.id)

        await machine.transition(a.id, RideStatus.CANCELLED)
        await db_session.refresh(driver)
        await db_session.refresh(batch)
        assert driver.current_passenger_load == 1
        assert driver.current_status == DriverStatus.ASSIGNED
        assert batch.status == BatchStatus.PENDING

        await machine.transition(b.id, RideStatus.CANCELLED)
        await db_session.refresh(driver)
        await db_session.refresh(batch)
        assert batch.status == BatchStatus.CANCELLED
        assert driver.current_passenger_load == 0
        assert driver.current_status == DriverStatus.AVAILABLE
