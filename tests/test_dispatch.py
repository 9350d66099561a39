"""Single-ride dispatch: nearest driver, FIFO fairness, bounded dispatch-all."""

from datetime import timedelta

import pytest

from src.domain.entities import InvalidTransition, NotFound
from src.domain.enums import DriverStatus, RideStatus
from src.services.dispatch import Dispatcher
from tests.conftest import T0, make_driver, make_event, make_ride


class TestSmartDispatch:
    @pytest.mark.asyncio
    async def test_assigns_single_ride_to_single_driver(self, db_session):
        event = await make_event(db_session)
        ride = await make_ride(db_session, event.id, lat=40.0, lng=-74.0, passengers=2)
        driver = await make_driver(db_session, event.id, lat=40.01, lng=-74.0)

        result = await Dispatcher(db_session).smart_dispatch(event.id)

        assert result.assigned
        assert result.ride_id == ride.id
        assert result.driver_id == driver.id
        assert result.distance_km == pytest.approx(1.11, abs=0.01)
        # 1.11 km at 30 km/h -> 2.2 min
        assert result.eta_minutes == 3

        await db_session.refresh(ride)
        await db_session.refresh(driver)
        assert ride.status == RideStatus.ASSIGNED
        assert ride.assigned_driver_id == driver.id
        assert ride.driver_eta_minutes == 3
        assert driver.current_status == DriverStatus.ASSIGNED

    @pytest.mark.asyncio
    async def test_picks_nearest_driver(self, db_session):
        event = await make_event(db_session)
        await make_ride(db_session, event.id, lat=40.0, lng=-74.0)
        await make_driver(db_session, event.id, name="far", lat=40.1, lng=-74.0)
        near = await make_driver(db_session, event.id, name="near", lat=40.001, lng=-74.0)

        result = await Dispatcher(db_session).smart_dispatch(event.id)
        assert result.driver_id == near.id

    @pytest.mark.asyncio
    async def test_oldest_ride_goes_first(self, db_session):
        event = await make_event(db_session)
        newer = await make_ride(db_session, event.id, created_at=T0 + timedelta(minutes=5))
        older = await make_ride(db_session, event.id, created_at=T0)
        await make_driver(db_session, event.id)

        result = await Dispatcher(db_session).smart_dispatch(event.id)

        assert result.ride_id == older.id
        await db_session.refresh(newer)
        assert newer.status == RideStatus.WAITING

    @pytest.mark.asyncio
    async def test_equidistant_drivers_keep_primary_key_order(self, db_session):
        event = await make_event(db_session)
        await make_ride(db_session, event.id, lat=40.0, lng=-74.0)
        first = await make_driver(db_session, event.id, name="a", lat=40.01, lng=-74.0)
        await make_driver(db_session, event.id, name="b", lat=39.99, lng=-74.0)

        result = await Dispatcher(db_session).smart_dispatch(event.id)
        assert result.driver_id == first.id

    @pytest.mark.asyncio
    async def test_no_waiting_rides(self, db_session):
        event = await make_event(db_session)
        await make_driver(db_session, event.id)
        result = await Dispatcher(db_session).smart_dispatch(event.id)
        assert not result.assigned
        assert result.ride_id is None

    @pytest.mark.asyncio
    async def test_skips_offline_and_unlocated_drivers(self, db_session):
        event = await make_event(db_session)
        ride = await make_ride(db_session, event.id)
        await make_driver(db_session, event.id, name="off", status=DriverStatus.OFFLINE)
        await make_driver(db_session, event.id, name="nowhere", lat=None, lng=None)

        result = await Dispatcher(db_session).smart_dispatch(event.id)

        assert not result.assigned
        assert result.ride_id == ride.id


class TestDispatchAll:
    @pytest.mark.asyncio
    async def test_stops_when_drivers_run_out(self, db_session):
        event = await make_event(db_session)
        for i in range(3):
            await make_ride(db_session, event.id, created_at=T0 + timedelta(seconds=i))
        await make_driver(db_session, event.id, name="a")
        await make_driver(db_session, event.id, name="b")

        assigned = await Dispatcher(db_session).dispatch_all_rides(event.id)

        assert assigned == 2
        rides = await Dispatcher(db_session).rides.get_for_event(event.id)
        assert [r.status for r in rides] == [
            RideStatus.ASSIGNED,
            RideStatus.ASSIGNED,
            RideStatus.WAITING,
        ]

    @pytest.mark.asyncio
    async def test_second_pass_has_nothing_left(self, db_session):
        event = await make_event(db_session)
        for i in range(3):
            await make_ride(db_session, event.id, created_at=T0 + timedelta(seconds=i))
        await make_driver(db_session, event.id, name="a")
        await make_driver(db_session, event.id, name="b")
        dispatcher = Dispatcher(db_session)

        assert await dispatcher.dispatch_all_rides(event.id) == 2
        assert await dispatcher.dispatch_all_rides(event.id) == 0

    @pytest.mark.asyncio
    async def test_stops_when_rides_run_out(self, db_session):
        event = await make_event(db_session)
        for i in range(2):
            await make_ride(db_session, event.id, created_at=T0 + timedelta(seconds=i))
        for name in ("a", "b", "c"):
            await make_driver(db_session, event.id, name=name)

        assigned = await Dispatcher(db_session).dispatch_all_rides(event.id)

        assert assigned == 2
        idle = await Dispatcher(db_session).drivers.count_available(event.id)
        assert idle == 1

    @pytest.mark.asyncio
    async def test_respects_iteration_cap(self, db_session):
        event = await make_event(db_session)
        for i in range(3):
            await make_ride(db_session, event.id)
            await make_driver(db_session, event.id, name=f"d{i}")

        assigned = await Dispatcher(db_session, iteration_cap=1).dispatch_all_rides(
            event.id
        )
        assert assigned == 1

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, db_session):
        event = await make_event(db_session)
        assert await Dispatcher(db_session).dispatch_all_rides(event.id) == 0


class TestManualAssignment:
    @pytest.mark.asyncio
    async def test_assign_specific_driver(self, db_session):
        event = await make_event(db_session)
        ride = await make_ride(db_session, event.id)
        driver = await make_driver(db_session, event.id)

        result = await Dispatcher(db_session).assign_ride(ride.id, driver.id)

        assert result.assigned
        await db_session.refresh(driver)
        assert driver.current_status == DriverStatus.ASSIGNED

    @pytest.mark.asyncio
    async def test_busy_driver_is_rejected(self, db_session):
        event = await make_event(db_session)
        ride = await make_ride(db_session, event.id)
        driver = await make_driver(db_session, event.id, status=DriverStatus.ASSIGNED)

        with pytest.raises(InvalidTransition):
            await Dispatcher(db_session).assign_ride(ride.id, driver.id)
        await db_session.refresh(ride)
        assert ride.status == RideStatus.WAITING

    @pytest.mark.asyncio
    async def test_lost_ride_race_releases_driver(self, db_session):
        event = await make_event(db_session)
        ride = await make_ride(db_session, event.id, status=RideStatus.CANCELLED)
        driver = await make_driver(db_session, event.id)

        dispatcher = Dispatcher(db_session)
        assert not await dispatcher.assign(ride, driver)

        await db_session.refresh(driver)
        assert driver.current_status == DriverStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_driver_from_another_event_is_rejected(self, db_session):
        event = await make_event(db_session)
        other = await make_event(db_session, access_code="PARTY2")
        ride = await make_ride(db_session, event.id)
        driver = await make_driver(db_session, other.id)

        with pytest.raises(NotFound):
            await Dispatcher(db_session).assign_ride(ride.id, driver.id)

        await db_session.refresh(ride)
        await db_session.refresh(driver)
        assert ride.status == RideStatus.WAITING
        assert ride.assigned_driver_id is None
        assert driver.current_status == DriverStatus.AVAILABLE
