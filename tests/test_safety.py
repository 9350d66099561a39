"""No-show sweep, rider penalties, cooldowns, consent and emergencies."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from src.domain.entities import (
    ConsentRequired,
    CooldownActive,
    InvalidTransition,
    NotFound,
    as_utc,
)
from src.domain.enums import DriverStatus, EmergencyTrigger, RideStatus
from src.domain.safety import cooldown_status, rider_identifier_hash
from src.infrastructure.repositories import PenaltyRepository
from src.services.consent import ConsentService
from src.services.emergency import EmergencyService
from src.services.ride_state import RideStateMachine
from src.services.rides import RideService
from src.services.safety import SafetyService, run_no_show_sweep
from tests.conftest import T0, make_driver, make_event, make_ride


async def _arrived_ride(session, clock, event_id, rider_hash="abc", name="d"):
    driver = await make_driver(session, event_id, name=name, status=DriverStatus.ASSIGNED)
    ride = await make_ride(session, event_id, rider_hash=rider_hash)
    machine = RideStateMachine(session, clock=clock)
    await machine.transition(ride.id, RideStatus.ASSIGNED, driver.id)
    await machine.transition(ride.id, RideStatus.ARRIVED)
    return ride, driver


class TestPenaltyUpsert:
    @pytest.mark.asyncio
    async def test_below_threshold_counts_up(self, db_session):
        event = await make_event(db_session)
        penalty = await PenaltyRepository(db_session).increment_no_show(
            event.id, "abc", now=T0, threshold=3, cooldown_minutes=15
        )
        assert penalty.no_show_count == 1
        assert penalty.cooldown_until is None

        penalty = await PenaltyRepository(db_session).increment_no_show(
            event.id, "abc", now=T0, threshold=3, cooldown_minutes=15
        )
        assert penalty.no_show_count == 2
        assert penalty.cooldown_until is None

    @pytest.mark.asyncio
    async def test_threshold_starts_cooldown_and_resets(self, db_session):
        event = await make_event(db_session)
        penalties = PenaltyRepository(db_session)
        await penalties.increment_no_show(
            event.id, "abc", now=T0, threshold=2, cooldown_minutes=15
        )
        later = T0 + timedelta(minutes=5)
        penalty = await penalties.increment_no_show(
            event.id, "abc", now=later, threshold=2, cooldown_minutes=15
        )
        assert penalty.no_show_count == 0
        assert as_utc(penalty.cooldown_until) == later + timedelta(minutes=15)

    @pytest.mark.asyncio
    async def test_threshold_of_one_penalises_first_no_show(self, db_session):
        event = await make_event(db_session)
        penalty = await PenaltyRepository(db_session).increment_no_show(
            event.id, "abc", now=T0, threshold=1, cooldown_minutes=10
        )
        assert penalty.no_show_count == 0
        assert as_utc(penalty.cooldown_until) == T0 + timedelta(minutes=10)

    @pytest.mark.asyncio
    async def test_riders_are_counted_per_event(self, db_session):
        event = await make_event(db_session)
        other = await make_event(db_session, access_code="PARTY2")
        penalties = PenaltyRepository(db_session)
        for event_id in (event.id, other.id):
            penalty = await penalties.increment_no_show(
                event_id, "abc", now=T0, threshold=2, cooldown_minutes=15
            )
            assert penalty.no_show_count == 1


class TestCooldownRules:
    def test_expired_cooldown_reads_inactive(self):
        assert not cooldown_status(T0, now=T0).is_in_cooldown
        assert not cooldown_status(None, now=T0).is_in_cooldown

    def test_remaining_minutes_round_up(self):
        status = cooldown_status(T0 + timedelta(minutes=14, seconds=1), now=T0)
        assert status.is_in_cooldown
        assert status.remaining_minutes == 15

    def test_rider_hash_normalises_name(self):
        a = rider_identifier_hash(1, "  Alex ", "10.0.0.1")
        assert a == rider_identifier_hash(1, "alex", "10.0.0.1")
        assert a != rider_identifier_hash(2, "alex", "10.0.0.1")
        assert len(a) == 64


class TestNoShow:
    @pytest.mark.asyncio
    async def test_expired_arrival_is_listed_and_processed(self, db_session, clock):
        event = await make_event(db_session)
        ride, driver = await _arrived_ride(db_session, clock, event.id)
        service = SafetyService(db_session, clock=clock)

        assert await service.get_expired_no_show_rides() == []

        clock.advance(minutes=3, seconds=1)
        expired = await service.get_expired_no_show_rides()
        assert [r.id for r in expired] == [ride.id]

        await service.process_no_show(ride.id, event.id, "abc", driver.id)

        await db_session.refresh(ride)
        await db_session.refresh(driver)
        assert ride.status == RideStatus.NO_SHOW
        assert ride.assigned_driver_id is None
        assert driver.current_status == DriverStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_confirmed_rider_is_never_a_no_show(self, db_session, clock):
        event = await make_event(db_session)
        ride, _ = await _arrived_ride(db_session, clock, event.id)
        service = SafetyService(db_session, clock=clock)

        assert await service.confirm_rider_presence(ride.id)
        clock.advance(minutes=10)

        assert await service.get_expired_no_show_rides() == []
        await db_session.refresh(ride)
        assert ride.status == RideStatus.IN_PROGRESS
        assert ride.rider_confirmed

    @pytest.mark.asyncio
    async def test_countdown_runs_down_to_zero(self, db_session, clock):
        event = await make_event(db_session)
        ride, _ = await _arrived_ride(db_session, clock, event.id)
        service = SafetyService(db_session, clock=clock)

        assert await service.seconds_until_no_show(ride.id) == 180
        clock.advance(minutes=2, seconds=30)
        assert await service.seconds_until_no_show(ride.id) == 30
        clock.advance(minutes=5)
        assert await service.seconds_until_no_show(ride.id) == 0

        await service.confirm_rider_presence(ride.id)
        assert await service.seconds_until_no_show(ride.id) is None

    @pytest.mark.asyncio
    async def test_confirm_outside_arrival_is_a_no_op(self, db_session, clock):
        event = await make_event(db_session)
        ride = await make_ride(db_session, event.id)
        assert not await SafetyService(db_session, clock=clock).confirm_rider_presence(
            ride.id
        )

    @pytest.mark.asyncio
    async def test_two_no_shows_start_cooldown(self, db_session, clock):
        event = await make_event(db_session)
        service = SafetyService(db_session, clock=clock)

        first, d1 = await _arrived_ride(db_session, clock, event.id, name="d1")
        penalty = await service.process_no_show(first.id, event.id, "abc", d1.id)
        assert penalty.no_show_count == 1
        assert penalty.cooldown_until is None
        assert not (await service.get_cooldown_status(event.id, "abc")).is_in_cooldown

        second, d2 = await _arrived_ride(db_session, clock, event.id, name="d2")
        penalty = await service.process_no_show(second.id, event.id, "abc", d2.id)
        assert penalty.no_show_count == 0
        stored = await service.get_rider_penalty(event.id, "abc")
        assert stored.cooldown_until is not None

        status = await service.get_cooldown_status(event.id, "abc")
        assert status.is_in_cooldown
        assert status.remaining_minutes == 15

    @pytest.mark.asyncio
    async def test_cooldown_blocks_new_rides_until_it_lapses(self, db_session, clock):
        event = await make_event(db_session)
        await ConsentService(db_session, clock=clock).record_consent(event.id, "abc")
        service = SafetyService(db_session, clock=clock)
        for name in ("d1", "d2"):
            ride, driver = await _arrived_ride(db_session, clock, event.id, name=name)
            await service.process_no_show(ride.id, event.id, "abc", driver.id)

        rides = RideService(db_session, clock=clock)
        request = dict(
            event_id=event.id,
            rider_name="Alex",
            pickup_address="Front door",
            pickup_lat=30.0,
            pickup_lng=-97.0,
            rider_identifier_hash="abc",
        )
        with pytest.raises(CooldownActive) as exc:
            await rides.create_ride(**request)
        assert exc.value.remaining_minutes == 15

        clock.advance(minutes=15)
        ride = await rides.create_ride(**request)
        assert ride.status == RideStatus.WAITING

    @pytest.mark.asyncio
    async def test_no_show_without_rider_hash_skips_penalty(self, db_session, clock):
        event = await make_event(db_session)
        ride, driver = await _arrived_ride(db_session, clock, event.id, rider_hash=None)
        penalty = await SafetyService(db_session, clock=clock).process_no_show(
            ride.id, event.id, None, driver.id
        )
        assert penalty is None


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_processes_each_ride_and_publishes(
        self, db_session, session_factory, clock
    ):
        event = await make_event(db_session)
        ride, driver = await _arrived_ride(db_session, clock, event.id)
        await db_session.commit()
        clock.advance(minutes=4)
        publish = AsyncMock()

        result = await run_no_show_sweep(session_factory, publish=publish, clock=clock)

        assert result.total == 1
        assert result.processed == 1
        publish.assert_awaited_once()
        await db_session.refresh(ride)
        await db_session.refresh(driver)
        assert ride.status == RideStatus.NO_SHOW
        assert driver.current_status == DriverStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_one_failing_ride_does_not_stop_the_sweep(
        self, db_session, session_factory, clock, monkeypatch
    ):
        event = await make_event(db_session)
        bad, _ = await _arrived_ride(db_session, clock, event.id, name="d1")
        good, _ = await _arrived_ride(db_session, clock, event.id, name="d2")
        await db_session.commit()
        clock.advance(minutes=4)

        original = SafetyService.process_no_show

        async def flaky(self, ride_id, *args):
            if ride_id == bad.id:
                raise InvalidTransition("raced")
            return await original(self, ride_id, *args)

        monkeypatch.setattr(SafetyService, "process_no_show", flaky)

        result = await run_no_show_sweep(session_factory, clock=clock)

        assert result.total == 2
        assert result.processed == 1
        failed = [o for o in result.outcomes if not o.success]
        assert [o.ride_id for o in failed] == [bad.id]
        assert failed[0].error == "raced"

    @pytest.mark.asyncio
    async def test_empty_sweep(self, session_factory, clock):
        result = await run_no_show_sweep(session_factory, clock=clock)
        assert result.total == 0
        assert result.processed == 0


class TestConsent:
    @pytest.mark.asyncio
    async def test_ride_requires_consent(self, db_session, clock):
        event = await make_event(db_session)
        with pytest.raises(ConsentRequired):
            await RideService(db_session, clock=clock).create_ride(
                event_id=event.id,
                rider_name="Alex",
                pickup_address="Front door",
                pickup_lat=30.0,
                pickup_lng=-97.0,
                rider_identifier_hash="abc",
            )

    @pytest.mark.asyncio
    async def test_recording_twice_is_idempotent(self, db_session, clock):
        event = await make_event(db_session)
        service = ConsentService(db_session, clock=clock)
        first = await service.record_consent(event.id, "abc", "10.0.0.1")
        second = await service.record_consent(event.id, "abc", "10.0.0.1")

        assert first.id == second.id
        assert await service.check_consent(event.id, "abc")
        assert len(await service.list_event_consents(event.id)) == 1

    @pytest.mark.asyncio
    async def test_unknown_event(self, db_session):
        with pytest.raises(NotFound):
            await ConsentService(db_session).record_consent(404, "abc")


class TestEmergency:
    @pytest.mark.asyncio
    async def test_trigger_notifies_and_resolve_closes(self, db_session, clock):
        event = await make_event(db_session)
        notifier = AsyncMock()
        service = EmergencyService(db_session, notifier, clock=clock)

        emergency = await service.trigger_emergency(
            event_id=event.id,
            triggered_by=EmergencyTrigger.RIDER,
            triggered_by_name="Alex",
            latitude=30.0,
            longitude=-97.0,
        )
        notifier.notify.assert_awaited_once()
        assert [e.id for e in await service.list_active_emergencies(event.id)] == [
            emergency.id
        ]

        await service.resolve_emergency(emergency.id, "Safety lead", "All good")
        assert await service.list_active_emergencies(event.id) == []
        assert len(await service.list_emergencies(event.id)) == 1

        with pytest.raises(InvalidTransition):
            await service.resolve_emergency(emergency.id, "Safety lead")
