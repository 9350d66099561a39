"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  Every write appends a ``ChangeEvent`` to
``session.info["changes"]``; the session owner publishes them after commit.

Status writes are conditional (``UPDATE ... WHERE status = <observed>``) so
a concurrent writer is detected instead of silently overwritten.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from sqlalchemy import DateTime, case, delete, func, literal, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    DriverModel,
    EmergencyEventModel,
    EventModel,
    RideBatchItemModel,
    RideBatchModel,
    RideRequestModel,
    RiderConsentModel,
    RiderPenaltyModel,
)
from src.domain.changes import ChangeEvent, ChangeKind, EntityType
from src.domain.entities import (
    InvalidTransition,
    RideTransitionUpdate,
    is_valid_batch_transition,
    utcnow,
)
from src.domain.enums import (
    ACTIVE_BATCH_STATUSES,
    DRIVER_HOLDING_STATUSES,
    BatchStatus,
    DriverStatus,
    RideStatus,
)


def record_change(
    session: AsyncSession,
    kind: ChangeKind,
    entity: EntityType,
    entity_id: int,
    event_id: Optional[int] = None,
) -> None:
    session.info.setdefault("changes", []).append(
        ChangeEvent(kind=kind, entity=entity, entity_id=entity_id, event_id=event_id)
    )


def pop_changes(session: AsyncSession) -> list[ChangeEvent]:
    return session.info.pop("changes", [])


def discard_changes_since(session: AsyncSession, mark: int) -> None:
    """Drop changes recorded after ``mark`` (e.g. a rolled-back SAVEPOINT)."""
    del session.info.get("changes", [])[mark:]


def _dialect_insert(session: AsyncSession, model):
    """``INSERT`` construct supporting ``ON CONFLICT`` for the bound dialect."""
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)


class _Repository:
    def __init__(self, session: AsyncSession):
        self.session = session

    def _record(self, kind, entity, entity_id, event_id=None) -> None:
        record_change(self.session, kind, entity, entity_id, event_id)


class EventRepository(_Repository):
    async def create(self, **values) -> EventModel:
        event = EventModel(**values)
        self.session.add(event)
        await self.session.flush()
        self._record(ChangeKind.INSERTED, EntityType.EVENT, event.id, event.id)
        return event

    async def get_by_id(self, event_id: int) -> Optional[EventModel]:
        return await self.session.get(EventModel, event_id)

    async def get_active_by_access_code(self, code: str) -> Optional[EventModel]:
        result = await self.session.execute(
            select(EventModel).where(
                EventModel.access_code == code.upper(),
                EventModel.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def access_code_exists(self, code: str) -> bool:
        result = await self.session.execute(
            select(func.count())
            .select_from(EventModel)
            .where(EventModel.access_code == code)
        )
        return (result.scalar() or 0) > 0

    async def update(self, event: EventModel, **values) -> EventModel:
        for name, value in values.items():
            setattr(event, name, value)
        await self.session.flush()
        self._record(ChangeKind.UPDATED, EntityType.EVENT, event.id, event.id)
        return event


class RideRepository(_Repository):
    async def create(self, **values) -> RideRequestModel:
        ride = RideRequestModel(**values)
        self.session.add(ride)
        await self.session.flush()
        self._record(
            ChangeKind.INSERTED, EntityType.RIDE_REQUEST, ride.id, ride.event_id
        )
        return ride

    async def get_by_id(self, ride_id: int) -> Optional[RideRequestModel]:
        return await self.session.get(RideRequestModel, ride_id)

    async def get_by_ids(self, ride_ids: Sequence[int]) -> list[RideRequestModel]:
        result = await self.session.execute(
            select(RideRequestModel)
            .where(RideRequestModel.id.in_(list(ride_ids)))
            .order_by(RideRequestModel.created_at, RideRequestModel.id)
        )
        return list(result.scalars().all())

    async def get_for_event(self, event_id: int) -> list[RideRequestModel]:
        result = await self.session.execute(
            select(RideRequestModel)
            .where(RideRequestModel.event_id == event_id)
            .order_by(RideRequestModel.created_at, RideRequestModel.id)
        )
        return list(result.scalars().all())

    async def get_waiting(
        self, event_id: int, *, unbatched_only: bool = False
    ) -> list[RideRequestModel]:
        """Waiting rides in queue (creation) order."""
        query = select(RideRequestModel).where(
            RideRequestModel.event_id == event_id,
            RideRequestModel.status == RideStatus.WAITING,
        )
        if unbatched_only:
            query = query.where(RideRequestModel.batch_id.is_(None))
        result = await self.session.execute(
            query.order_by(RideRequestModel.created_at, RideRequestModel.id)
        )
        return list(result.scalars().all())

    async def get_oldest_waiting(self, event_id: int) -> Optional[RideRequestModel]:
        result = await self.session.execute(
            select(RideRequestModel)
            .where(
                RideRequestModel.event_id == event_id,
                RideRequestModel.status == RideStatus.WAITING,
            )
            .order_by(RideRequestModel.created_at, RideRequestModel.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def count_waiting(self, event_id: int) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(RideRequestModel)
            .where(
                RideRequestModel.event_id == event_id,
                RideRequestModel.status == RideStatus.WAITING,
            )
        )
        return result.scalar() or 0

    async def get_by_statuses(
        self, event_id: int, statuses: Iterable[RideStatus]
    ) -> list[RideRequestModel]:
        result = await self.session.execute(
            select(RideRequestModel)
            .where(
                RideRequestModel.event_id == event_id,
                RideRequestModel.status.in_(list(statuses)),
            )
            .order_by(RideRequestModel.created_at, RideRequestModel.id)
        )
        return list(result.scalars().all())

    async def get_active_for_driver(
        self, driver_id: int
    ) -> Optional[RideRequestModel]:
        result = await self.session.execute(
            select(RideRequestModel)
            .where(
                RideRequestModel.assigned_driver_id == driver_id,
                RideRequestModel.status.in_(list(DRIVER_HOLDING_STATUSES)),
            )
            .order_by(RideRequestModel.created_at, RideRequestModel.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_in_batch(self, batch_id: int) -> list[RideRequestModel]:
        result = await self.session.execute(
            select(RideRequestModel)
            .where(RideRequestModel.batch_id == batch_id)
            .order_by(RideRequestModel.pickup_sequence_index, RideRequestModel.id)
        )
        return list(result.scalars().all())

    async def get_expired_no_shows(self, now: datetime) -> list[RideRequestModel]:
        result = await self.session.execute(
            select(RideRequestModel)
            .where(
                RideRequestModel.status == RideStatus.ARRIVED,
                RideRequestModel.rider_confirmed.is_(False),
                RideRequestModel.arrival_deadline_timestamp.is_not(None),
                RideRequestModel.arrival_deadline_timestamp < now,
            )
            .order_by(RideRequestModel.arrival_deadline_timestamp)
        )
        return list(result.scalars().all())

    async def get_recent_completed(
        self, event_id: int, limit: int = 20
    ) -> list[RideRequestModel]:
        result = await self.session.execute(
            select(RideRequestModel)
            .where(
                RideRequestModel.event_id == event_id,
                RideRequestModel.status == RideStatus.COMPLETED,
                RideRequestModel.arrival_timestamp.is_not(None),
                RideRequestModel.completion_timestamp.is_not(None),
            )
            .order_by(RideRequestModel.completion_timestamp.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def apply_transition(
        self,
        ride: RideRequestModel,
        observed: RideStatus,
        change: RideTransitionUpdate,
    ) -> bool:
        """
        Write ``change`` only if the row still has status ``observed``.

        Returns ``False`` when another writer got there first.
        """
        result = await self.session.execute(
            update(RideRequestModel)
            .where(
                RideRequestModel.id == ride.id,
                RideRequestModel.status == observed,
            )
            .values(**change.values(), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.refresh(ride)
        if result.rowcount != 1:
            return False
        self._record(
            ChangeKind.UPDATED, EntityType.RIDE_REQUEST, ride.id, ride.event_id
        )
        return True

    async def update(self, ride: RideRequestModel, **values) -> RideRequestModel:
        """Non-status fields only; status goes through ``apply_transition``."""
        if "status" in values:
            raise ValueError("Ride status changes must use apply_transition")
        for name, value in values.items():
            setattr(ride, name, value)
        await self.session.flush()
        self._record(
            ChangeKind.UPDATED, EntityType.RIDE_REQUEST, ride.id, ride.event_id
        )
        return ride


class DriverRepository(_Repository):
    async def create(self, **values) -> DriverModel:
        driver = DriverModel(**values)
        self.session.add(driver)
        await self.session.flush()
        self._record(ChangeKind.INSERTED, EntityType.DRIVER, driver.id, driver.event_id)
        return driver

    async def get_by_id(self, driver_id: int) -> Optional[DriverModel]:
        return await self.session.get(DriverModel, driver_id)

    async def list_for_event(self, event_id: int) -> list[DriverModel]:
        result = await self.session.execute(
            select(DriverModel)
            .where(DriverModel.event_id == event_id)
            .order_by(DriverModel.id)
        )
        return list(result.scalars().all())

    def _available_located(self, event_id: int):
        return select(DriverModel).where(
            DriverModel.event_id == event_id,
            DriverModel.is_online.is_(True),
            DriverModel.current_status == DriverStatus.AVAILABLE,
            DriverModel.current_lat.is_not(None),
            DriverModel.current_lng.is_not(None),
        )

    async def get_available_located(self, event_id: int) -> list[DriverModel]:
        """Dispatch candidates in primary-key order."""
        result = await self.session.execute(
            self._available_located(event_id).order_by(DriverModel.id)
        )
        return list(result.scalars().all())

    async def get_with_capacity(
        self, event_id: int, required: int
    ) -> list[DriverModel]:
        free_seats = DriverModel.max_capacity - DriverModel.current_passenger_load
        result = await self.session.execute(
            self._available_located(event_id)
            .where(free_seats >= required)
            .order_by(free_seats.desc(), DriverModel.id)
        )
        return list(result.scalars().all())

    async def count_available(self, event_id: int) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(DriverModel)
            .where(
                DriverModel.event_id == event_id,
                DriverModel.is_online.is_(True),
                DriverModel.current_status == DriverStatus.AVAILABLE,
            )
        )
        return result.scalar() or 0

    async def count_online(self, event_id: int) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(DriverModel)
            .where(
                DriverModel.event_id == event_id,
                DriverModel.is_online.is_(True),
            )
        )
        return result.scalar() or 0

    async def claim(self, driver: DriverModel) -> bool:
        """``available -> assigned``; ``False`` if someone else claimed first."""
        result = await self.session.execute(
            update(DriverModel)
            .where(
                DriverModel.id == driver.id,
                DriverModel.current_status == DriverStatus.AVAILABLE,
            )
            .values(current_status=DriverStatus.ASSIGNED, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.refresh(driver)
        if result.rowcount != 1:
            return False
        self._record(ChangeKind.UPDATED, EntityType.DRIVER, driver.id, driver.event_id)
        return True

    async def release(self, driver_id: int, *, reset_load: bool = False) -> None:
        values = {"current_status": DriverStatus.AVAILABLE, "updated_at": utcnow()}
        if reset_load:
            values["current_passenger_load"] = 0
        await self._write(driver_id, values)

    async def decrement_load(self, driver_id: int, passengers: int) -> None:
        remaining = DriverModel.current_passenger_load - passengers
        await self._write(
            driver_id,
            {
                "current_passenger_load": case((remaining < 0, 0), else_=remaining),
                "updated_at": utcnow(),
            },
        )

    async def _write(self, driver_id: int, values: dict) -> None:
        await self.session.execute(
            update(DriverModel)
            .where(DriverModel.id == driver_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        driver = await self.session.get(
            DriverModel, driver_id, populate_existing=True
        )
        if driver is not None:
            self._record(
                ChangeKind.UPDATED, EntityType.DRIVER, driver.id, driver.event_id
            )

    async def update(self, driver: DriverModel, **values) -> DriverModel:
        for name, value in values.items():
            setattr(driver, name, value)
        await self.session.flush()
        self._record(ChangeKind.UPDATED, EntityType.DRIVER, driver.id, driver.event_id)
        return driver

    async def delete(self, driver: DriverModel) -> None:
        driver_id, event_id = driver.id, driver.event_id
        await self.session.delete(driver)
        await self.session.flush()
        self._record(ChangeKind.DELETED, EntityType.DRIVER, driver_id, event_id)


class BatchRepository(_Repository):
    async def create(
        self, *, event_id: int, driver_id: int, total_passengers: int
    ) -> RideBatchModel:
        batch = RideBatchModel(
            event_id=event_id,
            driver_id=driver_id,
            total_passengers=total_passengers,
            status=BatchStatus.PENDING,
        )
        self.session.add(batch)
        await self.session.flush()
        self._record(ChangeKind.INSERTED, EntityType.RIDE_BATCH, batch.id, event_id)
        return batch

    async def add_items(
        self, batch: RideBatchModel, items: Sequence[tuple[int, int, datetime]]
    ) -> list[RideBatchItemModel]:
        """
        Insert ``(ride_id, pickup_order_index, estimated_arrival)`` rows.

        Runs in a SAVEPOINT so a failed insert leaves the batch row intact
        for the caller to compensate.
        """
        async with self.session.begin_nested():
            rows = [
                RideBatchItemModel(
                    batch_id=batch.id,
                    ride_request_id=ride_id,
                    pickup_order_index=order,
                    estimated_arrival_time=eta,
                )
                for ride_id, order, eta in items
            ]
            self.session.add_all(rows)
            await self.session.flush()

        for row in rows:
            self._record(
                ChangeKind.INSERTED, EntityType.RIDE_BATCH_ITEM, row.id, batch.event_id
            )
        return rows

    async def delete(self, batch_id: int, event_id: int) -> None:
        """Compensating delete; takes ids since the instance may be expired."""
        await self.session.execute(
            delete(RideBatchModel)
            .where(RideBatchModel.id == batch_id)
            .execution_options(synchronize_session="fetch")
        )
        self._record(ChangeKind.DELETED, EntityType.RIDE_BATCH, batch_id, event_id)

    async def get_by_id(self, batch_id: int) -> Optional[RideBatchModel]:
        return await self.session.get(RideBatchModel, batch_id)

    async def get_for_event(self, event_id: int) -> list[RideBatchModel]:
        result = await self.session.execute(
            select(RideBatchModel)
            .where(RideBatchModel.event_id == event_id)
            .order_by(RideBatchModel.id)
        )
        return list(result.scalars().all())

    async def get_active_for_driver(
        self, driver_id: int
    ) -> Optional[RideBatchModel]:
        result = await self.session.execute(
            select(RideBatchModel)
            .where(
                RideBatchModel.driver_id == driver_id,
                RideBatchModel.status.in_(list(ACTIVE_BATCH_STATUSES)),
            )
            .order_by(RideBatchModel.created_at.desc(), RideBatchModel.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_items(self, batch_id: int) -> list[RideBatchItemModel]:
        result = await self.session.execute(
            select(RideBatchItemModel)
            .where(RideBatchItemModel.batch_id == batch_id)
            .order_by(RideBatchItemModel.pickup_order_index)
        )
        return list(result.scalars().all())

    async def get_item(self, item_id: int) -> Optional[RideBatchItemModel]:
        return await self.session.get(RideBatchItemModel, item_id)

    async def count_items(self, batch_ids: Sequence[int]) -> list[int]:
        """Item count per batch, in the order of ``batch_ids``."""
        if not batch_ids:
            return []
        result = await self.session.execute(
            select(RideBatchItemModel.batch_id, func.count())
            .where(RideBatchItemModel.batch_id.in_(list(batch_ids)))
            .group_by(RideBatchItemModel.batch_id)
        )
        counts = dict(result.all())
        return [counts.get(batch_id, 0) for batch_id in batch_ids]

    async def set_status(
        self, batch: RideBatchModel, observed: BatchStatus, new: BatchStatus
    ) -> bool:
        """
        Conditional status write; ``False`` when the batch is no longer
        ``observed``.  An edge outside the batch table raises.
        """
        if not is_valid_batch_transition(observed, new):
            raise InvalidTransition(
                f"Batch {batch.id}: {BatchStatus(observed).value} -> "
                f"{BatchStatus(new).value} is not allowed"
            )
        result = await self.session.execute(
            update(RideBatchModel)
            .where(
                RideBatchModel.id == batch.id,
                RideBatchModel.status == observed,
            )
            .values(status=new, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.refresh(batch)
        if result.rowcount != 1:
            return False
        self._record(
            ChangeKind.UPDATED, EntityType.RIDE_BATCH, batch.id, batch.event_id
        )
        return True

    async def update_item(
        self, item: RideBatchItemModel, event_id: int, **values
    ) -> RideBatchItemModel:
        for name, value in values.items():
            setattr(item, name, value)
        await self.session.flush()
        self._record(
            ChangeKind.UPDATED, EntityType.RIDE_BATCH_ITEM, item.id, event_id
        )
        return item


class PenaltyRepository(_Repository):
    async def get(
        self, event_id: int, rider_hash: str
    ) -> Optional[RiderPenaltyModel]:
        result = await self.session.execute(
            select(RiderPenaltyModel).where(
                RiderPenaltyModel.event_id == event_id,
                RiderPenaltyModel.rider_identifier_hash == rider_hash,
            )
        )
        return result.scalar_one_or_none()

    async def increment_no_show(
        self,
        event_id: int,
        rider_hash: str,
        *,
        now: datetime,
        threshold: int,
        cooldown_minutes: int,
    ) -> RiderPenaltyModel:
        """
        Atomic ``INSERT ... ON CONFLICT DO UPDATE`` of the no-show counter.

        Reaching ``threshold`` resets the count to 0 and sets
        ``cooldown_until``; concurrent no-shows for one rider never lose an
        increment.
        """
        until = literal(now + timedelta(minutes=cooldown_minutes), DateTime(timezone=True))
        first_hits = 1 >= threshold

        stmt = _dialect_insert(self.session, RiderPenaltyModel).values(
            event_id=event_id,
            rider_identifier_hash=rider_hash,
            no_show_count=0 if first_hits else 1,
            cooldown_until=now + timedelta(minutes=cooldown_minutes)
            if first_hits
            else None,
            created_at=now,
            updated_at=now,
        )
        reached = RiderPenaltyModel.no_show_count + 1 >= threshold
        stmt = stmt.on_conflict_do_update(
            index_elements=["event_id", "rider_identifier_hash"],
            set_={
                "no_show_count": case(
                    (reached, 0), else_=RiderPenaltyModel.no_show_count + 1
                ),
                "cooldown_until": case(
                    (reached, until), else_=RiderPenaltyModel.cooldown_until
                ),
                "updated_at": literal(now, DateTime(timezone=True)),
            },
        )
        await self.session.execute(stmt)

        result = await self.session.execute(
            select(RiderPenaltyModel)
            .where(
                RiderPenaltyModel.event_id == event_id,
                RiderPenaltyModel.rider_identifier_hash == rider_hash,
            )
            .execution_options(populate_existing=True)
        )
        penalty = result.scalar_one()
        self._record(
            ChangeKind.UPDATED, EntityType.RIDER_PENALTY, penalty.id, event_id
        )
        return penalty


class ConsentRepository(_Repository):
    async def get(
        self, event_id: int, rider_hash: str
    ) -> Optional[RiderConsentModel]:
        result = await self.session.execute(
            select(RiderConsentModel).where(
                RiderConsentModel.event_id == event_id,
                RiderConsentModel.rider_identifier_hash == rider_hash,
            )
        )
        return result.scalar_one_or_none()

    async def insert_if_absent(
        self,
        event_id: int,
        rider_hash: str,
        ip_address: Optional[str],
        now: datetime,
    ) -> RiderConsentModel:
        """Duplicate consents are a no-op returning the existing record."""
        stmt = (
            _dialect_insert(self.session, RiderConsentModel)
            .values(
                event_id=event_id,
                rider_identifier_hash=rider_hash,
                ip_address=ip_address,
                consent_timestamp=now,
                created_at=now,
            )
            .on_conflict_do_nothing(
                index_elements=["event_id", "rider_identifier_hash"]
            )
        )
        result = await self.session.execute(stmt)
        consent = await self.get(event_id, rider_hash)
        if result.rowcount:
            self._record(
                ChangeKind.INSERTED, EntityType.RIDER_CONSENT, consent.id, event_id
            )
        return consent

    async def list_for_event(self, event_id: int) -> list[RiderConsentModel]:
        result = await self.session.execute(
            select(RiderConsentModel)
            .where(RiderConsentModel.event_id == event_id)
            .order_by(RiderConsentModel.consent_timestamp.desc())
        )
        return list(result.scalars().all())


class EmergencyRepository(_Repository):
    async def create(self, **values) -> EmergencyEventModel:
        emergency = EmergencyEventModel(**values)
        self.session.add(emergency)
        await self.session.flush()
        self._record(
            ChangeKind.INSERTED,
            EntityType.EMERGENCY_EVENT,
            emergency.id,
            emergency.event_id,
        )
        return emergency

    async def get_by_id(self, emergency_id: int) -> Optional[EmergencyEventModel]:
        return await self.session.get(EmergencyEventModel, emergency_id)

    async def list_for_event(
        self, event_id: int, *, unresolved_only: bool = False
    ) -> list[EmergencyEventModel]:
        query = select(EmergencyEventModel).where(
            EmergencyEventModel.event_id == event_id
        )
        if unresolved_only:
            query = query.where(EmergencyEventModel.resolved.is_(False))
        result = await self.session.execute(
            query.order_by(EmergencyEventModel.timestamp.desc())
        )
        return list(result.scalars().all())

    async def update(self, emergency: EmergencyEventModel, **values):
        for name, value in values.items():
            setattr(emergency, name, value)
        await self.session.flush()
        self._record(
            ChangeKind.UPDATED,
            EntityType.EMERGENCY_EVENT,
            emergency.id,
            emergency.event_id,
        )
        return emergency
