"""
SQLAlchemy ORM models.

Tables
------
* ``events``            -- one bounded ride window (a party); owns the rest
* ``drivers``           -- a driver's presence within one event
* ``ride_requests``     -- individual pickup requests
* ``ride_batches``      -- multi-stop trips (one driver, several rides)
* ``ride_batch_items``  -- a ride's position within a batch
* ``rider_penalties``   -- pseudonymous no-show counters / cooldowns
* ``emergency_events``  -- safety alerts raised by riders or drivers
* ``rider_consents``    -- terms acceptance, gating ride creation

Indexes
-------
* **B-Tree** on ``event_id``, ``status``, ``created_at``, ``batch_id`` and
  the driver availability columns used by the dispatchers.
* **Unique** pairs enforce one penalty / consent per rider per event and
  contiguous, duplicate-free pickup indices per batch.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)

from .database import Base
from src.domain.entities import utcnow
from src.domain.enums import (
    BatchStatus,
    DriverStatus,
    EmergencyTrigger,
    RideStatus,
)


def _enum(enum_cls, name: str) -> Enum:
    # store the lowercase values, not the member names
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class EventModel(Base):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_name = Column(String(200), nullable=False)
    organization_name = Column(String(200), nullable=False)
    access_code = Column(String(6), unique=True, nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    admin_email = Column(String(255), nullable=True)
    batch_mode_enabled = Column(Boolean, default=False, nullable=False)

    created_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (Index("idx_events_access_code", "access_code"),)


class DriverModel(Base):
    __tablename__ = "drivers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    driver_name = Column(String(120), nullable=False)
    is_online = Column(Boolean, default=False, nullable=False)
    current_status = Column(
        _enum(DriverStatus, "driver_status"),
        default=DriverStatus.OFFLINE,
        nullable=False,
    )
    current_lat = Column(Float, nullable=True)
    current_lng = Column(Float, nullable=True)
    last_location_update = Column(DateTime(timezone=True), nullable=True)
    max_capacity = Column(Integer, default=4, nullable=False)
    current_passenger_load = Column(Integer, default=0, nullable=False)

    created_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("event_id", "driver_name", name="uq_drivers_event_name"),
        CheckConstraint(
            "current_passenger_load <= max_capacity", name="ck_drivers_load"
        ),
        Index("idx_drivers_event", "event_id"),
        Index("idx_drivers_available", "event_id", "is_online", "current_status"),
    )


class RideRequestModel(Base):
    __tablename__ = "ride_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    rider_name = Column(String(120), nullable=False)
    pickup_address = Column(Text, nullable=False)
    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    passenger_count = Column(Integer, default=1, nullable=False)

    status = Column(
        _enum(RideStatus, "ride_status"), default=RideStatus.WAITING, nullable=False
    )
    assigned_driver_id = Column(
        Integer, ForeignKey("drivers.id", ondelete="SET NULL"), nullable=True
    )
    batch_id = Column(
        Integer, ForeignKey("ride_batches.id", ondelete="SET NULL"), nullable=True
    )
    pickup_sequence_index = Column(Integer, nullable=True)

    estimated_wait_minutes = Column(Integer, nullable=True)
    driver_eta_minutes = Column(Integer, nullable=True)
    arrival_timestamp = Column(DateTime(timezone=True), nullable=True)
    completion_timestamp = Column(DateTime(timezone=True), nullable=True)
    arrival_deadline_timestamp = Column(DateTime(timezone=True), nullable=True)
    rider_confirmed = Column(Boolean, default=False, nullable=False)
    rider_identifier_hash = Column(String(64), nullable=True)

    created_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "passenger_count >= 1 AND passenger_count <= 4",
            name="ck_ride_requests_passengers",
        ),
        Index("idx_ride_requests_event_status", "event_id", "status", "created_at"),
        Index("idx_ride_requests_driver", "assigned_driver_id"),
        Index("idx_ride_requests_batch", "batch_id"),
        Index("idx_ride_requests_deadline", "status", "arrival_deadline_timestamp"),
    )


class RideBatchModel(Base):
    __tablename__ = "ride_batches"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    driver_id = Column(
        Integer, ForeignKey("drivers.id", ondelete="SET NULL"), nullable=True
    )
    status = Column(
        _enum(BatchStatus, "batch_status"),
        default=BatchStatus.PENDING,
        nullable=False,
    )
    total_passengers = Column(Integer, default=0, nullable=False)

    created_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("idx_ride_batches_event", "event_id"),
        Index("idx_ride_batches_driver_status", "driver_id", "status"),
    )


class RideBatchItemModel(Base):
    __tablename__ = "ride_batch_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(
        Integer, ForeignKey("ride_batches.id", ondelete="CASCADE"), nullable=False
    )
    ride_request_id = Column(
        Integer, ForeignKey("ride_requests.id", ondelete="CASCADE"), nullable=False
    )
    pickup_order_index = Column(Integer, nullable=False)
    estimated_arrival_time = Column(DateTime(timezone=True), nullable=True)
    picked_up = Column(Boolean, default=False, nullable=False)
    picked_up_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("batch_id", "ride_request_id", name="uq_batch_items_ride"),
        UniqueConstraint(
            "batch_id", "pickup_order_index", name="uq_batch_items_order"
        ),
        Index("idx_ride_batch_items_ride", "ride_request_id"),
    )


class RiderPenaltyModel(Base):
    __tablename__ = "rider_penalties"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    rider_identifier_hash = Column(String(64), nullable=False)
    no_show_count = Column(Integer, default=0, nullable=False)
    cooldown_until = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "event_id", "rider_identifier_hash", name="uq_rider_penalties_rider"
        ),
    )


class EmergencyEventModel(Base):
    __tablename__ = "emergency_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    ride_request_id = Column(
        Integer, ForeignKey("ride_requests.id", ondelete="SET NULL"), nullable=True
    )
    triggered_by = Column(_enum(EmergencyTrigger, "emergency_trigger"), nullable=False)
    triggered_by_name = Column(String(120), nullable=False)
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    resolved = Column(Boolean, default=False, nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(String(120), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("idx_emergency_events_event_resolved", "event_id", "resolved"),
    )


class RiderConsentModel(Base):
    __tablename__ = "rider_consents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    rider_identifier_hash = Column(String(64), nullable=False)
    consent_timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    ip_address = Column(String(64), nullable=True)

    created_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "event_id", "rider_identifier_hash", name="uq_rider_consents_rider"
        ),
    )
