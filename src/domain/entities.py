"""
Domain entities, value objects and errors.

Patterns used
-------------
- **State Pattern** on rides: ``plan_transition`` validates an edge of the
  ride lifecycle and returns an explicit ``RideTransitionUpdate`` listing
  exactly the fields that edge may set.  Persistence applies the update;
  nothing else is allowed to touch ``status``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from .enums import BATCH_TRANSITIONS, RIDE_TRANSITIONS, BatchStatus, RideStatus


# ── Errors ────────────────────────────────────────────────────────────


class DispatchError(Exception):
    """Base class for errors surfaced to callers of the engine."""


class InvalidTransition(DispatchError):
    """Raised when a status change violates a state machine."""


class NotFound(DispatchError):
    """A referenced ride / driver / batch / event does not exist."""


class CapacityExceeded(DispatchError):
    """A batch or assignment would exceed the driver's capacity."""


class InvalidRideRequest(DispatchError):
    """A ride request failed validation (e.g. passenger count)."""


class EventInactive(DispatchError):
    """The event is not accepting ride requests."""


class ConsentRequired(DispatchError):
    """The rider has not accepted the terms for this event."""


class CooldownActive(DispatchError):
    """The rider is suspended after repeated no-shows."""

    def __init__(self, remaining_minutes: int):
        super().__init__(
            f"Rider is in cooldown for another {remaining_minutes} minute(s)"
        )
        self.remaining_minutes = remaining_minutes


class ExternalProviderUnavailable(DispatchError):
    """Routing provider failed or timed out.  Always recovered internally."""


# ── Time helpers ──────────────────────────────────────────────────────


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps read back from drivers that drop tz."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class RideTransitionUpdate:
    """Fields a single ride transition writes.  ``None`` means untouched."""

    status: RideStatus
    assigned_driver_id: Optional[int] = None
    clear_driver: bool = False
    arrival_timestamp: Optional[datetime] = None
    arrival_deadline_timestamp: Optional[datetime] = None
    completion_timestamp: Optional[datetime] = None
    rider_confirmed: Optional[bool] = None

    def values(self) -> dict:
        """Column values for the persistence layer."""
        data: dict = {"status": self.status}
        if self.assigned_driver_id is not None:
            data["assigned_driver_id"] = self.assigned_driver_id
        if self.clear_driver:
            data["assigned_driver_id"] = None
        for name in (
            "arrival_timestamp",
            "arrival_deadline_timestamp",
            "completion_timestamp",
            "rider_confirmed",
        ):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        return data


def is_valid_transition(current: RideStatus, new: RideStatus) -> bool:
    return new in RIDE_TRANSITIONS.get(RideStatus(current), set())


def is_valid_batch_transition(current: BatchStatus, new: BatchStatus) -> bool:
    return new in BATCH_TRANSITIONS.get(BatchStatus(current), set())


def plan_transition(
    current: RideStatus,
    new: RideStatus,
    *,
    now: datetime,
    no_show_window_minutes: int = 3,
    driver_id: Optional[int] = None,
) -> RideTransitionUpdate:
    """Validate ``current -> new`` and build the update it implies."""
    current, new = RideStatus(current), RideStatus(new)
    if not is_valid_transition(current, new):
        raise InvalidTransition(
            f"Invalid transition from {current.value} to {new.value}"
        )

    if new is RideStatus.ASSIGNED:
        if driver_id is None:
            raise InvalidTransition("Assigning a ride requires a driver")
        return RideTransitionUpdate(status=new, assigned_driver_id=driver_id)

    if new is RideStatus.ARRIVED:
        return RideTransitionUpdate(
            status=new,
            arrival_timestamp=now,
            arrival_deadline_timestamp=now
            + timedelta(minutes=no_show_window_minutes),
            rider_confirmed=False,
        )

    if new is RideStatus.IN_PROGRESS:
        return RideTransitionUpdate(status=new, rider_confirmed=True)

    if new is RideStatus.COMPLETED:
        return RideTransitionUpdate(
            status=new, completion_timestamp=now, clear_driver=True
        )

    # cancelled / no_show
    return RideTransitionUpdate(status=new, clear_driver=True)


# ── Results ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class EtaResult:
    eta_minutes: int
    distance_km: float
    source: str  # "routing_provider" | "fallback"


@dataclass(frozen=True)
class RouteEstimate:
    duration_seconds: float
    distance_meters: float


@dataclass
class RideCluster:
    cluster_key: str
    ride_ids: list[int] = field(default_factory=list)
    total_passengers: int = 0
    oldest_created_at: Optional[datetime] = None
    avg_lat: float = 0.0
    avg_lng: float = 0.0

    def add(self, ride_id: int, lat: float, lng: float, passengers: int,
            created_at: Optional[datetime]) -> None:
        """Append a member, updating the running average in place."""
        self.ride_ids.append(ride_id)
        self.total_passengers += passengers
        n = len(self.ride_ids)
        self.avg_lat = (self.avg_lat * (n - 1) + lat) / n
        self.avg_lng = (self.avg_lng * (n - 1) + lng) / n
        if created_at is not None and (
            self.oldest_created_at is None or created_at < self.oldest_created_at
        ):
            self.oldest_created_at = created_at


@dataclass(frozen=True)
class CooldownStatus:
    is_in_cooldown: bool
    cooldown_until: Optional[datetime] = None
    remaining_minutes: Optional[int] = None


@dataclass(frozen=True)
class DispatchResult:
    assigned: bool
    ride_id: Optional[int] = None
    driver_id: Optional[int] = None
    distance_km: Optional[float] = None
    eta_minutes: Optional[int] = None


@dataclass(frozen=True)
class BatchDispatchResult:
    batches_created: int = 0
    rides_assigned: int = 0
