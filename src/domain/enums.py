"""Domain enumerations and state-transition rules."""

import enum


class RideStatus(str, enum.Enum):
    WAITING = "waiting"
    ASSIGNED = "assigned"
    ARRIVED = "arrived"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


# State machine: maps current status -> set of valid next statuses
RIDE_TRANSITIONS: dict[RideStatus, set[RideStatus]] = {
    RideStatus.WAITING: {RideStatus.ASSIGNED, RideStatus.CANCELLED},
    RideStatus.ASSIGNED: {
        RideStatus.ARRIVED,
        RideStatus.CANCELLED,
        RideStatus.NO_SHOW,
    },
    RideStatus.ARRIVED: {
        RideStatus.IN_PROGRESS,
        RideStatus.CANCELLED,
        RideStatus.NO_SHOW,
    },
    RideStatus.IN_PROGRESS: {RideStatus.COMPLETED, RideStatus.CANCELLED},
    RideStatus.COMPLETED: set(),
    RideStatus.CANCELLED: set(),
    RideStatus.NO_SHOW: set(),
}

TERMINAL_RIDE_STATUSES = frozenset(
    {RideStatus.COMPLETED, RideStatus.CANCELLED, RideStatus.NO_SHOW}
)

# Statuses in which a ride holds a driver
DRIVER_HOLDING_STATUSES = frozenset(
    {RideStatus.ASSIGNED, RideStatus.ARRIVED, RideStatus.IN_PROGRESS}
)


class DriverStatus(str, enum.Enum):
    OFFLINE = "offline"
    AVAILABLE = "available"
    ASSIGNED = "assigned"


class BatchStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"  # all pickups done, en route to drop-offs
    COMPLETED = "completed"
    CANCELLED = "cancelled"


BATCH_TRANSITIONS: dict[BatchStatus, set[BatchStatus]] = {
    BatchStatus.PENDING: {BatchStatus.IN_PROGRESS, BatchStatus.CANCELLED},
    BatchStatus.IN_PROGRESS: {BatchStatus.COMPLETED, BatchStatus.CANCELLED},
    BatchStatus.COMPLETED: set(),
    BatchStatus.CANCELLED: set(),
}

ACTIVE_BATCH_STATUSES = frozenset({BatchStatus.PENDING, BatchStatus.IN_PROGRESS})


class EmergencyTrigger(str, enum.Enum):
    RIDER = "rider"
    DRIVER = "driver"
