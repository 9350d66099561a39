"""
Read-side statistics over one event's ride and batch history.

All averages are over *completed* rides that carry the relevant timestamps,
which is why they depend on the state machine stamping arrival and
completion times.  An empty history yields zeros everywhere.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Protocol, Sequence

from .entities import as_utc
from .enums import BatchStatus, RideStatus


class RideRecord(Protocol):
    status: RideStatus
    passenger_count: int
    batch_id: Optional[int]
    created_at: Optional[datetime]
    arrival_timestamp: Optional[datetime]
    completion_timestamp: Optional[datetime]


class BatchRecord(Protocol):
    status: BatchStatus
    total_passengers: int


@dataclass(frozen=True)
class EventAnalytics:
    total_rides: int = 0
    completed_rides: int = 0
    cancelled_rides: int = 0
    no_show_rides: int = 0
    avg_wait_time_minutes: float = 0.0
    avg_ride_duration_minutes: float = 0.0
    peak_hour: int = 0
    active_drivers: int = 0
    total_passengers: int = 0
    total_passengers_driven: int = 0
    total_batches: int = 0
    completed_batches: int = 0
    avg_passengers_per_batch: float = 0.0
    avg_rides_per_batch: float = 0.0
    batch_efficiency: float = 0.0


def _minutes_between(start: datetime, end: datetime) -> float:
    return (as_utc(end) - as_utc(start)).total_seconds() / 60


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _round1(value: float) -> float:
    return round(value * 10) / 10


def peak_hour(rides: Iterable[RideRecord]) -> int:
    """
    Hour of day with most ride creations; the earliest hour wins ties.

    Buckets on the UTC hour of ``created_at``.  Events carry no timezone, so
    a dashboard wanting local hours shifts the result itself.
    """
    counts = Counter(r.created_at.hour for r in rides if r.created_at)
    if not counts:
        return 0
    best = max(counts.values())
    return min(hour for hour, count in counts.items() if count == best)


def compute_event_analytics(
    rides: Sequence[RideRecord],
    batches: Sequence[BatchRecord] = (),
    batch_item_counts: Sequence[int] = (),
    active_drivers: int = 0,
) -> EventAnalytics:
    if not rides:
        return EventAnalytics()

    completed = [r for r in rides if RideStatus(r.status) is RideStatus.COMPLETED]
    cancelled = [r for r in rides if RideStatus(r.status) is RideStatus.CANCELLED]
    no_show = [r for r in rides if RideStatus(r.status) is RideStatus.NO_SHOW]

    waits = [
        _minutes_between(r.created_at, r.arrival_timestamp)
        for r in completed
        if r.created_at and r.arrival_timestamp
    ]
    durations = [
        _minutes_between(r.arrival_timestamp, r.completion_timestamp)
        for r in completed
        if r.arrival_timestamp and r.completion_timestamp
    ]

    total_batches = len(batches)
    completed_batches = sum(
        1 for b in batches if BatchStatus(b.status) is BatchStatus.COMPLETED
    )
    batch_passengers = sum(b.total_passengers or 0 for b in batches)
    batch_rides = sum(batch_item_counts)

    batched_completed = sum(1 for r in completed if r.batch_id)
    efficiency = batched_completed / len(completed) * 100 if completed else 0.0

    return EventAnalytics(
        total_rides=len(rides),
        completed_rides=len(completed),
        cancelled_rides=len(cancelled),
        no_show_rides=len(no_show),
        avg_wait_time_minutes=_round1(_mean(waits)),
        avg_ride_duration_minutes=_round1(_mean(durations)),
        peak_hour=peak_hour(rides),
        active_drivers=active_drivers,
        total_passengers=sum(r.passenger_count or 0 for r in rides),
        total_passengers_driven=sum(r.passenger_count or 0 for r in completed),
        total_batches=total_batches,
        completed_batches=completed_batches,
        avg_passengers_per_batch=_round1(
            batch_passengers / total_batches if total_batches else 0.0
        ),
        avg_rides_per_batch=_round1(
            batch_rides / total_batches if total_batches else 0.0
        ),
        batch_efficiency=_round1(efficiency),
    )


def ride_volume_by_hour(rides: Iterable[RideRecord]) -> list[dict]:
    counts = Counter(r.created_at.hour for r in rides if r.created_at)
    return [{"hour": hour, "count": counts.get(hour, 0)} for hour in range(24)]


def ride_status_breakdown(rides: Iterable[RideRecord]) -> list[dict]:
    counts = Counter(RideStatus(r.status).value for r in rides)
    return [{"status": status, "count": count} for status, count in counts.items()]
