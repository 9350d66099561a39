"""
Grid Clustering & Nearest-Neighbour Pickup Ordering
====================================================

1. **Spatial Binning**   -- waiting pickups are keyed by a 1/200 degree grid
   cell (``cluster_key``); every cell with rides becomes a cluster.
2. **Oldest First**      -- clusters are served in order of their oldest
   member's creation time.
3. **Greedy Fill**       -- rides of a cluster are added in creation order
   while the passenger sum fits the chosen driver's free seats.
4. **Pickup Order**      -- starting at the driver, repeatedly visit the
   nearest unvisited pickup.

Complexity
----------
Let N = waiting rides, k = rides in one batch.

* Binning:        O(N)
* Sorting:        O(C log C) for C clusters
* Greedy fill:    O(k)
* Pickup order:   O(k^2)

**Note:** nearest-neighbour is not TSP-optimal.  Batches are capped by
vehicle size (a handful of stops) so the simple heuristic is enough.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Protocol, Sequence

from .distance import DEFAULT_GRID_PRECISION, cluster_key, distance_km
from .entities import RideCluster


class PickupPoint(Protocol):
    id: int
    pickup_lat: float
    pickup_lng: float


class WaitingRide(PickupPoint, Protocol):
    passenger_count: int
    created_at: Optional[datetime]


@dataclass(frozen=True)
class PlannedStop:
    ride_id: int
    order: int
    lat: float
    lng: float
    leg_km: float


def cluster_rides(
    rides: Iterable[WaitingRide], precision: int = DEFAULT_GRID_PRECISION
) -> list[RideCluster]:
    """Group rides (already in creation order) by grid cell, oldest first."""
    clusters: dict[str, RideCluster] = {}
    for ride in rides:
        key = cluster_key(ride.pickup_lat, ride.pickup_lng, precision)
        cluster = clusters.get(key)
        if cluster is None:
            cluster = clusters[key] = RideCluster(cluster_key=key)
        cluster.add(
            ride.id,
            ride.pickup_lat,
            ride.pickup_lng,
            ride.passenger_count,
            ride.created_at,
        )

    # dicts keep insertion order, so ties fall back to first appearance
    return sorted(
        clusters.values(),
        key=lambda c: (c.oldest_created_at is None, c.oldest_created_at or 0),
    )


def select_rides_within_capacity(
    rides: Sequence[WaitingRide], available_capacity: int
) -> list[WaitingRide]:
    """Greedy fill in the given (creation) order; skips rides that overflow."""
    selected: list[WaitingRide] = []
    seats = 0
    for ride in rides:
        if seats + ride.passenger_count <= available_capacity:
            selected.append(ride)
            seats += ride.passenger_count
    return selected


def plan_pickup_order(
    start_lat: float, start_lng: float, rides: Sequence[PickupPoint]
) -> list[PlannedStop]:
    """Nearest-neighbour visiting order starting at the driver's position."""
    remaining = list(rides)
    plan: list[PlannedStop] = []
    cur_lat, cur_lng = start_lat, start_lng

    while remaining:
        nearest_idx = 0
        nearest_km = float("inf")
        for idx, ride in enumerate(remaining):
            km = distance_km(cur_lat, cur_lng, ride.pickup_lat, ride.pickup_lng)
            if km < nearest_km:
                nearest_km = km
                nearest_idx = idx

        ride = remaining.pop(nearest_idx)
        plan.append(
            PlannedStop(
                ride_id=ride.id,
                order=len(plan),
                lat=ride.pickup_lat,
                lng=ride.pickup_lng,
                leg_km=nearest_km,
            )
        )
        cur_lat, cur_lng = ride.pickup_lat, ride.pickup_lng

    return plan
