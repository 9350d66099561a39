"""
ETA estimator.

Asks the routing provider first and falls back to the straight-line
heuristic (``src.domain.eta``) whenever the provider is unconfigured or
unavailable.  Provider failures never escape this module.
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.domain.entities import (
    EtaResult,
    ExternalProviderUnavailable,
    NotFound,
    utcnow,
)
from src.domain.enums import RideStatus
from src.domain.eta import fallback_eta
from src.infrastructure.repositories import (
    BatchRepository,
    DriverRepository,
    RideRepository,
)
from src.infrastructure.routing_client import RoutingClient

logger = logging.getLogger(__name__)


class EtaEstimator:
    def __init__(
        self,
        routing_client: Optional[RoutingClient] = None,
        *,
        average_speed_kmh: float = settings.average_speed_kmh,
        traffic_buffer: float = settings.traffic_buffer,
        min_minutes: int = settings.min_eta_minutes,
        max_minutes: int = settings.max_eta_minutes,
    ):
        self.routing_client = routing_client
        self.average_speed_kmh = average_speed_kmh
        self.traffic_buffer = traffic_buffer
        self.min_minutes = min_minutes
        self.max_minutes = max_minutes

    async def calculate_eta(
        self,
        origin: tuple[float, float],
        destination: tuple[float, float],
    ) -> EtaResult:
        if self.routing_client is not None:
            try:
                route = await self.routing_client.get_route(origin, destination)
                return EtaResult(
                    eta_minutes=math.ceil(route.duration_seconds / 60),
                    distance_km=route.distance_meters / 1000,
                    source="routing_provider",
                )
            except ExternalProviderUnavailable as e:
                logger.debug("Routing provider unavailable, using fallback: %s", e)

        return fallback_eta(
            origin[0],
            origin[1],
            destination[0],
            destination[1],
            average_speed_kmh=self.average_speed_kmh,
            traffic_buffer=self.traffic_buffer,
            min_minutes=self.min_minutes,
            max_minutes=self.max_minutes,
        )

    async def calculate_batch_etas(
        self,
        start: tuple[float, float],
        stops: Sequence[tuple[float, float]],
    ) -> list[int]:
        """Cumulative minutes to each stop, each leg starting at the last stop."""
        cumulative: list[int] = []
        total = 0
        position = start
        for stop in stops:
            total += (await self.calculate_eta(position, stop)).eta_minutes
            cumulative.append(total)
            position = stop
        return cumulative


class EtaService:
    """Persists estimator output onto rides and batch items."""

    def __init__(self, session: AsyncSession, estimator: EtaEstimator):
        self.session = session
        self.estimator = estimator
        self.rides = RideRepository(session)
        self.drivers = DriverRepository(session)
        self.batches = BatchRepository(session)

    async def update_ride_eta(self, ride_id: int) -> Optional[int]:
        """Store ``driver_eta_minutes``; ``None`` if there is no located driver."""
        ride = await self.rides.get_by_id(ride_id)
        if ride is None:
            raise NotFound(f"Ride {ride_id} not found")
        if ride.assigned_driver_id is None:
            return None

        driver = await self.drivers.get_by_id(ride.assigned_driver_id)
        if driver is None or driver.current_lat is None or driver.current_lng is None:
            return None

        result = await self.estimator.calculate_eta(
            (driver.current_lat, driver.current_lng),
            (ride.pickup_lat, ride.pickup_lng),
        )
        await self.rides.update(ride, driver_eta_minutes=result.eta_minutes)
        return result.eta_minutes

    async def update_all_active_etas(self, event_id: int) -> int:
        """Refresh every assigned / arrived ride; returns how many were updated."""
        rides = await self.rides.get_by_statuses(
            event_id, (RideStatus.ASSIGNED, RideStatus.ARRIVED)
        )
        updated = 0
        for ride in rides:
            if await self.update_ride_eta(ride.id) is not None:
                updated += 1
        return updated

    async def update_batch_etas(self, batch_id: int) -> list[int]:
        batch = await self.batches.get_by_id(batch_id)
        if batch is None:
            raise NotFound(f"Batch {batch_id} not found")
        if batch.driver_id is None:
            return []
        driver = await self.drivers.get_by_id(batch.driver_id)
        if driver is None or driver.current_lat is None or driver.current_lng is None:
            return []

        items = await self.batches.get_items(batch_id)
        rides = {r.id: r for r in await self.rides.get_in_batch(batch_id)}
        pairs = [(item, rides[item.ride_request_id]) for item in items]

        etas = await self.estimator.calculate_batch_etas(
            (driver.current_lat, driver.current_lng),
            [(ride.pickup_lat, ride.pickup_lng) for _, ride in pairs],
        )
        now = utcnow()
        for (item, ride), minutes in zip(pairs, etas):
            await self.batches.update_item(
                item,
                batch.event_id,
                estimated_arrival_time=now + timedelta(minutes=minutes),
            )
            await self.rides.update(ride, driver_eta_minutes=minutes)
        return etas
