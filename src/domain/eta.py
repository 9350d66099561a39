"""
ETA heuristics used when no routing provider answers.

Formula
-------
fallback  = clamp(ceil(km / speed_kmh * 60 * traffic_buffer), min, max)
dispatch  = ceil(km / speed_kmh * 60)          (no buffer, no clamp)

The dispatch variant is what single-ride dispatch stamps on assignment; the
buffered variant backs the full estimator.
"""

from __future__ import annotations

import math

from .distance import distance_km
from .entities import EtaResult

AVERAGE_SPEED_KMH = 30.0
TRAFFIC_BUFFER = 1.2
MIN_ETA_MINUTES = 2
MAX_ETA_MINUTES = 60


def fallback_eta_minutes(
    km: float,
    average_speed_kmh: float = AVERAGE_SPEED_KMH,
    traffic_buffer: float = TRAFFIC_BUFFER,
    min_minutes: int = MIN_ETA_MINUTES,
    max_minutes: int = MAX_ETA_MINUTES,
) -> int:
    raw = km / average_speed_kmh * 60 * traffic_buffer
    return max(min_minutes, min(max_minutes, math.ceil(raw)))


def straight_line_eta_minutes(
    km: float, average_speed_kmh: float = AVERAGE_SPEED_KMH
) -> int:
    return math.ceil(km / average_speed_kmh * 60)


def fallback_eta(
    origin_lat: float,
    origin_lng: float,
    dest_lat: float,
    dest_lng: float,
    **params,
) -> EtaResult:
    km = distance_km(origin_lat, origin_lng, dest_lat, dest_lng)
    return EtaResult(
        eta_minutes=fallback_eta_minutes(km, **params),
        distance_km=km,
        source="fallback",
    )
