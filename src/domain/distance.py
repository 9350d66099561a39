"""
Geo utilities: great-circle distance and the pickup clustering grid.

Assumption
----------
Distances are straight-line (Haversine).  Road distances come only from
the optional routing provider used by the ETA estimator; dispatch and
pickup ordering always use this module.

Complexity: O(1) per call.
"""

import math

EARTH_RADIUS_KM = 6_371.0
DEFAULT_GRID_PRECISION = 200  # 1/200 deg ~ 555 m cells


def distance_km(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> float:
    """Return the great-circle distance in **km** between two points."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def cluster_key(
    lat: float, lng: float, precision: int = DEFAULT_GRID_PRECISION
) -> str:
    """
    Grid cell key for a pickup point.

    Points in the same cell always share a key.  Two very close points may
    straddle a cell boundary and land in adjacent cells; that is accepted.
    """
    return f"{_round_half_up(lat * precision)}:{_round_half_up(lng * precision)}"
