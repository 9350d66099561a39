"""
Driving-time lookups against the Google Distance Matrix JSON API.

Every failure mode (timeout, transport error, 5xx, non-OK element) surfaces
as ``ExternalProviderUnavailable`` so callers have a single thing to catch.
"""

from __future__ import annotations

import httpx

from src.config import settings
from src.domain.entities import ExternalProviderUnavailable, RouteEstimate


class RoutingClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = settings.routing_base_url,
        timeout: float = settings.routing_timeout_seconds,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout

    async def get_route(
        self, origin: tuple[float, float], destination: tuple[float, float]
    ) -> RouteEstimate:
        origin_lat, origin_lng = origin
        dest_lat, dest_lng = destination
        params = {
            "origins": f"{origin_lat},{origin_lng}",
            "destinations": f"{dest_lat},{dest_lng}",
            "mode": "driving",
            "key": self.api_key,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(self.base_url, params=params)
        except httpx.TimeoutException as e:
            raise ExternalProviderUnavailable(
                f"Routing request timed out after {self.timeout}s"
            ) from e
        except httpx.HTTPError as e:
            raise ExternalProviderUnavailable(f"Routing network error: {e}") from e

        if response.status_code >= 400:
            raise ExternalProviderUnavailable(
                f"Routing provider error: {response.status_code}"
            )

        try:
            data = response.json()
            element = data["rows"][0]["elements"][0]
            if data.get("status") != "OK" or element.get("status") != "OK":
                raise ExternalProviderUnavailable(
                    f"Routing provider returned {data.get('status')}/"
                    f"{element.get('status')}"
                )
            return RouteEstimate(
                duration_seconds=float(element["duration"]["value"]),
                distance_meters=float(element["distance"]["value"]),
            )
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExternalProviderUnavailable(
                f"Malformed routing response: {e}"
            ) from e


def build_routing_client() -> RoutingClient | None:
    """Configured client, or ``None`` when no API key is set."""
    if not settings.routing_api_key:
        return None
    return RoutingClient(settings.routing_api_key)
