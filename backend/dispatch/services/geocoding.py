"""
Forward/reverse geocoding against OpenStreetMap Nominatim.
Nominatim requires an identifying User-Agent and allows at most one request
per second, so every call goes through a shared throttle.
"""
import asyncio
import logging
import math
import time
from typing import List, Optional

import httpx

from dispatch.config import settings
from dispatch.models.schemas import GeocodingResult, LatLng

logger = logging.getLogger(__name__)

MILES_PER_DEGREE_LAT = 69.0


def compute_viewbox(center: LatLng, radius_miles: float) -> str:
    """Bounding box around `center` as Nominatim's "left,top,right,bottom"."""
    lat_delta = radius_miles / MILES_PER_DEGREE_LAT
    cos_lat = max(math.cos(math.radians(center.lat)), 1e-6)
    lng_delta = radius_miles / (MILES_PER_DEGREE_LAT * cos_lat)
    left = center.lng - lng_delta
    top = center.lat + lat_delta
    right = center.lng + lng_delta
    bottom = center.lat - lat_delta
    return f"{left},{top},{right},{bottom}"


def importance_to_confidence(importance) -> float:
    """Provider importance score clamped to [0, 1]; absent or invalid -> 0.5."""
    try:
        value = float(importance)
    except (TypeError, ValueError):
        return 0.5
    if math.isnan(value) or value == 0:
        return 0.5
    return max(0.0, min(1.0, value))


def _to_result(item: dict) -> Optional[GeocodingResult]:
    try:
        return GeocodingResult(
            lat=float(item["lat"]),
            lng=float(item["lon"]),
            display_name=item.get("display_name") or "",
            confidence=importance_to_confidence(item.get("importance")),
        )
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Skipping malformed geocoding candidate: {e}")
        return None


class GeocodingService:
    """Async Nominatim client with request throttling."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        user_agent: Optional[str] = None,
        min_interval_seconds: Optional[float] = None,
    ):
        self.base_url = (base_url or settings.geocoding_base_url).rstrip("/")
        self.user_agent = user_agent or settings.geocoding_user_agent
        self.min_interval_seconds = (
            settings.geocoding_min_interval_seconds
            if min_interval_seconds is None
            else min_interval_seconds
        )
        self._client = client
        self._owns_client = client is None
        self._throttle_lock = asyncio.Lock()
        self._last_request_at = 0.0

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=settings.geocoding_timeout_seconds,
                headers={"User-Agent": self.user_agent},
            )
        return self._client

    async def _get_json(self, path: str, params: dict):
        """GET a Nominatim endpoint, honouring the per-second request limit."""
        async with self._throttle_lock:
            wait = self.min_interval_seconds - (time.monotonic() - self._last_request_at)
            if wait > 0:
                await asyncio.sleep(wait)
            try:
                response = await self._get_client().get(
                    f"{self.base_url}{path}",
                    params=params,
                    headers={"User-Agent": self.user_agent},
                )
            finally:
                self._last_request_at = time.monotonic()
        response.raise_for_status()
        return response.json()

    async def search(
        self,
        query: str,
        limit: int = 5,
        near: Optional[LatLng] = None,
        radius_miles: Optional[float] = None,
    ) -> List[GeocodingResult]:
        """Return up to `limit` candidates for a free-text query."""
        if not query or not query.strip():
            return []

        params = {
            "q": query.strip(),
            "format": "json",
            "limit": str(limit),
            "addressdetails": "1",
        }
        if near is not None:
            params["lat"] = str(near.lat)
            params["lon"] = str(near.lng)
            params["bounded"] = "1"
            params["viewbox"] = compute_viewbox(
                near, radius_miles or settings.geocoding_bias_radius_miles
            )

        try:
            data = await self._get_json("/search", params)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Geocoding error for '{query[:80]}': {e}")
            return []

        if not isinstance(data, list):
            return []
        results = [_to_result(item) for item in data if isinstance(item, dict)]
        return [r for r in results if r is not None]

    async def geocode(self, location_name: str, near: Optional[LatLng] = None) -> Optional[GeocodingResult]:
        """Top candidate for a place name, biased towards `near` when given."""
        results = await self.search(location_name, limit=1, near=near)
        if not results:
            logger.info(f"No geocoding match for '{location_name[:80]}'")
            return None
        return results[0]

    async def reverse_geocode(self, lat: float, lng: float) -> Optional[str]:
        """Display name for a coordinate pair, or None."""
        params = {
            "format": "json",
            "lat": str(lat),
            "lon": str(lng),
            "addressdetails": "1",
        }
        try:
            data = await self._get_json("/reverse", params)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Reverse geocoding error for {lat},{lng}: {e}")
            return None

        if not isinstance(data, dict) or not data.get("display_name"):
            return None
        return data["display_name"]

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def health_check(self) -> bool:
        return bool(self.base_url)


# Global singleton
geocoding_service = GeocodingService()
