"""
Location resolution for voice reports.
Turns an extracted location phrase into concrete coordinates, preferring the
caller's own GPS over a low-confidence geocoder match.
"""
import logging
import re
from typing import Optional

from dispatch.config import settings
from dispatch.models.schemas import LatLng, ResolvedLocation
from dispatch.services.geocoding import GeocodingService, geocoding_service

logger = logging.getLogger(__name__)

SELF_REFERENCE_PHRASES = ("current location", "here", "my location", "this location")
_SELF_REFERENCE_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(p) for p in SELF_REFERENCE_PHRASES) + r")\b",
    re.IGNORECASE,
)
CURRENT_LOCATION_LABEL = "Current Location"

UNRESOLVABLE_MESSAGE = (
    "Could not determine location. Please try again with a specific street name or enable GPS."
)


class LocationUnresolvable(RuntimeError):
    """Neither the geocoder nor the caller's GPS produced coordinates."""

    def __init__(self, location_name: str, message: str = UNRESOLVABLE_MESSAGE):
        super().__init__(message)
        self.location_name = location_name
        self.message = message


def is_self_reference(location_name: str) -> bool:
    return bool(_SELF_REFERENCE_RE.search(location_name or ""))


class LocationResolver:
    """Resolves location phrases with a confidence-gated geocoder fallback."""

    def __init__(self, geocoder: Optional[GeocodingService] = None, confidence_threshold: Optional[float] = None):
        self.geocoder = geocoder or geocoding_service
        self.confidence_threshold = (
            settings.geocoding_confidence_threshold
            if confidence_threshold is None
            else confidence_threshold
        )

    async def _caller_fallback(self, caller_location: LatLng, label: str) -> ResolvedLocation:
        address = await self.geocoder.reverse_geocode(caller_location.lat, caller_location.lng)
        return ResolvedLocation(
            lat=caller_location.lat,
            lng=caller_location.lng,
            location_name=address or label,
        )

    async def resolve(self, location_name: str, caller_location: Optional[LatLng] = None) -> Optional[ResolvedLocation]:
        """Return coordinates for `location_name`, or None when unresolvable."""
        if is_self_reference(location_name):
            if caller_location is None:
                logger.info("Self-referential location without caller GPS")
                return None
            return await self._caller_fallback(caller_location, CURRENT_LOCATION_LABEL)

        geocoded = await self.geocoder.geocode(location_name, near=caller_location)
        if geocoded and geocoded.confidence > self.confidence_threshold:
            logger.info(
                f"Resolved '{location_name[:80]}' via geocoder (confidence={geocoded.confidence:.2f})"
            )
            return ResolvedLocation(
                lat=geocoded.lat,
                lng=geocoded.lng,
                location_name=geocoded.display_name,
            )

        if caller_location is not None:
            logger.info(
                f"Geocoding for '{location_name[:80]}' absent or low confidence, using caller GPS"
            )
            return await self._caller_fallback(caller_location, location_name)

        logger.warning(f"Location '{location_name[:80]}' is unresolvable")
        return None

    async def resolve_or_raise(self, location_name: str, caller_location: Optional[LatLng] = None) -> ResolvedLocation:
        resolved = await self.resolve(location_name, caller_location)
        if resolved is None:
            raise LocationUnresolvable(location_name)
        return resolved
