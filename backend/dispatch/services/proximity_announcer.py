"""
Proximity announcements for one running client session.

The announcer watches the live incident collection and the session's
monitored points (the user's GPS fix and an optional pinned search result)
and emits a one-shot alert for each genuinely new incident within the
proximity radius of a point it was already monitoring.
"""
import logging
import math
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Protocol, Set, Tuple

from dispatch.config import settings
from dispatch.models.schemas import (
    Announcement,
    Incident,
    IncidentChange,
    LatLng,
    MonitoredPoint,
    PinReport,
)

logger = logging.getLogger(__name__)

EARTH_RADIUS_MILES = 3959.0
MAX_ANNOUNCED_DESCRIPTION = 100
USER_POINT_LABEL = "your current location"
PINNED_POINT_LABEL = "your pinned location"

_ZIP_RE = re.compile(r"^\d{5}(-\d{4})?$")


def haversine_miles(a: LatLng, b: LatLng) -> float:
    """Great-circle distance between two points in miles."""
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def incident_point(incident: Incident) -> LatLng:
    return LatLng(lat=incident.latitude, lng=incident.longitude)


def clean_address_for_announcement(address: Optional[str], home_state: Optional[str] = None) -> str:
    """Shorten a geocoder display name to at most two meaningful segments."""
    if not address:
        return "unknown location"
    state = (home_state or settings.announcement_home_state).lower()
    parts = [part.strip() for part in address.split(",")]

    kept = []
    for part in parts:
        lower = part.lower()
        if _ZIP_RE.match(part):
            continue
        if "united states" in lower or "county" in lower:
            continue
        if state and state in lower and len(parts) > 3:
            continue
        kept.append(part)

    return ", ".join(kept[:2]) or parts[0] or "unknown location"


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'s' if count > 1 else ''} ago"


def format_time_ago(timestamp: datetime, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    minutes = int((now - timestamp).total_seconds() // 60)
    hours = minutes // 60
    days = hours // 24

    if minutes < 1:
        return "just now"
    if minutes < 60:
        return _plural(minutes, "minute")
    if hours < 24:
        return _plural(hours, "hour")
    if days < 7:
        return _plural(days, "day")
    return f"{timestamp.month}/{timestamp.day}/{timestamp.year}"


def build_announcement_text(
    incident: Incident,
    point_kind: str,
    distance_miles: float,
    now: Optional[datetime] = None,
    home_state: Optional[str] = None,
) -> str:
    where = PINNED_POINT_LABEL if point_kind == "pinned" else USER_POINT_LABEL
    description = (incident.description or "").strip()[:MAX_ANNOUNCED_DESCRIPTION]
    detail = f": {description}" if description else ""
    location = clean_address_for_announcement(incident.location_name, home_state)
    return (
        f"🚨 New incident near {where}! {incident.incident_type.value.upper()}{detail} "
        f"at {location}, {distance_miles:.1f} miles away, "
        f"reported {format_time_ago(incident.created_at, now)}."
    )


def user_point_key(location: LatLng) -> str:
    # Rounded so GPS jitter does not look like a new point
    return f"user-{location.lat:.3f}-{location.lng:.3f}"


def pinned_point_key(lat: float, lng: float) -> str:
    return f"pinned-{lat}-{lng}"


class Speaker(Protocol):
    async def speak(self, text: str): ...


class AnnouncerState(str, Enum):
    IDLE = "idle"
    MONITORING = "monitoring"
    ANNOUNCING = "announcing"


class ProximityAnnouncer:
    """
    Per-session notification state machine.

    `announced` grows monotonically for the life of the session: an incident
    is recorded once an announcement is attempted, whether or not speech
    succeeded, and is never announced again.
    """

    def __init__(
        self,
        speaker: Optional[Speaker] = None,
        radius_miles: Optional[float] = None,
        home_state: Optional[str] = None,
    ):
        self.speaker = speaker
        self.radius_miles = settings.proximity_radius_miles if radius_miles is None else radius_miles
        self.home_state = home_state or settings.announcement_home_state
        self.state = AnnouncerState.IDLE
        self.announced: Set[str] = set()
        self.log: List[Announcement] = []
        self.user_location: Optional[LatLng] = None
        self.pinned: Optional[MonitoredPoint] = None
        self._incidents: Dict[str, Incident] = {}
        self._monitored_keys: Set[str] = set()

    # ── Inputs ────────────────────────────────────────────

    @property
    def incidents(self) -> List[Incident]:
        return list(self._incidents.values())

    def set_incidents(self, incidents: Iterable[Incident]):
        """Replace the incident snapshot."""
        self._incidents = {incident.id: incident for incident in incidents}

    def apply_change(self, change: IncidentChange):
        """Fold one live-feed push into the snapshot."""
        if change.kind == "delete":
            self._incidents.pop(change.incident.id, None)
        elif change.kind == "insert":
            self._incidents = {change.incident.id: change.incident, **self._incidents}
        else:
            self._incidents[change.incident.id] = change.incident

    def set_user_location(self, location: Optional[LatLng]):
        """Record the latest GPS fix; None means GPS is unavailable."""
        self.user_location = location

    def pin_location(self, lat: float, lng: float, name: str) -> PinReport:
        """Pin a search result and summarize what is already near it."""
        point = MonitoredPoint(
            location=LatLng(lat=lat, lng=lng),
            label=name,
            kind="pinned",
            key=pinned_point_key(lat, lng),
        )
        self.pinned = point

        nearby = self.nearby(point.location)
        self.announced.update(incident.id for incident, _ in nearby)
        logger.info(f"Pinned '{name[:80]}' with {len(nearby)} nearby incident(s)")
        return PinReport(
            point=point,
            incident_ids=[incident.id for incident, _ in nearby],
            text=self._pin_report_text(name, nearby),
        )

    def clear_pin(self):
        """Drop the pin; every remaining point re-registers on the next tick."""
        self.pinned = None
        self._monitored_keys = set()

    # ── Evaluation ────────────────────────────────────────

    def current_points(self) -> List[MonitoredPoint]:
        points = []
        if self.pinned is not None:
            points.append(self.pinned)
        if self.user_location is not None:
            points.append(MonitoredPoint(
                location=self.user_location,
                label=USER_POINT_LABEL,
                kind="user",
                key=user_point_key(self.user_location),
            ))
        return points

    def nearby(self, location: LatLng) -> List[Tuple[Incident, float]]:
        """Incidents within the proximity radius of `location`, with distances."""
        matches = []
        for incident in self._incidents.values():
            distance = haversine_miles(location, incident_point(incident))
            if distance <= self.radius_miles:
                matches.append((incident, distance))
        return matches

    def _pending(self, points: List[MonitoredPoint], previously_monitored: Set[str]) -> List[Tuple[Incident, MonitoredPoint, float]]:
        pending = []
        queued: Set[str] = set()
        for point in points:
            if point.key not in previously_monitored:
                continue
            for incident, distance in self.nearby(point.location):
                if incident.id in self.announced or incident.id in queued:
                    continue
                queued.add(incident.id)
                pending.append((incident, point, distance))
        return pending

    async def evaluate(self, now: Optional[datetime] = None) -> List[Announcement]:
        """Recompute after any incident or monitored-point change.

        Safe to call repeatedly with unchanged inputs: nothing already in
        `announced` is emitted again.
        """
        points = self.current_points()
        if not points:
            self._monitored_keys = set()
            self.state = AnnouncerState.IDLE
            return []

        previously_monitored = set(self._monitored_keys)
        current_keys = {point.key for point in points}
        new_keys = current_keys - previously_monitored
        if new_keys:
            # Pre-existing incidents are never announced for a fresh point
            self.announced.update(self._incidents.keys())
            logger.debug(f"Registered monitored point(s): {sorted(new_keys)}")
        self._monitored_keys = current_keys
        self.state = AnnouncerState.MONITORING

        pending = self._pending(points, previously_monitored)
        if not pending:
            return []

        self.state = AnnouncerState.ANNOUNCING
        self.announced.update(incident.id for incident, _, _ in pending)
        emitted = []
        for incident, point, distance in pending:
            emitted.append(await self._announce(incident, point, distance, now))
        self.state = AnnouncerState.MONITORING
        return emitted

    async def _announce(self, incident: Incident, point: MonitoredPoint, distance: float, now: Optional[datetime]) -> Announcement:
        text = build_announcement_text(incident, point.kind, distance, now=now, home_state=self.home_state)
        audio_base64, engine = None, None
        if self.speaker is not None:
            try:
                spoken = await self.speaker.speak(text)
                audio_base64 = getattr(spoken, "audio_base64", None)
                engine = getattr(spoken, "engine", None)
            except Exception as e:
                logger.error(f"Speech error for incident {incident.id}: {e}")

        announcement = Announcement(
            incident_id=incident.id,
            point_key=point.key,
            point_kind=point.kind,
            distance_miles=round(distance, 2),
            text=text,
            audio_base64=audio_base64,
            speech_engine=engine,
        )
        self.log.append(announcement)
        logger.info(f"Announced incident {incident.id} near {point.kind} point ({distance:.1f} mi)")
        return announcement

    # ── Reports ───────────────────────────────────────────

    def _pin_report_text(self, name: str, nearby: List[Tuple[Incident, float]], now: Optional[datetime] = None) -> str:
        header = f"📍 Location pinned: {name}"
        if not nearby:
            return f"{header}\n\nNo incidents found within {self.radius_miles:g} miles of this location."

        noun = "incident" if len(nearby) == 1 else "incidents"
        lines = []
        for index, (incident, distance) in enumerate(nearby, start=1):
            lines.append(
                f"{index}. 🚨 {incident.incident_type.value.upper()}: {incident.description or 'No description'}\n"
                f"   📍 {incident.location_name or 'Location not specified'} ({distance:.1f} miles away)\n"
                f"   ⏰ {format_time_ago(incident.created_at, now)}"
            )
        return (
            f"{header}\n\nFound {len(nearby)} {noun} within {self.radius_miles:g} miles:\n\n"
            + "\n\n".join(lines)
        )
