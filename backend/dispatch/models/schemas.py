from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Literal
from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Longest description the incident store accepts
MAX_DESCRIPTION_LENGTH = 1000


class IncidentType(str, Enum):
    """Categories a citizen report can be filed under."""
    CRIME = "crime"
    ACCIDENT = "accident"
    FIRE = "fire"
    MEDICAL = "medical"
    HAZARD = "hazard"
    OTHER = "other"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IncidentStatus(str, Enum):
    ACTIVE = "active"
    RESPONDING = "responding"
    RESOLVED = "resolved"


class UserRole(str, Enum):
    CITIZEN = "citizen"
    OFFICER = "officer"


class LatLng(BaseModel):
    """A WGS84 coordinate pair."""
    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)


# ── Voice pipeline ────────────────────────────────────────


class ParsedIncident(BaseModel):
    """Structured fields extracted from a voice transcript.

    `confidence` is the extraction confidence: how sure the extractor is about
    the categorized fields. It is unrelated to geocoding confidence.
    """
    model_config = ConfigDict(frozen=True)

    incident_type: IncidentType
    description: str
    location_name: str
    severity: Severity = Severity.MEDIUM
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    source: Literal["gemini", "fallback"] = "gemini"


class GeocodingResult(BaseModel):
    """A single geocoder candidate. `confidence` is the provider importance score."""
    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float
    display_name: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class ResolvedLocation(BaseModel):
    """Concrete coordinates for an extracted location phrase."""
    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float
    location_name: str


class VoiceParseRequest(BaseModel):
    transcript: str = Field(min_length=1, max_length=5000)
    caller_location: Optional[LatLng] = None


class TranscribeRequest(BaseModel):
    audio: str = Field(description="Base64-encoded audio clip of one utterance")
    format: str = Field(default="webm", description="webm, ogg, mp4 or wav")
    language: Optional[str] = None


class TranscribeResponse(BaseModel):
    transcript: str
    language: str


class VoiceDraft(BaseModel):
    """A pending voice report awaiting human confirmation."""
    id: str
    incident_type: IncidentType
    description: str
    latitude: float
    longitude: float
    location_name: str
    confidence: float = Field(ge=0.0, le=1.0)
    severity: Severity = Severity.MEDIUM
    transcript: str = ""
    low_confidence: bool = Field(default=False, description="True if extraction confidence is below threshold")
    created_at: datetime = Field(default_factory=utcnow)


class DraftUpdate(BaseModel):
    """In-place edits to a pending draft. Omitted fields are left untouched."""
    incident_type: Optional[IncidentType] = None
    description: Optional[str] = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)
    latitude: Optional[float] = Field(default=None, ge=-90.0, le=90.0)
    longitude: Optional[float] = Field(default=None, ge=-180.0, le=180.0)
    location_name: Optional[str] = None

    @field_validator("description")
    @classmethod
    def validate_description(cls, v):
        if v is not None and not v.strip():
            raise ValueError("description must not be empty")
        return v.strip() if v is not None else v


# ── Incidents ─────────────────────────────────────────────


class Incident(BaseModel):
    """A persisted incident report."""
    id: str
    user_id: str
    incident_type: IncidentType
    description: str
    latitude: float
    longitude: float
    location_name: Optional[str] = None
    status: IncidentStatus = IncidentStatus.ACTIVE
    reporter_name: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class IncidentCreate(BaseModel):
    """Map-click or quick-GPS report."""
    incident_type: IncidentType = IncidentType.OTHER
    description: str = Field(min_length=1, max_length=MAX_DESCRIPTION_LENGTH)
    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    location_name: Optional[str] = None

    @field_validator("description")
    @classmethod
    def validate_description(cls, v):
        if not v.strip():
            raise ValueError("description must not be empty")
        return v.strip()


class IncidentStatusUpdate(BaseModel):
    status: IncidentStatus


class IncidentChange(BaseModel):
    """A push from the incident store's live change feed."""
    kind: Literal["insert", "update", "delete"]
    incident: Incident


# ── Identity ──────────────────────────────────────────────


class Identity(BaseModel):
    """Caller identity as supplied by the upstream auth provider."""
    user_id: str
    display_name: Optional[str] = None
    role: UserRole = UserRole.CITIZEN

    @property
    def reporter_name(self) -> str:
        return self.display_name or "Anonymous"


# ── Proximity announcements ───────────────────────────────


class MonitoredPoint(BaseModel):
    """A location watched for nearby new incidents."""
    model_config = ConfigDict(frozen=True)

    location: LatLng
    label: str
    kind: Literal["user", "pinned"]
    key: str


class PinRequest(BaseModel):
    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)
    name: str = Field(min_length=1)


class Announcement(BaseModel):
    """A one-shot alert about a new incident near a monitored point."""
    incident_id: str
    point_key: str
    point_kind: Literal["user", "pinned"]
    distance_miles: float
    text: str
    audio_base64: Optional[str] = None
    speech_engine: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class PinReport(BaseModel):
    """Chat-only summary of incidents near a freshly pinned location."""
    point: MonitoredPoint
    incident_ids: List[str] = []
    text: str


# ── Assistant ─────────────────────────────────────────────


class AssistantQuery(BaseModel):
    query: str = Field(min_length=1, max_length=2000)
    caller_location: Optional[LatLng] = None
    language: str = Field(default="en", description="en, es or vi")


class AssistantResponse(BaseModel):
    answer: str
    source: Literal["gemini", "fallback"]
    incident_count: int = 0


class AnnouncementTestResponse(BaseModel):
    """Result of pushing one incident through the announcement voice path."""
    incident: Incident
    text: str
    audio_base64: Optional[str] = None
    speech_engine: str
    mock: bool = False


# ── Transport ─────────────────────────────────────────────


class WebSocketMessage(BaseModel):
    """WebSocket message format."""
    type: str
    data: Dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=utcnow)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: datetime = Field(default_factory=utcnow)
    version: str = "1.0.0"
    services: Dict[str, bool] = {}
