import base64
import binascii
import logging
from typing import List, Optional
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from dispatch.models.schemas import (
    AnnouncementTestResponse,
    AssistantQuery,
    AssistantResponse,
    DraftUpdate,
    GeocodingResult,
    HealthResponse,
    Identity,
    Incident,
    IncidentCreate,
    IncidentStatus,
    IncidentStatusUpdate,
    IncidentType,
    LatLng,
    ParsedIncident,
    TranscribeRequest,
    TranscribeResponse,
    VoiceDraft,
    VoiceParseRequest,
)
from dispatch.agents.incident_assistant import IncidentAssistant, incident_assistant
from dispatch.api.auth import require_identity, require_officer
from dispatch.services.confirmation import (
    ConfirmationGate,
    DraftNotFound,
    DraftValidationError,
    confirmation_gate,
)
from dispatch.services.database import IncidentPersistenceError, IncidentStore, get_incident_store
from dispatch.services.geocoding import GeocodingService, geocoding_service
from dispatch.services.location_resolver import LocationUnresolvable
from dispatch.services.speech_capture import (
    CaptureError,
    CaptureErrorKind,
    GeminiTranscriber,
    SpeechCapture,
    get_transcriber,
)
from dispatch.services.tts_service import TTSService, tts_service
from dispatch.services.voice_pipeline import VoiceReportPipeline, get_voice_pipeline

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_LIST_LIMIT = 500
MAX_SEARCH_RESULTS = 10

CAPTURE_ERROR_STATUS = {
    CaptureErrorKind.NO_SPEECH: status.HTTP_422_UNPROCESSABLE_ENTITY,
    CaptureErrorKind.NOT_SUPPORTED: status.HTTP_503_SERVICE_UNAVAILABLE,
    CaptureErrorKind.PERMISSION_DENIED: status.HTTP_503_SERVICE_UNAVAILABLE,
    CaptureErrorKind.OTHER: status.HTTP_503_SERVICE_UNAVAILABLE,
}


# ── Dependency providers (overridable in tests) ───────────


def get_store() -> IncidentStore:
    return get_incident_store()


def get_gate() -> ConfirmationGate:
    return confirmation_gate


def get_pipeline() -> VoiceReportPipeline:
    return get_voice_pipeline()


def get_geocoder() -> GeocodingService:
    return geocoding_service


def get_assistant() -> IncidentAssistant:
    return incident_assistant


def get_speaker() -> TTSService:
    return tts_service


def get_speech_transcriber() -> GeminiTranscriber:
    return get_transcriber()


def _guard_limit(limit: Optional[int]) -> Optional[int]:
    """Clamp list limits to a safe range."""
    if limit is None:
        return None
    return max(1, min(limit, MAX_LIST_LIMIT))


def format_coordinates(lat: float, lng: float) -> str:
    return f"{lat:.4f}, {lng:.4f}"


# ── Health ────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check(
    store: IncidentStore = Depends(get_store),
    geocoder: GeocodingService = Depends(get_geocoder),
    assistant: IncidentAssistant = Depends(get_assistant),
    speaker: TTSService = Depends(get_speaker),
):
    """Health check endpoint."""
    services = {
        "database": await store.health_check(),
        "geocoding": geocoder.health_check(),
        "ai": assistant.client is not None,
        "tts": speaker.health_check(),
    }
    # AI and TTS have local fallbacks; only the store and geocoder are essential
    essential = services["database"] and services["geocoding"]
    return HealthResponse(
        status="healthy" if all(services.values()) else ("degraded" if essential else "unhealthy"),
        services=services,
    )


# ── Voice reports ─────────────────────────────────────────


@router.post("/voice/transcribe", response_model=TranscribeResponse)
async def transcribe_voice(
    request: TranscribeRequest,
    transcriber: GeminiTranscriber = Depends(get_speech_transcriber),
):
    """Single-shot transcription of one recorded utterance."""
    try:
        audio_bytes = base64.b64decode(request.audio, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Audio must be base64-encoded")

    capture = SpeechCapture(transcriber, language=request.language)
    try:
        transcript = await capture.start_listening(audio_bytes, request.format)
    except CaptureError as e:
        raise HTTPException(status_code=CAPTURE_ERROR_STATUS[e.kind], detail=e.to_dict())

    return TranscribeResponse(transcript=transcript or "", language=capture.language)


@router.post("/voice/parse", response_model=ParsedIncident)
async def parse_voice(
    request: VoiceParseRequest,
    pipeline: VoiceReportPipeline = Depends(get_pipeline),
):
    """Extract structured incident fields from a transcript without drafting."""
    return await pipeline.extractor.parse_voice(request.transcript, request.caller_location)


@router.post("/voice/reports", response_model=VoiceDraft, status_code=status.HTTP_201_CREATED)
async def create_voice_report(
    request: VoiceParseRequest,
    pipeline: VoiceReportPipeline = Depends(get_pipeline),
):
    """Run extraction and location resolution, returning a draft for confirmation."""
    try:
        return await pipeline.create_draft(request.transcript, request.caller_location)
    except LocationUnresolvable as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message)


@router.get("/voice/drafts/{draft_id}", response_model=VoiceDraft)
async def get_draft(draft_id: str, gate: ConfirmationGate = Depends(get_gate)):
    try:
        return gate.get(draft_id)
    except DraftNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Draft not found")


@router.patch("/voice/drafts/{draft_id}", response_model=VoiceDraft)
async def edit_draft(draft_id: str, update: DraftUpdate, gate: ConfirmationGate = Depends(get_gate)):
    """Edit draft fields in place before submitting."""
    try:
        return gate.edit(draft_id, update)
    except DraftNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Draft not found")
    except DraftValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.delete("/voice/drafts/{draft_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_draft(draft_id: str, gate: ConfirmationGate = Depends(get_gate)):
    if not gate.cancel(draft_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Draft not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/voice/drafts/{draft_id}/submit", response_model=Incident, status_code=status.HTTP_201_CREATED)
async def submit_draft(
    draft_id: str,
    identity: Identity = Depends(require_identity),
    gate: ConfirmationGate = Depends(get_gate),
):
    """Persist a confirmed draft. On failure the draft stays available for re-submit."""
    try:
        return await gate.submit(draft_id, identity)
    except DraftNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Draft not found")
    except DraftValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except IncidentPersistenceError as e:
        logger.error(f"Draft {draft_id} submit failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not save the report. Your draft was kept, please try again.",
        )


# ── Incidents ─────────────────────────────────────────────


@router.post("/incidents", response_model=Incident, status_code=status.HTTP_201_CREATED)
async def create_incident(
    report: IncidentCreate,
    identity: Identity = Depends(require_identity),
    store: IncidentStore = Depends(get_store),
    geocoder: GeocodingService = Depends(get_geocoder),
):
    """Map-click or quick-GPS report with coordinates supplied directly."""
    if not report.location_name:
        address = await geocoder.reverse_geocode(report.latitude, report.longitude)
        report = report.model_copy(update={
            "location_name": address or format_coordinates(report.latitude, report.longitude),
        })
    try:
        return await store.insert(report, identity)
    except IncidentPersistenceError as e:
        logger.error(f"Incident create failed: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Could not save the report")


@router.get("/incidents", response_model=List[Incident])
async def list_incidents(
    limit: Optional[int] = Query(None, ge=1),
    store: IncidentStore = Depends(get_store),
):
    """All incidents, most recent first."""
    return await store.list_incidents(limit=_guard_limit(limit))


@router.patch("/incidents/{incident_id}/status", response_model=Incident)
async def update_incident_status(
    incident_id: str,
    update: IncidentStatusUpdate,
    officer: Identity = Depends(require_officer),
    store: IncidentStore = Depends(get_store),
):
    try:
        incident = await store.update_status(incident_id, update.status)
    except IncidentPersistenceError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Could not update incident")
    if incident is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Incident not found")
    logger.info(f"Officer {officer.user_id} set incident {incident_id} to {update.status.value}")
    return incident


# ── Geocoding ─────────────────────────────────────────────


@router.get("/geocode/search", response_model=List[GeocodingResult])
async def search_locations(
    q: str = Query(..., min_length=1, max_length=200),
    limit: int = Query(5, ge=1, le=MAX_SEARCH_RESULTS),
    lat: Optional[float] = Query(None, ge=-90.0, le=90.0),
    lng: Optional[float] = Query(None, ge=-180.0, le=180.0),
    geocoder: GeocodingService = Depends(get_geocoder),
):
    """Candidates for pinning a monitored location."""
    near = LatLng(lat=lat, lng=lng) if lat is not None and lng is not None else None
    return await geocoder.search(q, limit=limit, near=near)


@router.get("/geocode/reverse")
async def reverse_geocode(
    lat: float = Query(..., ge=-90.0, le=90.0),
    lng: float = Query(..., ge=-180.0, le=180.0),
    geocoder: GeocodingService = Depends(get_geocoder),
):
    display_name = await geocoder.reverse_geocode(lat, lng)
    return {
        "lat": lat,
        "lng": lng,
        "display_name": display_name or format_coordinates(lat, lng),
        "resolved": display_name is not None,
    }


# ── Assistant & announcements ─────────────────────────────


@router.post("/assistant/query", response_model=AssistantResponse)
async def query_assistant(
    request: AssistantQuery,
    store: IncidentStore = Depends(get_store),
    assistant: IncidentAssistant = Depends(get_assistant),
):
    """Answer a natural-language question about current incidents."""
    incidents = await store.list_incidents()
    return await assistant.answer(
        request.query,
        incidents,
        caller_location=request.caller_location,
        language=request.language,
    )


def _mock_incident() -> Incident:
    now = datetime.now(timezone.utc)
    return Incident(
        id="test-incident",
        user_id="test-user",
        incident_type=IncidentType.ACCIDENT,
        description="Traffic accident reported on Main Street",
        latitude=32.7157,
        longitude=-97.1331,
        location_name="Main Street, Arlington, TX",
        status=IncidentStatus.ACTIVE,
        reporter_name="Test User",
        created_at=now,
        updated_at=now,
    )


@router.post("/announcements/test", response_model=AnnouncementTestResponse)
async def test_announcement(
    store: IncidentStore = Depends(get_store),
    assistant: IncidentAssistant = Depends(get_assistant),
    speaker: TTSService = Depends(get_speaker),
):
    """Announce the latest incident (or a mock one) through the voice path."""
    latest = await store.list_incidents(limit=1)
    incident = latest[0] if latest else _mock_incident()
    report = await assistant.generate_incident_report(incident)
    spoken = await speaker.speak(report)
    return AnnouncementTestResponse(
        incident=incident,
        text=report,
        audio_base64=spoken.audio_base64,
        speech_engine=spoken.engine,
        mock=not latest,
    )
