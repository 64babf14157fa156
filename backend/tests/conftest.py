"""
Shared fixtures and stub collaborators for the dispatch test-suite.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import List, Optional

import pytest

from dispatch.models.schemas import (
    GeocodingResult,
    Identity,
    Incident,
    IncidentStatus,
    IncidentType,
    LatLng,
    UserRole,
)
from dispatch.services.database import IncidentStore
from dispatch.services.speech_capture import CaptureError
from dispatch.services.tts_service import SpokenAnnouncement

# Downtown Arlington, TX
ARLINGTON = LatLng(lat=32.7357, lng=-97.1081)
# Degrees of latitude per mile with a 3,959 mi Earth radius
DEG_PER_MILE = 1 / 69.097


class FakeModels:
    """Stands in for genai.Client().models; replays canned responses in order."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls: List[dict] = []

    def generate_content(self, model, contents, config=None):
        self.calls.append({"model": model, "contents": contents, "config": config})
        if not self.responses:
            return SimpleNamespace(text="", candidates=[])
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, str):
            return SimpleNamespace(text=item, candidates=[])
        return item


class FakeGenaiClient:
    def __init__(self, *responses):
        self.models = FakeModels(responses)


class FakeGeocoder:
    def __init__(self, result: Optional[GeocodingResult] = None, reverse: Optional[str] = None):
        self.result = result
        self.reverse = reverse
        self.geocode_calls = []
        self.reverse_calls = []

    async def geocode(self, location_name, near=None):
        self.geocode_calls.append((location_name, near))
        return self.result

    async def search(self, query, limit=5, near=None, radius_miles=None):
        return [self.result] if self.result else []

    async def reverse_geocode(self, lat, lng):
        self.reverse_calls.append((lat, lng))
        return self.reverse

    def health_check(self):
        return True

    async def close(self):
        pass


class FakeSpeaker:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.spoken: List[str] = []

    async def speak(self, text):
        self.spoken.append(text)
        if self.fail:
            raise RuntimeError("speaker offline")
        return SpokenAnnouncement(text=text, audio_base64=None, engine="browser")

    def health_check(self):
        return True


class FakeTranscriber:
    def __init__(
        self,
        transcript: str = "",
        error: Optional[CaptureError] = None,
        gate: Optional[asyncio.Event] = None,
        delay: float = 0.0,
    ):
        self.transcript = transcript
        self.error = error
        self.gate = gate
        self.delay = delay
        self.calls = []

    async def transcribe(self, audio_bytes, mime_type, language):
        self.calls.append((len(audio_bytes), mime_type, language))
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.transcript


def offset_north(point: LatLng, miles: float) -> LatLng:
    return LatLng(lat=point.lat + miles * DEG_PER_MILE, lng=point.lng)


def make_incident(
    incident_id: str = "inc-1",
    location: LatLng = ARLINGTON,
    minutes_ago: float = 0,
    incident_type: IncidentType = IncidentType.FIRE,
    description: str = "House fire",
    location_name: Optional[str] = "Cooper Street, Arlington, Tarrant County, Texas, 76010, United States",
    status: IncidentStatus = IncidentStatus.ACTIVE,
) -> Incident:
    created = datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)
    return Incident(
        id=incident_id,
        user_id="user-1",
        incident_type=incident_type,
        description=description,
        latitude=location.lat,
        longitude=location.lng,
        location_name=location_name,
        status=status,
        reporter_name="Jane",
        created_at=created,
        updated_at=created,
    )


@pytest.fixture
def citizen():
    return Identity(user_id="user-1", display_name="Jane", role=UserRole.CITIZEN)


@pytest.fixture
def officer():
    return Identity(user_id="officer-1", display_name="Officer Ruiz", role=UserRole.OFFICER)


@pytest.fixture
async def store():
    incident_store = IncidentStore(":memory:")
    await incident_store.initialize()
    yield incident_store
    await incident_store.close()
