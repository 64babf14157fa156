"""
Unit tests for voice transcript extraction.
"""

import json

import pytest

from dispatch.agents.incident_extractor import (
    ExtractionError,
    IncidentExtractor,
    coerce_parsed_incident,
    fallback_parse,
    parse_model_json,
    strip_response_wrapper,
)
from dispatch.models.schemas import IncidentType, Severity
from conftest import ARLINGTON, FakeGenaiClient


def model_reply(**fields) -> str:
    payload = {
        "incident_type": "fire",
        "description": "House fire with heavy smoke",
        "location_name": "Cooper Street",
        "severity": "critical",
        "confidence": 0.92,
    }
    payload.update(fields)
    return "```json\n" + json.dumps(payload) + "\n```"


class TestFallbackParse:
    """Keyword extraction used when the AI path is unavailable."""

    def test_tree_blocking_road(self):
        parsed = fallback_parse("A tree is blocking the road on Cooper Street")

        assert parsed.incident_type == IncidentType.HAZARD
        assert parsed.severity == Severity.MEDIUM
        assert parsed.confidence == 0.5
        assert parsed.location_name == "Cooper Street"
        assert parsed.description == "A tree is blocking the road on Cooper Street"
        assert parsed.source == "fallback"

    @pytest.mark.parametrize("transcript,incident_type,severity", [
        ("There is smoke coming out of a house", IncidentType.FIRE, Severity.CRITICAL),
        ("Two cars crash at the light", IncidentType.ACCIDENT, Severity.HIGH),
        ("A man is injured on the sidewalk", IncidentType.MEDICAL, Severity.HIGH),
        ("I just saw a robbery", IncidentType.CRIME, Severity.HIGH),
        ("Something weird is going on", IncidentType.OTHER, Severity.MEDIUM),
    ])
    def test_keyword_categories(self, transcript, incident_type, severity):
        parsed = fallback_parse(transcript)
        assert parsed.incident_type == incident_type
        assert parsed.severity == severity

    def test_fire_wins_over_later_categories(self):
        parsed = fallback_parse("Car crash and the engine is on fire")
        assert parsed.incident_type == IncidentType.FIRE

    def test_location_prefix_patterns(self):
        assert fallback_parse("Pothole at Abram Street").location_name == "Abram Street"
        assert fallback_parse("Debris near the stadium").location_name == "the stadium"

    def test_default_location(self):
        assert fallback_parse("Someone is hurt").location_name == "Current location"

    def test_description_truncated(self):
        parsed = fallback_parse("fire " * 50)
        assert len(parsed.description) == 100


class TestModelOutputCoercion:
    """Loosely-typed model output is validated before use."""

    def test_strip_code_fences(self):
        assert strip_response_wrapper('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_parse_embedded_object(self):
        assert parse_model_json('Sure! {"a": 1} Hope this helps') == {"a": 1}

    def test_parse_rejects_non_object(self):
        with pytest.raises(ExtractionError):
            parse_model_json("[1, 2, 3]")
        with pytest.raises(ExtractionError):
            parse_model_json("no json here")

    def test_missing_required_field(self):
        with pytest.raises(ExtractionError):
            coerce_parsed_incident({"incident_type": "fire", "description": "x"})

    def test_invalid_enums_coerced(self):
        parsed = coerce_parsed_incident({
            "incident_type": "explosion",
            "description": "Loud bang",
            "location_name": "Main Street",
            "severity": "extreme",
        })
        assert parsed.incident_type == IncidentType.OTHER
        assert parsed.severity == Severity.MEDIUM

    @pytest.mark.parametrize("raw,expected", [
        (7, 1.0),
        (-2, 0.0),
        ("0.8", 0.8),
        ("very sure", 0.5),
        (None, 0.5),
        (True, 0.5),
        (float("nan"), 0.5),
    ])
    def test_confidence_clamped(self, raw, expected):
        parsed = coerce_parsed_incident({
            "incident_type": "crime",
            "description": "Theft",
            "location_name": "Main Street",
            "confidence": raw,
        })
        assert parsed.confidence == pytest.approx(expected)


class TestIncidentExtractor:
    """parse_voice never raises and always returns a valid ParsedIncident."""

    async def test_gemini_response(self):
        client = FakeGenaiClient(model_reply())
        extractor = IncidentExtractor(client=client, model="test-model")

        parsed = await extractor.parse_voice("House on fire on Cooper Street", ARLINGTON)

        assert parsed.incident_type == IncidentType.FIRE
        assert parsed.severity == Severity.CRITICAL
        assert parsed.confidence == pytest.approx(0.92)
        assert parsed.location_name == "Cooper Street"
        assert parsed.source == "gemini"

        call = client.models.calls[0]
        assert call["model"] == "test-model"
        assert str(ARLINGTON.lat) in call["contents"]
        assert "House on fire on Cooper Street" in call["contents"]

    async def test_network_failure_falls_back(self):
        extractor = IncidentExtractor(client=FakeGenaiClient(ConnectionError("offline")))

        parsed = await extractor.parse_voice("A tree is blocking the road on Cooper Street")

        assert parsed.source == "fallback"
        assert parsed.incident_type == IncidentType.HAZARD
        assert parsed.confidence == 0.5

    async def test_malformed_response_falls_back(self):
        extractor = IncidentExtractor(client=FakeGenaiClient("I'm not sure what you mean"))
        parsed = await extractor.parse_voice("Someone stole my bike, theft near the library")
        assert parsed.source == "fallback"
        assert parsed.incident_type == IncidentType.CRIME

    async def test_missing_fields_fall_back(self):
        extractor = IncidentExtractor(client=FakeGenaiClient(model_reply(location_name="")))
        parsed = await extractor.parse_voice("Fire on Main Street")
        assert parsed.source == "fallback"
        assert parsed.location_name == "Main Street"

    async def test_no_client_uses_fallback(self):
        extractor = IncidentExtractor(client=FakeGenaiClient())
        extractor.client = None

        parsed = await extractor.parse_voice("Car accident at Division Street")

        assert parsed.source == "fallback"
        assert parsed.incident_type == IncidentType.ACCIDENT
        assert parsed.location_name == "Division Street"
