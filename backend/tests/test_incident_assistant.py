"""
Tests for the incident assistant and its deterministic fallbacks.
"""

from datetime import datetime, timezone

import pytest

from dispatch.agents.incident_assistant import (
    IncidentAssistant,
    fallback_answer,
    fallback_report,
    format_incidents_for_ai,
    format_report_time,
)
from dispatch.models.schemas import IncidentStatus, IncidentType
from conftest import ARLINGTON, FakeGenaiClient, make_incident, offset_north


@pytest.fixture
def incidents():
    return [
        make_incident("far", offset_north(ARLINGTON, 2.5), minutes_ago=30, description="Grease fire"),
        make_incident("near", offset_north(ARLINGTON, 0.5), minutes_ago=5,
                      incident_type=IncidentType.ACCIDENT, description="Two-car collision"),
        make_incident("done", ARLINGTON, status=IncidentStatus.RESOLVED, description="Old report"),
    ]


class TestFormatting:

    def test_empty_database_block(self):
        assert format_incidents_for_ai([]) == "No incidents currently reported."

    def test_blocks_sorted_by_distance(self, incidents):
        text = format_incidents_for_ai(incidents, ARLINGTON)

        blocks = text.split("\n\n")
        assert blocks[0].startswith("Incident 1:\nType: fire\nDescription: Old report")
        assert "Distance: 0.5 miles away" in blocks[1]
        assert "Distance: 2.5 miles away" in blocks[2]
        assert "Reporter: Jane" in blocks[2]

    def test_without_caller_location(self, incidents):
        assert "Distance: Distance unknown" in format_incidents_for_ai(incidents)

    def test_fallback_answer_skips_resolved(self, incidents):
        text = fallback_answer(incidents, ARLINGTON)

        assert text.startswith("I found 2 active incidents near you:")
        assert text.index("Two-car collision") < text.index("Grease fire")
        assert "Old report" not in text
        assert "Status: Active" in text

    def test_fallback_answer_nothing_active(self):
        resolved = [make_incident(status=IncidentStatus.RESOLVED)]
        assert fallback_answer(resolved) == "There are no active incidents reported right now."

    def test_report_time_has_no_leading_zero(self):
        assert format_report_time(datetime(2024, 3, 15, 15, 45, tzinfo=timezone.utc)) == "3:45 PM"

    def test_fallback_report(self):
        incident = make_incident(description="Kitchen fire", location_name="Abram Street")
        incident = incident.model_copy(update={"created_at": datetime(2024, 3, 15, 9, 5, tzinfo=timezone.utc)})
        assert fallback_report(incident) == "Fire report: Kitchen fire at Abram Street reported at 9:05 AM"


class TestIncidentAssistant:

    async def test_answer_from_gemini(self, incidents):
        client = FakeGenaiClient("There are 2 active incidents near you.")
        assistant = IncidentAssistant(client=client, model="test-model")

        response = await assistant.answer("What's happening near me?", incidents, ARLINGTON, language="es")

        assert response.source == "gemini"
        assert response.answer == "There are 2 active incidents near you."
        assert response.incident_count == 3
        prompt = client.models.calls[0]["contents"]
        assert "Spanish" in prompt
        assert "Two-car collision" in prompt
        assert "What's happening near me?" in prompt

    async def test_answer_falls_back_on_error(self, incidents):
        assistant = IncidentAssistant(client=FakeGenaiClient(ConnectionError("offline")))

        response = await assistant.answer("Any fires?", incidents, ARLINGTON)

        assert response.source == "fallback"
        assert response.answer.startswith("I found 2 active incidents near you:")

    async def test_answer_falls_back_on_empty_reply(self, incidents):
        assistant = IncidentAssistant(client=FakeGenaiClient("   "))
        response = await assistant.answer("Any fires?", incidents)
        assert response.source == "fallback"

    async def test_incident_report_strips_quotes(self):
        assistant = IncidentAssistant(client=FakeGenaiClient('"Fire report: House fire at Cooper Street reported at 3:45 PM"'))
        report = await assistant.generate_incident_report(make_incident())
        assert report == "Fire report: House fire at Cooper Street reported at 3:45 PM"

    async def test_incident_report_without_client(self):
        assistant = IncidentAssistant(client=FakeGenaiClient())
        assistant.client = None

        report = await assistant.generate_incident_report(make_incident(location_name=None))

        assert report.startswith("Fire report: House fire at Unknown location reported at ")
