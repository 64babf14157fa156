import asyncio
import json
import logging
from datetime import datetime
from typing import List, Optional

from google import genai
from google.genai import types

from dispatch.config import settings
from dispatch.models.schemas import AssistantResponse, Incident, LatLng
from dispatch.agents.prompts import ANNOUNCEMENT_REPORT_PROMPT, build_assistant_prompt
from dispatch.services.proximity_announcer import (
    format_time_ago,
    haversine_miles,
    incident_point,
)

logger = logging.getLogger(__name__)

MAX_FALLBACK_INCIDENTS = 5


def sort_by_distance(incidents: List[Incident], caller_location: Optional[LatLng]) -> List[Incident]:
    if caller_location is None:
        return list(incidents)
    return sorted(incidents, key=lambda i: haversine_miles(caller_location, incident_point(i)))


def format_incidents_for_ai(
    incidents: List[Incident],
    caller_location: Optional[LatLng] = None,
    now: Optional[datetime] = None,
) -> str:
    """Render incidents as the plain-text database block the assistant reads."""
    if not incidents:
        return "No incidents currently reported."

    blocks = []
    for index, incident in enumerate(sort_by_distance(incidents, caller_location), start=1):
        if caller_location is not None:
            distance = f"{haversine_miles(caller_location, incident_point(incident)):.1f} miles away"
        else:
            distance = "Distance unknown"
        blocks.append(
            f"Incident {index}:\n"
            f"Type: {incident.incident_type.value}\n"
            f"Description: {incident.description or 'No description'}\n"
            f"Location: {incident.location_name or 'Location not specified'}\n"
            f"Distance: {distance}\n"
            f"Status: {incident.status.value}\n"
            f"Reported: {format_time_ago(incident.created_at, now)}\n"
            f"Reporter: {incident.reporter_name or 'Anonymous'}"
        )
    return "\n\n".join(blocks)


def fallback_answer(
    incidents: List[Incident],
    caller_location: Optional[LatLng] = None,
    now: Optional[datetime] = None,
) -> str:
    """Deterministic summary used when the AI service is unavailable."""
    active = [i for i in incidents if i.status.value != "resolved"]
    if not active:
        return "There are no active incidents reported right now."

    ordered = sort_by_distance(active, caller_location)[:MAX_FALLBACK_INCIDENTS]
    noun = "incident" if len(active) == 1 else "incidents"
    where = " near you" if caller_location is not None else ""
    lines = [f"I found {len(active)} active {noun}{where}:"]
    for incident in ordered:
        location = incident.location_name or "Location not specified"
        if caller_location is not None:
            location += f" ({haversine_miles(caller_location, incident_point(incident)):.1f} miles away)"
        lines.append(
            f"{incident.incident_type.value.upper()}: {incident.description}\n"
            f"   {location}\n"
            f"   Reported {format_time_ago(incident.created_at, now)}\n"
            f"   Status: {incident.status.value.capitalize()}"
        )
    return "\n\n".join(lines)


def format_report_time(timestamp: datetime) -> str:
    return timestamp.strftime("%I:%M %p").lstrip("0")


def fallback_report(incident: Incident) -> str:
    location = incident.location_name or "Unknown location"
    return (
        f"{incident.incident_type.value.capitalize()} report: {incident.description} "
        f"at {location} reported at {format_report_time(incident.created_at)}"
    )


class IncidentAssistant:
    """
    Conversational access to the incident list plus short dispatcher-style
    reports for the announcement voice path.
    """

    def __init__(self, client=None, model: Optional[str] = None):
        self.client = client
        self.model = model or settings.gemini_model
        if self.client is None and settings.google_api_key:
            try:
                self.client = genai.Client(api_key=settings.google_api_key)
            except Exception as e:
                logger.error(f"Failed to initialize incident assistant: {e}")
                self.client = None

    def _log_structured(self, event: str, **kwargs):
        logger.info(json.dumps({"event": event, **kwargs}))

    async def _generate(self, prompt: str, temperature: float) -> str:
        response = await asyncio.to_thread(
            self.client.models.generate_content,
            model=self.model,
            contents=prompt,
            config=types.GenerateContentConfig(temperature=temperature),
        )
        return (getattr(response, "text", None) or "").strip()

    async def answer(
        self,
        query: str,
        incidents: List[Incident],
        caller_location: Optional[LatLng] = None,
        language: str = "en",
    ) -> AssistantResponse:
        if self.client:
            prompt = build_assistant_prompt(
                query,
                format_incidents_for_ai(incidents, caller_location),
                lat=caller_location.lat if caller_location else None,
                lng=caller_location.lng if caller_location else None,
                language=language,
            )
            try:
                text = await self._generate(prompt, temperature=0.4)
                if text:
                    self._log_structured("assistant_answered", source="gemini", incident_count=len(incidents))
                    return AssistantResponse(answer=text, source="gemini", incident_count=len(incidents))
                logger.warning("Assistant model returned an empty answer")
            except Exception as e:
                logger.warning(f"Assistant query failed, using summary fallback: {e}")

        self._log_structured("assistant_answered", source="fallback", incident_count=len(incidents))
        return AssistantResponse(
            answer=fallback_answer(incidents, caller_location),
            source="fallback",
            incident_count=len(incidents),
        )

    async def generate_incident_report(self, incident: Incident) -> str:
        """One-line spoken report, e.g. "Fire report: ... at ... reported at 3:45 PM"."""
        if not self.client:
            return fallback_report(incident)

        prompt = ANNOUNCEMENT_REPORT_PROMPT.format(
            incident_type=incident.incident_type.value,
            description=incident.description,
            location=incident.location_name or "Unknown location",
            time=format_report_time(incident.created_at),
        )
        try:
            text = await self._generate(prompt, temperature=0.2)
        except Exception as e:
            logger.error(f"Error generating report with Gemini: {e}")
            return fallback_report(incident)
        return text.strip('"') or fallback_report(incident)


incident_assistant = IncidentAssistant()
