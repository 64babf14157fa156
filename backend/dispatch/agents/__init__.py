"""Gemini-backed agents: voice incident extraction and the incident assistant."""

from dispatch.agents.incident_extractor import (
    ExtractionError,
    IncidentExtractor,
    coerce_parsed_incident,
    fallback_parse,
    parse_model_json,
)
from dispatch.agents.incident_assistant import (
    IncidentAssistant,
    fallback_answer,
    fallback_report,
    format_incidents_for_ai,
)

__all__ = [
    "ExtractionError",
    "IncidentExtractor",
    "coerce_parsed_incident",
    "fallback_parse",
    "parse_model_json",
    "IncidentAssistant",
    "fallback_answer",
    "fallback_report",
    "format_incidents_for_ai",
]
