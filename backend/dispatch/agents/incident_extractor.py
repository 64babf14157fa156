import asyncio
import json
import logging
import math
import re
from typing import Any, Dict, Optional

from google import genai
from google.genai import types

from dispatch.config import settings
from dispatch.models.schemas import IncidentType, LatLng, ParsedIncident, Severity
from dispatch.agents.prompts import build_extraction_prompt

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_CHARS = 100
FALLBACK_CONFIDENCE = 0.5
DEFAULT_LOCATION_NAME = "Current location"

# Checked in order; the first category with a matching term wins.
FALLBACK_KEYWORD_RULES = [
    (IncidentType.FIRE, Severity.CRITICAL, ("fire", "burning", "smoke")),
    (IncidentType.ACCIDENT, Severity.HIGH, ("accident", "crash", "collision")),
    (IncidentType.MEDICAL, Severity.HIGH, ("medical", "injured", "hurt")),
    (IncidentType.CRIME, Severity.HIGH, ("crime", "robbery", "theft")),
    (IncidentType.HAZARD, Severity.MEDIUM, ("tree", "debris", "blocking", "pothole", "obstruction")),
]

_STREET_SUFFIX = r"(?:street|st|avenue|ave|road|rd|boulevard|blvd|drive|dr|lane|ln)"
FALLBACK_LOCATION_PATTERNS = [
    re.compile(rf"\bon\s+([a-z0-9\s]+?{_STREET_SUFFIX})\b", re.IGNORECASE),
    re.compile(rf"\bat\s+([a-z0-9\s]+?{_STREET_SUFFIX})\b", re.IGNORECASE),
    re.compile(r"\bnear\s+([a-z\s]+)", re.IGNORECASE),
]

_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


class ExtractionError(ValueError):
    """The AI response could not be turned into a ParsedIncident."""


def strip_response_wrapper(text: str) -> str:
    """Remove markdown code fences the model sometimes wraps JSON in."""
    return _CODE_FENCE_RE.sub("", text or "").strip()


def parse_model_json(text: str) -> Dict[str, Any]:
    """Parse the model output into a loosely-typed dict.

    Raises ExtractionError when no JSON object can be recovered.
    """
    cleaned = strip_response_wrapper(text)
    if not cleaned:
        raise ExtractionError("Empty response from model")
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise ExtractionError("Response is not JSON")
        try:
            data = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError as e:
            raise ExtractionError(f"Malformed JSON in response: {e}") from e
    if not isinstance(data, dict):
        raise ExtractionError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _coerce_confidence(value: Any) -> float:
    if isinstance(value, bool):
        return FALLBACK_CONFIDENCE
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return FALLBACK_CONFIDENCE
    if math.isnan(confidence):
        return FALLBACK_CONFIDENCE
    return max(0.0, min(1.0, confidence))


def coerce_parsed_incident(data: Dict[str, Any]) -> ParsedIncident:
    """Validate required fields and coerce the rest into a strict ParsedIncident."""
    missing = [
        key for key in ("incident_type", "description", "location_name")
        if not data.get(key) or not str(data.get(key)).strip()
    ]
    if missing:
        raise ExtractionError(f"Missing required fields: {', '.join(missing)}")

    raw_type = str(data["incident_type"]).strip().lower()
    try:
        incident_type = IncidentType(raw_type)
    except ValueError:
        incident_type = IncidentType.OTHER

    raw_severity = str(data.get("severity") or "").strip().lower()
    try:
        severity = Severity(raw_severity)
    except ValueError:
        severity = Severity.MEDIUM

    return ParsedIncident(
        incident_type=incident_type,
        description=str(data["description"]).strip()[:MAX_DESCRIPTION_CHARS],
        location_name=str(data["location_name"]).strip(),
        severity=severity,
        confidence=_coerce_confidence(data.get("confidence")),
        source="gemini",
    )


def fallback_parse(transcript: str) -> ParsedIncident:
    """Deterministic keyword extraction used whenever the AI path fails."""
    text = (transcript or "").strip()
    lower_text = text.lower()

    incident_type, severity = IncidentType.OTHER, Severity.MEDIUM
    for rule_type, rule_severity, terms in FALLBACK_KEYWORD_RULES:
        if any(term in lower_text for term in terms):
            incident_type, severity = rule_type, rule_severity
            break

    location_name = DEFAULT_LOCATION_NAME
    for pattern in FALLBACK_LOCATION_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1).strip():
            location_name = match.group(1).strip()
            break

    return ParsedIncident(
        incident_type=incident_type,
        description=text[:MAX_DESCRIPTION_CHARS],
        location_name=location_name,
        severity=severity,
        confidence=FALLBACK_CONFIDENCE,
        source="fallback",
    )


class IncidentExtractor:
    """
    Turns a voice transcript into a ParsedIncident using Gemini.
    Any failure (no client, network, malformed output, missing fields) is
    absorbed by the keyword fallback, so parse_voice never raises.
    """

    def __init__(self, client=None, model: Optional[str] = None):
        self.client = client
        self.model = model or settings.gemini_model
        if self.client is None:
            self._initialize_model()

    def _initialize_model(self):
        """Initialize the Gemini client for extraction."""
        try:
            if settings.google_api_key:
                self.client = genai.Client(api_key=settings.google_api_key)
                logger.info("IncidentExtractor initialized with model %s", self.model)
            else:
                logger.warning("GOOGLE_API_KEY not set, voice parsing will use keyword fallback")
        except Exception as e:
            logger.error(f"Failed to initialize incident extractor: {e}")
            self.client = None

    def _log_structured(self, event: str, **kwargs):
        """Emit structured log entry."""
        logger.info(json.dumps({"event": event, **kwargs}))

    async def _generate(self, prompt: str) -> str:
        response = await asyncio.to_thread(
            self.client.models.generate_content,
            model=self.model,
            contents=prompt,
            config=types.GenerateContentConfig(temperature=0.2),
        )
        return getattr(response, "text", None) or ""

    async def parse_voice(self, transcript: str, caller_location: Optional[LatLng] = None) -> ParsedIncident:
        """Extract structured incident fields from a transcript."""
        if not self.client:
            parsed = fallback_parse(transcript)
            self._log_structured("extraction_fallback", reason="no_client", incident_type=parsed.incident_type.value)
            return parsed

        prompt = build_extraction_prompt(
            transcript,
            lat=caller_location.lat if caller_location else None,
            lng=caller_location.lng if caller_location else None,
        )
        try:
            response_text = await self._generate(prompt)
            parsed = coerce_parsed_incident(parse_model_json(response_text))
        except Exception as e:
            logger.warning(f"Gemini extraction failed, using keyword fallback: {e}")
            parsed = fallback_parse(transcript)
            self._log_structured("extraction_fallback", reason=type(e).__name__, incident_type=parsed.incident_type.value)
            return parsed

        self._log_structured(
            "extraction_completed",
            model=self.model,
            incident_type=parsed.incident_type.value,
            severity=parsed.severity.value,
            confidence=parsed.confidence,
        )
        return parsed
