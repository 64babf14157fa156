"""Prompts for the WebSlinger Dispatch voice and assistant agents.

Prompts optimized for:
- Extraction: gemini-2.5-flash (short, schema-first, JSON only)
- Assistant: gemini-2.5-flash (incident list is embedded as plain text)
"""
from typing import Optional

VALID_INCIDENT_TYPES = ["crime", "accident", "fire", "medical", "hazard", "other"]
VALID_SEVERITIES = ["low", "medium", "high", "critical"]

INCIDENT_EXTRACTION_PROMPT = """You are an emergency dispatch AI assistant. Parse the following incident report from a driver and extract structured data.

{location_context}

User's voice report: "{transcript}"

Extract the following information and return ONLY a valid JSON object (no markdown, no code blocks, just the JSON):

{{
  "incident_type": "crime|accident|fire|medical|hazard|other",
  "description": "concise description of what happened",
  "location_name": "street name, intersection, or landmark mentioned",
  "severity": "low|medium|high|critical",
  "confidence": 0.0-1.0
}}

Rules:
- incident_type: Choose the most appropriate category. Use "hazard" for road obstructions, debris, potholes, etc.
- description: Keep it under 100 characters, factual and clear
- location_name: Extract any street names, intersections, or landmarks. If none mentioned, use "Current location"
- severity:
  * low: minor issues (small debris, minor traffic)
  * medium: notable issues (tree branch, moderate accident)
  * high: serious issues (large obstruction, injury accident)
  * critical: life-threatening (fire, major accident, crime in progress)
- confidence: How confident you are in the parsing (0.0-1.0). Use:
  * 0.9-1.0: Very clear report with specific details
  * 0.7-0.89: Clear incident type and location
  * 0.5-0.69: Vague location or incident type
  * Below 0.5: Very unclear report

Return ONLY the JSON object, nothing else."""

TRANSCRIPTION_PROMPT = (
    "Transcribe this audio exactly. The speaker's language is {language}. "
    "Return ONLY the transcribed text, nothing else."
)

ANNOUNCEMENT_REPORT_PROMPT = """You are a professional emergency dispatcher creating a brief voice announcement.

Generate a SHORT announcement with ONLY these details:
- Incident type: {incident_type}
- Description: {description}
- Location: {location}
- Time reported: {time}

EXACT FORMAT TO FOLLOW: "{{type}} report: {{description}} at {{location}} reported at {{time}}"

Example: "Fire report: Building fire at Main Street reported at 3:45 PM"

Generate ONLY the announcement following the exact format. No extra text."""

ASSISTANT_PROMPT = """You are a friendly emergency dispatch assistant helping users query incident data.

IMPORTANT: Respond in {language_name}. Use natural {language_name} language throughout your response.

Context:
{location_context}

Current Incidents Database:
{incident_data}

User Query: "{query}"

IMPORTANT FORMATTING RULES:
- Use natural, conversational language
- Format responses with clear spacing and line breaks
- Present incidents in clean, readable format like:
  "CRIME: Brief description
   Location (0.5 miles away)
   Reported 2 hours ago
   Status: Active"
- Separate multiple incidents with blank lines
- Start with a brief summary like "I found 3 incidents near you:"
- Avoid technical database field names
- Use relative time ("2 hours ago" vs timestamps)
- End with helpful context or next steps"""

ASSISTANT_LANGUAGES = {
    "en": "English",
    "es": "Spanish",
    "vi": "Vietnamese",
}


def build_extraction_prompt(transcript: str, lat: Optional[float] = None, lng: Optional[float] = None) -> str:
    """Embed the transcript and optional caller coordinates in the extraction prompt."""
    location_context = ""
    if lat is not None and lng is not None:
        location_context = f"The user is currently at coordinates: {lat}, {lng}."
    return INCIDENT_EXTRACTION_PROMPT.format(
        location_context=location_context,
        transcript=transcript.replace('"', "'"),
    )


def build_assistant_prompt(
    query: str,
    incident_data: str,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    language: str = "en",
) -> str:
    location_context = (
        f"User's current location: {lat}, {lng}"
        if lat is not None and lng is not None
        else "User location not available"
    )
    return ASSISTANT_PROMPT.format(
        language_name=ASSISTANT_LANGUAGES.get(language, "English"),
        location_context=location_context,
        incident_data=incident_data,
        query=query.replace('"', "'"),
    )
