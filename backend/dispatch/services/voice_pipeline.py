"""Voice report pipeline: extractor -> resolver -> confirmation gate."""
import json
import logging
import time
from typing import Optional

from dispatch.models.schemas import LatLng, VoiceDraft
from dispatch.agents.incident_extractor import IncidentExtractor
from dispatch.services.confirmation import ConfirmationGate, confirmation_gate
from dispatch.services.location_resolver import LocationResolver

logger = logging.getLogger(__name__)


class VoiceReportPipeline:
    """Runs the sequential voice-report steps for one transcript."""

    def __init__(
        self,
        extractor: Optional[IncidentExtractor] = None,
        resolver: Optional[LocationResolver] = None,
        gate: Optional[ConfirmationGate] = None,
    ):
        self.extractor = extractor if extractor is not None else IncidentExtractor()
        self.resolver = resolver if resolver is not None else LocationResolver()
        self.gate = gate if gate is not None else confirmation_gate

    def _log_structured(self, event: str, **kwargs):
        logger.info(json.dumps({"event": event, **kwargs}))

    async def create_draft(self, transcript: str, caller_location: Optional[LatLng] = None) -> VoiceDraft:
        """Extract and resolve a transcript into a pending draft.

        Raises LocationUnresolvable when no coordinates can be found; nothing
        is drafted in that case.
        """
        start = time.monotonic()
        parsed = await self.extractor.parse_voice(transcript, caller_location)
        resolved = await self.resolver.resolve_or_raise(parsed.location_name, caller_location)
        draft = self.gate.create_draft(parsed, resolved, transcript=transcript)
        self._log_structured(
            "voice_draft_created",
            draft_id=draft.id,
            incident_type=draft.incident_type.value,
            source=parsed.source,
            confidence=draft.confidence,
            low_confidence=draft.low_confidence,
            duration_ms=round((time.monotonic() - start) * 1000),
        )
        return draft


_pipeline: Optional[VoiceReportPipeline] = None


def get_voice_pipeline() -> VoiceReportPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = VoiceReportPipeline()
    return _pipeline
