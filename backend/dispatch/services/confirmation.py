"""
Confirmation gate between voice extraction and the incident store.

A voice report becomes a pending draft that the caller can inspect, edit in
place, cancel, or submit. Nothing reaches the store until submit, and a
failed submit leaves the draft intact so it can be re-submitted.
"""
import logging
import uuid
from collections import OrderedDict
from typing import Optional

from dispatch.config import settings
from dispatch.models.schemas import (
    DraftUpdate,
    Identity,
    Incident,
    IncidentCreate,
    MAX_DESCRIPTION_LENGTH,
    ParsedIncident,
    ResolvedLocation,
    VoiceDraft,
)
from dispatch.services.database import IncidentPersistenceError, IncidentStore, get_incident_store

logger = logging.getLogger(__name__)

MAX_PENDING_DRAFTS = 500


class DraftNotFound(LookupError):
    """No pending draft with that id (submitted, cancelled or expired)."""


class DraftValidationError(ValueError):
    """A draft field failed validation on edit or submit."""


class ConfirmationGate:
    """In-memory holding area for drafts awaiting human confirmation."""

    def __init__(self, store: Optional[IncidentStore] = None, low_confidence_threshold: Optional[float] = None):
        self._store = store
        self.low_confidence_threshold = (
            settings.low_confidence_threshold
            if low_confidence_threshold is None
            else low_confidence_threshold
        )
        self._drafts: "OrderedDict[str, VoiceDraft]" = OrderedDict()

    @property
    def store(self) -> IncidentStore:
        return self._store if self._store is not None else get_incident_store()

    def create_draft(self, parsed: ParsedIncident, resolved: ResolvedLocation, transcript: str = "") -> VoiceDraft:
        draft = VoiceDraft(
            id=str(uuid.uuid4()),
            incident_type=parsed.incident_type,
            description=parsed.description,
            latitude=resolved.lat,
            longitude=resolved.lng,
            location_name=resolved.location_name,
            confidence=parsed.confidence,
            severity=parsed.severity,
            transcript=transcript,
            low_confidence=parsed.confidence < self.low_confidence_threshold,
        )
        self._drafts[draft.id] = draft
        while len(self._drafts) > MAX_PENDING_DRAFTS:
            expired_id, _ = self._drafts.popitem(last=False)
            logger.info(f"Draft {expired_id} expired")

        if draft.low_confidence:
            logger.info(f"Draft {draft.id} flagged low confidence ({draft.confidence:.2f})")
        return draft

    def get(self, draft_id: str) -> VoiceDraft:
        draft = self._drafts.get(draft_id)
        if draft is None:
            raise DraftNotFound(draft_id)
        return draft

    def edit(self, draft_id: str, update: DraftUpdate) -> VoiceDraft:
        """Apply in-place edits; omitted fields keep their values."""
        draft = self.get(draft_id)
        changes = update.model_dump(exclude_unset=True, exclude_none=True)
        if not changes:
            return draft
        edited = draft.model_copy(update=changes)
        self._validate(edited)
        self._drafts[draft_id] = edited
        logger.info(f"Draft {draft_id} edited: {sorted(changes)}")
        return edited

    def cancel(self, draft_id: str) -> bool:
        """Discard a draft. Returns False when it was already gone."""
        return self._drafts.pop(draft_id, None) is not None

    @staticmethod
    def _validate(draft: VoiceDraft):
        if not draft.description or not draft.description.strip():
            raise DraftValidationError("Description must not be empty")
        if len(draft.description) > MAX_DESCRIPTION_LENGTH:
            raise DraftValidationError(f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters")
        if not (-90.0 <= draft.latitude <= 90.0 and -180.0 <= draft.longitude <= 180.0):
            raise DraftValidationError("Coordinates are out of range")

    async def submit(self, draft_id: str, identity: Optional[Identity]) -> Incident:
        """Persist the draft as an active incident."""
        draft = self.get(draft_id)
        self._validate(draft)
        if identity is None:
            raise IncidentPersistenceError("Sign in to submit a report")

        report = IncidentCreate(
            incident_type=draft.incident_type,
            description=draft.description,
            latitude=draft.latitude,
            longitude=draft.longitude,
            location_name=draft.location_name,
        )
        incident = await self.store.insert(report, identity)
        self._drafts.pop(draft_id, None)
        logger.info(f"Draft {draft_id} submitted as incident {incident.id}")
        return incident

    def __len__(self) -> int:
        return len(self._drafts)


confirmation_gate = ConfirmationGate()
