import time
import logging
import json
import asyncio
import base64
import binascii
from typing import Optional
from datetime import datetime, timezone

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from dispatch.models.schemas import IncidentChange, LatLng, PinRequest, WebSocketMessage
from dispatch.services.database import IncidentStore
from dispatch.services.location_resolver import LocationUnresolvable
from dispatch.services.proximity_announcer import ProximityAnnouncer
from dispatch.services.speech_capture import CaptureError, GeminiTranscriber, SpeechCapture
from dispatch.services.voice_pipeline import VoiceReportPipeline

logger = logging.getLogger(__name__)

IDLE_TIMEOUT_SECONDS = 600
RECEIVE_TIMEOUT_SECONDS = 300.0


def parse_location(data: dict) -> Optional[LatLng]:
    """GPS fix from a `location` message; anything without lat/lng means GPS is unavailable."""
    if data.get("lat") is None or data.get("lng") is None:
        return None
    return LatLng(lat=float(data["lat"]), lng=float(data["lng"]))


class WebSocketHandler:
    """One running client session: proximity announcements plus voice reporting."""

    def __init__(
        self,
        websocket: WebSocket,
        session_id: str,
        store: IncidentStore,
        pipeline: VoiceReportPipeline,
        speaker=None,
        transcriber: Optional[GeminiTranscriber] = None,
    ):
        self.websocket = websocket
        self.session_id = session_id
        self.store = store
        self.pipeline = pipeline
        self.announcer = ProximityAnnouncer(speaker=speaker)
        self.capture = SpeechCapture(transcriber)
        self.capture.subscribe(on_error=self._on_capture_error, on_end=self._send_capture_state)
        self.is_connected = False
        self.last_activity = None
        self._message_times = []
        self._max_messages_per_second = 20
        self._feed: Optional[asyncio.Queue] = None
        self._evaluate_lock = asyncio.Lock()
        self._background_tasks: set[asyncio.Task] = set()

    async def connect(self):
        """Accept the connection, send the incident snapshot and follow the live feed."""
        await self.websocket.accept()
        self.is_connected = True
        self._feed = self.store.subscribe()

        incidents = await self.store.list_incidents()
        self.announcer.set_incidents(incidents)
        await self.send_message("incidents", {
            "incidents": [incident.model_dump(mode="json") for incident in incidents],
        })
        await self._send_capture_state()
        self._track_background_task(self._consume_feed())
        logger.info(f"WebSocket connected for session {self.session_id}")

    async def disconnect(self):
        self.is_connected = False
        if self._feed is not None:
            self.store.unsubscribe(self._feed)
            self._feed = None
        for task in list(self._background_tasks):
            task.cancel()
        self._background_tasks.clear()
        logger.info(f"WebSocket disconnected for session {self.session_id}")

    def _track_background_task(self, coro):
        """Track cancellable background tasks tied to this socket lifecycle."""
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def send_message(self, message_type: str, data: dict):
        """Send a message to the client."""
        if not self.is_connected:
            return

        try:
            message = WebSocketMessage(type=message_type, data=data)
            await self.websocket.send_json(message.model_dump(mode='json'))
        except Exception as e:
            logger.error(f"Error sending WebSocket message: {e}")

    # ── Live feed & announcements ─────────────────────────

    async def _consume_feed(self):
        while self.is_connected and self._feed is not None:
            change: IncidentChange = await self._feed.get()
            self.announcer.apply_change(change)
            await self.send_message("incident_change", change.model_dump(mode="json"))
            await self._reevaluate()

    async def _reevaluate(self):
        async with self._evaluate_lock:
            announcements = await self.announcer.evaluate()
        for announcement in announcements:
            await self.send_message("announcement", announcement.model_dump(mode="json"))

    # ── Dispatch ──────────────────────────────────────────

    async def handle_message(self, message: dict):
        """Handle incoming WebSocket messages."""
        if not isinstance(message, dict):
            await self.send_message("error", {"message": "Invalid message format"})
            return
        message_type = message.get("type", "")
        if not message_type or not isinstance(message_type, str) or len(message_type) > 50:
            await self.send_message("error", {"message": "Invalid message type"})
            return
        data = message.get("data", {})
        if not isinstance(data, dict):
            data = {}
        self.last_activity = datetime.now(timezone.utc)

        # Rate limit messages
        now = time.time()
        self._message_times = [t for t in self._message_times if now - t < 1.0]
        if len(self._message_times) >= self._max_messages_per_second:
            await self.send_message("error", {"message": "Too many messages. Please slow down.", "type": "rate_limited"})
            return
        self._message_times.append(now)

        try:
            if message_type == "location":
                await self.handle_location(data)
            elif message_type == "pin":
                await self.handle_pin(data)
            elif message_type == "unpin":
                await self.handle_unpin()
            elif message_type == "audio":
                self._track_background_task(self._run_voice(self.handle_audio(data)))
            elif message_type == "transcript":
                self._track_background_task(self._run_voice(self.handle_transcript(data)))
            elif message_type == "capture_error":
                await self.capture.report_error(data.get("code"), data.get("message"))
            elif message_type == "stop_listening":
                await self.capture.stop()
            elif message_type == "ping":
                await self.send_message("pong", {})
            else:
                logger.warning(f"Unknown message type: {message_type}")
                await self.send_message("error", {"message": f"Unknown message type: {message_type}"})

        except ValidationError as e:
            fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
            await self.send_message("error", {"message": "Invalid message data", "fields": fields})
        except Exception as e:
            logger.error(f"Error handling WebSocket message: {e}")
            await self.send_message("error", {"message": str(e)})

    async def handle_location(self, data: dict):
        self.announcer.set_user_location(parse_location(data))
        await self._reevaluate()

    async def handle_pin(self, data: dict):
        request = PinRequest(**data)
        report = self.announcer.pin_location(request.lat, request.lng, request.name)
        await self.send_message("pin_report", report.model_dump(mode="json"))
        await self._reevaluate()

    async def handle_unpin(self):
        self.announcer.clear_pin()
        await self._reevaluate()

    # ── Voice ─────────────────────────────────────────────

    async def _send_capture_state(self):
        data = {"state": self.capture.state.value}
        if self.capture.last_error is not None:
            data["error"] = self.capture.last_error.to_dict()
        await self.send_message("capture_state", data)

    async def _on_capture_error(self, error: CaptureError):
        await self.send_message("error", {"message": error.message, "type": "capture_error", "kind": error.kind.value})

    async def _run_voice(self, coro):
        """Run voice work off the receive loop so stop_listening is read mid-capture."""
        try:
            await coro
        except Exception as e:
            logger.error(f"Error handling voice message in session {self.session_id}: {e}")
            await self.send_message("error", {"message": str(e)})

    async def handle_audio(self, data: dict):
        """Transcribe a recorded utterance server-side and draft a report from it."""
        audio_base64 = data.get("audio")
        if not audio_base64:
            await self.send_message("error", {"message": "No audio data provided"})
            return
        try:
            audio_bytes = base64.b64decode(audio_base64, validate=True)
        except (binascii.Error, ValueError):
            await self.send_message("error", {"message": "Audio must be base64-encoded"})
            return

        if self.capture.is_active:
            await self.send_message("error", {"message": "Already listening.", "type": "capture_error", "kind": "other"})
            return

        await self.send_message("capture_state", {"state": "processing"})
        try:
            transcript = await self.capture.start_listening(audio_bytes, data.get("format", "webm"))
        except CaptureError as e:
            # Already delivered through the on_error listener
            logger.debug(f"Audio capture ended with {e.kind.value}")
            return
        if transcript:
            await self._draft_report(transcript)

    async def handle_transcript(self, data: dict):
        """Take a transcript from the client's own recognizer."""
        try:
            transcript = await self.capture.accept_transcript(str(data.get("text") or ""))
        except CaptureError as e:
            logger.debug(f"Client transcript rejected: {e.kind.value}")
            return
        await self._draft_report(transcript)

    async def _draft_report(self, transcript: str):
        await self.send_message("transcript", {"text": transcript})
        try:
            draft = await self.pipeline.create_draft(transcript, self.announcer.user_location)
        except LocationUnresolvable as e:
            await self.send_message("error", {"message": e.message, "type": "location_unresolvable"})
            return
        await self.send_message("draft", draft.model_dump(mode="json"))


async def websocket_endpoint(
    websocket: WebSocket,
    session_id: str,
    store: IncidentStore,
    pipeline: VoiceReportPipeline,
    speaker=None,
    transcriber: Optional[GeminiTranscriber] = None,
):
    """
    WebSocket endpoint for one client session.

    Message format (client -> server):
    {
        "type": "location|pin|unpin|audio|transcript|capture_error|stop_listening|ping",
        "data": {
            // location: {"lat": 32.7, "lng": -97.1} or {} when GPS is unavailable
            // pin: {"lat": 32.7, "lng": -97.1, "name": "Cooper Street"}
            // audio: {"audio": "base64_data", "format": "webm"}
            // transcript: {"text": "..."}
            // capture_error: {"code": "no-speech"}
        }
    }

    Message format (server -> client):
    {
        "type": "incidents|incident_change|announcement|pin_report|transcript|draft|capture_state|error|pong",
        "data": {...},
        "timestamp": "ISO8601"
    }
    """
    handler = WebSocketHandler(websocket, session_id, store, pipeline, speaker=speaker, transcriber=transcriber)

    try:
        await handler.connect()

        while handler.is_connected:
            # Check idle timeout
            if handler.last_activity and (datetime.now(timezone.utc) - handler.last_activity).total_seconds() > IDLE_TIMEOUT_SECONDS:
                logger.info(f"Session {session_id} idle timeout")
                await handler.send_message("error", {"message": "Connection idle timeout. Please reconnect."})
                break
            try:
                message = await asyncio.wait_for(websocket.receive_json(), timeout=RECEIVE_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                await handler.send_message("error", {"message": "Connection timed out due to inactivity"})
                break
            except json.JSONDecodeError as e:
                logger.warning(f"Invalid JSON from client in session {session_id}: {e}")
                await handler.send_message("error", {"message": "Invalid message format"})
                continue
            await handler.handle_message(message)

    except WebSocketDisconnect:
        logger.info(f"Client disconnected from session {session_id}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        await handler.send_message("error", {"message": "Internal server error"})
    finally:
        await handler.disconnect()
