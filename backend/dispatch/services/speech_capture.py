"""
Single-shot speech capture.

One utterance per invocation: the client records a clip (or runs its own
recognizer) and the server turns it into a transcript. Observable states are
idle -> listening -> (processing | error) -> idle. Nothing is retried; the
caller re-invokes after an error.
"""
import asyncio
import inspect
import logging
import re
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Union

from google import genai
from google.genai import types

from dispatch.config import settings
from dispatch.agents.prompts import TRANSCRIPTION_PROMPT

logger = logging.getLogger(__name__)

MIN_AUDIO_BYTES = 1024

MIME_MAP = {
    "webm": "audio/webm",
    "ogg": "audio/ogg",
    "mp4": "audio/mp4",
    "wav": "audio/wav",
}


class CaptureErrorKind(str, Enum):
    NOT_SUPPORTED = "not_supported"
    NO_SPEECH = "no_speech"
    PERMISSION_DENIED = "permission_denied"
    OTHER = "other"

    @classmethod
    def from_code(cls, code: Optional[str]) -> "CaptureErrorKind":
        """Map a browser recognizer error code onto a capture error kind."""
        normalized = (code or "").strip().lower()
        if normalized == "no-speech":
            return cls.NO_SPEECH
        if normalized in ("not-allowed", "service-not-allowed"):
            return cls.PERMISSION_DENIED
        if normalized in ("not-supported", "audio-capture"):
            return cls.NOT_SUPPORTED
        return cls.OTHER


CAPTURE_ERROR_MESSAGES = {
    CaptureErrorKind.NOT_SUPPORTED: "Speech recognition is not supported on this device.",
    CaptureErrorKind.NO_SPEECH: "No speech detected. Please try again.",
    CaptureErrorKind.PERMISSION_DENIED: "Microphone permission denied. Please allow microphone access.",
    CaptureErrorKind.OTHER: "Speech recognition failed. Please try again.",
}


class CaptureError(RuntimeError):
    """A capture attempt ended without a transcript."""

    def __init__(self, kind: CaptureErrorKind, message: Optional[str] = None):
        self.kind = kind
        self.message = message or CAPTURE_ERROR_MESSAGES[kind]
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message}


class CaptureState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    ERROR = "error"


def sanitize_transcript(text: str) -> str:
    """Collapse whitespace and drop punctuation-only noise."""
    cleaned = re.sub(r"\s+", " ", (text or "").strip())
    if not cleaned:
        return ""
    if not re.search(r"[^\W_]", cleaned):
        return ""
    return cleaned


class GeminiTranscriber:
    """Transcribes one recorded utterance with a Gemini audio-capable model."""

    def __init__(self, client=None, model: Optional[str] = None):
        self.client = client
        self.model = model or settings.transcription_model
        if self.client is None and settings.google_api_key:
            self.client = genai.Client(api_key=settings.google_api_key)

    async def transcribe(self, audio_bytes: bytes, mime_type: str, language: str) -> str:
        if not self.client:
            raise CaptureError(CaptureErrorKind.NOT_SUPPORTED, "Server-side transcription is not configured.")

        if len(audio_bytes) < MIN_AUDIO_BYTES:
            logger.warning(f"Audio too small ({len(audio_bytes)} bytes), likely empty recording")
            raise CaptureError(CaptureErrorKind.NO_SPEECH, "Recording was too short. Please speak, then stop.")

        try:
            response = await asyncio.to_thread(
                self.client.models.generate_content,
                model=self.model,
                contents=[
                    types.Content(parts=[
                        types.Part.from_bytes(data=audio_bytes, mime_type=mime_type),
                        types.Part.from_text(text=TRANSCRIPTION_PROMPT.format(language=language)),
                    ])
                ],
            )
        except Exception as e:
            error_str = str(e)
            logger.error(f"Gemini audio transcription failed: {error_str}")
            if "403" in error_str or "PERMISSION_DENIED" in error_str:
                raise CaptureError(CaptureErrorKind.PERMISSION_DENIED, "Transcription service denied access.") from e
            raise CaptureError(CaptureErrorKind.OTHER, f"Transcription error: {error_str[:100]}") from e

        text = sanitize_transcript(getattr(response, "text", None) or "")
        if not text:
            raise CaptureError(CaptureErrorKind.NO_SPEECH)
        return text


ResultListener = Callable[[str], Union[None, Awaitable[None]]]
ErrorListener = Callable[[CaptureError], Union[None, Awaitable[None]]]
EndListener = Callable[[], Union[None, Awaitable[None]]]


class SpeechCapture:
    """
    Capture state machine with a single subscription interface.

    `start_listening` is awaited once per utterance and returns the transcript,
    or None when `stop` cancelled the attempt. Errors are raised as
    CaptureError and also delivered to `on_error` listeners.
    """

    def __init__(self, transcriber: Optional[GeminiTranscriber] = None, language: Optional[str] = None):
        self.transcriber = transcriber or get_transcriber()
        self.language = language or settings.speech_language
        self.state = CaptureState.IDLE
        self.last_error: Optional[CaptureError] = None
        self._attempt = 0
        self._on_result: List[ResultListener] = []
        self._on_error: List[ErrorListener] = []
        self._on_end: List[EndListener] = []

    def subscribe(
        self,
        on_result: Optional[ResultListener] = None,
        on_error: Optional[ErrorListener] = None,
        on_end: Optional[EndListener] = None,
    ):
        if on_result:
            self._on_result.append(on_result)
        if on_error:
            self._on_error.append(on_error)
        if on_end:
            self._on_end.append(on_end)

    @property
    def is_active(self) -> bool:
        return self.state in (CaptureState.LISTENING, CaptureState.PROCESSING)

    async def _notify(self, listeners: list, *args):
        for listener in listeners:
            result = listener(*args)
            if inspect.isawaitable(result):
                await result

    async def _fail(self, error: CaptureError) -> CaptureError:
        self.state = CaptureState.ERROR
        self.last_error = error
        logger.info(f"Speech capture error: {error.kind.value}")
        await self._notify(self._on_error, error)
        self.state = CaptureState.IDLE
        await self._notify(self._on_end)
        return error

    async def _succeed(self, transcript: str) -> str:
        self.state = CaptureState.IDLE
        self.last_error = None
        await self._notify(self._on_result, transcript)
        await self._notify(self._on_end)
        return transcript

    async def start_listening(self, audio_bytes: bytes, audio_format: str = "webm") -> Optional[str]:
        """Transcribe one recorded utterance."""
        if self.is_active:
            raise CaptureError(CaptureErrorKind.OTHER, "Already listening.")

        self._attempt += 1
        attempt = self._attempt
        self.state = CaptureState.LISTENING
        mime_type = MIME_MAP.get(audio_format, "audio/webm")
        logger.info(f"Received audio: {len(audio_bytes) / 1024:.1f}KB, format={audio_format}")

        self.state = CaptureState.PROCESSING
        try:
            transcript = await self.transcriber.transcribe(audio_bytes, mime_type, self.language)
        except CaptureError as e:
            if attempt != self._attempt:
                return None
            raise await self._fail(e)

        if attempt != self._attempt:
            logger.info("Discarding transcript from a stopped capture")
            return None
        return await self._succeed(transcript)

    async def accept_transcript(self, text: str) -> str:
        """Take a transcript produced by the client's own recognizer."""
        self._attempt += 1
        cleaned = sanitize_transcript(text)
        if not cleaned:
            raise await self._fail(CaptureError(CaptureErrorKind.NO_SPEECH))
        return await self._succeed(cleaned)

    async def report_error(self, code: Optional[str], message: Optional[str] = None) -> CaptureError:
        """Record a client-side recognizer error code."""
        self._attempt += 1
        return await self._fail(CaptureError(CaptureErrorKind.from_code(code), message))

    async def stop(self):
        """User toggled capture off; any in-flight result is ignored."""
        if not self.is_active:
            return
        self._attempt += 1
        self.state = CaptureState.IDLE
        await self._notify(self._on_end)


_transcriber: Optional[GeminiTranscriber] = None


def get_transcriber() -> GeminiTranscriber:
    global _transcriber
    if _transcriber is None:
        _transcriber = GeminiTranscriber()
    return _transcriber
