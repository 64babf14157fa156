"""Text-to-Speech service with Gemini TTS primary and browser speech fallback."""
import logging
import asyncio
import base64
import io
import re
import wave
from dataclasses import dataclass
from typing import Optional, List
from datetime import datetime, timezone

from google import genai
from google.genai import types

from dispatch.config import settings

logger = logging.getLogger(__name__)


# Available voice presets for Gemini TTS
AVAILABLE_VOICES = [
    {"id": "Kore", "name": "Kore", "description": "Clear and professional voice"},
    {"id": "Charon", "name": "Charon", "description": "Deep and authoritative voice"},
    {"id": "Puck", "name": "Puck", "description": "Warm and friendly voice"},
    {"id": "Orus", "name": "Orus", "description": "Natural and conversational voice"},
]

DEFAULT_VOICE = "Kore"

# rpm/rpd limits per TTS model (0 = unlimited)
TTS_MODEL_QUOTAS = {
    "gemini-2.5-flash-preview-tts": {"rpm": 3, "rpd": 10},
    "gemini-2.5-pro-preview-tts": {"rpm": 3, "rpd": 10},
}

ENGINE_GEMINI = "gemini"
ENGINE_BROWSER = "browser"


@dataclass
class SpokenAnnouncement:
    """Result of a speak() call. audio_base64 is None when the browser should speak `text`."""
    text: str
    audio_base64: Optional[str] = None
    engine: str = ENGINE_BROWSER

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "audio_base64": self.audio_base64,
            "engine": self.engine,
        }


class TTSService:
    """Service for generating text-to-speech audio using Gemini models."""

    PRIMARY_MODEL = "gemini-2.5-flash-preview-tts"
    FALLBACK_MODELS = ["gemini-2.5-pro-preview-tts"]

    def __init__(self, client=None):
        self.client = client
        self._daily_count: dict[str, int] = {}
        self._minute_requests: dict[str, List[datetime]] = {}
        self._last_reset_date = ""
        if self.client is None:
            self._initialize()

    def _initialize(self):
        if settings.google_api_key:
            self.client = genai.Client(api_key=settings.google_api_key)
            logger.info("TTSService initialized with Google API key")
        else:
            logger.warning("TTSService: no Google API key, announcements use browser speech")

    def _reset_if_new_day(self):
        """Reset daily counter at midnight UTC."""
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        if today != self._last_reset_date:
            self._daily_count = {}
            self._minute_requests = {}
            self._last_reset_date = today
            logger.info("TTS daily counter reset for %s", today)

    def _prune_minute_window(self, model: str):
        """Remove requests older than 60 seconds from minute tracking."""
        cutoff = datetime.now(timezone.utc).timestamp() - 60
        requests = self._minute_requests.get(model, [])
        self._minute_requests[model] = [
            ts for ts in requests
            if ts.timestamp() > cutoff
        ]

    def _get_model_chain(self) -> List[str]:
        """Build deduplicated model chain for TTS generation."""
        chain = [settings.tts_model, self.PRIMARY_MODEL, *self.FALLBACK_MODELS]
        deduped = []
        seen = set()
        for model in chain:
            if not model or model in seen:
                continue
            seen.add(model)
            deduped.append(model)
        return deduped

    def _get_limits(self, model: str) -> tuple[int, int]:
        """Return rpm/rpd limits for model (0 = unlimited)."""
        quota = TTS_MODEL_QUOTAS.get(model, {})
        return int(quota.get("rpm", 3)), int(quota.get("rpd", 10))

    def _can_make_request(self, model: str) -> tuple[bool, str]:
        """Check if we can make a TTS request within rate limits."""
        self._reset_if_new_day()
        self._prune_minute_window(model)
        rpm_limit, rpd_limit = self._get_limits(model)
        daily = self._daily_count.get(model, 0)
        minute = len(self._minute_requests.get(model, []))

        if rpd_limit and daily >= rpd_limit:
            return False, f"Daily TTS quota exhausted for {model} ({rpd_limit}/day)"

        if rpm_limit and minute >= rpm_limit:
            return False, f"TTS rate limit reached for {model} ({rpm_limit}/minute)"

        return True, "OK"

    def _record_request(self, model: str):
        """Record a successful TTS request for rate limiting."""
        self._daily_count[model] = self._daily_count.get(model, 0) + 1
        self._minute_requests.setdefault(model, []).append(datetime.now(timezone.utc))

    def _mark_model_exhausted(self, model: str):
        """Mark model daily quota as exhausted when API returns quota errors."""
        _, rpd_limit = self._get_limits(model)
        if rpd_limit:
            self._daily_count[model] = rpd_limit

    @staticmethod
    def _pcm_sample_rate(mime_type: Optional[str]) -> int:
        """Extract sample rate from mime_type like 'audio/pcm;rate=24000'."""
        if not mime_type:
            return 24000
        match = re.search(r"rate=(\d+)", mime_type)
        if not match:
            return 24000
        return max(8000, int(match.group(1)))

    @staticmethod
    def _pcm_to_wav(pcm_data: bytes, sample_rate: int = 24000) -> bytes:
        """Wrap 16-bit mono PCM bytes in a WAV container for browser playback."""
        output = io.BytesIO()
        with wave.open(output, "wb") as wav_file:
            wav_file.setnchannels(1)
            wav_file.setsampwidth(2)
            wav_file.setframerate(sample_rate)
            wav_file.writeframes(pcm_data)
        return output.getvalue()

    @classmethod
    def _extract_audio(cls, response) -> Optional[bytes]:
        """Extract the first audio payload from a generate_content response."""
        candidates = getattr(response, "candidates", None) or []
        for candidate in candidates:
            content = getattr(candidate, "content", None)
            parts = getattr(content, "parts", None) or []
            for part in parts:
                inline_data = getattr(part, "inline_data", None)
                if inline_data and getattr(inline_data, "data", None):
                    mime_type = str(getattr(inline_data, "mime_type", "") or "")
                    if mime_type.startswith("audio/pcm") or mime_type.startswith("audio/L16"):
                        return cls._pcm_to_wav(inline_data.data, cls._pcm_sample_rate(mime_type))
                    if mime_type.startswith("audio/"):
                        return inline_data.data
        return None

    async def _generate_tts(self, model: str, text: str, voice: str) -> Optional[bytes]:
        response = await asyncio.to_thread(
            self.client.models.generate_content,
            model=model,
            contents=text,
            config=types.GenerateContentConfig(
                response_modalities=["AUDIO"],
                speech_config=types.SpeechConfig(
                    voice_config=types.VoiceConfig(
                        prebuilt_voice_config=types.PrebuiltVoiceConfig(
                            voice_name=voice,
                        )
                    )
                ),
            ),
        )
        return self._extract_audio(response)

    async def generate_speech(self, text: str, voice: str = DEFAULT_VOICE) -> Optional[bytes]:
        """Generate speech audio from text, trying each model in the chain."""
        if not self.client:
            logger.debug("TTS client not initialized")
            return None

        if not text or not text.strip():
            logger.warning("Empty text provided for TTS")
            return None

        max_chars = 2000
        if len(text) > max_chars:
            text = text[:max_chars] + "..."
            logger.info("TTS text truncated to %d characters", max_chars)

        valid_voices = [v["id"] for v in AVAILABLE_VOICES]
        if voice not in valid_voices:
            voice = DEFAULT_VOICE

        last_error: Optional[Exception] = None
        for model in self._get_model_chain():
            allowed, reason = self._can_make_request(model)
            if not allowed:
                logger.warning("TTS request blocked for %s: %s", model, reason)
                continue

            try:
                audio_data = await self._generate_tts(model=model, text=text, voice=voice)
                if not audio_data:
                    logger.warning("TTS response contained no audio data for %s", model)
                    continue

                self._record_request(model)
                logger.info("Generated TTS audio with %s (%d bytes), voice=%s", model, len(audio_data), voice)
                return audio_data
            except Exception as e:
                last_error = e
                error_str = str(e)
                if "429" in error_str or "RESOURCE_EXHAUSTED" in error_str:
                    logger.warning("TTS rate limited by API for %s: %s", model, error_str[:200])
                    self._mark_model_exhausted(model)
                    continue
                logger.error("TTS generation error with %s: %s", model, e)
                continue

        if last_error:
            logger.error("All TTS models failed. Last error: %s", last_error)
        return None

    async def speak(self, text: str, voice: str = DEFAULT_VOICE) -> SpokenAnnouncement:
        """Produce playable audio for `text`, or a browser-speech fallback."""
        audio_bytes = await self.generate_speech(text, voice)
        if audio_bytes:
            return SpokenAnnouncement(
                text=text,
                audio_base64=base64.b64encode(audio_bytes).decode("utf-8"),
                engine=ENGINE_GEMINI,
            )
        return SpokenAnnouncement(text=text, audio_base64=None, engine=ENGINE_BROWSER)

    def health_check(self) -> bool:
        """Check if TTS service is available."""
        return self.client is not None


# Global singleton
tts_service = TTSService()
