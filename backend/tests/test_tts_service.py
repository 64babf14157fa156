"""
Tests for announcement speech synthesis and its browser fallback.
"""

import base64
from types import SimpleNamespace

import pytest

from dispatch.services.tts_service import (
    DEFAULT_VOICE,
    ENGINE_BROWSER,
    ENGINE_GEMINI,
    TTSService,
)
from conftest import FakeGenaiClient

PCM = b"\x01\x00" * 2400


def audio_response(data: bytes = PCM, mime_type: str = "audio/pcm;rate=24000"):
    part = SimpleNamespace(inline_data=SimpleNamespace(data=data, mime_type=mime_type))
    return SimpleNamespace(text=None, candidates=[SimpleNamespace(content=SimpleNamespace(parts=[part]))])


def service_with(*responses) -> TTSService:
    return TTSService(client=FakeGenaiClient(*responses))


class TestAudioHelpers:

    @pytest.mark.parametrize("mime_type,rate", [
        ("audio/pcm;rate=16000", 16000),
        ("audio/pcm", 24000),
        (None, 24000),
        ("audio/pcm;rate=100", 8000),
    ])
    def test_sample_rate(self, mime_type, rate):
        assert TTSService._pcm_sample_rate(mime_type) == rate

    def test_pcm_wrapped_as_wav(self):
        audio = TTSService._extract_audio(audio_response())
        assert audio[:4] == b"RIFF"
        assert audio[8:12] == b"WAVE"

    def test_encoded_audio_passed_through(self):
        assert TTSService._extract_audio(audio_response(b"ID3mp3", "audio/mpeg")) == b"ID3mp3"

    def test_no_audio_parts(self):
        assert TTSService._extract_audio(SimpleNamespace(candidates=[])) is None


class TestTTSService:

    async def test_speak_with_gemini(self):
        service = service_with(audio_response())

        spoken = await service.speak("New incident near your current location!")

        assert spoken.engine == ENGINE_GEMINI
        assert base64.b64decode(spoken.audio_base64)[:4] == b"RIFF"
        assert spoken.to_dict()["text"] == "New incident near your current location!"

    async def test_speak_without_client_uses_browser(self):
        service = service_with()
        service.client = None

        spoken = await service.speak("hello")

        assert spoken.engine == ENGINE_BROWSER
        assert spoken.audio_base64 is None
        assert service.health_check() is False

    async def test_unknown_voice_uses_default(self):
        service = service_with(audio_response())

        await service.speak("hello", voice="Nonexistent")

        config = service.client.models.calls[0]["config"]
        assert config.speech_config.voice_config.prebuilt_voice_config.voice_name == DEFAULT_VOICE

    async def test_quota_error_moves_to_next_model(self):
        service = service_with(RuntimeError("429 RESOURCE_EXHAUSTED"), audio_response())

        spoken = await service.speak("hello")

        models = [call["model"] for call in service.client.models.calls]
        assert models == ["gemini-2.5-flash-preview-tts", "gemini-2.5-pro-preview-tts"]
        assert spoken.engine == ENGINE_GEMINI
        allowed, _ = service._can_make_request("gemini-2.5-flash-preview-tts")
        assert allowed is False

    async def test_per_minute_limit(self):
        service = service_with(audio_response())

        for _ in range(4):
            await service.speak("hello")

        models = [call["model"] for call in service.client.models.calls]
        assert models.count("gemini-2.5-flash-preview-tts") == 3
        assert models[-1] == "gemini-2.5-pro-preview-tts"

    async def test_all_models_failing_falls_back_to_browser(self):
        service = service_with(RuntimeError("500 INTERNAL"))

        spoken = await service.speak("hello")

        assert spoken.engine == ENGINE_BROWSER
        assert spoken.text == "hello"

    async def test_empty_text(self):
        service = service_with(audio_response())
        assert await service.generate_speech("   ") is None
        assert service.client.models.calls == []
