import logging
from typing import List
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_config_logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Google AI Configuration
    google_api_key: str = ""

    # Application Configuration
    environment: str = "development"
    debug: bool = False

    allowed_origins: List[str] = ["*"]

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_origins(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    # Server Configuration
    port: int = 8080
    host: str = "0.0.0.0"

    # Model Configuration
    gemini_model: str = "gemini-2.5-flash"
    transcription_model: str = "gemini-2.5-flash"
    tts_model: str = "gemini-2.5-flash-preview-tts"
    speech_language: str = "en-US"

    # Database Configuration
    database_path: str = "./data/dispatch.db"

    # Geocoding (OpenStreetMap Nominatim)
    geocoding_base_url: str = "https://nominatim.openstreetmap.org"
    geocoding_user_agent: str = "WebSlingerDispatch/1.0"
    geocoding_min_interval_seconds: float = 1.0
    geocoding_timeout_seconds: float = 10.0
    geocoding_bias_radius_miles: float = 31.0
    geocoding_confidence_threshold: float = 0.5

    # Confidence Thresholds
    low_confidence_threshold: float = 0.7  # Drafts below this are flagged for review

    # Proximity announcements
    proximity_radius_miles: float = 3.0
    announcement_home_state: str = "texas"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        validate_assignment=True
    )

    def validate_config(self):
        """Log warnings for missing configurations."""
        warnings = []
        if not self.google_api_key:
            warnings.append("GOOGLE_API_KEY not set - voice parsing will use keyword fallback, TTS disabled")
        if "openstreetmap.org" in self.geocoding_base_url and self.geocoding_min_interval_seconds < 1.0:
            warnings.append("Public Nominatim allows at most 1 request/second")
        for w in warnings:
            _config_logger.warning(f"[CONFIG] {w}")
        return warnings


# Global settings instance
settings = Settings()
