from functools import lru_cache
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

PIPELINE_MODES = frozenset({"background", "inline"})


class Settings(BaseSettings):
    app_name: str = "Meeting Agent API"
    app_env: str = "development"
    app_version: str = "0.1.0"
    api_prefix: str = "/api"
    allowed_origins: Annotated[list[str], NoDecode] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    stream_api_key: str = ""
    stream_api_secret: str = ""
    stream_api_url: str = "https://video.stream-io-api.com"
    stream_api_timeout_seconds: float = 10.0
    stream_default_call_type: str = "default"
    webhook_signature_verification_enabled: bool = True
    meetings_store: str = "mongodb"
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "meeting_agent"
    mongodb_meetings_collection: str = "meetings"
    mongodb_agents_collection: str = "agents"
    mongodb_webhook_events_collection: str = "webhook_events"
    mongodb_connect_timeout_ms: int = 2000
    agent_join_delay_seconds: float = 1.0
    agent_member_role: str = "admin"
    realtime_voice: str = "alloy"
    realtime_turn_detection_type: str = "server_vad"
    realtime_turn_detection_threshold: float = 0.5
    realtime_transcription_model: str = "whisper-1"
    openai_api_key: str = ""
    openai_api_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    openai_api_timeout_seconds: float = 30.0
    sarvam_api_key: str = ""
    sarvam_api_url: str = "https://api.sarvam.ai"
    sarvam_api_timeout_seconds: float = 30.0
    transcript_max_chars: int = 15_000
    transcript_fetch_timeout_seconds: float = 15.0
    transcript_pipeline_mode: str = "background"
    transcript_pipeline_max_attempts: int = 3
    transcript_pipeline_retry_backoff_seconds: float = 1.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def should_verify_webhook_signature(self) -> bool:
        # Verification can only be switched off outside production.
        return self.webhook_signature_verification_enabled or self.is_production

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("app_env", "meetings_store", mode="before")
    @classmethod
    def normalize_lowercase(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("transcript_pipeline_mode", mode="before")
    @classmethod
    def normalize_pipeline_mode(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in PIPELINE_MODES:
            return "background"
        return normalized

    @field_validator("stream_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_stream_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 10.0
        return parsed_value

    @field_validator(
        "openai_api_timeout_seconds",
        "sarvam_api_timeout_seconds",
        mode="before",
    )
    @classmethod
    def normalize_summarization_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 30.0
        return parsed_value

    @field_validator("transcript_fetch_timeout_seconds", mode="before")
    @classmethod
    def normalize_fetch_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 15.0
        return parsed_value

    @field_validator("agent_join_delay_seconds", "transcript_pipeline_retry_backoff_seconds", mode="before")
    @classmethod
    def normalize_non_negative_delay(cls, value: float | str) -> float:
        return max(float(value), 0.0)

    @field_validator("transcript_pipeline_max_attempts", mode="before")
    @classmethod
    def normalize_max_attempts(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 3
        return parsed_value

    @field_validator("transcript_max_chars", mode="before")
    @classmethod
    def normalize_transcript_max_chars(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 15_000
        return parsed_value


@lru_cache
def get_settings() -> Settings:
    return Settings()
