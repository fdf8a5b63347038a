from functools import lru_cache
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Meet Artifacts Relay API"
    app_env: str = "development"
    app_version: str = "0.1.0"
    api_prefix: str = "/api"
    allowed_origins: Annotated[list[str], NoDecode] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    conference_store: str = "mongodb"
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "meet_artifacts"
    mongodb_conference_tracking_collection: str = "conference_artifact_tracking"
    mongodb_meeting_records_collection: str = "meeting_records"
    mongodb_connect_timeout_ms: int = 2000

    conference_timeout_minutes: float = 100.0
    dispatch_max_attempts: int = 10
    dispatch_retry_backoff_minutes: float = 5.0
    dispatch_retry_max_backoff_minutes: float = 240.0
    processing_stale_after_minutes: float = 30.0

    timeout_sweeper_enabled: bool = False
    sweep_interval_seconds: float = 300.0
    sweep_max_workers: int = 4
    sweep_batch_size: int = 200

    monitored_users: Annotated[list[str], NoDecode] = []

    google_service_account_file: str = ""
    google_service_account_json: str = ""
    google_impersonated_user_email: str = ""
    google_meet_api_url: str = "https://meet.googleapis.com/v2"
    google_directory_api_url: str = "https://admin.googleapis.com/admin/directory/v1"
    google_api_timeout_seconds: float = 10.0
    actor_email_cache_ttl_seconds: float = 3600.0
    default_meeting_title: str = "Google Meet meeting"

    webhook_destination_url: str = ""
    webhook_timeout_seconds: float = 15.0
    webhook_max_attempts: int = 3
    webhook_retry_backoff_seconds: float = 1.0
    webhook_user_agent: str = "MeetArtifactsRelay/1.0"

    pubsub_webhook_secret: str = ""
    cron_secret: str = ""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("monitored_users", mode="before")
    @classmethod
    def parse_monitored_users(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            value = value.split(",")
        return [email.strip().lower() for email in value if email and email.strip()]

    @field_validator("conference_store", mode="before")
    @classmethod
    def normalize_conference_store(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("conference_timeout_minutes", mode="before")
    @classmethod
    def normalize_conference_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 100.0
        return parsed_value

    @field_validator("dispatch_max_attempts", mode="before")
    @classmethod
    def normalize_dispatch_max_attempts(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value < 0:
            return 0
        return parsed_value

    @field_validator("sweep_interval_seconds", mode="before")
    @classmethod
    def normalize_sweep_interval(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 300.0
        return parsed_value

    @field_validator("sweep_max_workers", mode="before")
    @classmethod
    def normalize_sweep_max_workers(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 1
        return parsed_value

    @field_validator("google_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_google_api_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 10.0
        return parsed_value

    @field_validator("webhook_timeout_seconds", mode="before")
    @classmethod
    def normalize_webhook_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 15.0
        return parsed_value

    @field_validator("webhook_max_attempts", mode="before")
    @classmethod
    def normalize_webhook_max_attempts(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 1
        return parsed_value

    @property
    def is_google_configured(self) -> bool:
        return bool(
            self.google_service_account_file.strip() or self.google_service_account_json.strip()
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
