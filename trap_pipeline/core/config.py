"""Application configuration using Pydantic settings."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """Pipeline configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="TRAP_",
        extra="ignore",
    )

    environment: Literal["local", "test", "staging", "production"] = Field(default="local")
    service_name: str = Field(default="trap-telemetry-pipeline")
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True)
    database_url: str = Field(default="sqlite:///./data/analytics.db")
    sql_echo: bool = Field(default=False)

    aws_region: str = Field(default="us-east-1")
    aws_access_key_id: str | None = Field(default=None)
    aws_secret_access_key: str | None = Field(default=None)

    sqs_queue_url: str | None = Field(default=None)
    sqs_endpoint_url: str | None = Field(default=None)
    sqs_wait_time_seconds: int = Field(default=20, ge=0, le=20)
    sqs_visibility_timeout: int | None = Field(default=None)
    redelivery_delay_seconds: int = Field(default=0, ge=0)
    max_receive_count: int | None = Field(default=None, ge=1)
    dead_letter_queue_url: str | None = Field(default=None)

    raw_bucket: str | None = Field(default=None)
    processed_bucket: str | None = Field(default=None)
    s3_endpoint_url: str | None = Field(default=None)

    registry_base_url: str = Field(default="http://api-gateway/api")
    registry_timeout_seconds: float = Field(default=10.0)
    registry_conflict_retries: int = Field(default=0, ge=0)
    mark_events_processed: bool = Field(default=True)

    max_in_flight_messages: int = Field(default=1, ge=1)
    shutdown_grace_seconds: float = Field(default=30.0, ge=0)
    pipeline_enabled: bool = Field(default=True)

    aggregation_interval_seconds: float = Field(default=300.0, gt=0)
    error_backoff_seconds: float = Field(default=60.0, ge=0)
    risk_window_hours: int = Field(default=24, ge=1)
    risk_medium_threshold: float = Field(default=1.0)
    risk_high_threshold: float = Field(default=3.0)

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return value.upper()

    @field_validator(
        "aws_access_key_id",
        "aws_secret_access_key",
        "sqs_queue_url",
        "sqs_endpoint_url",
        "sqs_visibility_timeout",
        "max_receive_count",
        "dead_letter_queue_url",
        "raw_bucket",
        "processed_bucket",
        "s3_endpoint_url",
        mode="before",
    )
    @classmethod
    def empty_string_to_none(cls, value: object) -> object:
        if value == "":
            return None
        return value

    @field_validator("registry_base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


@lru_cache
def get_settings() -> AppSettings:
    """Return cached application settings instance."""

    return AppSettings()
