"""Layered settings: CLI flags over ``QUEUE_*`` environment variables over defaults."""

from typing import Any, Mapping, Optional

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from queue_job_client.errors import ConfigValidationError
from queue_job_client.models import HARD_FLOOR_MS, PollingConfig
from queue_job_client.queue_job_client import (
    DEFAULT_BASE_URL,
    DEFAULT_MODELS_URL,
    DEFAULT_SYNC_URL,
    ENQUEUE_AND_WAIT_FACTOR,
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="QUEUE_", env_ignore_empty=True, case_sensitive=False, extra="ignore"
    )

    api_key: str = Field(..., min_length=1, description="Bearer token for the queue API")
    base_url: str = DEFAULT_BASE_URL
    models_url: str = DEFAULT_MODELS_URL
    sync_url: str = DEFAULT_SYNC_URL
    timeout_ms: float = Field(120_000, ge=0)
    initial_backoff_ms: float = Field(1000, gt=0)
    max_backoff_ms: float = Field(8000, ge=HARD_FLOOR_MS)
    backoff_factor: float = Field(ENQUEUE_AND_WAIT_FACTOR, ge=1.0)
    jitter_ratio: float = Field(0.2, ge=0.0, le=1.0)
    log_level: str = "INFO"
    json_logs: bool = False

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type,
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple:
        # keyword arguments (CLI flags) win over the environment
        return (init_settings, env_settings)

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> "Settings":
        if self.max_backoff_ms < self.initial_backoff_ms:
            raise ValueError(
                "max_backoff_ms must be greater than or equal to initial_backoff_ms"
            )
        return self

    def polling_config(self) -> PollingConfig:
        return PollingConfig(
            timeout_ms=self.timeout_ms,
            initial_backoff_ms=self.initial_backoff_ms,
            max_backoff_ms=self.max_backoff_ms,
            backoff_factor=self.backoff_factor,
            jitter_ratio=self.jitter_ratio,
        )


def _location(loc: tuple) -> str:
    return ".".join(str(part) for part in loc) or "settings"


def load_settings(cli_overrides: Optional[Mapping[str, Any]] = None) -> Settings:
    """Builds Settings, letting unset (None) CLI flags fall through to the environment."""
    overrides = {
        name: value for name, value in (cli_overrides or {}).items() if value is not None
    }
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        messages = "\n".join(
            f"{_location(error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        raise ConfigValidationError(f"Configuration validation failed:\n{messages}") from exc
