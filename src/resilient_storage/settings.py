from __future__ import annotations

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

STORAGE_ENV_PREFIX = "STORAGE_"


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class StorageSettings(BaseSettings):
    """Settings for strategy selection, health polling and storage retries."""

    model_config = prefixed_settings_config(STORAGE_ENV_PREFIX)

    health_check_interval_ms: int = Field(default=30_000, ge=5_000, le=300_000)
    health_check_timeout_ms: int = Field(default=10_000, ge=1_000, le=60_000)
    fallback_enabled: bool = True
    max_concurrent_probes: int = Field(default=8, ge=1, le=64)
    health_history_size: int = Field(default=100, ge=1, le=10_000)
    retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_min_seconds: float = 0.1
    retry_max_seconds: float = 2.0
    log_level: str = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @model_validator(mode="after")
    def _validate_retry_bounds(self) -> StorageSettings:
        if self.retry_min_seconds < 0:
            raise ValueError("retry_min_seconds must be >= 0")
        if self.retry_max_seconds < self.retry_min_seconds:
            raise ValueError("retry_max_seconds must be >= retry_min_seconds")
        return self

    @property
    def health_check_interval_seconds(self) -> float:
        """Return the health polling interval in seconds."""
        return self.health_check_interval_ms / 1000

    @property
    def health_check_timeout_seconds(self) -> float:
        """Return the per-probe health check timeout in seconds."""
        return self.health_check_timeout_ms / 1000
