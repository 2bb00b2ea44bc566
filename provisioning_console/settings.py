"""Runtime configuration for the provisioning console."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from provisioning_console.constants import (
    DEFAULT_CATALOG_DIR,
    DEFAULT_IDLE_TIMEOUT,
    DEFAULT_OVERALL_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    TimeoutPolicy,
)


class EngineSettings(BaseSettings):
    """Settings sourced from ``PROVISION_*`` environment variables and an optional .env file."""

    model_config = SettingsConfigDict(env_prefix="PROVISION_", env_file=".env", env_file_encoding="utf-8", extra="ignore")

    overall_timeout: float = Field(default=DEFAULT_OVERALL_TIMEOUT)
    idle_timeout: float = Field(default=DEFAULT_IDLE_TIMEOUT)
    idle_timeout_enabled: bool = Field(default=True)
    poll_interval: float = Field(default=DEFAULT_POLL_INTERVAL)
    catalog_dir: Path = Field(default=DEFAULT_CATALOG_DIR)
    log_level: str = Field(default="INFO")
    log_file: Path | None = Field(default=None)
    reboot_delay: int = Field(default=10)

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError("PROVISION_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG")
        return normalized

    @field_validator("overall_timeout", "idle_timeout", "poll_interval")
    @classmethod
    def _require_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts and poll interval must be > 0")
        return value

    @field_validator("reboot_delay")
    @classmethod
    def _validate_reboot_delay(cls, value: int) -> int:
        if value < 0:
            raise ValueError("PROVISION_REBOOT_DELAY must be >= 0")
        return value

    def default_timeout(self) -> TimeoutPolicy:
        return TimeoutPolicy(
            overall_seconds=self.overall_timeout,
            idle_enabled=self.idle_timeout_enabled,
            idle_seconds=self.idle_timeout,
        )


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Return cached settings instance."""

    settings = EngineSettings()
    settings.catalog_dir = settings.catalog_dir.expanduser().resolve()
    if settings.log_file is not None:
        settings.log_file = settings.log_file.expanduser().resolve()
    return settings


__all__ = ["EngineSettings", "get_settings"]
