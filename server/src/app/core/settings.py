"""Engine settings powered by :mod:`pydantic_settings`."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic.functional_validators import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized configuration for the query telemetry engine."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    database_path: Path = Field(
        default=Path("~/.query-telemetry/telemetry.db"),
        alias="QUERY_TELEMETRY_DB_PATH",
        description="SQLite file holding canonical queries, samples and sessions.",
    )
    targets_path: Path = Field(
        default=Path("config/query-telemetry/targets.example.json"),
        alias="QUERY_TELEMETRY_TARGETS_PATH",
        description="JSON manifest listing the monitored targets.",
    )
    log_level: str = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging verbosity for the service.",
    )
    default_interval_seconds: int = Field(
        default=60,
        alias="QUERY_TELEMETRY_DEFAULT_INTERVAL",
        ge=1,
        description="Polling interval used when a session does not provide one.",
    )
    source_timeout_seconds: float = Field(
        default=10.0,
        alias="QUERY_TELEMETRY_SOURCE_TIMEOUT",
        gt=0,
        description="Upper bound (in seconds) for a single telemetry snapshot fetch.",
    )
    snapshot_limit: int = Field(
        default=100,
        alias="QUERY_TELEMETRY_SNAPSHOT_LIMIT",
        ge=1,
        description="Maximum number of statements read per snapshot.",
    )
    retention_days: int = Field(
        default=90,
        alias="QUERY_TELEMETRY_RETENTION_DAYS",
        ge=0,
        description="Default age after which samples are pruned.",
    )
    stop_timeout_seconds: float = Field(
        default=5.0,
        alias="QUERY_TELEMETRY_STOP_TIMEOUT",
        ge=0,
        description="How long a stop request waits for an in-flight cycle.",
    )
    busy_timeout_seconds: float = Field(
        default=30.0,
        alias="QUERY_TELEMETRY_BUSY_TIMEOUT",
        ge=0,
        description="SQLite lock wait applied to concurrent writers.",
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return value.upper()

    @field_validator("database_path", "targets_path", mode="before")
    @classmethod
    def _coerce_path(cls, value: str | Path) -> Path:
        return Path(value)


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()


def reload_settings() -> Settings:
    """Drop the cached settings and read the environment again (used by tests)."""

    get_settings.cache_clear()
    return get_settings()


__all__ = ["Settings", "get_settings", "reload_settings"]
