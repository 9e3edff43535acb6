"""Collector configuration — all settings from environment + optional clawwatch.toml."""

import os
from pathlib import Path
from typing import Any

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

from clawwatch_engine.exceptions import ConfigError, SchedulerError
from clawwatch_engine.scheduler import parse_schedule


class CollectorConfig(BaseSettings):
    """Runtime configuration for the telemetry collector (validated via Pydantic)."""

    model_config = {"env_prefix": "", "extra": "ignore", "populate_by_name": True}

    # Gateway
    gateway_url: str = Field(alias="GATEWAY_URL")
    gateway_token: str = Field(alias="GATEWAY_TOKEN")
    gateway_rpc_timeout_seconds: float = 30.0

    # Store
    database_url: str = Field(alias="DATABASE_URL")
    db_pool_size: int = 5
    db_max_overflow: int = 10

    # Scheduling
    session_poll_interval_seconds: int = Field(default=60, alias="SESSION_POLL_INTERVAL")
    transcript_scan_interval_seconds: int | None = Field(
        default=None, alias="TRANSCRIPT_SCAN_INTERVAL",
    )
    alert_eval_interval_seconds: int = Field(default=60, alias="ALERT_EVAL_INTERVAL")
    retention_cron: str = Field(default="0 3 * * *", alias="RETENTION_CRON")

    # Transcripts
    sessions_dir: str = Field(
        default=str(Path.home() / ".clawdbot" / "agents"),
        alias="SESSIONS_DIR",
    )
    backfill_days: int = 3

    # HTTP surfaces
    health_port: int = Field(default=8081, alias="HEALTH_PORT")
    metrics_port: int = Field(default=0, alias="METRICS_PORT")

    # Bootstrapping
    seed_defaults: bool = Field(default=False, alias="SEED_DEFAULTS")

    # Debug
    debug: bool = Field(default=False, alias="COLLECTOR_DEBUG")

    @field_validator("gateway_url")
    @classmethod
    def validate_gateway_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://", "ws://", "wss://")):
            raise ValueError(f"Invalid gateway URL scheme: {v}")
        return v.rstrip("/")

    @field_validator("gateway_token")
    @classmethod
    def validate_gateway_token(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("GATEWAY_TOKEN must not be empty")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite://", "sqlite+aiosqlite://")):
            raise ValueError(f"Invalid database URL scheme: {v}")
        return v

    @field_validator(
        "session_poll_interval_seconds",
        "alert_eval_interval_seconds",
        "backfill_days",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v

    @field_validator("retention_cron")
    @classmethod
    def validate_retention_cron(cls, v: str) -> str:
        try:
            parse_schedule(v)
        except SchedulerError as e:
            raise ValueError(str(e)) from e
        return v

    @field_validator("transcript_scan_interval_seconds")
    @classmethod
    def validate_scan_interval(cls, v: int | None) -> int | None:
        if v is not None and v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v

    @property
    def scan_interval_seconds(self) -> int:
        """Transcript scans default to the session poll cadence."""
        return self.transcript_scan_interval_seconds or self.session_poll_interval_seconds

    @property
    def ws_url(self) -> str:
        """Gateway push-channel URL (http(s) rewritten to ws(s))."""
        if self.gateway_url.startswith("https://"):
            return "wss://" + self.gateway_url[len("https://"):]
        if self.gateway_url.startswith("http://"):
            return "ws://" + self.gateway_url[len("http://"):]
        return self.gateway_url

    @property
    def rpc_url(self) -> str:
        """Gateway RPC base URL (ws(s) rewritten to http(s))."""
        if self.gateway_url.startswith("wss://"):
            return "https://" + self.gateway_url[len("wss://"):]
        if self.gateway_url.startswith("ws://"):
            return "http://" + self.gateway_url[len("ws://"):]
        return self.gateway_url

    @classmethod
    def _env_name(cls, name: str) -> str:
        field = cls.model_fields.get(name)
        if field is not None and field.alias:
            return field.alias
        return name.upper()

    @classmethod
    def from_env(cls, overrides: dict[str, Any] | None = None) -> "CollectorConfig":
        """Create config from environment variables.

        ``overrides`` (typically from clawwatch.toml) fill in values the
        environment does not set. Validation failures are re-raised as
        ConfigError so the entrypoint can exit before connecting anywhere.
        """
        values = {
            k: v for k, v in (overrides or {}).items()
            if cls._env_name(k) not in os.environ
        }
        try:
            return cls(**values)
        except ValidationError as e:
            fields = ", ".join(
                ".".join(str(p) for p in err["loc"]) or "config" for err in e.errors()
            )
            raise ConfigError(f"Invalid collector configuration ({fields}): {e}") from e
