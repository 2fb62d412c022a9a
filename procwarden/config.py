"""Global configuration — loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

from procwarden.exceptions import ConfigurationError

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class WardenSettings(BaseSettings):
    # Health endpoint (the container HEALTHCHECK curls this port)
    service_port: int = Field(
        3000,
        ge=1,
        le=65535,
        validation_alias=AliasChoices("SERVICE_PORT", "PAPERLESS_AI_PORT"),
    )
    health_host: str = "0.0.0.0"
    log_level: str = "INFO"

    # Persistent store and application tree
    data_dir: Path = Path("/app/data")
    app_dir: Path = Path("/app")

    # Primary service (web application)
    primary_command: str = "node server.js"
    primary_port: int = Field(3001, ge=1, le=65535)
    primary_ready_url: str | None = None  # None -> tcp://127.0.0.1:<primary_port>, "" -> liveness only

    # Worker (NLP runtime)
    worker_command: str = "python3 main.py --host 127.0.0.1 --port 8000"
    worker_ready_url: str = ""
    worker_required: bool = True

    # Startup sequencing
    start_order: str = "worker,primary"
    wait_for_ready: bool = False
    ready_timeout: float = Field(60.0, gt=0)

    # Restart policy
    immediate_retries: int = Field(2, ge=0)
    backoff_base: float = Field(1.0, gt=0)
    backoff_cap: float = Field(60.0, gt=0)
    max_restarts: int = Field(5, ge=0)
    restart_window: float = Field(300.0, gt=0)
    healthy_reset_after: float = Field(60.0, gt=0)

    # Health and shutdown timing
    staleness_window: float = Field(30.0, gt=0)
    probe_interval: float = Field(5.0, gt=0)
    probe_timeout: float = Field(2.0, gt=0)
    grace_period: float = Field(10.0, ge=0)

    model_config = {"populate_by_name": True}

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"must be one of {', '.join(_LOG_LEVELS)}")
        return level


def load_settings(**overrides) -> WardenSettings:
    """Read settings from the environment, reporting bad values as a ConfigurationError."""
    try:
        return WardenSettings(**overrides)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ConfigurationError(problems) from e
