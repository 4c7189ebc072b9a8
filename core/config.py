"""Engine settings loaded from the environment (and an optional .env file)."""

from __future__ import annotations

import os
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

ENV_PREFIX = "REPORT_ENGINE_"


class Settings(BaseModel):
    database_url: str = "sqlite+aiosqlite:///report_engine.db"

    # Scheduler loop
    tick_interval_seconds: float = Field(30.0, gt=0)
    drain_timeout_seconds: float = Field(30.0, ge=0)
    render_timeout_seconds: float = Field(300.0, gt=0)
    max_concurrent_renders: int = Field(8, ge=1)

    # A claim older than this is considered abandoned (crashed scheduler)
    claim_lease_seconds: float = Field(900.0, gt=0)

    # Store I/O retry with exponential backoff
    store_retry_attempts: int = Field(3, ge=1)
    store_retry_delay: float = Field(0.5, ge=0)
    store_retry_backoff: float = Field(2.0, ge=1)

    # DST fall-back: which of the two instants a repeated wall time maps to
    ambiguous_time: Literal["earlier", "later"] = "earlier"

    # Empty → dry-run LoggingRenderer
    renderer_url: str = ""
    renderer_timeout_seconds: float = Field(60.0, gt=0)

    log_level: str = "INFO"
    api_url: str = "http://localhost:8000"

    @model_validator(mode="after")
    def _lease_outlasts_render(self) -> Settings:
        # A claim must stay live for the whole render or another scheduler may re-fire it
        if self.claim_lease_seconds <= self.render_timeout_seconds:
            raise ValueError(
                f"claim_lease_seconds ({self.claim_lease_seconds}) must exceed "
                f"render_timeout_seconds ({self.render_timeout_seconds})"
            )
        return self


def load_settings(env_file: str | None = None, **overrides) -> Settings:
    """Build Settings from ``REPORT_ENGINE_*`` environment variables.

    Explicit keyword overrides win over the environment.
    """
    load_dotenv(env_file)
    values: dict = {}
    for name in Settings.model_fields:
        raw = os.getenv(ENV_PREFIX + name.upper())
        if raw is not None and raw != "":
            values[name] = raw
    values.update(overrides)
    return Settings.model_validate(values)
