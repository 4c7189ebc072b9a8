"""Schedule data models."""

from __future__ import annotations

import re
import uuid
from datetime import datetime, time, timezone
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

from core.errors import ScheduleConfigError

_HH_MM = re.compile(r"^(\d{1,2}):(\d{2})$")

MONDAY = 1


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


class OutputFormat(str, Enum):
    PDF = "pdf"
    EXCEL = "excel"
    CSV = "csv"


class AmbiguousTime(str, Enum):
    """Which instant a repeated wall-clock time (DST fall-back) resolves to."""
    EARLIER = "earlier"
    LATER = "later"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_time_of_day(value: str) -> time:
    m = _HH_MM.match(value or "")
    if not m:
        raise ValueError(f"time_of_day must be HH:MM, got {value!r}")
    hour, minute = int(m.group(1)), int(m.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"time_of_day out of range: {value!r}")
    return time(hour, minute)


class ScheduleSpec(BaseModel):
    """The user-editable part of a schedule, validated at write time."""

    name: str = ""
    frequency: Frequency
    time_of_day: str = "09:00"
    timezone: str = "UTC"
    day_of_week: int | None = Field(None, ge=0, le=6)     # Sunday=0
    day_of_month: int | None = Field(None, ge=1, le=31)
    enabled: bool = True
    output_formats: list[OutputFormat] = [OutputFormat.PDF]
    recipients: list[str] = []

    @field_validator("time_of_day")
    @classmethod
    def normalize_time_of_day(cls, v: str) -> str:
        return parse_time_of_day(v).strftime("%H:%M")

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v!r}") from None
        return v

    @field_validator("output_formats")
    @classmethod
    def dedupe_formats(cls, v: list[OutputFormat]) -> list[OutputFormat]:
        return list(dict.fromkeys(v))

    @model_validator(mode="after")
    def check_frequency_fields(self):
        f = self.frequency
        if f == Frequency.WEEKLY:
            if self.day_of_month is not None:
                raise ScheduleConfigError("weekly schedules cannot set day_of_month")
            if self.day_of_week is None:
                self.day_of_week = MONDAY
        elif f == Frequency.MONTHLY:
            if self.day_of_week is not None:
                raise ScheduleConfigError("monthly schedules cannot set day_of_week")
            if self.day_of_month is None:
                raise ScheduleConfigError("monthly schedules must set day_of_month")
        elif self.day_of_week is not None or self.day_of_month is not None:
            raise ScheduleConfigError(
                f"{f.value} schedules cannot set day_of_week or day_of_month"
            )
        return self

    @property
    def local_time(self) -> time:
        return parse_time_of_day(self.time_of_day)


class Schedule(ScheduleSpec):
    """A persisted recurring report configuration plus its run bookkeeping."""

    schedule_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    next_run: datetime | None = None
    last_run: datetime | None = None
    run_count: int = Field(0, ge=0)
    failure_count: int = Field(0, ge=0)
    last_error: str | None = None
    # Set when the schedule cannot be evaluated; excluded from fetch_due until cleared
    error_state: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    @model_validator(mode="after")
    def check_counters(self):
        if self.failure_count > self.run_count:
            raise ValueError("failure_count cannot exceed run_count")
        return self

    def spec(self) -> ScheduleSpec:
        return ScheduleSpec.model_validate(
            self.model_dump(include=set(ScheduleSpec.model_fields))
        )


class ScheduleUpdate(BaseModel):
    """Fields written back after a firing. Only explicitly set fields are persisted.

    Counters are increments applied in the store, never absolute values.
    """

    next_run: datetime | None = None
    last_run: datetime | None = None
    runs_added: int = Field(0, ge=0)
    failures_added: int = Field(0, ge=0)
    last_error: str | None = None


class RenderOutcome(BaseModel):
    succeeded: bool
    artifact_ref: str | None = None
    error: str | None = None

    @classmethod
    def success(cls, artifact_ref: str | None = None) -> RenderOutcome:
        return cls(succeeded=True, artifact_ref=artifact_ref)

    @classmethod
    def failure(cls, error: str) -> RenderOutcome:
        return cls(succeeded=False, error=error)


class RunResult(BaseModel):
    """Outcome of one firing."""

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    schedule_id: str
    fired_at: datetime
    succeeded: bool
    error_detail: str | None = None
    artifact_ref: str | None = None
    next_run: datetime | None = None
    duration_s: float | None = None
