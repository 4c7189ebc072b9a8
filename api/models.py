"""API request and response models."""

from datetime import datetime

from pydantic import BaseModel, Field

from scheduler.models import Frequency, OutputFormat, RunResult, Schedule, ScheduleSpec


class CreateScheduleRequest(ScheduleSpec):
    pass


class UpdateScheduleRequest(BaseModel):
    """Partial edit; omitted fields keep their current value."""
    name: str | None = None
    frequency: Frequency | None = None
    time_of_day: str | None = None
    timezone: str | None = None
    day_of_week: int | None = Field(None, ge=0, le=6)
    day_of_month: int | None = Field(None, ge=1, le=31)
    enabled: bool | None = None
    output_formats: list[OutputFormat] | None = None
    recipients: list[str] | None = None


class ScheduleResponse(BaseModel):
    schedule_id: str
    name: str
    frequency: str
    time_of_day: str
    timezone: str
    day_of_week: int | None = None
    day_of_month: int | None = None
    enabled: bool
    next_run: datetime | None = None
    last_run: datetime | None = None
    run_count: int
    failure_count: int
    last_error: str | None = None
    error_state: str | None = None
    output_formats: list[str]
    recipients: list[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_schedule(cls, schedule: Schedule) -> "ScheduleResponse":
        return cls.model_validate(schedule.model_dump(mode="json"))


class ScheduleStatusResponse(BaseModel):
    schedule: ScheduleResponse
    recent_runs: list[RunResult]


class TickResponse(BaseModel):
    fired: int
    results: list[RunResult]


class RunStatsResponse(BaseModel):
    total_runs: int
    successful_runs: int
    failed_runs: int
    average_duration_s: float
    top_formats: list[dict]
