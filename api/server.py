"""FastAPI service layer for the report schedule engine."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, HTTPException
from pydantic import ValidationError

from api.models import (
    CreateScheduleRequest,
    RunStatsResponse,
    ScheduleResponse,
    ScheduleStatusResponse,
    TickResponse,
    UpdateScheduleRequest,
)
from core.config import load_settings
from core.errors import RecurrenceError
from core.event_bus import EventBus
from scheduler.models import AmbiguousTime, RunResult, ScheduleSpec
from scheduler.renderers import build_renderer
from scheduler.report_scheduler import SchedulerLoop
from scheduler.run_tracker import RunTracker
from scheduler.schedule_store import ScheduleStore
from scheduler.service import ScheduleService
from store.run_log_store import RunLogStore

logger = logging.getLogger(__name__)


# ── Singletons ────────────────────────────────────────────────────────────────
# Tests swap these for per-test instances backed by a temporary database.

_settings = load_settings()
_schedule_store = ScheduleStore(_settings.database_url, claim_lease_seconds=_settings.claim_lease_seconds)
_run_log = RunLogStore(_settings.database_url)
_event_bus = EventBus()
_service = ScheduleService(
    _schedule_store, _run_log, ambiguous=AmbiguousTime(_settings.ambiguous_time)
)
_scheduler = SchedulerLoop(
    _schedule_store,
    build_renderer(_settings),
    tracker=RunTracker(_schedule_store, _run_log),
    event_bus=_event_bus,
    settings=_settings,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await _schedule_store.init()
    await _run_log.init()
    await _scheduler.start()
    yield
    await _scheduler.stop()
    await _schedule_store.close()
    await _run_log.close()


app = FastAPI(
    title="Report Schedule Engine API",
    description="Recurring report schedules with exactly-once firing.",
    version="0.1.0",
    lifespan=lifespan,
)


def _not_found(schedule_id: str) -> HTTPException:
    return HTTPException(404, detail=f"Schedule '{schedule_id}' not found")


def _unprocessable(e: ValidationError) -> HTTPException:
    return HTTPException(422, detail=e.errors(include_url=False, include_context=False))


# ── Routes ────────────────────────────────────────────────────────────────────

@app.get("/health")
async def health():
    return {"status": "ok", "scheduler_running": _scheduler.running, "inflight": _scheduler.inflight}


@app.post("/schedules", response_model=ScheduleResponse, status_code=201)
async def create_schedule(req: CreateScheduleRequest):
    """Create a schedule. Its first next_run is assigned on the next tick."""
    schedule = await _service.create(ScheduleSpec.model_validate(req.model_dump()))
    return ScheduleResponse.from_schedule(schedule)


@app.get("/schedules", response_model=list[ScheduleResponse])
async def list_schedules():
    return [ScheduleResponse.from_schedule(s) for s in await _service.list_all()]


@app.get("/schedules/{schedule_id}", response_model=ScheduleStatusResponse)
async def get_schedule(schedule_id: str, runs: int = 10):
    """A schedule with its most recent runs."""
    try:
        status = await _service.status(schedule_id, limit=runs)
    except KeyError:
        raise _not_found(schedule_id)
    return ScheduleStatusResponse(
        schedule=ScheduleResponse.from_schedule(status["schedule"]),
        recent_runs=status["recent_runs"],
    )


@app.patch("/schedules/{schedule_id}", response_model=ScheduleResponse)
async def update_schedule(schedule_id: str, req: UpdateScheduleRequest):
    """Edit a schedule; timing changes recompute next_run."""
    try:
        schedule = await _service.update(schedule_id, req.model_dump(exclude_unset=True))
    except KeyError:
        raise _not_found(schedule_id)
    except ValidationError as e:
        raise _unprocessable(e)
    except RecurrenceError as e:
        raise HTTPException(409, detail=str(e))
    return ScheduleResponse.from_schedule(schedule)


@app.delete("/schedules/{schedule_id}", status_code=204)
async def delete_schedule(schedule_id: str):
    try:
        await _service.delete(schedule_id)
    except KeyError:
        raise _not_found(schedule_id)


@app.post("/schedules/{schedule_id}/enable", response_model=ScheduleResponse)
async def enable_schedule(schedule_id: str):
    """Re-enable; next_run is recomputed from now."""
    try:
        schedule = await _service.enable(schedule_id)
    except KeyError:
        raise _not_found(schedule_id)
    except RecurrenceError as e:
        raise HTTPException(409, detail=str(e))
    return ScheduleResponse.from_schedule(schedule)


@app.post("/schedules/{schedule_id}/disable", response_model=ScheduleResponse)
async def disable_schedule(schedule_id: str):
    """Disable; next_run is frozen until re-enabled."""
    try:
        schedule = await _service.disable(schedule_id)
    except KeyError:
        raise _not_found(schedule_id)
    return ScheduleResponse.from_schedule(schedule)


@app.post("/schedules/{schedule_id}/clear-error", response_model=ScheduleResponse)
async def clear_schedule_error(schedule_id: str):
    try:
        schedule = await _service.clear_error(schedule_id)
    except KeyError:
        raise _not_found(schedule_id)
    except RecurrenceError as e:
        raise HTTPException(409, detail=str(e))
    return ScheduleResponse.from_schedule(schedule)


@app.post("/schedules/{schedule_id}/run", response_model=RunResult)
async def run_schedule(schedule_id: str):
    """Fire a schedule immediately and wait for the outcome."""
    try:
        result = await _scheduler.trigger(schedule_id)
    except KeyError:
        raise _not_found(schedule_id)
    except RecurrenceError as e:
        raise HTTPException(409, detail=str(e))
    if result is None:
        raise HTTPException(409, detail=f"Schedule '{schedule_id}' is disabled, flagged or already firing")
    return result


@app.get("/schedules/{schedule_id}/runs", response_model=list[RunResult])
async def list_runs(schedule_id: str, limit: int = 10):
    try:
        await _service.get(schedule_id)
    except KeyError:
        raise _not_found(schedule_id)
    return await _run_log.list_for_schedule(schedule_id, limit)


@app.get("/runs/stats", response_model=RunStatsResponse)
async def run_stats(since: datetime | None = None, until: datetime | None = None):
    """Delivery statistics across all schedules."""
    return await _run_log.stats(since=since, until=until)


@app.post("/scheduler/tick", response_model=TickResponse)
async def tick():
    """Evaluate due schedules now instead of waiting for the timer."""
    results = await _scheduler.run_once()
    return TickResponse(fired=len(results), results=results)
