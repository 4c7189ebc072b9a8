"""RunTracker — turn a firing outcome into counter updates and a run-log entry."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from scheduler.models import RunResult, Schedule, ScheduleUpdate

if TYPE_CHECKING:
    from scheduler.schedule_store import ScheduleStore
    from store.run_log_store import RunLogStore

logger = logging.getLogger(__name__)


class RunTracker:
    """Stateless: every effect goes through the stores it was given."""

    def __init__(self, store: ScheduleStore, run_log: RunLogStore | None = None):
        self._store = store
        self._run_log = run_log

    async def record_success(
        self,
        schedule: Schedule,
        at: datetime,
        *,
        next_run: datetime | None = None,
        artifact_ref: str | None = None,
        duration_s: float | None = None,
        run_id: str | None = None,
    ) -> RunResult:
        changes = _update(next_run, runs_added=1, last_run=at)
        result = _result(
            run_id, schedule_id=schedule.schedule_id, fired_at=at, succeeded=True,
            artifact_ref=artifact_ref, next_run=next_run, duration_s=duration_s,
        )
        await self._persist(schedule, changes, result)
        logger.info(
            "Run succeeded",
            extra={"schedule_id": schedule.schedule_id, "artifact_ref": artifact_ref},
        )
        return result

    async def record_failure(
        self,
        schedule: Schedule,
        at: datetime,
        error: str,
        *,
        next_run: datetime | None = None,
        duration_s: float | None = None,
        run_id: str | None = None,
    ) -> RunResult:
        changes = _update(
            next_run,
            runs_added=1,
            failures_added=1,
            last_run=at,
            last_error=error,
        )
        result = _result(
            run_id, schedule_id=schedule.schedule_id, fired_at=at, succeeded=False,
            error_detail=error, next_run=next_run, duration_s=duration_s,
        )
        await self._persist(schedule, changes, result)
        logger.warning(
            "Run failed",
            extra={"schedule_id": schedule.schedule_id, "error": error},
        )
        return result

    async def _persist(self, schedule: Schedule, changes: ScheduleUpdate, result: RunResult) -> None:
        await self._store.update(schedule.schedule_id, changes)
        if self._run_log:
            await self._run_log.append(
                result, output_formats=[f.value for f in schedule.output_formats]
            )


def _result(run_id: str | None, **fields) -> RunResult:
    if run_id:
        fields["run_id"] = run_id
    return RunResult(**fields)


def _update(next_run: datetime | None, **fields) -> ScheduleUpdate:
    # Leaving next_run unset keeps the stored value (flagged schedules)
    if next_run is not None:
        fields["next_run"] = next_run
    return ScheduleUpdate(**fields)
