"""ScheduleService — write-time validation and enable/disable lifecycle."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from core.clock import Clock, SystemClock
from scheduler.models import AmbiguousTime, Schedule, ScheduleSpec
from scheduler.recurrence import compute_next_run

if TYPE_CHECKING:
    from scheduler.schedule_store import ScheduleStore
    from store.run_log_store import RunLogStore

logger = logging.getLogger(__name__)

# Changing any of these invalidates the stored next_run
_TIMING_FIELDS = {"frequency", "time_of_day", "timezone", "day_of_week", "day_of_month"}


class ScheduleService:
    def __init__(
        self,
        store: ScheduleStore,
        run_log: RunLogStore | None = None,
        clock: Clock | None = None,
        ambiguous: AmbiguousTime = AmbiguousTime.EARLIER,
    ):
        self._store = store
        self._run_log = run_log
        self._clock = clock or SystemClock()
        self._ambiguous = ambiguous

    async def create(self, spec: ScheduleSpec) -> Schedule:
        """Persist a new schedule. Its first next_run is assigned by the scheduler."""
        now = self._clock.now()
        schedule = Schedule(**spec.model_dump(), created_at=now, updated_at=now)
        await self._store.save(schedule)
        logger.info(
            "Schedule created",
            extra={"schedule_id": schedule.schedule_id, "frequency": schedule.frequency.value},
        )
        return schedule

    async def get(self, schedule_id: str) -> Schedule:
        return await self._store.load(schedule_id)

    async def list_all(self) -> list[Schedule]:
        return await self._store.list_all()

    async def update(self, schedule_id: str, changes: dict[str, Any]) -> Schedule:
        """Apply a partial edit, revalidating the merged configuration.

        Raises KeyError if not found and pydantic.ValidationError if the
        result is inconsistent (e.g. day_of_month on a weekly schedule).
        """
        current = await self._store.load(schedule_id)
        merged = current.spec().model_dump()
        if changes.get("frequency") not in (None, merged["frequency"]):
            # The other day field no longer applies after a frequency switch
            merged["day_of_week"] = None
            merged["day_of_month"] = None
        merged.update(changes)
        enabled = merged.pop("enabled", None)
        spec = ScheduleSpec.model_validate(merged)

        updated = current.model_copy(update=spec.model_dump(exclude={"enabled"}))
        await self._store.save(updated)

        timing_changed = any(
            getattr(spec, f) != getattr(current, f) for f in _TIMING_FIELDS
        )
        if timing_changed and current.enabled and current.next_run is not None:
            await self._store.reschedule(schedule_id, self._next_from_now(spec))
        logger.info("Schedule updated", extra={"schedule_id": schedule_id, "rescheduled": timing_changed})
        if enabled is not None and enabled != current.enabled:
            return await (self.enable(schedule_id) if enabled else self.disable(schedule_id))
        return await self._store.load(schedule_id)

    async def enable(self, schedule_id: str) -> Schedule:
        """Re-enable and recompute next_run from now; the frozen value is discarded."""
        current = await self._store.load(schedule_id)
        await self._store.set_enabled(schedule_id, True, next_run=self._next_from_now(current))
        logger.info("Schedule enabled", extra={"schedule_id": schedule_id})
        return await self._store.load(schedule_id)

    async def disable(self, schedule_id: str) -> Schedule:
        """Stop firing; next_run stays frozen until the schedule is re-enabled."""
        await self._store.set_enabled(schedule_id, False)
        logger.info("Schedule disabled", extra={"schedule_id": schedule_id})
        return await self._store.load(schedule_id)

    async def clear_error(self, schedule_id: str) -> Schedule:
        """Lift an error flag once the schedule has been corrected.

        Raises RecurrenceError if the schedule still cannot be evaluated.
        """
        current = await self._store.load(schedule_id)
        await self._store.clear_error(schedule_id, self._next_from_now(current))
        logger.info("Schedule error cleared", extra={"schedule_id": schedule_id})
        return await self._store.load(schedule_id)

    async def delete(self, schedule_id: str) -> None:
        await self._store.delete(schedule_id)
        logger.info("Schedule deleted", extra={"schedule_id": schedule_id})

    async def status(self, schedule_id: str, limit: int = 10) -> dict:
        """The schedule together with its most recent runs."""
        schedule = await self._store.load(schedule_id)
        runs = await self._run_log.list_for_schedule(schedule_id, limit) if self._run_log else []
        return {"schedule": schedule, "recent_runs": runs}

    def _next_from_now(self, schedule: ScheduleSpec):
        return compute_next_run(schedule, self._clock.now(), ambiguous=self._ambiguous)
