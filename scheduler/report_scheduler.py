"""SchedulerLoop — fires due report schedules exactly once per occurrence."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

from core.clock import Clock, SystemClock
from core.config import Settings
from core.errors import RecurrenceError, StoreUnavailableError
from core.logging_config import bind_run, reset_run
from scheduler.models import AmbiguousTime, RenderOutcome, RunResult, Schedule
from scheduler.recurrence import compute_next_run
from scheduler.run_tracker import RunTracker

if TYPE_CHECKING:
    from core.event_bus import EventBus
    from scheduler.renderers import ReportRenderer
    from scheduler.schedule_store import ScheduleStore

logger = logging.getLogger(__name__)

_TICK_JOB_ID = "report-scheduler-tick"

# Failures worth retrying: the database or the network underneath it
_STORE_ERRORS = (SQLAlchemyError, OSError)


class SchedulerLoop:
    """Polls the store on a fixed interval and fires every due schedule.

    Exclusivity comes from ``ScheduleStore.claim``; nothing here assumes it
    is the only scheduler running against the store.
    """

    def __init__(
        self,
        store: ScheduleStore,
        renderer: ReportRenderer,
        *,
        clock: Clock | None = None,
        tracker: RunTracker | None = None,
        event_bus: EventBus | None = None,
        settings: Settings | None = None,
    ):
        self._store = store
        self._renderer = renderer
        self._clock = clock or SystemClock()
        self._tracker = tracker or RunTracker(store)
        self._event_bus = event_bus
        self._settings = settings or Settings()
        self._ambiguous = AmbiguousTime(self._settings.ambiguous_time)
        self._aps = AsyncIOScheduler(timezone=timezone.utc)
        self._semaphore = asyncio.Semaphore(self._settings.max_concurrent_renders)
        self._tick_lock = asyncio.Lock()
        self._inflight: set[asyncio.Task] = set()
        self._stopping = False

    # ── Lifecycle ────────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._aps.running

    @property
    def inflight(self) -> int:
        return sum(1 for t in self._inflight if not t.done())

    async def start(self) -> None:
        """Begin ticking every ``tick_interval_seconds``; the first tick runs immediately."""
        if self._aps.running:
            return
        self._stopping = False
        self._aps.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self._settings.tick_interval_seconds),
            id=_TICK_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self._aps.start()
        logger.info(
            "SchedulerLoop started",
            extra={"tick_interval_s": self._settings.tick_interval_seconds},
        )

    async def stop(self, drain_timeout: float | None = None) -> None:
        """Stop claiming and let in-flight renders finish.

        Renders still running after *drain_timeout* seconds are cancelled;
        their claims expire with the store's claim lease.
        """
        self._stopping = True
        if self._aps.running:
            self._aps.shutdown(wait=False)
            # AsyncIOScheduler.shutdown is scheduled on the loop, not run inline
            await asyncio.sleep(0)

        # A tick already past its _stopping check may still be claiming
        async with self._tick_lock:
            pass

        timeout = self._settings.drain_timeout_seconds if drain_timeout is None else drain_timeout
        pending = {t for t in self._inflight if not t.done()}
        if pending:
            logger.info("Draining in-flight renders", extra={"count": len(pending)})
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            if still_running:
                logger.warning(
                    "Drain timeout: cancelling renders",
                    extra={"count": len(still_running), "timeout_s": timeout},
                )
                for task in still_running:
                    task.cancel()
                await asyncio.gather(*still_running, return_exceptions=True)
        logger.info("SchedulerLoop stopped")

    # ── Evaluation ───────────────────────────────────────────────────────────

    async def tick(self) -> list[asyncio.Task]:
        """Claim every due schedule and dispatch one task per claim.

        Returns the dispatched tasks without awaiting them.
        """
        if self._stopping:
            return []

        async with self._tick_lock:
            now = self._clock.now()
            try:
                await self._assign_initial_runs(now)
                due = await self._with_retry("fetch_due", self._store.fetch_due, now)
            except StoreUnavailableError as e:
                logger.error("Tick skipped: store unavailable", extra={"error": str(e)})
                return []

            tasks = []
            for i, schedule in enumerate(due):
                if self._stopping:
                    break
                # Claim only with a free render slot so the lease covers the render
                if self._semaphore.locked():
                    logger.info("Render slots full; deferring to next tick",
                                extra={"deferred": len(due) - i})
                    break
                await self._semaphore.acquire()
                task = await self._claim_and_dispatch(schedule)
                if task is not None:
                    tasks.append(task)

        if due:
            logger.info("Tick", extra={"due": len(due), "claimed": len(tasks)})
        return tasks

    async def run_once(self) -> list[RunResult]:
        """Run one tick and wait for every firing it dispatched."""
        tasks = await self.tick()
        if not tasks:
            return []
        results = await asyncio.gather(*tasks)
        return [r for r in results if r is not None]

    async def trigger(self, schedule_id: str) -> RunResult | None:
        """Fire one schedule now, outside its recurrence.

        The firing still goes through a claim, so it cannot overlap a
        scheduled firing of the same schedule. Returns None if the claim was
        lost, the schedule is disabled or flagged, or the loop is stopping.
        Raises KeyError if the schedule does not exist.
        """
        schedule = await self._store.load(schedule_id)
        if not schedule.enabled or schedule.error_state:
            return None
        if schedule.next_run is None:
            next_run = compute_next_run(schedule, self._clock.now(), ambiguous=self._ambiguous)
            await self._store.initialize_next_run(schedule_id, next_run)
            schedule = await self._store.load(schedule_id)

        await self._semaphore.acquire()
        if self._stopping:
            self._semaphore.release()
            return None
        task = await self._claim_and_dispatch(schedule)
        if task is None:
            return None
        return await task

    # ── Internal ─────────────────────────────────────────────────────────────

    async def _assign_initial_runs(self, now: datetime) -> None:
        for schedule in await self._with_retry("fetch_unscheduled", self._store.fetch_unscheduled):
            try:
                next_run = compute_next_run(schedule, now, ambiguous=self._ambiguous)
            except RecurrenceError as e:
                await self._with_retry("flag_error", self._store.flag_error, schedule.schedule_id, str(e))
                continue
            if await self._with_retry(
                "initialize_next_run", self._store.initialize_next_run, schedule.schedule_id, next_run
            ):
                logger.info(
                    "Initial next_run assigned",
                    extra={"schedule_id": schedule.schedule_id, "next_run": next_run.isoformat()},
                )

    async def _claim_and_dispatch(self, schedule: Schedule) -> asyncio.Task | None:
        """Claim *schedule* and start its firing. The caller holds a render slot.

        The slot is handed to the firing task, or released if the claim fails.
        """
        won = False
        try:
            won = await self._with_retry(
                "claim", self._store.claim, schedule.schedule_id, schedule.next_run
            )
        except StoreUnavailableError as e:
            logger.error("Claim failed", extra={"schedule_id": schedule.schedule_id, "error": str(e)})
            return None
        finally:
            if not won:
                self._semaphore.release()
        if not won:
            logger.debug("Claim lost", extra={"schedule_id": schedule.schedule_id})
            return None

        task = asyncio.create_task(self._fire(schedule), name=f"fire-{schedule.schedule_id}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        task.add_done_callback(lambda _: self._semaphore.release())
        return task

    async def _fire(self, schedule: Schedule) -> RunResult | None:
        run_id = str(uuid.uuid4())
        tokens = bind_run(run_id, schedule.schedule_id)
        try:
            fired_at = self._clock.now()
            logger.info(
                "Firing schedule",
                extra={"schedule_id": schedule.schedule_id,
                       "scheduled_for": schedule.next_run.isoformat() if schedule.next_run else None},
            )
            started = time.monotonic()
            outcome = await self._render(schedule)
            duration = time.monotonic() - started

            fatal: str | None = None
            try:
                next_run = compute_next_run(schedule, fired_at, ambiguous=self._ambiguous)
            except RecurrenceError as e:
                next_run, fatal = None, str(e)

            try:
                if fatal:
                    # Flag before releasing the claim so no tick can pick it up again
                    await self._with_retry("flag_error", self._store.flag_error, schedule.schedule_id, fatal)
                if outcome.succeeded:
                    result = await self._with_retry(
                        "record_success", self._tracker.record_success,
                        schedule, fired_at, next_run=next_run,
                        artifact_ref=outcome.artifact_ref, duration_s=duration, run_id=run_id,
                    )
                else:
                    result = await self._with_retry(
                        "record_failure", self._tracker.record_failure,
                        schedule, fired_at, outcome.error or "render failed",
                        next_run=next_run, duration_s=duration, run_id=run_id,
                    )
            except StoreUnavailableError as e:
                logger.error(
                    "Run outcome not persisted",
                    extra={"schedule_id": schedule.schedule_id, "error": str(e)},
                )
                return None

            await self._publish(result)
            return result
        finally:
            reset_run(tokens)

    async def _render(self, schedule: Schedule) -> RenderOutcome:
        timeout = self._settings.render_timeout_seconds
        try:
            return await asyncio.wait_for(self._renderer.render(schedule), timeout=timeout)
        except asyncio.TimeoutError:
            return RenderOutcome.failure(f"Render timed out after {timeout}s")
        except Exception as e:
            logger.exception("Renderer raised", extra={"schedule_id": schedule.schedule_id})
            return RenderOutcome.failure(f"{type(e).__name__}: {e}")

    async def _publish(self, result: RunResult) -> None:
        if self._event_bus:
            await self._event_bus.publish_result(result)

    async def _with_retry(self, op: str, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Call a store operation, retrying I/O errors with exponential backoff."""
        attempts = self._settings.store_retry_attempts
        delay = self._settings.store_retry_delay
        for attempt in range(1, attempts + 1):
            try:
                return await fn(*args, **kwargs)
            except _STORE_ERRORS as e:
                if attempt == attempts:
                    raise StoreUnavailableError(f"{op} failed after {attempts} attempts: {e}") from e
                logger.warning(
                    "Store retry",
                    extra={"op": op, "attempt": attempt, "max": attempts,
                           "delay_s": delay, "error": str(e)},
                )
                if delay > 0:
                    await asyncio.sleep(delay)
                delay *= self._settings.store_retry_backoff
