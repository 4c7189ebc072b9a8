"""ScheduleStore — SQLite-backed persistence for Schedule records.

All state transitions that matter for exactly-once firing (claim, update,
initial assignment) are single conditional UPDATE statements, so several
scheduler processes can share one database safely.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone

import sqlalchemy as sa
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import create_async_engine

from core.clock import Clock, SystemClock
from scheduler.models import Schedule, ScheduleUpdate

logger = logging.getLogger(__name__)

# Fixed-width UTC timestamps compare correctly as strings
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# ── Schema ───────────────────────────────────────────────────────────────────

_metadata = sa.MetaData()

_schedules = sa.Table(
    "schedules",
    _metadata,
    sa.Column("schedule_id",    sa.String,  primary_key=True),
    sa.Column("name",           sa.String,  nullable=False, default=""),
    sa.Column("frequency",      sa.String,  nullable=False),
    sa.Column("time_of_day",    sa.String,  nullable=False),
    sa.Column("timezone",       sa.String,  nullable=False),
    sa.Column("day_of_week",    sa.Integer, nullable=True),
    sa.Column("day_of_month",   sa.Integer, nullable=True),
    sa.Column("enabled",        sa.Boolean, nullable=False, default=True),
    sa.Column("output_formats", sa.Text,    nullable=False, default="[]"),
    sa.Column("recipients",     sa.Text,    nullable=False, default="[]"),
    sa.Column("next_run",       sa.String,  nullable=True, index=True),
    sa.Column("last_run",       sa.String,  nullable=True),
    sa.Column("run_count",      sa.Integer, nullable=False, default=0),
    sa.Column("failure_count",  sa.Integer, nullable=False, default=0),
    sa.Column("last_error",     sa.Text,    nullable=True),
    sa.Column("error_state",    sa.Text,    nullable=True),
    sa.Column("claimed_at",     sa.String,  nullable=True),
    sa.Column("created_at",     sa.String,  nullable=False),
    sa.Column("updated_at",     sa.String,  nullable=False),
)

# Columns a user edit may change; counters and timing are owned by the engine
_CONFIG_COLUMNS = (
    "name", "frequency", "time_of_day", "timezone", "day_of_week",
    "day_of_month", "output_formats", "recipients",
)


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        raise ValueError("Store timestamps must be timezone-aware")
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _dt(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def _to_row(schedule: Schedule) -> dict:
    return {
        "schedule_id":    schedule.schedule_id,
        "name":           schedule.name,
        "frequency":      schedule.frequency.value,
        "time_of_day":    schedule.time_of_day,
        "timezone":       schedule.timezone,
        "day_of_week":    schedule.day_of_week,
        "day_of_month":   schedule.day_of_month,
        "enabled":        schedule.enabled,
        "output_formats": json.dumps([f.value for f in schedule.output_formats]),
        "recipients":     json.dumps(schedule.recipients),
        "next_run":       _ts(schedule.next_run),
        "last_run":       _ts(schedule.last_run),
        "run_count":      schedule.run_count,
        "failure_count":  schedule.failure_count,
        "last_error":     schedule.last_error,
        "error_state":    schedule.error_state,
        "created_at":     _ts(schedule.created_at),
        "updated_at":     _ts(schedule.updated_at),
    }


def _from_row(row) -> Schedule:
    data = dict(row._mapping)
    data.pop("claimed_at", None)
    data["output_formats"] = json.loads(data["output_formats"] or "[]")
    data["recipients"] = json.loads(data["recipients"] or "[]")
    for key in ("next_run", "last_run", "created_at", "updated_at"):
        data[key] = _dt(data[key])
    return Schedule.model_validate(data)


# ── Store ────────────────────────────────────────────────────────────────────

class ScheduleStore:
    """Persist Schedule records and arbitrate which scheduler fires them."""

    def __init__(
        self,
        db_url: str = "sqlite+aiosqlite:///report_engine.db",
        clock: Clock | None = None,
        claim_lease_seconds: float = 900.0,
    ):
        self._engine = create_async_engine(db_url, echo=False)
        self._clock = clock or SystemClock()
        self._claim_lease = timedelta(seconds=claim_lease_seconds)

    async def init(self) -> None:
        """Create tables if they don't exist. Call once at startup."""
        async with self._engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    # ── CRUD ─────────────────────────────────────────────────────────────────

    async def save(self, schedule: Schedule) -> None:
        """Insert a schedule, or update its user-editable fields if it exists."""
        row = _to_row(schedule)
        row["updated_at"] = _ts(self._clock.now())
        async with self._engine.begin() as conn:
            await conn.execute(
                sqlite_insert(_schedules)
                .values(**row)
                .on_conflict_do_update(
                    index_elements=["schedule_id"],
                    set_={k: row[k] for k in (*_CONFIG_COLUMNS, "updated_at")},
                )
            )

    async def load(self, schedule_id: str) -> Schedule:
        """Load a Schedule by ID. Raises KeyError if not found."""
        async with self._engine.connect() as conn:
            row = (await conn.execute(
                sa.select(_schedules).where(_schedules.c.schedule_id == schedule_id)
            )).fetchone()
        if row is None:
            raise KeyError(f"Schedule '{schedule_id}' not found")
        return _from_row(row)

    async def list_all(self) -> list[Schedule]:
        async with self._engine.connect() as conn:
            rows = (await conn.execute(
                sa.select(_schedules).order_by(_schedules.c.created_at)
            )).fetchall()
        return self._parse_rows(rows)

    async def delete(self, schedule_id: str) -> None:
        """Delete a schedule. Raises KeyError if not found."""
        async with self._engine.begin() as conn:
            result = await conn.execute(
                sa.delete(_schedules).where(_schedules.c.schedule_id == schedule_id)
            )
        if result.rowcount == 0:
            raise KeyError(f"Schedule '{schedule_id}' not found")

    # ── Engine queries ───────────────────────────────────────────────────────

    async def fetch_unscheduled(self) -> list[Schedule]:
        """Enabled schedules that have never been assigned a next_run."""
        query = sa.select(_schedules).where(
            _schedules.c.enabled == sa.true(),
            _schedules.c.error_state.is_(None),
            _schedules.c.next_run.is_(None),
        )
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        return await self._parse_rows_flagging(rows)

    async def fetch_due(self, now: datetime) -> list[Schedule]:
        """Enabled, healthy, unclaimed schedules whose next_run is at or before *now*."""
        query = (
            sa.select(_schedules)
            .where(
                _schedules.c.enabled == sa.true(),
                _schedules.c.error_state.is_(None),
                _schedules.c.next_run.is_not(None),
                _schedules.c.next_run <= _ts(now),
                self._unclaimed(),
            )
            .order_by(_schedules.c.next_run)
        )
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        return await self._parse_rows_flagging(rows)

    # ── Atomic transitions ───────────────────────────────────────────────────

    async def initialize_next_run(self, schedule_id: str, next_run: datetime) -> bool:
        """Assign the first next_run, only if none has been assigned yet."""
        stmt = (
            sa.update(_schedules)
            .where(
                _schedules.c.schedule_id == schedule_id,
                _schedules.c.enabled == sa.true(),
                _schedules.c.next_run.is_(None),
            )
            .values(next_run=_ts(next_run), updated_at=_ts(self._clock.now()))
        )
        async with self._engine.begin() as conn:
            result = await conn.execute(stmt)
        return result.rowcount == 1

    async def claim(self, schedule_id: str, expected_next_run: datetime) -> bool:
        """Take the exclusive right to fire the occurrence at *expected_next_run*.

        Returns False when another scheduler got there first, or the schedule
        was deleted, disabled, flagged or rescheduled in the meantime.
        """
        stmt = (
            sa.update(_schedules)
            .where(
                _schedules.c.schedule_id == schedule_id,
                _schedules.c.next_run == _ts(expected_next_run),
                _schedules.c.enabled == sa.true(),
                _schedules.c.error_state.is_(None),
                self._unclaimed(),
            )
            .values(claimed_at=_ts(self._clock.now()))
        )
        async with self._engine.begin() as conn:
            result = await conn.execute(stmt)
        return result.rowcount == 1

    async def update(self, schedule_id: str, changes: ScheduleUpdate) -> None:
        """Write back the result of a firing and release the claim.

        ``next_run`` is only moved while the schedule is enabled; a disabled
        schedule keeps its frozen value until it is re-enabled.
        """
        fields = changes.model_dump(exclude_unset=True)
        values: dict = {"claimed_at": None, "updated_at": _ts(self._clock.now())}
        if "last_run" in fields:
            values["last_run"] = _ts(fields["last_run"])
        if "last_error" in fields:
            values["last_error"] = fields["last_error"]
        # Incremented in SQL so a stale snapshot cannot lose a count
        if changes.runs_added:
            values["run_count"] = _schedules.c.run_count + changes.runs_added
        if changes.failures_added:
            values["failure_count"] = _schedules.c.failure_count + changes.failures_added
        if fields.get("next_run") is not None:
            values["next_run"] = sa.case(
                (_schedules.c.enabled == sa.true(), sa.literal(_ts(fields["next_run"]))),
                else_=_schedules.c.next_run,
            )

        async with self._engine.begin() as conn:
            result = await conn.execute(
                sa.update(_schedules)
                .where(_schedules.c.schedule_id == schedule_id)
                .values(**values)
            )
        if result.rowcount == 0:
            logger.warning("Update for missing schedule ignored", extra={"schedule_id": schedule_id})

    async def set_enabled(
        self, schedule_id: str, enabled: bool, next_run: datetime | None = None
    ) -> None:
        """Enable (optionally with a fresh next_run) or disable a schedule.

        Raises KeyError if not found.
        """
        values: dict = {"enabled": enabled, "updated_at": _ts(self._clock.now())}
        if enabled and next_run is not None:
            values["next_run"] = _ts(next_run)
        await self._update_or_raise(schedule_id, values)

    async def reschedule(self, schedule_id: str, next_run: datetime) -> None:
        """Replace next_run after a configuration change. Raises KeyError if not found."""
        await self._update_or_raise(
            schedule_id, {"next_run": _ts(next_run), "updated_at": _ts(self._clock.now())}
        )

    async def flag_error(self, schedule_id: str, detail: str) -> None:
        """Mark a schedule as not evaluable; it stops being fetched or claimed."""
        async with self._engine.begin() as conn:
            await conn.execute(
                sa.update(_schedules)
                .where(_schedules.c.schedule_id == schedule_id)
                .values(error_state=detail, claimed_at=None, updated_at=_ts(self._clock.now()))
            )
        logger.error("Schedule flagged", extra={"schedule_id": schedule_id, "error": detail})

    async def clear_error(self, schedule_id: str, next_run: datetime) -> None:
        """Clear the error marker and restart from *next_run*. Raises KeyError if not found."""
        await self._update_or_raise(schedule_id, {
            "error_state": None,
            "next_run": _ts(next_run),
            "updated_at": _ts(self._clock.now()),
        })

    # ── Internal ─────────────────────────────────────────────────────────────

    def _unclaimed(self):
        cutoff = self._clock.now() - self._claim_lease
        return sa.or_(
            _schedules.c.claimed_at.is_(None),
            _schedules.c.claimed_at < _ts(cutoff),
        )

    async def _update_or_raise(self, schedule_id: str, values: dict) -> None:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                sa.update(_schedules)
                .where(_schedules.c.schedule_id == schedule_id)
                .values(**values)
            )
        if result.rowcount == 0:
            raise KeyError(f"Schedule '{schedule_id}' not found")

    def _parse_rows(self, rows) -> list[Schedule]:
        out = []
        for row in rows:
            try:
                out.append(_from_row(row))
            except ValueError as e:  # pydantic ValidationError included
                logger.error(
                    "Unreadable schedule row skipped",
                    extra={"schedule_id": row.schedule_id, "error": str(e)},
                )
        return out

    async def _parse_rows_flagging(self, rows) -> list[Schedule]:
        """Parse rows for the engine; corrupt rows are flagged so they stop coming back."""
        out = []
        for row in rows:
            try:
                out.append(_from_row(row))
            except ValueError as e:  # pydantic ValidationError included
                await self.flag_error(row.schedule_id, f"Invalid stored schedule: {e}")
        return out
