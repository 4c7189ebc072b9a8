"""RunLogStore — SQLite-backed history of schedule firings."""

from __future__ import annotations

import json
from collections import Counter
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import create_async_engine

from scheduler.models import RunResult

# ── Schema ───────────────────────────────────────────────────────────────────

_metadata = sa.MetaData()

_runs = sa.Table(
    "run_log",
    _metadata,
    sa.Column("run_id",         sa.String,  primary_key=True),
    sa.Column("schedule_id",    sa.String,  nullable=False, index=True),
    sa.Column("fired_at",       sa.String,  nullable=False, index=True),
    sa.Column("succeeded",      sa.Boolean, nullable=False),
    sa.Column("error_detail",   sa.Text,    nullable=True),
    sa.Column("artifact_ref",   sa.String,  nullable=True),
    sa.Column("output_formats", sa.Text,    nullable=False, default="[]"),
    sa.Column("duration_s",     sa.Float,   nullable=True),
    sa.Column("result_json",    sa.Text,    nullable=False),   # full Pydantic JSON
)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


# ── Store ────────────────────────────────────────────────────────────────────

class RunLogStore:
    """Append-only log of RunResults, one row per firing."""

    def __init__(self, db_url: str = "sqlite+aiosqlite:///report_engine.db"):
        self._engine = create_async_engine(db_url, echo=False)

    async def init(self) -> None:
        """Create tables if they don't exist. Call once at startup."""
        async with self._engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    async def append(self, result: RunResult, output_formats: list[str] | None = None) -> None:
        row = {
            "run_id":         result.run_id,
            "schedule_id":    result.schedule_id,
            "fired_at":       _ts(result.fired_at),
            "succeeded":      result.succeeded,
            "error_detail":   result.error_detail,
            "artifact_ref":   result.artifact_ref,
            "output_formats": json.dumps(output_formats or []),
            "duration_s":     result.duration_s,
            "result_json":    result.model_dump_json(),
        }
        async with self._engine.begin() as conn:
            await conn.execute(sa.insert(_runs).values(**row))

    async def list_for_schedule(self, schedule_id: str, limit: int = 10) -> list[RunResult]:
        """Most recent runs first."""
        query = (
            sa.select(_runs.c.result_json)
            .where(_runs.c.schedule_id == schedule_id)
            .order_by(_runs.c.fired_at.desc())
            .limit(limit)
        )
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        return [RunResult.model_validate_json(r.result_json) for r in rows]

    async def stats(
        self,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> dict:
        """Aggregate delivery statistics over an optional [since, until] window."""
        query = sa.select(_runs.c.succeeded, _runs.c.duration_s, _runs.c.output_formats)
        if since is not None:
            query = query.where(_runs.c.fired_at >= _ts(since))
        if until is not None:
            query = query.where(_runs.c.fired_at <= _ts(until))

        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()

        durations = [r.duration_s for r in rows if r.duration_s is not None]
        formats: Counter = Counter()
        for r in rows:
            formats.update(json.loads(r.output_formats or "[]"))

        return {
            "total_runs":           len(rows),
            "successful_runs":      sum(1 for r in rows if r.succeeded),
            "failed_runs":          sum(1 for r in rows if not r.succeeded),
            "average_duration_s":   sum(durations) / len(durations) if durations else 0.0,
            "top_formats":          [
                {"format": f, "count": n} for f, n in formats.most_common(5)
            ],
        }
