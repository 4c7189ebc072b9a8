"""Tests for RunTracker and the RunLogStore it writes to."""

from datetime import datetime, timedelta, timezone

import pytest

from scheduler.models import Schedule
from scheduler.run_tracker import RunTracker
from scheduler.schedule_store import ScheduleStore
from store.run_log_store import RunLogStore

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
NEXT = T0 + timedelta(days=1)


@pytest.fixture
async def stores(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path}/engine.db"
    store = ScheduleStore(url)
    run_log = RunLogStore(url)
    await store.init()
    await run_log.init()
    yield store, run_log
    await store.close()
    await run_log.close()


@pytest.fixture
async def schedule(stores):
    store, _ = stores
    s = Schedule(frequency="daily", next_run=T0, output_formats=["pdf", "csv"])
    await store.save(s)
    return s


# ── RunTracker ────────────────────────────────────────────────────────────────


async def test_record_success_updates_counters(stores, schedule):
    store, run_log = stores
    tracker = RunTracker(store, run_log)

    result = await tracker.record_success(
        schedule, T0, next_run=NEXT, artifact_ref="s3://reports/1.pdf", duration_s=1.5
    )

    assert result.succeeded
    assert result.artifact_ref == "s3://reports/1.pdf"
    loaded = await store.load(schedule.schedule_id)
    assert loaded.run_count == 1
    assert loaded.failure_count == 0
    assert loaded.last_run == T0
    assert loaded.next_run == NEXT


async def test_record_failure_updates_counters_and_error(stores, schedule):
    store, run_log = stores
    tracker = RunTracker(store, run_log)

    result = await tracker.record_failure(schedule, T0, "renderer down", next_run=NEXT)

    assert not result.succeeded
    assert result.error_detail == "renderer down"
    loaded = await store.load(schedule.schedule_id)
    assert loaded.run_count == 1
    assert loaded.failure_count == 1
    assert loaded.last_error == "renderer down"
    assert loaded.next_run == NEXT


async def test_success_keeps_last_error(stores, schedule):
    store, run_log = stores
    tracker = RunTracker(store, run_log)
    await tracker.record_failure(schedule, T0, "first", next_run=NEXT)

    current = await store.load(schedule.schedule_id)
    await tracker.record_success(current, NEXT, next_run=NEXT + timedelta(days=1))

    loaded = await store.load(schedule.schedule_id)
    assert loaded.run_count == 2
    assert loaded.failure_count == 1
    assert loaded.last_error == "first"


async def test_without_next_run_keeps_stored_value(stores, schedule):
    store, _ = stores
    await RunTracker(store).record_failure(schedule, T0, "not evaluable")
    assert (await store.load(schedule.schedule_id)).next_run == T0


async def test_run_id_is_kept(stores, schedule):
    store, run_log = stores
    result = await RunTracker(store, run_log).record_success(schedule, T0, run_id="run-42")
    assert result.run_id == "run-42"
    assert (await run_log.list_for_schedule(schedule.schedule_id))[0].run_id == "run-42"


# ── RunLogStore ───────────────────────────────────────────────────────────────


async def test_run_log_newest_first_with_limit(stores, schedule):
    store, run_log = stores
    tracker = RunTracker(store, run_log)
    for i in range(4):
        current = await store.load(schedule.schedule_id)
        await tracker.record_success(current, T0 + timedelta(days=i))

    runs = await run_log.list_for_schedule(schedule.schedule_id, limit=2)
    assert [r.fired_at for r in runs] == [T0 + timedelta(days=3), T0 + timedelta(days=2)]


async def test_run_log_stats(stores, schedule):
    store, run_log = stores
    tracker = RunTracker(store, run_log)
    await tracker.record_success(schedule, T0, duration_s=2.0)
    current = await store.load(schedule.schedule_id)
    await tracker.record_failure(current, T0 + timedelta(days=1), "x", duration_s=4.0)

    stats = await run_log.stats()
    assert stats["total_runs"] == 2
    assert stats["successful_runs"] == 1
    assert stats["failed_runs"] == 1
    assert stats["average_duration_s"] == pytest.approx(3.0)
    assert {f["format"]: f["count"] for f in stats["top_formats"]} == {"pdf": 2, "csv": 2}


async def test_run_log_stats_window(stores, schedule):
    store, run_log = stores
    tracker = RunTracker(store, run_log)
    for i in range(3):
        current = await store.load(schedule.schedule_id)
        await tracker.record_success(current, T0 + timedelta(days=i))

    stats = await run_log.stats(since=T0 + timedelta(days=1), until=T0 + timedelta(days=1, hours=1))
    assert stats["total_runs"] == 1
    assert stats["average_duration_s"] == 0.0


async def test_run_log_empty_stats(stores):
    _, run_log = stores
    stats = await run_log.stats()
    assert stats == {
        "total_runs": 0,
        "successful_runs": 0,
        "failed_runs": 0,
        "average_duration_s": 0.0,
        "top_formats": [],
    }
