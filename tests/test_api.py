"""Tests for the FastAPI service layer."""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

import api.server as server_module
from core.clock import FixedClock
from core.config import Settings
from core.event_bus import EventBus
from scheduler.models import RenderOutcome
from scheduler.renderers import LoggingRenderer, ReportRenderer
from scheduler.report_scheduler import SchedulerLoop
from scheduler.run_tracker import RunTracker
from scheduler.schedule_store import ScheduleStore
from scheduler.service import ScheduleService
from store.run_log_store import RunLogStore

T0 = datetime(2024, 1, 3, 10, 0, tzinfo=timezone.utc)   # a Wednesday

WEEKLY = {
    "name": "weekly-risk-summary",
    "frequency": "weekly",
    "day_of_week": 1,
    "time_of_day": "09:00",
    "timezone": "UTC",
    "output_formats": ["pdf", "excel"],
    "recipients": ["risk@example.com"],
}


class FailingRenderer(ReportRenderer):
    async def render(self, schedule):
        return RenderOutcome.failure("renderer offline")


# ── Fixtures ──────────────────────────────────────────────────────────────────


@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest.fixture(autouse=True)
async def isolated_server(tmp_path, clock):
    """Per-test stores and scheduler wired into the server module."""
    url = f"sqlite+aiosqlite:///{tmp_path}/engine.db"
    settings = Settings(database_url=url, store_retry_delay=0)
    store = ScheduleStore(url, clock=clock)
    run_log = RunLogStore(url)
    await store.init()
    await run_log.init()
    bus = EventBus()

    saved = {
        k: getattr(server_module, k)
        for k in ("_settings", "_schedule_store", "_run_log", "_event_bus", "_service", "_scheduler")
    }
    server_module._settings = settings
    server_module._schedule_store = store
    server_module._run_log = run_log
    server_module._event_bus = bus
    server_module._service = ScheduleService(store, run_log, clock=clock)
    server_module._scheduler = SchedulerLoop(
        store, LoggingRenderer(), clock=clock,
        tracker=RunTracker(store, run_log), event_bus=bus, settings=settings,
    )
    yield
    for k, v in saved.items():
        setattr(server_module, k, v)
    await store.close()
    await run_log.close()


@pytest.fixture
async def client():
    async with AsyncClient(
        transport=ASGITransport(app=server_module.app),
        base_url="http://test",
    ) as ac:
        yield ac


async def create(client, body=None) -> dict:
    resp = await client.post("/schedules", json=body or WEEKLY)
    assert resp.status_code == 201, resp.text
    return resp.json()


# ── Health ────────────────────────────────────────────────────────────────────


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


# ── CRUD ──────────────────────────────────────────────────────────────────────


async def test_create_schedule(client):
    data = await create(client)
    assert data["frequency"] == "weekly"
    assert data["enabled"] is True
    assert data["next_run"] is None
    assert data["run_count"] == 0
    assert data["output_formats"] == ["pdf", "excel"]


async def test_create_invalid_combination_rejected(client):
    resp = await client.post("/schedules", json={**WEEKLY, "day_of_month": 4})
    assert resp.status_code == 422


async def test_create_unknown_timezone_rejected(client):
    resp = await client.post("/schedules", json={**WEEKLY, "timezone": "Atlantis/Capital"})
    assert resp.status_code == 422


async def test_list_schedules(client):
    await create(client)
    await create(client, {"frequency": "daily"})
    resp = await client.get("/schedules")
    assert resp.status_code == 200
    assert len(resp.json()) == 2


async def test_get_schedule_with_runs(client):
    sid = (await create(client))["schedule_id"]
    await client.post(f"/schedules/{sid}/run")

    resp = await client.get(f"/schedules/{sid}")
    assert resp.status_code == 200
    body = resp.json()
    assert body["schedule"]["schedule_id"] == sid
    assert len(body["recent_runs"]) == 1


async def test_get_missing_schedule_404(client):
    assert (await client.get("/schedules/nope")).status_code == 404


async def test_delete_schedule(client):
    sid = (await create(client))["schedule_id"]
    assert (await client.delete(f"/schedules/{sid}")).status_code == 204
    assert (await client.get(f"/schedules/{sid}")).status_code == 404
    assert (await client.delete(f"/schedules/{sid}")).status_code == 404


# ── Update ────────────────────────────────────────────────────────────────────


async def test_patch_timing_recomputes_next_run(client):
    sid = (await create(client))["schedule_id"]
    await client.post("/scheduler/tick")
    assert (await client.get(f"/schedules/{sid}")).json()["schedule"]["next_run"].startswith("2024-01-08T09:00")

    resp = await client.patch(f"/schedules/{sid}", json={"day_of_week": 4})
    assert resp.status_code == 200
    assert resp.json()["next_run"].startswith("2024-01-04T09:00")


async def test_patch_frequency_switch_drops_old_day_field(client):
    sid = (await create(client))["schedule_id"]
    resp = await client.patch(f"/schedules/{sid}", json={"frequency": "monthly", "day_of_month": 31})
    assert resp.status_code == 200
    assert resp.json()["day_of_week"] is None
    assert resp.json()["day_of_month"] == 31


async def test_patch_invalid_combination_422(client):
    sid = (await create(client))["schedule_id"]
    resp = await client.patch(f"/schedules/{sid}", json={"day_of_month": 3})
    assert resp.status_code == 422


async def test_patch_name_only_keeps_next_run(client):
    sid = (await create(client))["schedule_id"]
    await client.post("/scheduler/tick")
    resp = await client.patch(f"/schedules/{sid}", json={"name": "renamed"})
    assert resp.json()["name"] == "renamed"
    assert resp.json()["next_run"].startswith("2024-01-08T09:00")


async def test_patch_missing_404(client):
    assert (await client.patch("/schedules/nope", json={"name": "x"})).status_code == 404


# ── Lifecycle ─────────────────────────────────────────────────────────────────


async def test_disable_and_enable(client, clock):
    sid = (await create(client))["schedule_id"]
    await client.post("/scheduler/tick")

    resp = await client.post(f"/schedules/{sid}/disable")
    assert resp.json()["enabled"] is False
    assert resp.json()["next_run"].startswith("2024-01-08T09:00")

    clock.set(T0 + timedelta(days=7))
    tick = (await client.post("/scheduler/tick")).json()
    assert tick["fired"] == 0

    resp = await client.post(f"/schedules/{sid}/enable")
    assert resp.json()["enabled"] is True
    assert resp.json()["next_run"].startswith("2024-01-15T09:00")


async def test_enable_via_patch(client):
    sid = (await create(client, {**WEEKLY, "enabled": False}))["schedule_id"]
    resp = await client.patch(f"/schedules/{sid}", json={"enabled": True})
    assert resp.json()["enabled"] is True
    assert resp.json()["next_run"].startswith("2024-01-08T09:00")


async def test_clear_error(client):
    sid = (await create(client))["schedule_id"]
    await server_module._schedule_store.flag_error(sid, "bad data")
    assert (await client.get(f"/schedules/{sid}")).json()["schedule"]["error_state"] == "bad data"

    resp = await client.post(f"/schedules/{sid}/clear-error")
    assert resp.status_code == 200
    assert resp.json()["error_state"] is None
    assert resp.json()["next_run"] is not None


# ── Firing ────────────────────────────────────────────────────────────────────


async def test_tick_fires_due_schedules(client, clock):
    sid = (await create(client))["schedule_id"]
    assert (await client.post("/scheduler/tick")).json()["fired"] == 0

    clock.set(datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc))
    data = (await client.post("/scheduler/tick")).json()
    assert data["fired"] == 1
    assert data["results"][0]["schedule_id"] == sid
    assert data["results"][0]["succeeded"] is True
    assert data["results"][0]["next_run"].startswith("2024-01-15T09:00")


async def test_run_now(client):
    sid = (await create(client))["schedule_id"]
    resp = await client.post(f"/schedules/{sid}/run")
    assert resp.status_code == 200
    assert resp.json()["succeeded"] is True
    assert resp.json()["artifact_ref"].startswith("dry-run://")


async def test_run_disabled_409(client):
    sid = (await create(client, {**WEEKLY, "enabled": False}))["schedule_id"]
    assert (await client.post(f"/schedules/{sid}/run")).status_code == 409


async def test_run_missing_404(client):
    assert (await client.post("/schedules/nope/run")).status_code == 404


async def test_failed_run_recorded(client):
    server_module._scheduler = SchedulerLoop(
        server_module._schedule_store,
        FailingRenderer(),
        clock=server_module._service._clock,
        tracker=RunTracker(server_module._schedule_store, server_module._run_log),
        settings=server_module._settings,
    )
    sid = (await create(client))["schedule_id"]
    resp = await client.post(f"/schedules/{sid}/run")
    assert resp.json()["succeeded"] is False
    assert resp.json()["error_detail"] == "renderer offline"

    sched = (await client.get(f"/schedules/{sid}")).json()["schedule"]
    assert sched["failure_count"] == 1
    assert sched["last_error"] == "renderer offline"


# ── Runs ──────────────────────────────────────────────────────────────────────


async def test_list_runs(client):
    sid = (await create(client))["schedule_id"]
    await client.post(f"/schedules/{sid}/run")
    resp = await client.get(f"/schedules/{sid}/runs")
    assert resp.status_code == 200
    assert len(resp.json()) == 1


async def test_list_runs_missing_404(client):
    assert (await client.get("/schedules/nope/runs")).status_code == 404


async def test_run_stats(client):
    sid = (await create(client))["schedule_id"]
    await client.post(f"/schedules/{sid}/run")
    stats = (await client.get("/runs/stats")).json()
    assert stats["total_runs"] == 1
    assert stats["successful_runs"] == 1
    assert {f["format"] for f in stats["top_formats"]} == {"pdf", "excel"}

    empty = (await client.get("/runs/stats", params={"since": "2030-01-01T00:00:00Z"})).json()
    assert empty["total_runs"] == 0
