"""Tests for the EventBus and JSON logging."""

import asyncio
import io
import json
import logging
from datetime import datetime, timezone

from core.event_bus import ALL, EventBus
from core.logging_config import JsonFormatter, bind_run, get_run_id, reset_run, setup_json_logging
from scheduler.models import RunResult


# ── EventBus ──────────────────────────────────────────────────────────────────


async def test_event_bus_subscribe_and_receive():
    bus = EventBus()
    q = bus.subscribe("sched-1")
    await bus.publish("sched-1", {"succeeded": True})
    event = await asyncio.wait_for(q.get(), timeout=1.0)
    assert event["succeeded"] is True


async def test_event_bus_unsubscribe_stops_delivery():
    bus = EventBus()
    q = bus.subscribe("sched-1")
    bus.unsubscribe("sched-1", q)
    await bus.publish("sched-1", {"succeeded": False})
    assert q.empty()


async def test_event_bus_unsubscribe_unknown_queue_is_noop():
    bus = EventBus()
    bus.unsubscribe("sched-1", asyncio.Queue())


async def test_event_bus_keys_isolated():
    bus = EventBus()
    q_a = bus.subscribe("a")
    q_b = bus.subscribe("b")
    await bus.publish("a", {"key": "a-event"})
    assert (await q_a.get())["key"] == "a-event"
    assert q_b.empty()


async def test_event_bus_wildcard_receives_everything():
    bus = EventBus()
    q = bus.subscribe(ALL)
    await bus.publish("a", {"n": 1})
    await bus.publish("b", {"n": 2})
    assert [(await q.get())["n"], (await q.get())["n"]] == [1, 2]


async def test_publish_result_keys_by_schedule_and_serializes():
    bus = EventBus()
    per_schedule = bus.subscribe("s-1")
    everything = bus.subscribe(ALL)
    result = RunResult(
        schedule_id="s-1",
        fired_at=datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc),
        succeeded=True,
        artifact_ref="s3://r/1.pdf",
    )
    await bus.publish_result(result)

    event = per_schedule.get_nowait()
    assert event["run_id"] == result.run_id
    assert event["fired_at"].startswith("2024-01-08T09:00:00")
    assert everything.get_nowait() == event


async def test_event_bus_publish_to_wildcard_delivers_once():
    bus = EventBus()
    q = bus.subscribe(ALL)
    await bus.publish(ALL, {"n": 1})
    assert q.qsize() == 1


# ── JSON logging ──────────────────────────────────────────────────────────────


def _record(msg: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("scheduler.test", logging.INFO, __file__, 1, msg, None, None)
    for k, v in extra.items():
        setattr(record, k, v)
    return record


def test_json_formatter_includes_extras_and_run_context():
    tokens = bind_run("run-123", "s-1")
    try:
        line = JsonFormatter().format(_record("Run succeeded", artifact_ref="s3://r/1.pdf"))
    finally:
        reset_run(tokens)

    data = json.loads(line)
    assert data["msg"] == "Run succeeded"
    assert data["level"] == "INFO"
    assert data["logger"] == "scheduler.test"
    assert data["run_id"] == "run-123"
    assert data["schedule_id"] == "s-1"
    assert data["artifact_ref"] == "s3://r/1.pdf"
    assert "args" not in data
    assert data["ts"].endswith("Z")


def test_run_id_defaults_outside_a_firing():
    assert get_run_id() == "-"
    assert json.loads(JsonFormatter().format(_record("idle")))["run_id"] == "-"


def test_setup_json_logging_writes_json_lines():
    stream = io.StringIO()
    root = logging.getLogger()
    saved = (root.handlers[:], root.level)
    try:
        setup_json_logging("DEBUG", stream=stream)
        logging.getLogger("scheduler.test").debug("Claim lost", extra={"schedule_id": "s-9"})
    finally:
        root.handlers, root.level = saved[0], saved[1]

    data = json.loads(stream.getvalue().splitlines()[-1])
    assert data["level"] == "DEBUG"
    assert data["schedule_id"] == "s-9"
    assert logging.getLogger("apscheduler").level == logging.WARNING
