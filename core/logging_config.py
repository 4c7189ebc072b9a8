"""Structured JSON logging with per-firing context via contextvars."""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from datetime import datetime, timezone

# Bound for the duration of one firing so every log line it emits carries them
_run_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("run_id", default="-")
_schedule_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "schedule_id", default=None
)

# Anything on a record beyond these came in through extra=
_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One compact JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        data: dict = {
            "ts":     _timestamp(record),
            "level":  record.levelname,
            "logger": record.name,
            "msg":    record.getMessage(),
            "run_id": _run_id_var.get(),
        }
        schedule_id = _schedule_id_var.get()
        if schedule_id is not None:
            data["schedule_id"] = schedule_id
        data.update(
            (k, v) for k, v in vars(record).items()
            if k not in _RESERVED and not k.startswith("_")
        )
        if record.exc_info:
            data["exc"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


def _timestamp(record: logging.LogRecord) -> str:
    ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
    return ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def setup_json_logging(level: str = "INFO", stream=None) -> None:
    """Replace the root logger's handlers with a JSON formatter (stdout by default)."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    # APScheduler logs every job execution at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def bind_run(run_id: str, schedule_id: str | None = None) -> tuple[contextvars.Token, ...]:
    """Bind a firing's ids to the current async context; pass the result to ``reset_run``."""
    return _run_id_var.set(run_id), _schedule_id_var.set(schedule_id)


def reset_run(tokens: tuple[contextvars.Token, ...]) -> None:
    run_token, schedule_token = tokens
    _schedule_id_var.reset(schedule_token)
    _run_id_var.reset(run_token)


def get_run_id() -> str:
    return _run_id_var.get()
