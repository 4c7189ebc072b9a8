"""Report Engine CLI — manage schedules through a running Engine API server."""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from typing import Any

import click
import httpx
import yaml
from pydantic import ValidationError
from rich import box
from rich.console import Console
from rich.table import Table

from core.errors import RecurrenceError
from scheduler.models import ScheduleSpec
from scheduler.recurrence import local_time_of, upcoming_runs

console = Console()
err_console = Console(stderr=True)

_STATUS_COLOR: dict[str, str] = {
    "enabled": "green",
    "disabled": "yellow",
    "error": "red",
    "ok": "green",
    "failed": "red",
}


# ── Internal helpers ──────────────────────────────────────────────────────────


def _color(status: str) -> str:
    return _STATUS_COLOR.get(status, "white")


def _client(url: str, timeout: float | None = 30) -> httpx.Client:
    return httpx.Client(base_url=url.rstrip("/"), timeout=timeout)


def _load_file(path: str) -> dict:
    with open(path) as f:
        return yaml.safe_load(f) if path.endswith((".yaml", ".yml")) else json.load(f)


def _die(msg: str, code: int = 1) -> None:
    err_console.print(f"[red]Error:[/] {msg}")
    sys.exit(code)


def _check(resp: httpx.Response) -> None:
    if resp.status_code == 404:
        _die(resp.json().get("detail", "Not found"))
    if resp.is_error:
        _die(f"HTTP {resp.status_code}: {resp.text}")


def _state(row: dict) -> str:
    if row.get("error_state"):
        return "error"
    return "enabled" if row.get("enabled") else "disabled"


def _when(row: dict) -> str:
    freq = row.get("frequency", "?")
    at = row.get("time_of_day", "?")
    if freq == "weekly":
        day = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"][row.get("day_of_week") or 0]
        return f"weekly {day} {at}"
    if freq == "monthly":
        return f"monthly day {row.get('day_of_month')} {at}"
    return f"{freq} {at}"


def _emit(obj: dict, data: Any) -> bool:
    """Print raw JSON when --json is set; returns True if it did."""
    if obj["json_output"]:
        click.echo(json.dumps(data, indent=2, default=str))
        return True
    return False


# ── Root group ────────────────────────────────────────────────────────────────


@click.group()
@click.option(
    "--url", "-u",
    default="http://localhost:8000",
    envvar="REPORT_ENGINE_API_URL",
    show_default=True,
    help="Engine API base URL.",
)
@click.option("--json", "json_output", is_flag=True, help="Output raw JSON.")
@click.pass_context
def cli(ctx: click.Context, url: str, json_output: bool) -> None:
    """Report Engine — recurring report schedules."""
    ctx.ensure_object(dict)
    ctx.obj["url"] = url
    ctx.obj["json_output"] = json_output


# ── report-engine schedule ────────────────────────────────────────────────────


@cli.group("schedule")
def schedule() -> None:
    """Manage report schedules."""


@schedule.command("list")
@click.pass_obj
def schedule_list(obj: dict) -> None:
    """List all schedules."""
    with _client(obj["url"]) as c:
        resp = c.get("/schedules")
    _check(resp)
    data = resp.json()
    if _emit(obj, data):
        return

    if not data:
        click.echo("No schedules found.")
        return

    table = Table(box=box.SIMPLE)
    table.add_column("Schedule ID", style="cyan")
    table.add_column("Name")
    table.add_column("When")
    table.add_column("TZ")
    table.add_column("State")
    table.add_column("Next Run")
    table.add_column("Runs", justify="right")
    table.add_column("Failures", justify="right")
    for row in data:
        state = _state(row)
        table.add_row(
            row["schedule_id"],
            row.get("name", ""),
            _when(row),
            row.get("timezone", ""),
            f"[{_color(state)}]{state}[/]",
            row.get("next_run") or "-",
            str(row.get("run_count", 0)),
            str(row.get("failure_count", 0)),
        )
    console.print(table)


@schedule.command("create")
@click.argument("file", type=click.Path(exists=True))
@click.pass_obj
def schedule_create(obj: dict, file: str) -> None:
    """Create a schedule from a YAML or JSON file.

    \b
    File format (YAML example):
      name: weekly-risk-summary
      frequency: weekly
      day_of_week: 1
      time_of_day: "09:00"
      timezone: Europe/London
      output_formats: [pdf, excel]
      recipients: [risk@example.com]
    """
    payload = _load_file(file)
    with _client(obj["url"]) as c:
        resp = c.post("/schedules", json=payload)
    _check(resp)
    data = resp.json()
    if _emit(obj, data):
        return
    click.echo(f"Created  {data['schedule_id']}  [{_state(data)}]  {_when(data)} {data.get('timezone', '')}")


@schedule.command("show")
@click.argument("schedule_id")
@click.option("--runs", default=10, show_default=True, help="Number of recent runs to show.")
@click.pass_obj
def schedule_show(obj: dict, schedule_id: str, runs: int) -> None:
    """Show a schedule and its recent runs."""
    with _client(obj["url"]) as c:
        resp = c.get(f"/schedules/{schedule_id}", params={"runs": runs})
    _check(resp)
    data = resp.json()
    if _emit(obj, data):
        return

    sched = data["schedule"]
    state = _state(sched)
    console.print(f"[cyan]{sched['schedule_id']}[/]  {sched.get('name', '')}")
    console.print(f"When     : {_when(sched)} ({sched.get('timezone')})")
    console.print(f"State    : [{_color(state)}]{state}[/]")
    console.print(f"Next run : {sched.get('next_run') or '-'}")
    console.print(f"Last run : {sched.get('last_run') or '-'}")
    console.print(f"Runs     : {sched.get('run_count', 0)}  (failures: {sched.get('failure_count', 0)})")
    if sched.get("error_state"):
        console.print(f"[red]Error    : {sched['error_state']}[/]")
    elif sched.get("last_error"):
        console.print(f"Last err : {sched['last_error']}")
    _print_runs(data.get("recent_runs", []))


@schedule.command("history")
@click.argument("schedule_id")
@click.option("--limit", default=10, show_default=True)
@click.pass_obj
def schedule_history(obj: dict, schedule_id: str, limit: int) -> None:
    """List recent runs of a schedule."""
    with _client(obj["url"]) as c:
        resp = c.get(f"/schedules/{schedule_id}/runs", params={"limit": limit})
    _check(resp)
    data = resp.json()
    if _emit(obj, data):
        return
    if not data:
        click.echo("No runs yet.")
        return
    _print_runs(data)


def _print_runs(runs: list[dict]) -> None:
    if not runs:
        return
    table = Table(box=box.SIMPLE)
    table.add_column("Fired At", style="cyan")
    table.add_column("Result")
    table.add_column("Duration", justify="right")
    table.add_column("Artifact / Error")
    for run in runs:
        status = "ok" if run.get("succeeded") else "failed"
        dur = f"{run['duration_s']:.2f}s" if run.get("duration_s") is not None else "-"
        detail = run.get("artifact_ref") if run.get("succeeded") else (run.get("error_detail") or "")
        table.add_row(
            run.get("fired_at", "?"),
            f"[{_color(status)}]{status}[/]",
            dur,
            (detail or "")[:60],
        )
    console.print(table)


def _simple_action(path_suffix: str, verb: str):
    def action(obj: dict, schedule_id: str) -> None:
        with _client(obj["url"]) as c:
            resp = c.post(f"/schedules/{schedule_id}/{path_suffix}")
        _check(resp)
        data = resp.json()
        if _emit(obj, data):
            return
        click.echo(f"{verb}  {schedule_id}  next: {data.get('next_run') or '-'}")
    return action


@schedule.command("enable")
@click.argument("schedule_id")
@click.pass_obj
def schedule_enable(obj: dict, schedule_id: str) -> None:
    """Enable a schedule (next run is recomputed from now)."""
    _simple_action("enable", "Enabled")(obj, schedule_id)


@schedule.command("disable")
@click.argument("schedule_id")
@click.pass_obj
def schedule_disable(obj: dict, schedule_id: str) -> None:
    """Disable a schedule."""
    _simple_action("disable", "Disabled")(obj, schedule_id)


@schedule.command("clear-error")
@click.argument("schedule_id")
@click.pass_obj
def schedule_clear_error(obj: dict, schedule_id: str) -> None:
    """Clear a schedule's error flag after fixing it."""
    _simple_action("clear-error", "Cleared")(obj, schedule_id)


@schedule.command("delete")
@click.argument("schedule_id")
@click.pass_obj
def schedule_delete(obj: dict, schedule_id: str) -> None:
    """Delete a schedule."""
    with _client(obj["url"]) as c:
        resp = c.delete(f"/schedules/{schedule_id}")
    _check(resp)
    click.echo(f"Deleted  {schedule_id}")


@schedule.command("run")
@click.argument("schedule_id")
@click.pass_obj
def schedule_run(obj: dict, schedule_id: str) -> None:
    """Fire a schedule now and wait for the outcome."""
    with _client(obj["url"], timeout=None) as c:
        resp = c.post(f"/schedules/{schedule_id}/run")
    _check(resp)
    data = resp.json()
    if _emit(obj, data):
        return
    if data.get("succeeded"):
        console.print(f"[green]ok[/]  {data.get('artifact_ref') or ''}  next: {data.get('next_run') or '-'}")
    else:
        console.print(f"[red]failed[/]  {data.get('error_detail') or ''}")
        sys.exit(1)


# ── report-engine stats ───────────────────────────────────────────────────────


@cli.command("stats")
@click.option("--since", help="ISO-8601 lower bound on fired_at.")
@click.option("--until", help="ISO-8601 upper bound on fired_at.")
@click.pass_obj
def stats(obj: dict, since: str | None, until: str | None) -> None:
    """Show delivery statistics across all schedules."""
    params: dict[str, Any] = {}
    if since:
        params["since"] = since
    if until:
        params["until"] = until
    with _client(obj["url"]) as c:
        resp = c.get("/runs/stats", params=params)
    _check(resp)
    data = resp.json()
    if _emit(obj, data):
        return
    console.print(f"Total runs : {data['total_runs']}")
    console.print(f"Succeeded  : [green]{data['successful_runs']}[/]")
    console.print(f"Failed     : [red]{data['failed_runs']}[/]")
    console.print(f"Avg time   : {data['average_duration_s']:.2f}s")
    if data.get("top_formats"):
        formats = ", ".join(f"{f['format']} ({f['count']})" for f in data["top_formats"])
        console.print(f"Formats    : {formats}")


# ── report-engine tick ────────────────────────────────────────────────────────


@cli.command("tick")
@click.pass_obj
def tick(obj: dict) -> None:
    """Evaluate due schedules now."""
    with _client(obj["url"], timeout=None) as c:
        resp = c.post("/scheduler/tick")
    _check(resp)
    data = resp.json()
    if _emit(obj, data):
        return
    click.echo(f"Fired {data['fired']} schedule(s)")


# ── report-engine next-run (offline) ──────────────────────────────────────────


@cli.command("next-run")
@click.argument("file", type=click.Path(exists=True))
@click.option("--from", "from_", help="ISO-8601 reference instant (default: now).")
@click.option("--count", default=5, show_default=True, help="Number of occurrences.")
@click.pass_obj
def next_run(obj: dict, file: str, from_: str | None, count: int) -> None:
    """Preview upcoming runs of a schedule file without contacting the server."""
    try:
        spec = ScheduleSpec.model_validate(_load_file(file))
    except ValidationError as e:
        _die(f"Invalid schedule: {e.errors()[0]['msg']}")
        return

    start = datetime.now(timezone.utc)
    if from_:
        try:
            start = datetime.fromisoformat(from_.replace("Z", "+00:00"))
        except ValueError:
            _die(f"Invalid --from value: {from_}")
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)

    try:
        runs = upcoming_runs(spec, start, count)
    except RecurrenceError as e:
        _die(str(e))
        return

    if _emit(obj, [r.isoformat() for r in runs]):
        return
    table = Table(box=box.SIMPLE)
    table.add_column("#", justify="right")
    table.add_column("UTC", style="cyan")
    table.add_column(f"Local ({spec.timezone})")
    for i, r in enumerate(runs, 1):
        table.add_row(str(i), r.isoformat(), local_time_of(r, spec.timezone).strftime("%a %Y-%m-%d %H:%M %Z"))
    console.print(table)
