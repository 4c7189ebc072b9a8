"""Recurrence rules: map a schedule's frequency fields to its next firing instant.

Everything here is pure. The only notion of "now" is the ``from_instant``
argument, so results are reproducible for a given schedule and instant.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta

from core.errors import RecurrenceError
from scheduler.models import MONDAY, AmbiguousTime, Frequency, ScheduleSpec, parse_time_of_day

# Longest DST gap observed in the tz database is well under a day
_MAX_GAP_MINUTES = 24 * 60


def compute_next_run(
    schedule: ScheduleSpec,
    from_instant: datetime,
    *,
    ambiguous: AmbiguousTime = AmbiguousTime.EARLIER,
) -> datetime:
    """Return the first firing instant (UTC) strictly after *from_instant*.

    Args:
        schedule:     Any schedule-shaped object (``Schedule`` or ``ScheduleSpec``).
        from_instant: Timezone-aware reference instant.
        ambiguous:    How a wall time repeated by a DST fall-back is resolved.

    Raises:
        ValueError:      *from_instant* is naive.
        RecurrenceError: The schedule's fields cannot be evaluated.
    """
    if from_instant.tzinfo is None:
        raise ValueError("from_instant must be timezone-aware")

    label = getattr(schedule, "schedule_id", None) or getattr(schedule, "name", "") or "?"
    try:
        tz = ZoneInfo(schedule.timezone)
        at = parse_time_of_day(schedule.time_of_day)
        frequency = Frequency(schedule.frequency)
    except (ZoneInfoNotFoundError, ValueError, TypeError) as e:
        raise RecurrenceError(f"Schedule '{label}' is not evaluable: {e}") from e

    def instant(d: date) -> datetime:
        return resolve_local(datetime.combine(d, at), tz, ambiguous)

    day = from_instant.astimezone(tz).date()
    if instant(day) <= from_instant:
        day += timedelta(days=1)

    if frequency == Frequency.WEEKLY:
        dow = schedule.day_of_week if schedule.day_of_week is not None else MONDAY
        if not 0 <= dow <= 6:
            raise RecurrenceError(f"Schedule '{label}': day_of_week {dow} out of range")
        day += timedelta(days=(dow - sunday_based_weekday(day)) % 7)

    elif frequency == Frequency.MONTHLY:
        dom = schedule.day_of_month
        if dom is None or not 1 <= dom <= 31:
            raise RecurrenceError(f"Schedule '{label}': invalid day_of_month {dom!r}")
        day = clamp_day(day, dom)
        if instant(day) <= from_instant:
            day = clamp_day(day.replace(day=1) + relativedelta(months=1), dom)

    elif frequency == Frequency.QUARTERLY:
        day = day.replace(day=1)
        if instant(day) <= from_instant:
            day += relativedelta(months=3)

    result = instant(day)
    if result <= from_instant:
        raise RecurrenceError(
            f"Schedule '{label}': computed {result.isoformat()} is not after "
            f"{from_instant.isoformat()}"
        )
    return result


def resolve_local(naive: datetime, tz: tzinfo, ambiguous: AmbiguousTime = AmbiguousTime.EARLIER) -> datetime:
    """Convert a local wall time to UTC.

    A wall time skipped by a DST gap moves to the first valid minute after
    the gap. A repeated wall time picks the earlier or later instant.
    """
    fold = 1 if ambiguous == AmbiguousTime.LATER else 0
    candidate = naive
    for _ in range(_MAX_GAP_MINUTES):
        if _exists(candidate, tz):
            return candidate.replace(tzinfo=tz, fold=fold).astimezone(timezone.utc)
        candidate += timedelta(minutes=1)
    raise RecurrenceError(f"No valid local time at or after {naive.isoformat()} in {tz}")


def _exists(naive: datetime, tz: tzinfo) -> bool:
    round_trip = naive.replace(tzinfo=tz).astimezone(timezone.utc).astimezone(tz)
    return round_trip.replace(tzinfo=None) == naive


def sunday_based_weekday(d: date) -> int:
    """Weekday with Sunday=0 … Saturday=6."""
    return (d.weekday() + 1) % 7


def clamp_day(d: date, day_of_month: int) -> date:
    """Same month as *d*, day set to *day_of_month* or the month's last day."""
    last = calendar.monthrange(d.year, d.month)[1]
    return d.replace(day=min(day_of_month, last))


def upcoming_runs(
    schedule: ScheduleSpec,
    from_instant: datetime,
    count: int = 5,
    *,
    ambiguous: AmbiguousTime = AmbiguousTime.EARLIER,
) -> list[datetime]:
    """The next *count* firing instants, each computed from the previous one."""
    out: list[datetime] = []
    cursor = from_instant
    for _ in range(count):
        cursor = compute_next_run(schedule, cursor, ambiguous=ambiguous)
        out.append(cursor)
    return out


def local_time_of(instant: datetime, timezone_name: str) -> datetime:
    return instant.astimezone(ZoneInfo(timezone_name))

