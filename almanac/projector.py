"""Projection of domain records into calendar events.

Every function here is pure: a record goes in, a ``CalendarEvent`` (or ``None``
when the record lacks usable temporal fields) comes out. Identity is carried by
the local key, which depends only on the record's identifier (or, lacking one,
its date and name) and never on descriptive fields.
"""

from __future__ import annotations

import math
import os
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from icalendar import vRecur

from almanac.models import (
    CalendarEvent,
    DomainRecord,
    DomainSnapshot,
    EventTime,
    ScheduledTask,
    StreakDay,
    SyncItem,
    TaskOccurrenceLog,
    WellnessActivityLog,
    WorkoutSession,
)


DEFAULT_TASK_START = "09:00"
DEFAULT_UNTIL_TIME = "23:59"
DEFAULT_TASK_MINUTES = 25
DEFAULT_SESSION_MINUTES = 25
DEFAULT_WELLNESS_MINUTES = 15

_REPEAT_FREQUENCIES = {"daily": "DAILY", "weekly": "WEEKLY"}


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def _is_known_zone(name: str) -> bool:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def _local_zone_name() -> str:
    env_zone = os.getenv("TZ", "").strip().lstrip(":")
    if env_zone and _is_known_zone(env_zone):
        return env_zone
    localtime = Path("/etc/localtime")
    try:
        target = str(localtime.resolve())
    except OSError:
        target = ""
    if "zoneinfo/" in target:
        candidate = target.split("zoneinfo/", 1)[1]
        if _is_known_zone(candidate):
            return candidate
    return "UTC"


def resolve_timezone(preference: str | None = None) -> str:
    """Return an IANA zone name: the explicit preference, else the runtime's zone."""
    text = str(preference or "").strip()
    if text and text.lower() != "auto" and _is_known_zone(text):
        return text
    return _local_zone_name()


def _parse_date(value: str) -> date | None:
    text = str(value or "").strip()
    if len(text) < 10:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def _parse_clock(value: str) -> time | None:
    text = str(value or "").strip()
    if not text:
        return None
    try:
        return time.fromisoformat(text)
    except ValueError:
        return None


def _parse_instant(value: str, tz: ZoneInfo) -> datetime | None:
    text = str(value or "").strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    try:
        return parsed.astimezone(tz)
    except OverflowError:
        return None


def _minutes(value: float, default: int) -> float:
    if not value or not math.isfinite(value) or value <= 0:
        return default
    return value


def _after(start: datetime, minutes: float) -> datetime | None:
    try:
        return start + timedelta(minutes=minutes)
    except (OverflowError, ValueError):
        return None


def _fmt(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def _all_day(day: date) -> tuple[EventTime, EventTime] | None:
    try:
        next_day = day + timedelta(days=1)
    except OverflowError:
        return None
    return EventTime(date=day.isoformat()), EventTime(date=next_day.isoformat())


def _timed(start: datetime, end: datetime, zone_name: str) -> tuple[EventTime, EventTime]:
    return (
        EventTime(date_time=start.isoformat(), time_zone=zone_name),
        EventTime(date_time=end.isoformat(), time_zone=zone_name),
    )


# ---------------------------------------------------------------------------
# Local keys
# ---------------------------------------------------------------------------


def _workout_key(record: WorkoutSession) -> str:
    local_id = record.id or f"{record.date}:{record.plan_name or record.type or 'session'}"
    return f"workout:{local_id}"


def _task_key(record: ScheduledTask) -> str:
    local_id = record.id or f"{record.date}:{record.title or record.name}"
    return f"focusTask:{local_id}"


def _session_key(record: TaskOccurrenceLog) -> str:
    return f"focusSession:{record.id or record.time}"


def _streak_key(record: StreakDay) -> str:
    day = _parse_date(record.date)
    return f"streak:{day.isoformat() if day else record.date}"


def _wellness_key(record: WellnessActivityLog) -> str:
    return f"mental:{record.id or record.time}"


_KEY_BUILDERS: dict[type, Callable[[Any], str]] = {
    WorkoutSession: _workout_key,
    ScheduledTask: _task_key,
    TaskOccurrenceLog: _session_key,
    StreakDay: _streak_key,
    WellnessActivityLog: _wellness_key,
}


def local_key(record: DomainRecord) -> str:
    builder = _KEY_BUILDERS.get(type(record))
    if builder is None:
        raise TypeError(f"Unsupported domain record: {type(record).__name__}")
    return builder(record)


# ---------------------------------------------------------------------------
# Per-kind projections
# ---------------------------------------------------------------------------


def project_workout(record: WorkoutSession) -> CalendarEvent | None:
    day = _parse_date(record.date)
    if day is None:
        return None

    lines: list[str] = []
    if _minutes(record.duration, 0):
        lines.append(f"Duration: {_fmt(record.duration)} minutes")
    if record.exercises:
        lines.append("Exercises:")
        for exercise in record.exercises:
            details = []
            if exercise.sets:
                details.append(f"{_fmt(exercise.sets)} sets")
            if exercise.reps:
                details.append(f"{_fmt(exercise.reps)} reps")
            if exercise.duration:
                details.append(f"{_fmt(exercise.duration)} min")
            if exercise.distance:
                details.append(f"{_fmt(exercise.distance)} km")
            if exercise.calories:
                details.append(f"{_fmt(exercise.calories)} kcal")
            suffix = f" ({', '.join(details)})" if details else ""
            lines.append(f"• {exercise.name or 'Exercise'}{suffix}")
    if record.total_calories:
        lines.append(f"Total Calories: {_fmt(record.total_calories)}")
    if record.total_distance:
        lines.append(f"Distance: {record.total_distance}")

    span = _all_day(day)
    if span is None:
        return None
    start, end = span
    return CalendarEvent(
        title=f"Workout: {record.plan_name or record.type or 'Training Session'}",
        description="\n".join(lines),
        start=start,
        end=end,
        kind=record.kind,
        local_key=_workout_key(record),
        use_default_reminders=True,
    )


def _recurrence_rule(record: ScheduledTask, tz: ZoneInfo) -> str | None:
    freq = _REPEAT_FREQUENCIES.get(record.repeat)
    if freq is None:
        return None
    rule = vRecur(FREQ=freq)
    until_day = _parse_date(record.repeat_until)
    if until_day is not None:
        until_clock = (
            _parse_clock(record.end_time)
            or _parse_clock(record.start_time)
            or _parse_clock(DEFAULT_UNTIL_TIME)
        )
        try:
            until = datetime.combine(until_day, until_clock, tzinfo=tz).astimezone(timezone.utc)
        except OverflowError:
            # Past the last representable instant; repeat without an end.
            until = None
        if until is not None:
            rule["UNTIL"] = [until]
    return "RRULE:" + rule.to_ical().decode("utf-8")


def project_scheduled_task(record: ScheduledTask, zone_name: str) -> CalendarEvent | None:
    tz = _zone(zone_name)
    day = _parse_date(record.date)
    start_clock = _parse_clock(record.start_time or DEFAULT_TASK_START)
    if day is None or start_clock is None:
        return None

    start = datetime.combine(day, start_clock, tzinfo=tz)
    end = None
    end_clock = _parse_clock(record.end_time)
    if end_clock is not None:
        end = datetime.combine(day, end_clock, tzinfo=tz)
        if end <= start:
            end = None
    if end is None:
        minutes = _minutes(record.planned, 0) or _minutes(record.focus_duration, DEFAULT_TASK_MINUTES)
        end = _after(start, minutes)
        if end is None:
            return None

    lines: list[str] = []
    if record.category:
        lines.append(f"Category: {record.category}")
    if record.focus_mode:
        lines.append("Focus Mode enabled")
    if record.cycles:
        lines.append(f"Cycles: {_fmt(record.cycles)}")
    if record.break_duration:
        lines.append(f"Breaks: {_fmt(record.break_duration)} minutes")

    rule = _recurrence_rule(record, tz)
    start_time, end_time = _timed(start, end, zone_name)
    return CalendarEvent(
        title=record.title or record.name or "Focus Session",
        description="\n".join(lines),
        start=start_time,
        end=end_time,
        kind=record.kind,
        local_key=_task_key(record),
        recurrence=(rule,) if rule else (),
        use_default_reminders=True,
    )


def project_focus_session(record: TaskOccurrenceLog, zone_name: str) -> CalendarEvent | None:
    start = _parse_instant(record.time, _zone(zone_name))
    if start is None:
        return None
    minutes = _minutes(record.duration, DEFAULT_SESSION_MINUTES)
    end = _after(start, minutes)
    if end is None:
        return None
    start_time, end_time = _timed(start, end, zone_name)
    return CalendarEvent(
        title=f"Focus Session: {record.task or 'Focus Work'}",
        description="\n".join(
            [
                f"Duration: {_fmt(minutes)} minutes",
                f"Completed: {'Yes' if record.completed else 'Partial'}",
            ]
        ),
        start=start_time,
        end=end_time,
        kind=record.kind,
        local_key=_session_key(record),
    )


def project_streak_day(record: StreakDay, streak_count: int = 0) -> CalendarEvent | None:
    if not record.completed:
        return None
    day = _parse_date(record.date)
    if day is None:
        return None
    span = _all_day(day)
    if span is None:
        return None
    start, end = span
    return CalendarEvent(
        title="Streak Day",
        description=(
            f"Congratulations! You maintained your streak on {day.isoformat()}. "
            f"Current streak: {streak_count} days."
        ),
        start=start,
        end=end,
        kind=record.kind,
        local_key=_streak_key(record),
    )


def project_wellness_log(record: WellnessActivityLog, zone_name: str) -> CalendarEvent | None:
    start = _parse_instant(record.time, _zone(zone_name))
    if start is None:
        return None
    minutes = _minutes(record.duration, DEFAULT_WELLNESS_MINUTES)

    lines: list[str] = []
    if record.mood:
        lines.append(f"Mood: {record.mood}")
    if record.journal_entry:
        lines.append(f"Journal: {record.journal_entry}")
    if _minutes(record.duration, 0):
        lines.append(f"Duration: {_fmt(record.duration)} minutes")

    end = _after(start, minutes)
    if end is None:
        return None
    start_time, end_time = _timed(start, end, zone_name)
    return CalendarEvent(
        title=f"Mental Wellness: {record.activity or record.type or 'Session'}",
        description="\n".join(lines),
        start=start_time,
        end=end_time,
        kind=record.kind,
        local_key=_wellness_key(record),
    )


def project(record: DomainRecord, timezone_name: str = "UTC", streak_count: int = 0) -> CalendarEvent | None:
    if isinstance(record, WorkoutSession):
        return project_workout(record)
    if isinstance(record, ScheduledTask):
        return project_scheduled_task(record, timezone_name)
    if isinstance(record, TaskOccurrenceLog):
        return project_focus_session(record, timezone_name)
    if isinstance(record, StreakDay):
        return project_streak_day(record, streak_count)
    if isinstance(record, WellnessActivityLog):
        return project_wellness_log(record, timezone_name)
    return None


def build_sync_items(snapshot: DomainSnapshot | None, timezone_name: str) -> list[SyncItem]:
    if snapshot is None:
        return []
    items: list[SyncItem] = []
    seen: set[tuple[str, str]] = set()
    for record in snapshot.records():
        event = project(record, timezone_name, snapshot.streak_count)
        if event is None or (event.kind, event.local_key) in seen:
            continue
        seen.add((event.kind, event.local_key))
        items.append(SyncItem(kind=event.kind, local_key=event.local_key, event=event))
    return items
