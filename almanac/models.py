from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar


CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar.events"

KIND_WORKOUTS = "workouts"
KIND_FOCUS_TASKS = "focus_tasks"
KIND_FOCUS_SESSIONS = "focus_sessions"
KIND_STREAK_DATES = "streak_dates"
KIND_MENTAL_LOGS = "mental_logs"

RECORD_KINDS = (
    KIND_WORKOUTS,
    KIND_FOCUS_TASKS,
    KIND_FOCUS_SESSIONS,
    KIND_STREAK_DATES,
    KIND_MENTAL_LOGS,
)


class PromptMode:
    SILENT = "silent"
    CONSENT = "consent"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def _pick(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return default


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _number(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return int(number) if number.is_integer() else number


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class GoogleConfig:
    client_id: str = ""
    client_secret: str = ""
    scope: str = CALENDAR_SCOPE
    redirect_uri: str = ""
    auth_uri: str = "https://accounts.google.com/o/oauth2/v2/auth"
    token_uri: str = "https://oauth2.googleapis.com/token"
    revoke_uri: str = "https://oauth2.googleapis.com/revoke"
    api_base_url: str = "https://www.googleapis.com/calendar/v3"
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleConfig":
        data = data or {}
        defaults = cls()
        return cls(
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            scope=str(data.get("scope", CALENDAR_SCOPE)).strip() or CALENDAR_SCOPE,
            redirect_uri=str(data.get("redirect_uri", "")).strip(),
            auth_uri=str(data.get("auth_uri", defaults.auth_uri)).strip() or defaults.auth_uri,
            token_uri=str(data.get("token_uri", defaults.token_uri)).strip() or defaults.token_uri,
            revoke_uri=str(data.get("revoke_uri", defaults.revoke_uri)).strip() or defaults.revoke_uri,
            api_base_url=str(data.get("api_base_url", defaults.api_base_url)).strip() or defaults.api_base_url,
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class SyncConfig:
    debounce_seconds: float = 1.5
    auto_sync: bool = True
    timezone: str = "auto"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            debounce_seconds=max(0.0, float(data.get("debounce_seconds", 1.5))),
            auto_sync=bool(data.get("auto_sync", True)),
            timezone=str(data.get("timezone", "auto")).strip() or "auto",
        )


@dataclass
class AppConfig:
    google: GoogleConfig = field(default_factory=GoogleConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            google=GoogleConfig.from_dict(data.get("google")),
            sync=SyncConfig.from_dict(data.get("sync")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


# ---------------------------------------------------------------------------
# Domain records (read-only input)
# ---------------------------------------------------------------------------


@dataclass
class ExerciseEntry:
    name: str = ""
    sets: float = 0
    reps: float = 0
    duration: float = 0
    distance: float = 0
    calories: float = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ExerciseEntry":
        data = data or {}
        return cls(
            name=_text(_pick(data, "exerciseName", "exercise_name", "name")),
            sets=_number(data.get("sets")),
            reps=_number(data.get("reps")),
            duration=_number(data.get("duration")),
            distance=_number(data.get("distance")),
            calories=_number(data.get("calories")),
        )


@dataclass
class WorkoutSession:
    kind: ClassVar[str] = KIND_WORKOUTS

    id: str = ""
    date: str = ""
    plan_name: str = ""
    type: str = ""
    duration: float = 0
    exercises: list[ExerciseEntry] = field(default_factory=list)
    total_calories: float = 0
    total_distance: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "WorkoutSession":
        data = data or {}
        raw_exercises = data.get("exercises") or []
        return cls(
            id=_text(data.get("id")),
            date=_text(data.get("date")),
            plan_name=_text(_pick(data, "planName", "plan_name")),
            type=_text(data.get("type")),
            duration=_number(data.get("duration")),
            exercises=[ExerciseEntry.from_dict(item) for item in raw_exercises if isinstance(item, dict)],
            total_calories=_number(_pick(data, "totalCalories", "total_calories")),
            total_distance=_text(_pick(data, "totalDistance", "total_distance")),
        )


@dataclass
class ScheduledTask:
    kind: ClassVar[str] = KIND_FOCUS_TASKS

    id: str = ""
    date: str = ""
    start_time: str = ""
    end_time: str = ""
    title: str = ""
    name: str = ""
    planned: float = 0
    focus_duration: float = 0
    category: str = ""
    focus_mode: bool = False
    cycles: float = 0
    break_duration: float = 0
    repeat: str = "none"
    repeat_until: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ScheduledTask":
        data = data or {}
        return cls(
            id=_text(data.get("id")),
            date=_text(data.get("date")),
            start_time=_text(_pick(data, "startTime", "start_time")),
            end_time=_text(_pick(data, "endTime", "end_time")),
            title=_text(data.get("title")),
            name=_text(data.get("name")),
            planned=_number(data.get("planned")),
            focus_duration=_number(_pick(data, "focusDuration", "focus_duration")),
            category=_text(data.get("category")),
            focus_mode=bool(_pick(data, "focusMode", "focus_mode", default=False)),
            cycles=_number(data.get("cycles")),
            break_duration=_number(_pick(data, "breakDuration", "break_duration")),
            repeat=_text(data.get("repeat")).lower() or "none",
            repeat_until=_text(_pick(data, "repeatUntil", "repeat_until")),
        )


@dataclass
class TaskOccurrenceLog:
    kind: ClassVar[str] = KIND_FOCUS_SESSIONS

    id: str = ""
    time: str = ""
    duration: float = 0
    task: str = ""
    completed: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TaskOccurrenceLog":
        data = data or {}
        return cls(
            id=_text(data.get("id")),
            time=_text(data.get("time")),
            duration=_number(data.get("duration")),
            task=_text(data.get("task")),
            completed=bool(data.get("completed", False)),
        )


@dataclass
class StreakDay:
    kind: ClassVar[str] = KIND_STREAK_DATES

    date: str = ""
    completed: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StreakDay":
        data = data or {}
        return cls(date=_text(data.get("date")), completed=bool(data.get("completed", False)))


@dataclass
class WellnessActivityLog:
    kind: ClassVar[str] = KIND_MENTAL_LOGS

    id: str = ""
    time: str = ""
    duration: float = 0
    activity: str = ""
    type: str = ""
    mood: str = ""
    journal_entry: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "WellnessActivityLog":
        data = data or {}
        return cls(
            id=_text(data.get("id")),
            time=_text(data.get("time")),
            duration=_number(data.get("duration")),
            activity=_text(data.get("activity")),
            type=_text(data.get("type")),
            mood=_text(data.get("mood")),
            journal_entry=_text(_pick(data, "journalEntry", "journal_entry")),
        )


DomainRecord = WorkoutSession | ScheduledTask | TaskOccurrenceLog | StreakDay | WellnessActivityLog


def _records(data: dict[str, Any], factory: Any, *keys: str) -> list[Any]:
    raw = _pick(data, *keys, default=[]) or []
    return [factory.from_dict(item) for item in raw if isinstance(item, dict)]


@dataclass
class DomainSnapshot:
    workout_history: list[WorkoutSession] = field(default_factory=list)
    focus_tasks: list[ScheduledTask] = field(default_factory=list)
    focus_logs: list[TaskOccurrenceLog] = field(default_factory=list)
    calendar: list[StreakDay] = field(default_factory=list)
    mental_health_logs: list[WellnessActivityLog] = field(default_factory=list)
    streak_count: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "DomainSnapshot":
        data = data or {}
        return cls(
            workout_history=_records(data, WorkoutSession, "workoutHistory", "workout_history"),
            focus_tasks=_records(data, ScheduledTask, "focusTasks", "focus_tasks"),
            focus_logs=_records(data, TaskOccurrenceLog, "focusLogs", "focus_logs"),
            calendar=_records(data, StreakDay, "calendar"),
            mental_health_logs=_records(data, WellnessActivityLog, "mentalHealthLogs", "mental_health_logs"),
            streak_count=int(_number(_pick(data, "streakCount", "streak_count", default=0))),
        )

    def records(self) -> list[DomainRecord]:
        return [
            *self.workout_history,
            *self.focus_tasks,
            *self.focus_logs,
            *self.calendar,
            *self.mental_health_logs,
        ]


# ---------------------------------------------------------------------------
# Calendar side
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EventTime:
    date: str | None = None
    date_time: str | None = None
    time_zone: str | None = None

    def to_payload(self) -> dict[str, str]:
        if self.date is not None:
            return {"date": self.date}
        payload = {"dateTime": str(self.date_time)}
        if self.time_zone:
            payload["timeZone"] = self.time_zone
        return payload


@dataclass(frozen=True)
class CalendarEvent:
    title: str
    description: str
    start: EventTime
    end: EventTime
    kind: str
    local_key: str
    recurrence: tuple[str, ...] = ()
    use_default_reminders: bool = False

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "summary": self.title,
            "description": self.description,
            "start": self.start.to_payload(),
            "end": self.end.to_payload(),
            "reminders": {"useDefault": self.use_default_reminders},
            "extendedProperties": {
                "private": {
                    "almanacKind": self.kind,
                    "almanacLocalKey": self.local_key,
                }
            },
        }
        if self.recurrence:
            payload["recurrence"] = list(self.recurrence)
        return payload


@dataclass(frozen=True)
class SyncItem:
    kind: str
    local_key: str
    event: CalendarEvent


@dataclass
class SyncState:
    user_id: str
    enabled: bool = False
    last_synced_at: str | None = None
    last_attempt_at: str | None = None
    last_error: str | None = None
    identity_map: dict[str, dict[str, str]] = field(
        default_factory=lambda: {kind: {} for kind in RECORD_KINDS}
    )

    def remote_id_for(self, kind: str, local_key: str) -> str | None:
        return self.identity_map.get(kind, {}).get(local_key)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncResult:
    status: str
    message: str
    synced_count: int = 0
    updated_kinds: list[str] = field(default_factory=list)
    created: int = 0
    updated: int = 0
    failed: int = 0
    duration_ms: int = 0
    trigger: str = "manual"
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "synced_count": self.synced_count,
            "updated_kinds": list(self.updated_kinds),
            "created": self.created,
            "updated": self.updated,
            "failed": self.failed,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "run_at": serialize_datetime(self.run_at),
        }
