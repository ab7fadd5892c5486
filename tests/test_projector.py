import os
import unittest
from unittest import mock

from almanac.models import (
    DomainSnapshot,
    ScheduledTask,
    StreakDay,
    TaskOccurrenceLog,
    WellnessActivityLog,
    WorkoutSession,
)
from almanac.projector import (
    build_sync_items,
    local_key,
    project,
    project_scheduled_task,
    project_streak_day,
    project_workout,
    resolve_timezone,
)


class WorkoutProjectionTests(unittest.TestCase):
    def test_workout_is_all_day_with_detailed_description(self) -> None:
        workout = WorkoutSession.from_dict(
            {
                "id": "w-1",
                "date": "2025-10-10",
                "planName": "Strength Builder",
                "duration": 45,
                "exercises": [
                    {"exerciseName": "Bench Press", "sets": 4, "reps": 8},
                    {"exerciseName": "Squat", "sets": 5, "reps": 5},
                ],
                "totalCalories": 520,
            }
        )
        event = project_workout(workout)
        self.assertIsNotNone(event)
        payload = event.to_payload()
        self.assertEqual(payload["summary"], "Workout: Strength Builder")
        self.assertEqual(payload["start"], {"date": "2025-10-10"})
        self.assertEqual(payload["end"], {"date": "2025-10-11"})
        self.assertIn("Duration: 45 minutes", payload["description"])
        self.assertIn("• Bench Press (4 sets, 8 reps)", payload["description"])
        self.assertIn("Total Calories: 520", payload["description"])
        self.assertTrue(payload["reminders"]["useDefault"])
        self.assertEqual(
            payload["extendedProperties"]["private"],
            {"almanacKind": "workouts", "almanacLocalKey": "workout:w-1"},
        )
        self.assertNotIn("recurrence", payload)

    def test_workout_without_date_is_dropped(self) -> None:
        self.assertIsNone(project(WorkoutSession(id="w-2", date="")))
        self.assertIsNone(project(WorkoutSession(id="w-3", date="not-a-date")))

    def test_last_representable_date_is_dropped(self) -> None:
        self.assertIsNone(project(WorkoutSession(id="w9", date="9999-12-31")))

    def test_fallback_key_uses_date_and_plan_name(self) -> None:
        workout = WorkoutSession(date="2025-10-12", plan_name="Cardio Blast")
        self.assertEqual(local_key(workout), "workout:2025-10-12:Cardio Blast")
        self.assertEqual(local_key(WorkoutSession(date="2025-10-12")), "workout:2025-10-12:session")


class StreakProjectionTests(unittest.TestCase):
    def test_streak_day_spans_exactly_one_day(self) -> None:
        event = project_streak_day(StreakDay(date="2025-10-10", completed=True), streak_count=7)
        self.assertEqual(event.start.to_payload(), {"date": "2025-10-10"})
        self.assertEqual(event.end.to_payload(), {"date": "2025-10-11"})
        self.assertIn("Current streak: 7 days.", event.description)
        self.assertEqual(event.local_key, "streak:2025-10-10")

    def test_streak_day_crosses_year_boundary(self) -> None:
        event = project_streak_day(StreakDay(date="2025-12-31", completed=True))
        self.assertEqual(event.end.date, "2026-01-01")

    def test_streak_on_last_representable_date_is_dropped(self) -> None:
        self.assertIsNone(project_streak_day(StreakDay(date="9999-12-31", completed=True)))

    def test_incomplete_streak_day_is_dropped(self) -> None:
        self.assertIsNone(project_streak_day(StreakDay(date="2025-10-10", completed=False)))


class ScheduledTaskProjectionTests(unittest.TestCase):
    def test_recurring_task_carries_rule_in_user_timezone(self) -> None:
        task = ScheduledTask.from_dict(
            {
                "id": "focus-1",
                "date": "2025-10-11",
                "startTime": "08:30",
                "endTime": "09:15",
                "title": "Deep Work",
                "repeat": "daily",
                "repeatUntil": "2025-10-15",
            }
        )
        event = project_scheduled_task(task, "America/New_York")
        payload = event.to_payload()
        self.assertEqual(payload["summary"], "Deep Work")
        self.assertEqual(payload["start"]["timeZone"], "America/New_York")
        self.assertEqual(payload["start"]["dateTime"], "2025-10-11T08:30:00-04:00")
        self.assertEqual(payload["end"]["dateTime"], "2025-10-11T09:15:00-04:00")
        self.assertEqual(len(payload["recurrence"]), 1)
        rule = payload["recurrence"][0]
        self.assertTrue(rule.startswith("RRULE:FREQ=DAILY"))
        self.assertIn("UNTIL=20251015T131500", rule)

    def test_weekly_task_without_until(self) -> None:
        task = ScheduledTask(id="t-2", date="2025-10-11", start_time="07:00", repeat="weekly")
        event = project_scheduled_task(task, "UTC")
        self.assertEqual(event.recurrence, ("RRULE:FREQ=WEEKLY",))

    def test_end_is_computed_from_planned_duration(self) -> None:
        task = ScheduledTask(id="t-3", date="2025-10-11", start_time="10:00", planned=50)
        event = project_scheduled_task(task, "UTC")
        self.assertEqual(event.end.date_time, "2025-10-11T10:50:00+00:00")
        self.assertEqual(event.recurrence, ())

    def test_default_start_and_duration(self) -> None:
        event = project_scheduled_task(ScheduledTask(id="t-4", date="2025-10-11"), "UTC")
        self.assertEqual(event.start.date_time, "2025-10-11T09:00:00+00:00")
        self.assertEqual(event.end.date_time, "2025-10-11T09:25:00+00:00")
        self.assertEqual(event.title, "Focus Session")

    def test_oversized_duration_is_dropped(self) -> None:
        task = ScheduledTask(id="t-6", date="2025-10-11", start_time="10:00", planned=1e12)
        self.assertIsNone(project_scheduled_task(task, "UTC"))

    def test_until_past_last_representable_instant_repeats_without_end(self) -> None:
        task = ScheduledTask(id="t-7", date="2025-10-11", start_time="22:00", repeat="daily", repeat_until="9999-12-31")
        event = project_scheduled_task(task, "America/New_York")
        self.assertEqual(event.recurrence, ("RRULE:FREQ=DAILY",))

    def test_invalid_start_time_is_dropped(self) -> None:
        self.assertIsNone(project_scheduled_task(ScheduledTask(id="t-5", date="2025-10-11", start_time="25:99"), "UTC"))


class LogProjectionTests(unittest.TestCase):
    def test_naive_session_time_is_local_to_user_timezone(self) -> None:
        session = TaskOccurrenceLog(id="s-1", time="2025-10-12T07:30:00", task="Reading", completed=True)
        event = project(session, "Europe/Berlin")
        self.assertEqual(event.start.date_time, "2025-10-12T07:30:00+02:00")
        self.assertEqual(event.end.date_time, "2025-10-12T07:55:00+02:00")
        self.assertIn("Completed: Yes", event.description)
        self.assertFalse(event.use_default_reminders)

    def test_wellness_log_defaults_to_fifteen_minutes(self) -> None:
        log = WellnessActivityLog(time="2025-10-12T18:00:00Z", activity="Breathing", mood="calm")
        event = project(log, "UTC")
        self.assertEqual(event.title, "Mental Wellness: Breathing")
        self.assertEqual(event.end.date_time, "2025-10-12T18:15:00+00:00")
        self.assertEqual(event.local_key, "mental:2025-10-12T18:00:00Z")
        self.assertIn("Mood: calm", event.description)

    def test_non_finite_duration_falls_back_to_default(self) -> None:
        session = TaskOccurrenceLog(id="s-3", time="2025-10-12T07:30:00Z", duration=float("inf"))
        event = project(session, "UTC")
        self.assertEqual(event.end.date_time, "2025-10-12T07:55:00+00:00")
        log = WellnessActivityLog(id="m-2", time="2025-10-12T18:00:00Z", duration=float("nan"))
        event = project(log, "UTC")
        self.assertEqual(event.end.date_time, "2025-10-12T18:15:00+00:00")
        self.assertNotIn("Duration", event.description)

    def test_end_past_last_representable_instant_is_dropped(self) -> None:
        self.assertIsNone(project(TaskOccurrenceLog(id="s-4", time="9999-12-31T23:50:00Z"), "UTC"))
        self.assertIsNone(project(WellnessActivityLog(id="m-3", time="9999-12-31T23:50:00Z"), "UTC"))
        self.assertIsNone(project(TaskOccurrenceLog(id="s-5", time="2025-10-12T07:30:00Z", duration=1e12), "UTC"))

    def test_unparseable_log_time_is_dropped(self) -> None:
        self.assertIsNone(project(TaskOccurrenceLog(id="s-2", time="yesterday"), "UTC"))
        self.assertIsNone(project(WellnessActivityLog(id="m-1", time=""), "UTC"))


class LocalKeyTests(unittest.TestCase):
    def test_key_is_stable_and_ignores_descriptive_fields(self) -> None:
        first = WorkoutSession(id="w1", date="2025-10-12", plan_name="Cardio Blast", duration=30)
        second = WorkoutSession(id="w1", date="2025-10-12", plan_name="Cardio Blast v2", duration=60)
        self.assertEqual(local_key(first), local_key(second))
        self.assertEqual(project(first).local_key, local_key(first))
        self.assertEqual(project(first).local_key, project(first).local_key)

    def test_distinct_records_do_not_collide(self) -> None:
        keys = {
            local_key(ScheduledTask(id="a", date="2025-10-12")),
            local_key(ScheduledTask(id="b", date="2025-10-12")),
            local_key(ScheduledTask(date="2025-10-12", title="Plan")),
            local_key(ScheduledTask(date="2025-10-13", title="Plan")),
        }
        self.assertEqual(len(keys), 4)

    def test_unknown_record_type_is_rejected(self) -> None:
        with self.assertRaises(TypeError):
            local_key(object())  # type: ignore[arg-type]
        self.assertIsNone(project(object()))  # type: ignore[arg-type]


class BuildSyncItemsTests(unittest.TestCase):
    def test_snapshot_projection_skips_incomplete_and_duplicate_records(self) -> None:
        snapshot = DomainSnapshot.from_dict(
            {
                "workoutHistory": [
                    {"id": "w1", "date": "2025-10-12", "planName": "Cardio Blast"},
                    {"id": "w1", "date": "2025-10-12", "planName": "Cardio Blast"},
                    {"id": "w2"},
                ],
                "focusTasks": [{"id": "t1", "date": "2025-10-12", "title": "Write"}],
                "focusLogs": [{"id": "s1", "time": "2025-10-12T10:00:00Z", "task": "Write"}],
                "calendar": [
                    {"date": "2025-10-12", "completed": True},
                    {"date": "2025-10-13", "completed": False},
                ],
                "mentalHealthLogs": [{"id": "m1", "time": "2025-10-12T21:00:00Z"}],
                "streakCount": 4,
            }
        )
        items = build_sync_items(snapshot, "UTC")
        self.assertEqual(
            [(item.kind, item.local_key) for item in items],
            [
                ("workouts", "workout:w1"),
                ("focus_tasks", "focusTask:t1"),
                ("focus_sessions", "focusSession:s1"),
                ("streak_dates", "streak:2025-10-12"),
                ("mental_logs", "mental:m1"),
            ],
        )

    def test_empty_snapshot(self) -> None:
        self.assertEqual(build_sync_items(None, "UTC"), [])
        self.assertEqual(build_sync_items(DomainSnapshot(), "UTC"), [])


class ResolveTimezoneTests(unittest.TestCase):
    def test_explicit_preference_wins(self) -> None:
        self.assertEqual(resolve_timezone("Asia/Tokyo"), "Asia/Tokyo")

    def test_auto_falls_back_to_runtime_zone(self) -> None:
        with mock.patch.dict(os.environ, {"TZ": "Europe/Paris"}):
            self.assertEqual(resolve_timezone("auto"), "Europe/Paris")
            self.assertEqual(resolve_timezone(None), "Europe/Paris")
            self.assertEqual(resolve_timezone("Not/AZone"), "Europe/Paris")


if __name__ == "__main__":
    unittest.main()
