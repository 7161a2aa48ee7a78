"""
test_reducer.py — Deterministic replay of tasks, meetings and goals

Required properties:
  - determinism: replay the same records twice → identical state hash
  - terminal transitions are one-way latches
  - first creation record wins; later records never rewrite it
  - unknown kinds are inert
  - weekly summary buckets by exact kind within a bounded 7-day window
"""

import copy
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from lifestream.event_log import EventFilter, append_event, read_events
from lifestream.layout import StreamLayout
from lifestream.reducer import (
    LifeStreamReducer,
    active_goals,
    derive,
    goal_status,
    open_tasks,
    upcoming_meetings,
    weekly_summary,
)
from lifestream.record import EventRecord


# ---------------------------------------------------------------------------
# Test fixtures
# ---------------------------------------------------------------------------

BASE = datetime(2026, 1, 12, 9, 0, tzinfo=timezone.utc)


def _ev(kind, entity_id=None, minutes=0, source="manual", **payload):
    ts = (BASE + timedelta(minutes=minutes)).isoformat(timespec="milliseconds")
    return EventRecord(timestamp=ts, kind=kind, payload=payload, source=source, entity_id=entity_id)


TID = "t-20260112-001"
GID = "g-2026-001"
MID = "m-20260112-001"


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

class TestTasks(unittest.TestCase):

    def test_created_task_is_open(self):
        tasks = open_tasks([_ev("task.created", TID, title="Review roadmap", due="2026-01-17", priority="high")])
        self.assertEqual(len(tasks), 1)
        task = tasks[0]
        self.assertEqual(task.id, TID)
        self.assertEqual(task.title, "Review roadmap")
        self.assertEqual(task.due, "2026-01-17")
        self.assertEqual(task.priority, "high")
        self.assertEqual(task.status, "open")

    def test_completed_task_excluded(self):
        events = [
            _ev("task.created", TID, title="Review roadmap"),
            _ev("task.completed", TID, minutes=60),
        ]
        self.assertEqual(open_tasks(events), [])

    def test_entity_history_still_queryable(self):
        with tempfile.TemporaryDirectory() as tmp:
            layout = StreamLayout(Path(tmp))
            append_event(layout, "task.created", {"title": "Review roadmap"}, entity_id=TID, timestamp=BASE)
            append_event(layout, "task.completed", {}, entity_id=TID, timestamp=BASE + timedelta(hours=1))
            events = read_events(layout)
            self.assertEqual(open_tasks(events), [])
            history = read_events(layout, EventFilter(entity_id=TID))
            self.assertEqual([r.kind for r in history], ["task.created", "task.completed"])

    def test_abandoned_closes(self):
        events = [_ev("task.created", TID, title="x"), _ev("task.abandoned", TID, minutes=5)]
        self.assertEqual(open_tasks(events), [])

    def test_latch_never_reopens(self):
        events = [
            _ev("task.created", TID, title="x"),
            _ev("task.completed", TID, minutes=1),
            _ev("task.started", TID, minutes=2),
            _ev("task.created", TID, minutes=3, title="again"),
        ]
        reducer = derive(events)
        self.assertEqual(reducer.open_tasks(), [])
        self.assertEqual(reducer.tasks[TID].title, "x")
        self.assertEqual(reducer.tasks[TID].status, "closed")

    def test_terminal_before_creation_still_latches(self):
        events = [_ev("task.completed", TID), _ev("task.created", TID, minutes=1, title="late")]
        self.assertEqual(open_tasks(events), [])

    def test_first_creation_wins(self):
        events = [
            _ev("task.created", TID, title="first", priority="low"),
            _ev("task.created", TID, minutes=1, title="second", priority="high"),
        ]
        task = open_tasks(events)[0]
        self.assertEqual((task.title, task.priority), ("first", "low"))

    def test_started_and_blocked_keep_task_open(self):
        events = [
            _ev("task.created", TID, title="x"),
            _ev("task.started", TID, minutes=1),
            _ev("task.blocked", TID, minutes=2, reason="waiting"),
        ]
        self.assertEqual([t.id for t in open_tasks(events)], [TID])

    def test_records_without_id_are_ignored(self):
        self.assertEqual(open_tasks([_ev("task.created", None, title="orphan")]), [])


# ---------------------------------------------------------------------------
# Meetings
# ---------------------------------------------------------------------------

class TestMeetings(unittest.TestCase):

    def test_scheduled_meeting_is_upcoming(self):
        meetings = upcoming_meetings([
            _ev("meeting.scheduled", MID, title="1:1", scheduled_for="2026-01-14T10:00:00+00:00", **{"with": ["Sam"]}),
        ])
        self.assertEqual(len(meetings), 1)
        self.assertEqual(meetings[0].attendees, ["Sam"])
        self.assertEqual(meetings[0].to_dict()["with"], ["Sam"])

    def test_completed_and_cancelled_latch(self):
        other = "m-20260112-002"
        reducer = derive([
            _ev("meeting.scheduled", MID, title="a"),
            _ev("meeting.scheduled", other, minutes=1, title="b"),
            _ev("meeting.completed", MID, minutes=2),
            _ev("meeting.cancelled", other, minutes=3),
            _ev("meeting.completed", other, minutes=4),
        ])
        self.assertEqual(reducer.upcoming_meetings(), [])
        self.assertEqual(reducer.meetings[MID].status, "completed")
        self.assertEqual(reducer.meetings[other].status, "cancelled")

    def test_single_attendee_string(self):
        meeting = upcoming_meetings([_ev("meeting.scheduled", MID, title="x", **{"with": "Ana"})])[0]
        self.assertEqual(meeting.attendees, ["Ana"])


# ---------------------------------------------------------------------------
# Goals
# ---------------------------------------------------------------------------

class TestGoals(unittest.TestCase):

    def _marathon(self):
        return [
            _ev("goal.set", GID, title="Run a marathon", horizon="year", area="health",
                target_date="2026-10-01", success_criteria="Finish under 4h"),
            _ev("goal.progress", GID, minutes=10, status="on-track", note="20km long run"),
        ]

    def test_set_then_progress(self):
        goal = goal_status(self._marathon(), GID)
        self.assertEqual(goal.title, "Run a marathon")
        self.assertEqual(goal.latest_status, "on-track")
        self.assertFalse(goal.achieved)
        self.assertEqual([r.kind for r in goal.history], ["goal.progress"])
        self.assertEqual([g.id for g in active_goals(self._marathon())], [GID])

    def test_achieved_removes_from_active(self):
        events = self._marathon() + [_ev("goal.achieved", GID, minutes=20)]
        self.assertEqual(active_goals(events), [])
        goal = goal_status(events, GID)
        self.assertTrue(goal.achieved)
        self.assertEqual(goal.achieved_at, events[-1].timestamp)

    def test_first_achievement_time_kept(self):
        events = self._marathon() + [
            _ev("goal.achieved", GID, minutes=20),
            _ev("goal.achieved", GID, minutes=30),
        ]
        self.assertEqual(goal_status(events, GID).achieved_at, events[-2].timestamp)

    def test_progress_without_status_keeps_previous(self):
        events = self._marathon() + [_ev("goal.progress", GID, minutes=20, note="rest week")]
        goal = goal_status(events, GID)
        self.assertEqual(goal.latest_status, "on-track")
        self.assertEqual(len(goal.history), 2)

    def test_revised_updates_only_given_fields(self):
        events = self._marathon() + [
            _ev("goal.revised", GID, minutes=20, target_date="2026-11-15", area=None),
        ]
        goal = goal_status(events, GID)
        self.assertEqual(goal.target_date, "2026-11-15")
        self.assertEqual(goal.area, "health")
        self.assertEqual(goal.title, "Run a marathon")
        self.assertEqual([r.kind for r in goal.history], ["goal.progress", "goal.revised"])

    def test_abandoned_leaves_active_set(self):
        events = self._marathon() + [_ev("goal.abandoned", GID, minutes=20, reason="injury")]
        goal = goal_status(events, GID)
        self.assertTrue(goal.achieved)
        self.assertTrue(goal.abandoned)
        self.assertIsNone(goal.achieved_at)
        self.assertEqual(active_goals(events), [])

    def test_achieved_never_reverts(self):
        events = self._marathon() + [
            _ev("goal.achieved", GID, minutes=20),
            _ev("goal.progress", GID, minutes=30, status="behind"),
        ]
        self.assertEqual(active_goals(events), [])

    def test_unknown_goal(self):
        self.assertIsNone(goal_status(self._marathon(), "g-2026-099"))

    def test_second_set_ignored(self):
        events = self._marathon() + [_ev("goal.set", GID, minutes=20, title="Walk a marathon")]
        self.assertEqual(goal_status(events, GID).title, "Run a marathon")


# ---------------------------------------------------------------------------
# Determinism and inert kinds
# ---------------------------------------------------------------------------

class TestDeterminism(unittest.TestCase):

    def _log(self):
        return [
            _ev("task.created", TID, title="A"),
            _ev("goal.set", GID, minutes=1, title="G"),
            _ev("meeting.scheduled", MID, minutes=2, title="M"),
            _ev("task.completed", TID, minutes=3),
            _ev("goal.progress", GID, minutes=4, status="ok"),
            _ev("mental.checkin", None, minutes=5, mood=7),
        ]

    def test_replay_twice_identical(self):
        a = derive(self._log()).export_state()
        b = derive(self._log()).export_state()
        self.assertEqual(a, b)
        self.assertEqual(a["metadata"]["state_hash"], b["metadata"]["state_hash"])

    def test_input_not_mutated(self):
        log = self._log()
        snapshot = copy.deepcopy([r.to_dict() for r in log])
        derive(log)
        self.assertEqual([r.to_dict() for r in log], snapshot)

    def test_hash_changes_with_content(self):
        a = derive(self._log()).export_state()["metadata"]["state_hash"]
        b = derive(self._log()[:-1]).export_state()["metadata"]["state_hash"]
        self.assertNotEqual(a, b)

    def test_metadata(self):
        state = derive(self._log()).export_state()
        self.assertEqual(state["metadata"]["event_count"], 6)
        self.assertEqual(state["metadata"]["last_timestamp"], self._log()[-1].timestamp)
        self.assertEqual(len(state["metadata"]["state_hash"]), 64)

    def test_unknown_kinds_inert(self):
        reducer = LifeStreamReducer()
        reducer.apply_events(self._log() + [_ev("garden.watered", "t-20260112-009", minutes=9)])
        self.assertIn("garden.watered", reducer.ignored_kinds)
        self.assertNotIn("t-20260112-009", reducer.tasks)


# ---------------------------------------------------------------------------
# Weekly summary
# ---------------------------------------------------------------------------

class TestWeeklySummary(unittest.TestCase):

    NOW = datetime(2026, 1, 20, 12, 0, tzinfo=timezone.utc)

    def _at(self, delta, kind, **payload):
        ts = (self.NOW - delta).isoformat(timespec="milliseconds")
        return EventRecord(timestamp=ts, kind=kind, payload=payload)

    def test_exercise_window(self):
        events = [self._at(timedelta(days=d, hours=1), "exercise.completed", activity="run")
                  for d in range(7)]
        events.append(self._at(timedelta(days=8), "exercise.completed", activity="run"))
        summary = weekly_summary(events, self.NOW)
        self.assertEqual(summary.counts()["exercise_sessions"], 7)

    def test_window_edges_inclusive_and_future_excluded(self):
        events = [
            self._at(timedelta(days=7), "mental.checkin", mood=5),
            self._at(timedelta(0), "mental.checkin", mood=6),
            self._at(-timedelta(minutes=1), "mental.checkin", mood=7),
        ]
        self.assertEqual(weekly_summary(events, self.NOW).counts()["checkins"], 2)

    def test_exact_kind_buckets(self):
        events = [
            self._at(timedelta(days=1), "task.created", title="a"),
            self._at(timedelta(days=1), "task.completed"),
            self._at(timedelta(days=1), "task.started"),
            self._at(timedelta(days=2), "meeting.completed"),
            self._at(timedelta(days=2), "meeting.scheduled"),
        ]
        counts = weekly_summary(events, self.NOW).counts()
        self.assertEqual(counts["tasks_created"], 1)
        self.assertEqual(counts["tasks_completed"], 1)
        self.assertEqual(counts["meetings"], 1)

    def test_work_hours(self):
        events = [
            self._at(timedelta(days=1), "work.logged", duration_min=90),
            self._at(timedelta(days=2), "work.stopped", duration_min=30),
            self._at(timedelta(days=2), "work.started", duration_min=60),
            self._at(timedelta(days=3), "work.logged", duration_min="n/a"),
            self._at(timedelta(days=3), "work.logged"),
        ]
        summary = weekly_summary(events, self.NOW)
        self.assertEqual(summary.work_hours, 2.0)

    def test_counts_by_kind_and_dict(self):
        events = [
            self._at(timedelta(days=1), "health.weight", value=80),
            self._at(timedelta(days=2), "health.weight", value=79.5),
        ]
        out = weekly_summary(events, self.NOW).to_dict()
        self.assertEqual(out["counts_by_kind"], {"health.weight": 2})
        self.assertEqual(out["summary"]["work_hours"], 0.0)
        self.assertEqual(out["window_end"], "2026-01-20T12:00:00.000+00:00")
        self.assertEqual(out["window_start"], "2026-01-13T12:00:00.000+00:00")
