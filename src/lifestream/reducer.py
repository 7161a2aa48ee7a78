"""
reducer.py — lifestream Deterministic State Derivation

Core invariants:
  1. Records are immutable. Corrections are new records.
  2. State is never stored. It is recomputed by replaying records.
  3. Deterministic: same records in same order → byte-identical state hash.
  4. Terminal transitions are one-way latches; nothing reopens an entity.

The reducer does NOT touch the filesystem. Callers read the log and pass an
explicit, time-ordered record sequence.

Known kinds are dispatched to handlers. Unknown kinds are inert facts: they
are counted and otherwise ignored, so new kinds never break replay.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from .record import EventRecord, canonical_hash

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

REDUCER_NAME = "LifeStreamReducer"
REDUCER_VERSION = "0.1.0"

TASK_TERMINAL_KINDS = frozenset({"task.completed", "task.abandoned"})
MEETING_TERMINAL_KINDS = {"meeting.completed": "completed", "meeting.cancelled": "cancelled"}
GOAL_FIELDS = ("title", "horizon", "area", "target_date", "success_criteria")

SUMMARY_WINDOW = timedelta(days=7)
WORK_DURATION_KINDS = frozenset({"work.logged", "work.stopped"})
SUMMARY_BUCKETS = {
    "task.created": "tasks_created",
    "task.completed": "tasks_completed",
    "meeting.completed": "meetings",
    "exercise.completed": "exercise_sessions",
    "mental.checkin": "checkins",
}


def _opt_str(val: Any) -> Optional[str]:
    return None if val is None else str(val)


def _safe_minutes(val: Any) -> float:
    if val is None or isinstance(val, bool):
        return 0.0
    try:
        f = float(val)
        return f if f == f else 0.0  # NaN guard
    except (TypeError, ValueError):
        return 0.0


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------

@dataclass
class TaskView:
    id: str
    title: str
    created: str
    area: Optional[str] = None
    due: Optional[str] = None
    priority: Optional[str] = None
    status: str = "open"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "area": self.area,
            "due": self.due,
            "priority": self.priority,
            "status": self.status,
            "created": self.created,
        }


@dataclass
class MeetingView:
    id: str
    title: str
    created: str
    attendees: List[str] = field(default_factory=list)
    scheduled_for: Optional[str] = None
    status: str = "scheduled"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "with": list(self.attendees),
            "scheduled_for": self.scheduled_for,
            "status": self.status,
            "created": self.created,
        }


@dataclass
class GoalView:
    id: str
    title: str = ""
    horizon: Optional[str] = None
    area: Optional[str] = None
    target_date: Optional[str] = None
    success_criteria: Optional[str] = None
    latest_status: Optional[str] = None
    achieved: bool = False
    achieved_at: Optional[str] = None
    abandoned: bool = False
    history: List[EventRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "horizon": self.horizon,
            "area": self.area,
            "target_date": self.target_date,
            "success_criteria": self.success_criteria,
            "latest_status": self.latest_status,
            "achieved": self.achieved,
            "achieved_at": self.achieved_at,
            "abandoned": self.abandoned,
            "history": [r.to_dict() for r in self.history],
        }


@dataclass
class WeeklySummary:
    window_start: str
    window_end: str
    tasks_created: List[EventRecord] = field(default_factory=list)
    tasks_completed: List[EventRecord] = field(default_factory=list)
    meetings: List[EventRecord] = field(default_factory=list)
    exercise_sessions: List[EventRecord] = field(default_factory=list)
    checkins: List[EventRecord] = field(default_factory=list)
    work_hours: float = 0.0
    counts_by_kind: Dict[str, int] = field(default_factory=dict)

    def counts(self) -> Dict[str, Any]:
        return {
            "tasks_created": len(self.tasks_created),
            "tasks_completed": len(self.tasks_completed),
            "meetings": len(self.meetings),
            "exercise_sessions": len(self.exercise_sessions),
            "checkins": len(self.checkins),
            "work_hours": round(self.work_hours, 1),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "window_start": self.window_start,
            "window_end": self.window_end,
            "summary": self.counts(),
            "counts_by_kind": dict(sorted(self.counts_by_kind.items())),
            "details": {
                bucket: [r.to_dict() for r in getattr(self, bucket)]
                for bucket in SUMMARY_BUCKETS.values()
            },
        }


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------

class LifeStreamReducer:
    """
    Replays records into task, meeting and goal views.

    Records without an entity id are ignored by the entity handlers.
    """

    def __init__(self) -> None:
        self.tasks: Dict[str, TaskView] = {}
        self.meetings: Dict[str, MeetingView] = {}
        self.goals: Dict[str, GoalView] = {}
        self.metadata: Dict[str, Any] = {
            "event_count": 0,
            "last_timestamp": None,
            "reducer": {"name": REDUCER_NAME, "version": REDUCER_VERSION},
        }

        # Terminal transitions seen before (or without) the creation record.
        self._closed_tasks: Set[str] = set()
        self._finished_meetings: Dict[str, str] = {}
        self._seeded_goals: Set[str] = set()
        # Unknown kinds seen (diagnostic, not exported)
        self.ignored_kinds: Set[str] = set()

        self._handlers: Dict[str, Callable[[EventRecord], None]] = {
            "task.created": self._handle_task_created,
            "task.completed": self._handle_task_terminal,
            "task.abandoned": self._handle_task_terminal,
            "task.started": self._handle_inert,
            "task.blocked": self._handle_inert,
            "meeting.scheduled": self._handle_meeting_scheduled,
            "meeting.completed": self._handle_meeting_terminal,
            "meeting.cancelled": self._handle_meeting_terminal,
            "goal.set": self._handle_goal_set,
            "goal.progress": self._handle_goal_progress,
            "goal.revised": self._handle_goal_revised,
            "goal.achieved": self._handle_goal_achieved,
            "goal.abandoned": self._handle_goal_abandoned,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def apply_events(self, events: Iterable[EventRecord]) -> "LifeStreamReducer":
        for event in events:
            self.apply_event(event)
        return self

    def apply_event(self, event: EventRecord) -> None:
        handler = self._handlers.get(event.kind)
        if handler is None:
            self.ignored_kinds.add(event.kind)
        elif event.entity_id is not None:
            handler(event)

        self.metadata["event_count"] += 1
        self.metadata["last_timestamp"] = event.timestamp

    def open_tasks(self) -> List[TaskView]:
        return [t for t in self.tasks.values() if t.status == "open"]

    def upcoming_meetings(self) -> List[MeetingView]:
        return [m for m in self.meetings.values() if m.status == "scheduled"]

    def active_goals(self) -> List[GoalView]:
        return [g for g in self.goals.values() if not g.achieved]

    def export_state(self) -> Dict[str, Any]:
        """Deterministic, JSON-serializable snapshot including ``state_hash``."""
        state = {
            "tasks": {k: v.to_dict() for k, v in sorted(self.tasks.items())},
            "meetings": {k: v.to_dict() for k, v in sorted(self.meetings.items())},
            "goals": {k: v.to_dict() for k, v in sorted(self.goals.items())},
            "metadata": dict(self.metadata),
        }
        # Hash excludes state_hash itself.
        state["metadata"]["state_hash"] = canonical_hash(state)
        return state

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _handle_inert(self, event: EventRecord) -> None:
        pass

    def _handle_task_created(self, event: EventRecord) -> None:
        tid = event.entity_id
        if tid in self.tasks:
            return  # creation already seen; first one wins
        data = event.payload
        self.tasks[tid] = TaskView(
            id=tid,
            title=str(data.get("title") or ""),
            area=_opt_str(data.get("area")),
            due=_opt_str(data.get("due")),
            priority=_opt_str(data.get("priority")),
            status="closed" if tid in self._closed_tasks else "open",
            created=event.timestamp,
        )

    def _handle_task_terminal(self, event: EventRecord) -> None:
        tid = event.entity_id
        self._closed_tasks.add(tid)
        task = self.tasks.get(tid)
        if task is not None:
            task.status = "closed"

    # ------------------------------------------------------------------
    # Meetings
    # ------------------------------------------------------------------

    def _handle_meeting_scheduled(self, event: EventRecord) -> None:
        mid = event.entity_id
        if mid in self.meetings:
            return
        data = event.payload
        attendees = data.get("with") or []
        if not isinstance(attendees, list):
            attendees = [attendees]
        self.meetings[mid] = MeetingView(
            id=mid,
            title=str(data.get("title") or ""),
            attendees=[str(a) for a in attendees],
            scheduled_for=_opt_str(data.get("scheduled_for") or data.get("when")),
            status=self._finished_meetings.get(mid, "scheduled"),
            created=event.timestamp,
        )

    def _handle_meeting_terminal(self, event: EventRecord) -> None:
        mid = event.entity_id
        if mid in self._finished_meetings:
            return  # first terminal record wins
        status = MEETING_TERMINAL_KINDS[event.kind]
        self._finished_meetings[mid] = status
        meeting = self.meetings.get(mid)
        if meeting is not None:
            meeting.status = status

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------

    def _goal(self, gid: str) -> GoalView:
        goal = self.goals.get(gid)
        if goal is None:
            goal = self.goals[gid] = GoalView(id=gid)
        return goal

    def _handle_goal_set(self, event: EventRecord) -> None:
        gid = event.entity_id
        goal = self._goal(gid)
        if gid in self._seeded_goals:
            return
        self._seeded_goals.add(gid)
        data = event.payload
        goal.title = str(data.get("title") or "")
        goal.horizon = _opt_str(data.get("horizon"))
        goal.area = _opt_str(data.get("area"))
        goal.target_date = _opt_str(data.get("target_date"))
        goal.success_criteria = _opt_str(data.get("success_criteria"))

    def _handle_goal_progress(self, event: EventRecord) -> None:
        goal = self._goal(event.entity_id)
        if event.payload.get("status") is not None:
            goal.latest_status = str(event.payload["status"])
        goal.history.append(event)

    def _handle_goal_revised(self, event: EventRecord) -> None:
        goal = self._goal(event.entity_id)
        for name in GOAL_FIELDS:
            value = event.payload.get(name)
            if value is None:
                continue
            setattr(goal, name, str(value))
        goal.history.append(event)

    def _handle_goal_achieved(self, event: EventRecord) -> None:
        goal = self._goal(event.entity_id)
        if goal.achieved_at is None:
            goal.achieved_at = event.timestamp
        goal.achieved = True

    def _handle_goal_abandoned(self, event: EventRecord) -> None:
        # Abandoned goals leave the active set through the same latch.
        goal = self._goal(event.entity_id)
        goal.achieved = True
        goal.abandoned = True


# ---------------------------------------------------------------------------
# Pure queries over explicit record sequences
# ---------------------------------------------------------------------------

def derive(events: Iterable[EventRecord]) -> LifeStreamReducer:
    return LifeStreamReducer().apply_events(events)


def open_tasks(events: Iterable[EventRecord]) -> List[TaskView]:
    return derive(events).open_tasks()


def upcoming_meetings(events: Iterable[EventRecord]) -> List[MeetingView]:
    return derive(events).upcoming_meetings()


def active_goals(events: Iterable[EventRecord]) -> List[GoalView]:
    return derive(events).active_goals()


def goal_status(events: Iterable[EventRecord], goal_id: str) -> Optional[GoalView]:
    """The view of one goal, or None if no record mentions it."""
    return derive(e for e in events if e.entity_id == goal_id).goals.get(goal_id)


def weekly_summary(events: Iterable[EventRecord], now: Optional[datetime] = None) -> WeeklySummary:
    """
    Aggregate records of the trailing 7 days, bucketed by exact kind.

    Only records with ``now - 7 days <= timestamp <= now`` count. Work hours
    sum ``duration_min`` of work.logged and work.stopped; work.started
    carries no completed duration and is excluded.
    """
    now = now or datetime.now().astimezone()
    if now.tzinfo is None:
        now = now.astimezone()
    start = now - SUMMARY_WINDOW

    summary = WeeklySummary(
        window_start=start.isoformat(timespec="milliseconds"),
        window_end=now.isoformat(timespec="milliseconds"),
    )
    minutes = 0.0
    for event in events:
        if event.at < start or event.at > now:
            continue
        summary.counts_by_kind[event.kind] = summary.counts_by_kind.get(event.kind, 0) + 1
        bucket = SUMMARY_BUCKETS.get(event.kind)
        if bucket is not None:
            getattr(summary, bucket).append(event)
        elif event.kind in WORK_DURATION_KINDS:
            minutes += _safe_minutes(event.payload.get("duration_min"))
    summary.work_hours = minutes / 60
    return summary
