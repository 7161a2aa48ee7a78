"""lifestream public API.

This module exposes the high-level ``LifeStream`` facade and stable top-level
imports for reading, appending, identifier generation, replay and external
merge.

Example:
    from lifestream import LifeStream

    stream = LifeStream("~/life")
    task = stream.add_task("Review roadmap", due="2026-01-17", priority="high")
    print([t.title for t in stream.open_tasks()])
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .errors import LifeStreamError
from .event_log import EventFilter, LogScan, ParseDiagnostic, append_event, read_events, scan_events
from .identifiers import GOAL_PREFIX, MEETING_PREFIX, TASK_PREFIX, generate_goal_id, generate_id
from .layout import StreamLayout, resolve_layout
from .record import EventRecord, parse_line
from .reducer import (
    GoalView,
    LifeStreamReducer,
    MeetingView,
    TaskView,
    WeeklySummary,
    active_goals,
    goal_status,
    open_tasks,
    weekly_summary,
)
from . import query
from . import sync


class LifeStream:
    """High-level facade bound to one life directory."""

    def __init__(self, root: Optional[str | Path] = None):
        self.layout = resolve_layout(root)

    @property
    def root(self) -> Path:
        return self.layout.root

    # ------------------------------------------------------------------
    # Read / append
    # ------------------------------------------------------------------

    def query_events(self, **filters: Any) -> List[EventRecord]:
        """Records matching ``kind_prefix``, ``start``, ``end``, ``source``, ``entity_id``."""
        return query.query_events(self.layout, **filters)

    def scan(self, filters: Optional[EventFilter] = None) -> LogScan:
        """Like ``query_events`` but also returns diagnostics for skipped lines."""
        return scan_events(self.layout, filters)

    def log_event(
        self,
        kind: str,
        payload: Dict[str, Any],
        entity_id: Optional[str] = None,
        source: Optional[str] = None,
        timestamp: Optional[str | datetime] = None,
    ) -> EventRecord:
        """Append a record to the primary log and return it as stored.

        Raises:
            InvalidEventKindError: If ``kind`` is not dotted.
            OSError: If the log cannot be written.
        """
        return append_event(
            self.layout, kind, payload,
            entity_id=entity_id, source=source, timestamp=timestamp,
        )

    # ------------------------------------------------------------------
    # Identifiers
    # ------------------------------------------------------------------

    def next_id(self, prefix: str, now: Optional[datetime] = None) -> str:
        return generate_id(self.layout, prefix, now)

    # ------------------------------------------------------------------
    # Entity helpers
    # ------------------------------------------------------------------

    def add_task(
        self,
        title: str,
        area: Optional[str] = None,
        due: Optional[str] = None,
        priority: Optional[str] = None,
        source: Optional[str] = None,
    ) -> EventRecord:
        """Generate a task id and append its ``task.created`` record."""
        payload: Dict[str, Any] = {"title": title}
        if area:
            payload["area"] = area
        if due:
            payload["due"] = due
        if priority:
            payload["priority"] = priority
        task_id = generate_id(self.layout, TASK_PREFIX)
        return self.log_event("task.created", payload, entity_id=task_id, source=source)

    def complete_task(self, task_id: str, notes: Optional[str] = None, source: Optional[str] = None) -> EventRecord:
        payload = {"notes": notes} if notes else {}
        return self.log_event("task.completed", payload, entity_id=task_id, source=source)

    def schedule_meeting(self, title: str, source: Optional[str] = None, **fields: Any) -> EventRecord:
        payload: Dict[str, Any] = {"title": title}
        payload.update({k: v for k, v in fields.items() if v is not None})
        meeting_id = generate_id(self.layout, MEETING_PREFIX)
        return self.log_event("meeting.scheduled", payload, entity_id=meeting_id, source=source)

    def set_goal(self, title: str, source: Optional[str] = None, **fields: Any) -> EventRecord:
        """Generate a goal id and append its ``goal.set`` record."""
        payload: Dict[str, Any] = {"title": title}
        payload.update({k: v for k, v in fields.items() if v is not None})
        goal_id = generate_goal_id(self.layout)
        return self.log_event("goal.set", payload, entity_id=goal_id, source=source)

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    def open_tasks(self) -> List[TaskView]:
        return query.get_open_tasks(self.layout)

    def upcoming_meetings(self) -> List[MeetingView]:
        return query.get_upcoming_meetings(self.layout)

    def active_goals(self) -> List[GoalView]:
        return query.get_active_goals(self.layout)

    def goal_status(self, goal_id: str) -> Optional[GoalView]:
        return query.get_goal_status(self.layout, goal_id)

    def weekly_summary(self, now: Optional[datetime] = None) -> WeeklySummary:
        return query.get_weekly_summary(self.layout, now)

    def replay_state(self) -> Dict[str, Any]:
        return query.replay_state(self.layout)

    # ------------------------------------------------------------------
    # External merge
    # ------------------------------------------------------------------

    def merge(self, service: str, records: Iterable[EventRecord], external_id_field: str) -> sync.MergeResult:
        return sync.merge_records(self.layout, service, records, external_id_field)

    def merge_raw(self, converter_name: str, raw_records: Iterable[Any]) -> sync.MergeResult:
        from .converters import registry
        registry.discover_plugins()
        return sync.merge_raw(self.layout, registry.get(converter_name), raw_records)

    def latest_sync_timestamp(self, service: str) -> Optional[datetime]:
        return sync.latest_sync_timestamp(self.layout, service)


__version__ = "0.1.0"
__all__ = [
    "LifeStream",
    "LifeStreamError",
    "StreamLayout",
    "resolve_layout",
    "EventRecord",
    "EventFilter",
    "LogScan",
    "ParseDiagnostic",
    "parse_line",
    "read_events",
    "scan_events",
    "append_event",
    "generate_id",
    "generate_goal_id",
    "TASK_PREFIX",
    "MEETING_PREFIX",
    "GOAL_PREFIX",
    "LifeStreamReducer",
    "TaskView",
    "MeetingView",
    "GoalView",
    "WeeklySummary",
    "open_tasks",
    "active_goals",
    "goal_status",
    "weekly_summary",
]
