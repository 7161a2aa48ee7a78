"""Derived-state queries: read the log, then replay it through the reducer."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from .event_log import EventFilter, read_events
from .layout import StreamLayout
from .reducer import (
    SUMMARY_WINDOW,
    GoalView,
    MeetingView,
    TaskView,
    WeeklySummary,
    derive,
    goal_status,
    weekly_summary,
)
from .record import EventRecord


def query_events(
    layout: StreamLayout,
    kind_prefix: Optional[str] = None,
    start: Optional[str | datetime] = None,
    end: Optional[str | datetime] = None,
    source: Optional[str] = None,
    entity_id: Optional[str] = None,
) -> List[EventRecord]:
    """Raw records across every log root, filtered and time-ordered."""
    filters = EventFilter(
        kind_prefix=kind_prefix,
        start=start,
        end=end,
        source=source,
        entity_id=entity_id,
    )
    return read_events(layout, filters)


def get_open_tasks(layout: StreamLayout) -> List[TaskView]:
    return derive(read_events(layout, EventFilter(kind_prefix="task"))).open_tasks()


def get_upcoming_meetings(layout: StreamLayout) -> List[MeetingView]:
    return derive(read_events(layout, EventFilter(kind_prefix="meeting"))).upcoming_meetings()


def get_active_goals(layout: StreamLayout) -> List[GoalView]:
    return derive(read_events(layout, EventFilter(kind_prefix="goal"))).active_goals()


def get_goal_status(layout: StreamLayout, goal_id: str) -> Optional[GoalView]:
    """Current view of one goal; None when no record mentions ``goal_id``."""
    events = read_events(layout, EventFilter(kind_prefix="goal", entity_id=goal_id))
    return goal_status(events, goal_id)


def get_weekly_summary(layout: StreamLayout, now: Optional[datetime] = None) -> WeeklySummary:
    now = now or datetime.now().astimezone()
    events = read_events(layout, EventFilter(start=now - SUMMARY_WINDOW, end=now))
    return weekly_summary(events, now)


def replay_state(layout: StreamLayout) -> Dict[str, Any]:
    """Full replay of every record; see ``LifeStreamReducer.export_state``."""
    return derive(read_events(layout)).export_state()
