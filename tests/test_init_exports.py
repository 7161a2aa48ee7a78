from datetime import datetime, timedelta, timezone

import pytest

import lifestream
from lifestream import EventFilter, LifeStream
from lifestream.errors import UnknownConverterError


@pytest.fixture
def stream(tmp_path):
    return LifeStream(tmp_path)


def test_public_api_exports():
    for name in ("LifeStream", "EventRecord", "LifeStreamReducer", "read_events", "generate_id"):
        assert name in lifestream.__all__
        assert hasattr(lifestream, name)
    assert lifestream.__version__ == "0.1.0"


def test_root_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("LIFE_DIR", str(tmp_path))
    assert LifeStream().root == tmp_path.resolve()


def test_task_flow(stream):
    created = stream.add_task("Review roadmap", area="work", due="2026-01-17", priority="high")
    assert created.kind == "task.created"
    assert created.entity_id.startswith("t-")

    [task] = stream.open_tasks()
    assert (task.title, task.area, task.status) == ("Review roadmap", "work", "open")

    stream.complete_task(created.entity_id, notes="done")
    assert stream.open_tasks() == []
    history = stream.query_events(entity_id=created.entity_id)
    assert [r.kind for r in history] == ["task.created", "task.completed"]


def test_meeting_flow(stream):
    rec = stream.schedule_meeting("Planning", scheduled_for="2026-01-14T10:00:00+00:00", **{"with": ["Sam"]})
    assert rec.entity_id.startswith("m-")
    [meeting] = stream.upcoming_meetings()
    assert meeting.attendees == ["Sam"]
    stream.log_event("meeting.completed", {}, entity_id=rec.entity_id)
    assert stream.upcoming_meetings() == []


def test_goal_flow(stream):
    goal = stream.set_goal("Run a marathon", horizon="year", target_date=None)
    assert goal.payload == {"title": "Run a marathon", "horizon": "year"}
    stream.log_event("goal.progress", {"status": "on-track"}, entity_id=goal.entity_id)

    status = stream.goal_status(goal.entity_id)
    assert status.latest_status == "on-track"
    assert [g.id for g in stream.active_goals()] == [goal.entity_id]
    assert stream.goal_status("g-1999-001") is None

    second = stream.set_goal("Read 20 books")
    assert second.entity_id[-3:] == "002"


def test_weekly_summary(stream):
    now = datetime(2026, 1, 20, 12, 0, tzinfo=timezone.utc)
    stream.log_event("exercise.completed", {"activity": "run"}, timestamp=now - timedelta(days=1))
    stream.log_event("exercise.completed", {"activity": "run"}, timestamp=now - timedelta(days=9))
    stream.log_event("work.logged", {"duration_min": 60}, timestamp=now - timedelta(days=2))
    counts = stream.weekly_summary(now).counts()
    assert counts["exercise_sessions"] == 1
    assert counts["work_hours"] == 1.0


def test_scan_and_filters(stream):
    stream.log_event("note.added", {"n": 1}, timestamp="2026-01-02T09:00:00+00:00")
    stream.log_event("note.added", {"n": 2}, source="phone", timestamp="2026-01-03T09:00:00+00:00")
    scan = stream.scan(EventFilter(source="phone"))
    assert [r.payload["n"] for r in scan.records] == [2]
    assert scan.files_scanned == 1
    assert [r.payload["n"] for r in stream.query_events(kind_prefix="note", end="2026-01-02T09:00:00Z")] == [1]


def test_merge_and_watermark(stream):
    raw = {"logId": 9, "date": "2026-01-10", "time": "07:15:00", "weight": 80.2}
    assert stream.merge_raw("fitbit.weight", [raw]).written_count == 1
    assert stream.merge_raw("fitbit.weight", [raw]).written_count == 0
    assert stream.latest_sync_timestamp("fitbit") is not None
    assert [r.kind for r in stream.query_events(source="fitbit")] == ["health.weight"]

    with pytest.raises(UnknownConverterError):
        stream.merge_raw("garmin.activity", [])


def test_replay_state(stream):
    stream.add_task("A")
    state = stream.replay_state()
    assert len(state["tasks"]) == 1
    assert state["metadata"]["event_count"] == 1
