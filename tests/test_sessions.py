from datetime import timedelta

import pytest

import db
from engines.sessions import SessionManager, build_event
from errors import StorageError, ValidationError
from schemas import ActivityType, Session


def _manager(clock, **kwargs):
    return SessionManager(clock=clock, idle_timeout=timedelta(minutes=30), **kwargs)


def test_activities_29_minutes_apart_share_a_session(temp_db, clock):
    manager = _manager(clock)
    start = clock.now
    manager.record_activity("alice", "lesson_view", resource_id="l1", resource_type="lesson")
    clock.advance(minutes=29)
    manager.record_activity("alice", "quiz_complete", resource_id="q1")

    closed = manager.end_session("alice")

    assert closed is not None
    assert closed.status == "closed"
    assert closed.start_time == start
    assert closed.total_duration_seconds == 29 * 60
    assert len(closed.activity_ids) == 2
    assert closed.completed_item_count == 1
    assert len(db.list_sessions("alice")) == 1


def test_activities_31_minutes_apart_split_sessions(temp_db, clock):
    manager = _manager(clock)
    manager.record_activity("alice", "lesson_view")
    clock.advance(minutes=31)
    manager.record_activity("alice", "lesson_view")

    sessions = db.list_sessions("alice")
    assert len(sessions) == 2
    first, second = sessions
    assert first.status == "closed"
    assert first.total_duration_seconds == 0
    assert second.status == "open"
    assert second.start_time == clock.now


def test_end_session_without_open_session_returns_none(temp_db, clock):
    manager = _manager(clock)
    assert manager.end_session("nobody") is None


def test_only_one_open_session_per_user(temp_db, clock):
    manager = _manager(clock)
    for _ in range(5):
        manager.record_activity("alice", "translation")
        clock.advance(minutes=45)

    open_sessions = [s for s in db.list_sessions("alice") if s.is_open]
    assert len(open_sessions) == 1


def test_store_rejects_second_open_session(temp_db, clock):
    first = Session(id="s1", user_id="alice", start_time=clock.now, last_activity_at=clock.now)
    second = Session(id="s2", user_id="alice", start_time=clock.now, last_activity_at=clock.now)
    db.save_session(first)
    with pytest.raises(StorageError):
        db.save_session(second)


def test_get_open_session_closes_stale_session(temp_db, clock):
    manager = _manager(clock)
    manager.record_activity("alice", "listening", duration_seconds=120)
    assert manager.get_open_session("alice") is not None

    clock.advance(minutes=31)
    assert manager.get_open_session("alice") is None
    stored = db.list_sessions("alice")
    assert [s.status for s in stored] == ["closed"]


def test_recover_stale_sessions_after_restart(temp_db, clock):
    _manager(clock).record_activity("alice", "speaking")
    _manager(clock).record_activity("bob", "speaking")
    clock.advance(minutes=20)
    _manager(clock).record_activity("bob", "speaking")
    clock.advance(minutes=15)

    recovered = _manager(clock).recover_stale_sessions()

    assert [s.user_id for s in recovered] == ["alice"]
    assert db.get_open_session("alice") is None
    assert db.get_open_session("bob") is not None


def test_restarted_manager_continues_open_session(temp_db, clock):
    _manager(clock).record_activity("alice", "lesson_view")
    clock.advance(minutes=10)
    _manager(clock).record_activity("alice", "lesson_complete")

    sessions = db.list_sessions("alice")
    assert len(sessions) == 1
    assert len(sessions[0].activity_ids) == 2


@pytest.mark.parametrize(
    "kwargs",
    [
        {"activity_type": "dancing"},
        {"activity_type": "quiz_attempt", "duration_seconds": -1},
        {"activity_type": "quiz_attempt", "duration_seconds": True},
        {"activity_type": "quiz_attempt", "duration_seconds": float("nan")},
        {"activity_type": "quiz_attempt", "progress": 150},
        {"activity_type": "quiz_attempt", "correct": "yes"},
        {"activity_type": "quiz_attempt", "metadata": ["not", "a", "dict"]},
    ],
)
def test_invalid_activity_is_rejected_and_not_stored(temp_db, clock, kwargs):
    manager = _manager(clock)
    activity_type = kwargs.pop("activity_type")
    with pytest.raises(ValidationError):
        manager.record_activity("alice", activity_type, **kwargs)
    assert db.query_events("alice") == []
    assert db.list_sessions("alice") == []


def test_unknown_activity_type_lists_valid_types():
    with pytest.raises(ValidationError) as excinfo:
        build_event("alice", "dancing")
    assert "lesson_view" in str(excinfo.value)


def test_blank_user_is_rejected():
    with pytest.raises(ValidationError):
        build_event("  ", "lesson_view")


def test_build_event_normalises_activity_type():
    event = build_event("alice", " Quiz_Complete ", duration_seconds=30)
    assert event.activity_type is ActivityType.QUIZ_COMPLETE
    assert event.activity_type.is_completion
    assert event.minutes == 0.5


def test_session_history_newest_first(temp_db, clock):
    manager = _manager(clock)
    manager.record_activity("alice", "lesson_view")
    clock.advance(hours=2)
    manager.record_activity("alice", "lesson_view")

    history = manager.get_session_history("alice", limit=10)
    assert len(history) == 2
    assert history[0].start_time > history[1].start_time
    assert history[0].is_open


def test_listener_runs_after_commit_and_failures_are_contained(temp_db, clock):
    manager = _manager(clock)
    seen = []

    def broken(user_id):
        raise RuntimeError("listener blew up")

    manager.add_listener(broken)
    manager.add_listener(seen.append)
    event = manager.record_activity("alice", "grammar")

    assert seen == ["alice"]
    assert [e.id for e in db.query_events("alice")] == [event.id]


def test_idle_timeout_defaults_to_environment(monkeypatch):
    monkeypatch.setenv("SESSION_IDLE_TIMEOUT_MINUTES", "10")
    assert SessionManager().idle_timeout == timedelta(minutes=10)


def test_clear_user_data_removes_everything(temp_db, clock):
    manager = _manager(clock)
    manager.record_activity("alice", "lesson_view")
    manager.record_activity("bob", "lesson_view")

    counts = manager.clear_user_data("alice")

    assert counts["activity_events"] == 1
    assert counts["learning_sessions"] == 1
    assert db.query_events("alice") == []
    assert manager.get_open_session("alice") is None
    assert len(db.query_events("bob")) == 1


def test_activity_before_open_session_start_is_rejected(temp_db, clock):
    manager = _manager(clock)
    manager.record_activity("alice", "lesson_view")
    clock.advance(minutes=10)

    with pytest.raises(ValidationError):
        manager.record_activity("alice", "lesson_view", timestamp=clock.now - timedelta(minutes=20))

    session = manager.get_open_session("alice")
    assert session.start_time == clock.now - timedelta(minutes=10)
    assert len(session.activity_ids) == 1
    assert len(db.query_events("alice")) == 1


def test_activity_inside_closed_session_is_rejected(temp_db, clock):
    manager = _manager(clock)
    manager.record_activity("alice", "lesson_view")
    clock.advance(minutes=15)
    manager.record_activity("alice", "lesson_complete")
    manager.end_session("alice")

    with pytest.raises(ValidationError):
        manager.record_activity("alice", "quiz_attempt", timestamp=clock.now - timedelta(minutes=5))

    sessions = db.list_sessions("alice")
    assert [s.status for s in sessions] == ["closed"]
    assert len(db.query_events("alice")) == 2
