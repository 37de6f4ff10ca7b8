from datetime import timedelta

import pytest

import db
from engines.positions import PositionTracker
from engines.sessions import SessionManager
from errors import StorageError, ValidationError
from schemas import ActivityType


def _tracker(clock, **kwargs):
    return PositionTracker(SessionManager(clock=clock), **kwargs)


def test_save_position_upserts_and_emits_lesson_view(temp_db, clock):
    tracker = _tracker(clock)
    tracker.save_position("alice", "course-1", "lesson-1", position=12)
    clock.advance(minutes=5)
    saved = tracker.save_position("alice", "course-1", "lesson-1", mode="review", position=40)

    stored = tracker.get_position("alice", "course-1", "lesson-1")
    assert stored == saved
    assert stored.position == 40
    assert stored.mode == "review"
    assert stored.timestamp == clock.now

    events = db.query_events("alice")
    assert [e.activity_type for e in events] == [ActivityType.LESSON_VIEW, ActivityType.LESSON_VIEW]
    assert events[-1].resource_id == "lesson-1"
    assert events[-1].metadata == {"course_id": "course-1", "position": 40, "mode": "review"}
    assert events[-1].timestamp == saved.timestamp


def test_recent_positions_newest_first(temp_db, clock):
    tracker = _tracker(clock)
    for lesson in ("a", "b", "c"):
        tracker.save_position("alice", "course-1", lesson)
        clock.advance(minutes=1)

    recent = tracker.get_recent_positions("alice", limit=2)
    assert [p.lesson_id for p in recent] == ["c", "b"]


def test_positions_are_capped_per_user(temp_db, clock):
    tracker = _tracker(clock, max_positions=3)
    for index in range(5):
        tracker.save_position("alice", "course-1", f"lesson-{index}")
        clock.advance(seconds=30)

    remaining = db.list_positions("alice")
    assert [p.lesson_id for p in remaining] == ["lesson-4", "lesson-3", "lesson-2"]
    assert tracker.get_position("alice", "course-1", "lesson-0") is None


def test_missing_position_returns_none(temp_db, clock):
    assert _tracker(clock).get_position("alice", "course-1", "nope") is None


@pytest.mark.parametrize(
    "args, kwargs",
    [
        (("", "course-1", "lesson-1"), {}),
        (("alice", "", "lesson-1"), {}),
        (("alice", "course-1", "lesson-1"), {"position": "halfway"}),
    ],
)
def test_invalid_position_is_rejected(temp_db, clock, args, kwargs):
    with pytest.raises(ValidationError):
        _tracker(clock).save_position(*args, **kwargs)
    assert db.list_positions("alice") == []
    assert db.query_events("alice") == []


def test_position_saves_extend_the_open_session(temp_db, clock):
    sessions = SessionManager(clock=clock, idle_timeout=timedelta(minutes=30))
    tracker = PositionTracker(sessions)
    tracker.save_position("alice", "course-1", "lesson-1")
    clock.advance(minutes=10)
    tracker.save_position("alice", "course-1", "lesson-2")

    session = sessions.get_open_session("alice")
    assert len(session.activity_ids) == 2


def test_failed_event_write_leaves_no_position(temp_db, clock, monkeypatch):
    def unavailable(*args, **kwargs):
        raise StorageError("disk full")

    monkeypatch.setattr(db, "record_event", unavailable)
    sessions = SessionManager(clock=clock)
    tracker = PositionTracker(sessions)

    with pytest.raises(StorageError):
        tracker.save_position("alice", "course-1", "lesson-1", position=10)

    assert tracker.get_position("alice", "course-1", "lesson-1") is None
    assert db.query_events("alice") == []
    assert sessions.get_open_session("alice") is None


def test_position_and_event_share_normalised_user_id(temp_db, clock):
    saved = _tracker(clock).save_position("  alice ", "course-1", "lesson-1", position=5)

    assert saved.user_id == "alice"
    assert db.get_position("alice", "course-1", "lesson-1") is not None
    assert db.list_positions(" alice") == []
    assert [e.user_id for e in db.query_events("alice")] == ["alice"]


def test_backdated_position_is_rejected(temp_db, clock):
    tracker = _tracker(clock)
    tracker.save_position("alice", "course-1", "lesson-1")

    with pytest.raises(ValidationError):
        tracker.save_position(
            "alice", "course-1", "lesson-2", timestamp=clock.now - timedelta(minutes=5)
        )
    assert tracker.get_position("alice", "course-1", "lesson-2") is None
    assert len(db.query_events("alice")) == 1
