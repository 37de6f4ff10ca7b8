"""Session manager: groups the activity stream of each user into bounded sessions.

A session is opened by the first activity of a user that has no open session,
extended by every activity that arrives within the idle timeout of the
previous one, and closed either lazily (when the next activity arrives too
late, or when a stale session is found on read) or explicitly through
:meth:`SessionManager.end_session`.
"""

from __future__ import annotations

import logging
import math
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import db
from env_validation import get_env_float
from errors import ValidationError
from schemas import ActivityEvent, ActivityType, LearningPosition, Session

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT = timedelta(minutes=30)

_VALID_TYPES = ", ".join(item.value for item in ActivityType)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserLockRegistry:
    """Hands out one re-entrant lock per user key."""

    def __init__(self) -> None:
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def for_user(self, user_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[user_id] = lock
            return lock


def _coerce_activity_type(value: Union[str, ActivityType, None]) -> ActivityType:
    if isinstance(value, ActivityType):
        return value
    if isinstance(value, str):
        try:
            return ActivityType(value.strip().lower())
        except ValueError:
            pass
    raise ValidationError(f"unknown activity type {value!r}; expected one of: {_VALID_TYPES}")


def _coerce_number(name: str, value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number")
    number = float(value)
    if not math.isfinite(number):
        raise ValidationError(f"{name} must be finite")
    return number


def build_event(
    user_id: str,
    activity_type: Union[str, ActivityType, None],
    *,
    resource_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    duration_seconds: Optional[float] = None,
    progress: Optional[float] = None,
    correct: Optional[bool] = None,
    metadata: Optional[Mapping[str, Any]] = None,
    timestamp: Optional[datetime] = None,
) -> ActivityEvent:
    """Validate raw activity data and turn it into an :class:`ActivityEvent`."""

    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError("user_id is required")
    kind = _coerce_activity_type(activity_type)
    duration = _coerce_number("duration_seconds", duration_seconds)
    if duration is not None and duration < 0:
        raise ValidationError("duration_seconds must be >= 0")
    progress_value = _coerce_number("progress", progress)
    if progress_value is not None and not 0 <= progress_value <= 100:
        raise ValidationError("progress must be between 0 and 100")
    if correct is not None and not isinstance(correct, bool):
        raise ValidationError("correct must be a boolean when provided")
    if metadata is not None and not isinstance(metadata, Mapping):
        raise ValidationError("metadata must be a mapping when provided")

    return ActivityEvent(
        id=uuid.uuid4().hex,
        user_id=user_id.strip(),
        timestamp=db.coerce_to_utc(timestamp) if timestamp else _utcnow(),
        activity_type=kind,
        resource_id=resource_id,
        resource_type=resource_type,
        duration_seconds=duration,
        progress=progress_value,
        correct=correct,
        metadata=dict(metadata or {}),
    )


def close_session(session: Session) -> Session:
    """Return the closed form of ``session``; the end is its last activity."""
    end_time = session.last_activity_at
    return session.model_copy(
        update={
            "end_time": end_time,
            "total_duration_seconds": max(0.0, (end_time - session.start_time).total_seconds()),
            "status": "closed",
        }
    )


class SessionManager:
    """Per-user session state machine backed by the event store.

    Open sessions live in a per-user keyed map that is filled lazily from the
    store, so a restarted process picks up where it left off. Every mutation
    for a user runs under that user's lock.
    """

    def __init__(
        self,
        db_module=db,
        *,
        idle_timeout: Optional[timedelta] = None,
        clock: Optional[Callable[[], datetime]] = None,
        locks: Optional[UserLockRegistry] = None,
    ) -> None:
        self._db = db_module
        if idle_timeout is None:
            idle_timeout = timedelta(
                minutes=get_env_float("SESSION_IDLE_TIMEOUT_MINUTES", DEFAULT_IDLE_TIMEOUT.total_seconds() / 60)
            )
        self.idle_timeout = idle_timeout
        self._clock = clock or _utcnow
        self.locks = locks or UserLockRegistry()
        self._open_sessions: Dict[str, Session] = {}
        self._listeners: List[Callable[[str], None]] = []

    # ------------------------------------------------------------------
    def now(self) -> datetime:
        return self._clock()

    def add_listener(self, callback: Callable[[str], None]) -> None:
        """Register ``callback(user_id)`` to run after each committed change."""
        self._listeners.append(callback)

    def _notify(self, user_id: str) -> None:
        for callback in self._listeners:
            try:
                callback(user_id)
            except Exception:
                logger.exception("Session listener failed for user %s", user_id)

    def _expired(self, session: Session, reference: datetime) -> bool:
        return reference - session.last_activity_at > self.idle_timeout

    def _load_open_session(self, user_id: str) -> Optional[Session]:
        session = self._open_sessions.get(user_id)
        if session is None:
            session = self._db.get_open_session(user_id)
            if session is not None:
                self._open_sessions[user_id] = session
        return session

    # ------------------------------------------------------------------
    def record_activity(
        self,
        user_id: str,
        activity_type: Union[str, ActivityType, None],
        *,
        resource_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        duration_seconds: Optional[float] = None,
        progress: Optional[float] = None,
        correct: Optional[bool] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> ActivityEvent:
        event = build_event(
            user_id,
            activity_type,
            resource_id=resource_id,
            resource_type=resource_type,
            duration_seconds=duration_seconds,
            progress=progress,
            correct=correct,
            metadata=metadata,
            timestamp=timestamp or self._clock(),
        )
        return self.append_event(event)

    def append_event(
        self,
        event: ActivityEvent,
        *,
        position: Optional[LearningPosition] = None,
        max_positions: int = db.MAX_POSITIONS_PER_USER,
    ) -> ActivityEvent:
        """Commit a validated event and the session change it causes.

        A ``position`` is written in the same transaction, so a storage
        failure leaves neither behind. Events that would reach back into an
        earlier session are rejected.
        """
        user_id = event.user_id
        completed = 1 if event.activity_type.is_completion else 0

        with self.locks.for_user(user_id):
            current = self._load_open_session(user_id)
            latest = current or self._db.get_latest_session(user_id)
            if latest is not None and event.timestamp < latest.start_time:
                raise ValidationError(
                    f"timestamp {db.to_iso(event.timestamp)} precedes session {latest.id} "
                    f"started at {db.to_iso(latest.start_time)}"
                )
            if current is None and latest is not None and event.timestamp < latest.last_activity_at:
                raise ValidationError(
                    f"timestamp {db.to_iso(event.timestamp)} falls inside closed session {latest.id}"
                )

            closed: Optional[Session] = None
            if current is not None and self._expired(current, event.timestamp):
                closed = close_session(current)
                current = None

            if current is None:
                updated = Session(
                    id=uuid.uuid4().hex,
                    user_id=user_id,
                    start_time=event.timestamp,
                    last_activity_at=event.timestamp,
                    activity_ids=[event.id],
                    completed_item_count=completed,
                )
            else:
                updated = current.model_copy(
                    update={
                        "activity_ids": [*current.activity_ids, event.id],
                        "last_activity_at": max(current.last_activity_at, event.timestamp),
                        "completed_item_count": current.completed_item_count + completed,
                    }
                )

            self._db.record_event(event, updated, closed, position=position, max_positions=max_positions)
            self._open_sessions[user_id] = updated

        if closed is not None:
            logger.info(
                "Closed idle session %s for user %s after %.0fs",
                closed.id,
                user_id,
                closed.total_duration_seconds or 0,
            )
        self._notify(user_id)
        return event

    def end_session(self, user_id: str) -> Optional[Session]:
        """Explicitly close the open session of ``user_id``, if there is one."""
        with self.locks.for_user(user_id):
            current = self._load_open_session(user_id)
            if current is None:
                return None
            closed = close_session(current)
            self._db.save_session(closed)
            self._open_sessions.pop(user_id, None)
        self._notify(user_id)
        return closed

    def get_open_session(self, user_id: str) -> Optional[Session]:
        """Return the open session, closing it first if it has gone stale."""
        with self.locks.for_user(user_id):
            current = self._load_open_session(user_id)
            if current is None:
                return None
            if self._expired(current, self._clock()):
                self._db.save_session(close_session(current))
                self._open_sessions.pop(user_id, None)
                return None
            return current

    def recover_stale_sessions(self) -> List[Session]:
        """Close every stored open session whose last activity is too old."""
        now = self._clock()
        recovered: List[Session] = []
        for stored in self._db.list_open_sessions():
            with self.locks.for_user(stored.user_id):
                if not self._expired(stored, now):
                    continue
                closed = close_session(stored)
                self._db.save_session(closed)
                self._open_sessions.pop(stored.user_id, None)
                recovered.append(closed)
        if recovered:
            logger.info("Recovered %d stale sessions", len(recovered))
        return recovered

    def get_session_history(self, user_id: str, limit: int = 10) -> List[Session]:
        """Return the most recent sessions first, the open one included."""
        return self._db.list_sessions(user_id, limit=max(1, int(limit)), newest_first=True)

    def clear_user_data(self, user_id: str) -> Dict[str, int]:
        with self.locks.for_user(user_id):
            counts = self._db.delete_user_data(user_id)
            self._open_sessions.pop(user_id, None)
        self._notify(user_id)
        return counts
