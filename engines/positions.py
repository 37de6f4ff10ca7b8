"""Resume points: the latest position per (user, course, lesson)."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

import db
from engines.sessions import SessionManager, build_event
from errors import ValidationError
from schemas import ActivityType, LearningPosition

logger = logging.getLogger(__name__)


class PositionTracker:
    """Upserts resume points and mirrors each write into the activity stream.

    The ``lesson_view`` event emitted on every save makes position changes
    visible to aggregation without a separate feed.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        db_module=db,
        *,
        max_positions: int = db.MAX_POSITIONS_PER_USER,
    ) -> None:
        self._sessions = session_manager
        self._db = db_module
        self._max_positions = max_positions

    def save_position(
        self,
        user_id: str,
        course_id: str,
        lesson_id: str,
        *,
        mode: str = "default",
        position: float = 0,
        timestamp: Optional[datetime] = None,
    ) -> LearningPosition:
        if not isinstance(user_id, str) or not user_id.strip() or not course_id or not lesson_id:
            raise ValidationError("user_id, course_id and lesson_id are required")
        if isinstance(position, bool) or not isinstance(position, (int, float)):
            raise ValidationError("position must be a number")
        user_id = user_id.strip()

        with self._sessions.locks.for_user(user_id):
            record = LearningPosition(
                user_id=user_id,
                course_id=course_id,
                lesson_id=lesson_id,
                mode=mode,
                position=position,
                timestamp=db.coerce_to_utc(timestamp or self._sessions.now()),
            )
            event = build_event(
                user_id,
                ActivityType.LESSON_VIEW,
                resource_id=lesson_id,
                resource_type="lesson",
                metadata={"course_id": course_id, "position": position, "mode": mode},
                timestamp=record.timestamp,
            )
            self._sessions.append_event(event, position=record, max_positions=self._max_positions)
        logger.debug("Saved position %s/%s for user %s", course_id, lesson_id, user_id)
        return record

    def get_position(self, user_id: str, course_id: str, lesson_id: str) -> Optional[LearningPosition]:
        return self._db.get_position(user_id, course_id, lesson_id)

    def get_recent_positions(self, user_id: str, limit: int = 5) -> List[LearningPosition]:
        """Most recent first."""
        return self._db.list_positions(user_id, limit=max(1, int(limit)))
