"""Pydantic schemas for telemetry records, derived analytics and API bodies."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Literal

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "ActivityType",
    "ActivityEvent",
    "Session",
    "LearningPosition",
    "DailyRollup",
    "HeatmapCell",
    "WeeklyHeatmap",
    "Insight",
    "Recommendation",
    "InsightBundle",
    "MetricComparison",
    "CourseProgress",
    "ReportSummary",
    "Report",
    "ActivityRequest",
    "SessionEndRequest",
    "PositionRequest",
    "Timeframe",
]

Timeframe = Literal["day", "week", "month", "year"]


class ActivityType(str, Enum):
    COURSE_VIEW = "course_view"
    LESSON_VIEW = "lesson_view"
    LESSON_COMPLETE = "lesson_complete"
    QUIZ_ATTEMPT = "quiz_attempt"
    QUIZ_COMPLETE = "quiz_complete"
    TRANSLATION = "translation"
    GRAMMAR = "grammar"
    LISTENING = "listening"
    SPEAKING = "speaking"
    NOTE_TAKING = "note_taking"

    @property
    def is_completion(self) -> bool:
        return "complete" in self.value


class ActivityEvent(BaseModel):
    """A single learner action. Immutable once appended to the store."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    timestamp: datetime
    activity_type: ActivityType
    resource_id: str | None = None
    resource_type: str | None = None
    duration_seconds: float | None = Field(default=None, ge=0)
    progress: float | None = Field(default=None, ge=0, le=100)
    correct: bool | None = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def minutes(self) -> float:
        return (self.duration_seconds or 0.0) / 60.0


class Session(BaseModel):
    """A bounded run of activity with no internal gap above the idle timeout."""

    id: str
    user_id: str
    start_time: datetime
    last_activity_at: datetime
    end_time: datetime | None = None
    activity_ids: List[str] = Field(default_factory=list)
    completed_item_count: int = 0
    total_duration_seconds: float | None = None
    status: Literal["open", "closed"] = "open"

    @property
    def is_open(self) -> bool:
        return self.status == "open"


class LearningPosition(BaseModel):
    user_id: str
    course_id: str
    lesson_id: str
    mode: str = "default"
    position: float = 0
    timestamp: datetime


class DailyRollup(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: date
    minutes_spent: int
    activities_completed: int
    unique_lessons_studied: int
    streak: int


class HeatmapCell(BaseModel):
    day_of_week: int = Field(ge=0, le=6, description="0 is Monday, 6 is Sunday.")
    hour_of_day: int = Field(ge=0, le=23)
    minutes: float


class WeeklyHeatmap(BaseModel):
    window_weeks: int
    timezone: str
    grid: List[List[float]] = Field(
        default_factory=lambda: [[0.0] * 24 for _ in range(7)],
        description="grid[day_of_week][hour_of_day] holds accumulated minutes.",
    )

    def cell(self, day_of_week: int, hour_of_day: int) -> HeatmapCell:
        return HeatmapCell(
            day_of_week=day_of_week,
            hour_of_day=hour_of_day,
            minutes=self.grid[day_of_week][hour_of_day],
        )

    def cells(self) -> List[HeatmapCell]:
        return [self.cell(day, hour) for day in range(7) for hour in range(24)]

    @property
    def total_minutes(self) -> float:
        return sum(sum(row) for row in self.grid)


class Insight(BaseModel):
    text: str
    confidence: float = Field(ge=0.0, le=1.0)
    rule_id: str


class Recommendation(BaseModel):
    action: str
    reason: str
    priority: int = Field(ge=1, le=9)
    rule_id: str


class InsightBundle(BaseModel):
    productivity_insights: List[Insight] = Field(default_factory=list)
    vocabulary_insights: List[Insight] = Field(default_factory=list)
    habit_insights: List[Insight] = Field(default_factory=list)
    recommended_actions: List[Recommendation] = Field(default_factory=list)

    def all_insights(self) -> List[Insight]:
        return [*self.productivity_insights, *self.vocabulary_insights, *self.habit_insights]


class MetricComparison(BaseModel):
    metric: str
    current: float
    previous: float
    percent_change: int


class CourseProgress(BaseModel):
    course_id: str
    title: str
    progress: float


class ReportSummary(BaseModel):
    time_spent_minutes: int
    sessions_completed: int
    items_completed: int
    active_days: int
    current_streak: int
    courses_progressed: List[CourseProgress] = Field(default_factory=list)


class Report(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    timeframe: Timeframe
    generated_at: datetime
    summary: ReportSummary
    comparison_to_previous: List[MetricComparison]
    strengths: List[str]
    weaknesses: List[str]
    next_steps: List[str]


class ActivityRequest(BaseModel):
    """Request body for ``POST /activities``.

    Only type and range checks happen at the edge; the Session Manager repeats
    them so that Python callers get the same guarantees.
    """
    user_id: str
    activity_type: str
    resource_id: str | None = None
    resource_type: str | None = None
    duration_seconds: float | None = None
    progress: float | None = None
    correct: bool | None = None
    metadata: Dict[str, Any] | None = None


class SessionEndRequest(BaseModel):
    user_id: str


class PositionRequest(BaseModel):
    user_id: str
    course_id: str
    lesson_id: str
    mode: str = "default"
    position: float = 0
