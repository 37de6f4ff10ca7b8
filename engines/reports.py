"""Period-over-period progress reports."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import db
from catalog import CourseCatalog
from engines.aggregation import AggregationEngine, PeriodStats, current_streak, round_half_up
from engines.cancellation import CancellationToken, check
from errors import ValidationError
from schemas import CourseProgress, MetricComparison, Report, ReportSummary

logger = logging.getLogger(__name__)

TIMEFRAME_DAYS: Dict[str, int] = {"day": 1, "week": 7, "month": 30, "year": 365}

STRENGTH_THRESHOLD = 15
WEAKNESS_THRESHOLD = -15
MAX_FINDINGS = 4
MAX_NEXT_STEPS = 3

# metric -> (strength text, weakness text, next step for the weakness)
METRIC_FEEDBACK: Dict[str, Tuple[str, str, str]] = {
    "study_minutes": (
        "Study time rose markedly, showing a strong commitment to learning.",
        "Study time dropped; your learning plan may need adjusting.",
        "Block out a fixed daily study slot and protect it in your calendar.",
    ),
    "sessions": (
        "You studied more often, so a learning habit is taking shape.",
        "You studied less often; rebuild a regular study rhythm.",
        "Plan short sessions on weekdays to keep your learning continuous.",
    ),
    "items_completed": (
        "You completed more lessons and quizzes, a clear gain in efficiency.",
        "You completed fewer lessons and quizzes; efficiency may be slipping.",
        "Pick one lesson or quiz to finish in every session.",
    ),
    "average_accuracy": (
        "Your answer accuracy improved, showing stronger mastery.",
        "Your answer accuracy fell; more review is needed.",
        "Review your weak words and grammar points before starting new material.",
    ),
    "active_days": (
        "You studied on more days, keeping your learning consistent.",
        "You studied on fewer days; consistency needs attention.",
        "Aim for at least a few minutes of study every day to rebuild your streak.",
    ),
}

FALLBACK_STRENGTH = "You kept your learning going this period; steady practice builds results."
FALLBACK_WEAKNESS = "No metric improved markedly; set a concrete goal for the next period."
FALLBACK_NEXT_STEP = "Choose one skill to focus on next period and track it daily."


def percent_change(current: float, previous: float) -> int:
    if previous == 0:
        return 100 if current > 0 else 0
    return round_half_up((current - previous) / previous * 100)


class ReportBuilder:
    def __init__(
        self,
        aggregation: AggregationEngine,
        catalog: Optional[CourseCatalog] = None,
        db_module=db,
    ) -> None:
        self._aggregation = aggregation
        self._catalog = catalog or CourseCatalog()
        self._db = db_module

    def build_report(
        self,
        user_id: str,
        timeframe: str = "week",
        tz: str = "UTC",
        now: Optional[datetime] = None,
        previous_stats: Optional[PeriodStats] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> Report:
        """Compare ``[now - span, now]`` with the span before it and store the report.

        ``previous_stats`` lets a caller that already holds the previous
        period's numbers skip recomputing them.
        """
        if timeframe not in TIMEFRAME_DAYS:
            raise ValidationError(
                f"unknown timeframe {timeframe!r}; expected one of: {', '.join(TIMEFRAME_DAYS)}"
            )
        now = self._aggregation.now(now)
        span = timedelta(days=TIMEFRAME_DAYS[timeframe])
        start = now - span

        current = self._aggregation.get_period_stats(user_id, start, now, tz, cancel)
        if previous_stats is None:
            previous_stats = self._aggregation.get_period_stats(
                user_id, start - span, start - timedelta(microseconds=1), tz, cancel
            )
        check(cancel)

        current_metrics = current.as_metrics()
        previous_metrics = previous_stats.as_metrics()
        comparison = [
            MetricComparison(
                metric=metric,
                current=current_metrics[metric],
                previous=previous_metrics[metric],
                percent_change=percent_change(current_metrics[metric], previous_metrics[metric]),
            )
            for metric in METRIC_FEEDBACK
        ]
        strengths, weaknesses, next_steps = self._classify(comparison)

        rollups = self._aggregation.get_daily_rollups(
            user_id, TIMEFRAME_DAYS[timeframe], tz, now, cancel
        )
        summary = ReportSummary(
            time_spent_minutes=current_metrics["study_minutes"],
            sessions_completed=current.sessions,
            items_completed=current.items_completed,
            active_days=current.active_days,
            current_streak=current_streak(rollups),
            courses_progressed=self._courses_progressed(user_id, start, now),
        )
        report = Report(
            user_id=user_id,
            timeframe=timeframe,
            generated_at=now,
            summary=summary,
            comparison_to_previous=comparison,
            strengths=strengths,
            weaknesses=weaknesses,
            next_steps=next_steps,
        )
        self._db.save_report(report)
        logger.info("Built %s report %s for user %s", timeframe, report.id, user_id)
        return report

    def get_report(self, report_id: str) -> Optional[Report]:
        return self._db.get_report(report_id)

    def list_reports(
        self, user_id: str, timeframe: Optional[str] = None, limit: int = 20
    ) -> List[Report]:
        """Stored reports, newest first, optionally for one timeframe only."""
        if timeframe is not None and timeframe not in TIMEFRAME_DAYS:
            raise ValidationError(f"unknown timeframe {timeframe!r}")
        return self._db.list_reports(user_id, timeframe, limit=max(1, int(limit)))

    @staticmethod
    def _classify(comparison: List[MetricComparison]) -> Tuple[List[str], List[str], List[str]]:
        strengths: List[str] = []
        weaknesses: List[str] = []
        next_steps: List[str] = []
        for item in comparison:
            strength, weakness, step = METRIC_FEEDBACK[item.metric]
            if item.percent_change > STRENGTH_THRESHOLD:
                strengths.append(strength)
            elif item.percent_change < WEAKNESS_THRESHOLD:
                weaknesses.append(weakness)
                next_steps.append(step)
        if not strengths:
            strengths.append(FALLBACK_STRENGTH)
        if not weaknesses:
            weaknesses.append(FALLBACK_WEAKNESS)
            next_steps.append(FALLBACK_NEXT_STEP)
        return strengths[:MAX_FINDINGS], weaknesses[:MAX_FINDINGS], next_steps[:MAX_NEXT_STEPS]

    def _courses_progressed(self, user_id: str, start: datetime, end: datetime) -> List[CourseProgress]:
        courses = self._aggregation.get_course_progress(user_id, start, end, include_positions=False)
        return [
            CourseProgress(
                course_id=course.course_id,
                title=self._catalog.course_title(course.course_id),
                progress=course.progress,
            )
            for course in courses
        ]
