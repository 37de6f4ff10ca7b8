"""Aggregation engine: daily rollups, the weekly heatmap, streaks and learner statistics.

Everything here is a read-only computation over the immutable event history.
Results for one user and window are deterministic, so daily rollups are
cached and dropped whenever the session manager commits a new event for that
user.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Callable, Dict, Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import db
from engines.caching import ResultCache
from engines.cancellation import CancellationToken, check
from env_validation import get_env_int
from errors import ValidationError
from schemas import ActivityEvent, ActivityType, DailyRollup, Session, WeeklyHeatmap

logger = logging.getLogger(__name__)

MORNING_HOURS = range(5, 12)
EVENING_HOURS = range(18, 24)
RECENT_DAYS = 7

# Word and grammar-point thresholds (attempt counts, accuracy ratios).
MIN_WORD_ATTEMPTS = 2
MASTERED_ACCURACY = 0.8
WEAK_ACCURACY = 0.5
STRONG_WORD_ATTEMPTS = 3
STRONG_ACCURACY = 0.9
GRAMMAR_WEAK_ACCURACY = 0.6
GRAMMAR_STRONG_ACCURACY = 0.85


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def safe_div(numerator: float, denominator: float) -> float:
    if not denominator:
        return 0.0
    return numerator / denominator


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """Resolve an IANA zone name supplied by the caller."""
    if not name or name.upper() in {"UTC", "Z"}:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"unknown time zone {name!r}") from exc


def current_streak(rollups: Sequence[DailyRollup]) -> int:
    """Streak value at the most recent date that had activity."""
    for rollup in reversed(rollups):
        if rollup.streak > 0:
            return rollup.streak
    return 0


def longest_streak(rollups: Sequence[DailyRollup]) -> int:
    return max((rollup.streak for rollup in rollups), default=0)


# ---------------------------------------------------------------------------
# Statistics consumed by the insight rules
# ---------------------------------------------------------------------------

@dataclass
class SessionStats:
    session_id: str
    start_local: datetime
    duration_minutes: float
    correct_count: int = 0
    total_count: int = 0
    focus_score: Optional[float] = None

    @property
    def accuracy(self) -> float:
        return safe_div(self.correct_count, self.total_count)


@dataclass
class WordStats:
    word: str
    attempts: int = 0
    correct: int = 0
    first_seen: Optional[datetime] = None

    @property
    def accuracy(self) -> float:
        return safe_div(self.correct, self.attempts)


@dataclass
class VocabularyStats:
    learned: int = 0
    mastered: int = 0
    weak: List[WordStats] = field(default_factory=list)
    strong: List[WordStats] = field(default_factory=list)
    recently_learned: List[WordStats] = field(default_factory=list)


@dataclass
class GrammarStats:
    strong_points: List[str] = field(default_factory=list)
    weak_points: List[str] = field(default_factory=list)
    recently_practiced: List[str] = field(default_factory=list)


@dataclass
class CourseStats:
    course_id: str
    progress: float = 0.0
    last_accessed: Optional[datetime] = None


@dataclass
class HabitStats:
    average_session_duration: float = 0.0
    preferred_time_slots: List[str] = field(default_factory=list)
    consistency_score: float = 0.0
    weekday_frequency: List[int] = field(default_factory=lambda: [0] * 7)
    streak_days: int = 0


@dataclass
class LearningStats:
    user_id: str
    generated_at: datetime
    sessions: List[SessionStats] = field(default_factory=list)
    vocabulary: VocabularyStats = field(default_factory=VocabularyStats)
    grammar: GrammarStats = field(default_factory=GrammarStats)
    courses: List[CourseStats] = field(default_factory=list)
    habits: HabitStats = field(default_factory=HabitStats)


@dataclass
class PeriodStats:
    study_minutes: float = 0.0
    sessions: int = 0
    items_completed: int = 0
    average_accuracy: float = 0.0
    active_days: int = 0

    def as_metrics(self) -> Dict[str, float]:
        return {
            "study_minutes": round_half_up(self.study_minutes),
            "sessions": self.sessions,
            "items_completed": self.items_completed,
            "average_accuracy": round_half_up(self.average_accuracy),
            "active_days": self.active_days,
        }


def _focus_value(event: ActivityEvent) -> Optional[float]:
    raw = event.metadata.get("focus_score")
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or not 0 <= raw <= 10:
        logger.warning("Ignoring out-of-range focus_score %r on event %s", raw, event.id)
        return None
    return float(raw)


def _text_field(event: ActivityEvent, *keys: str) -> Optional[str]:
    for key in keys:
        value = event.metadata.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class AggregationEngine:
    def __init__(
        self,
        db_module=db,
        *,
        cache: Optional[ResultCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._db = db_module
        self.cache = cache or ResultCache(max_size=get_env_int("ROLLUP_CACHE_SIZE", 256))
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def attach(self, session_manager) -> None:
        """Invalidate cached results whenever ``session_manager`` commits."""
        session_manager.add_listener(self.cache.invalidate_user)

    def now(self, now: Optional[datetime] = None) -> datetime:
        """``now`` in UTC, or the engine clock when it is omitted."""
        return db.coerce_to_utc(now) if now is not None else self._clock()

    # ------------------------------------------------------------------
    def get_daily_rollups(
        self,
        user_id: str,
        window_days: int = 30,
        tz: str = "UTC",
        now: Optional[datetime] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> List[DailyRollup]:
        """One rollup per local date from ``today - window_days`` to today, oldest first."""
        if window_days < 0:
            raise ValidationError("window_days must be >= 0")
        zone = resolve_timezone(tz)
        explicit_now = now is not None
        now = self.now(now)
        today = now.astimezone(zone).date()
        cache_key = ("rollups", window_days, tz, today, db.to_iso(now) if explicit_now else None)
        cached = self.cache.get(user_id, cache_key)
        if cached is not None:
            return list(cached)

        start_date = today - timedelta(days=window_days)
        start = datetime.combine(start_date, time.min, tzinfo=zone)
        events = self._db.query_events(user_id, start, now)

        by_date: Dict[date, List[ActivityEvent]] = defaultdict(list)
        for event in events:
            by_date[event.timestamp.astimezone(zone).date()].append(event)

        rollups: List[DailyRollup] = []
        streak = 0
        for offset in range(window_days + 1):
            check(cancel)
            day = start_date + timedelta(days=offset)
            day_events = by_date.get(day, [])
            # Today counts as soon as one event lands.
            streak = streak + 1 if day_events else 0
            seconds = sum(event.duration_seconds or 0.0 for event in day_events)
            rollups.append(
                DailyRollup(
                    date=day,
                    minutes_spent=round_half_up(seconds / 60.0),
                    activities_completed=sum(1 for e in day_events if e.activity_type.is_completion),
                    unique_lessons_studied=len(
                        {e.resource_id for e in day_events if e.resource_type == "lesson" and e.resource_id}
                    ),
                    streak=streak,
                )
            )

        self.cache.add(user_id, cache_key, tuple(rollups))
        return rollups

    def get_weekly_heatmap(
        self,
        user_id: str,
        window_weeks: int = 4,
        tz: str = "UTC",
        now: Optional[datetime] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> WeeklyHeatmap:
        """7x24 grid of minutes; each event lands in the cell of its start time."""
        if window_weeks < 1:
            raise ValidationError("window_weeks must be >= 1")
        zone = resolve_timezone(tz)
        now = self.now(now)
        events = self._db.query_events(user_id, now - timedelta(weeks=window_weeks), now)
        check(cancel)

        heatmap = WeeklyHeatmap(window_weeks=window_weeks, timezone=tz)
        for event in events:
            local = event.timestamp.astimezone(zone)
            heatmap.grid[local.isoweekday() - 1][local.hour] += event.minutes
        return heatmap

    def get_period_stats(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        tz: str = "UTC",
        cancel: Optional[CancellationToken] = None,
    ) -> PeriodStats:
        """Totals for ``[start, end]``, walked one local date at a time."""
        zone = resolve_timezone(tz)
        start = db.coerce_to_utc(start)
        end = db.coerce_to_utc(end)
        events = self._db.query_events(user_id, start, end)
        sessions = self._db.list_sessions(user_id, start, end)

        by_date: Dict[date, List[ActivityEvent]] = defaultdict(list)
        for event in events:
            by_date[event.timestamp.astimezone(zone).date()].append(event)

        stats = PeriodStats(sessions=len(sessions))
        answered = 0
        correct = 0
        day = start.astimezone(zone).date()
        last_day = end.astimezone(zone).date()
        while day <= last_day:
            check(cancel)
            day_events = by_date.get(day, [])
            if day_events:
                stats.active_days += 1
            for event in day_events:
                stats.study_minutes += event.minutes
                if event.activity_type.is_completion:
                    stats.items_completed += 1
                if event.correct is not None:
                    answered += 1
                    correct += int(event.correct)
            day += timedelta(days=1)
        stats.average_accuracy = safe_div(correct, answered) * 100
        return stats

    # ------------------------------------------------------------------
    def collect_learning_stats(
        self,
        user_id: str,
        tz: str = "UTC",
        window_days: int = 30,
        now: Optional[datetime] = None,
    ) -> LearningStats:
        zone = resolve_timezone(tz)
        now = self.now(now)
        start = now - timedelta(days=window_days)
        events = self._db.query_events(user_id, start, now)
        sessions = self._db.list_sessions(user_id, start, now)

        events_by_id = {event.id: event for event in events}
        session_stats = [self._session_stats(session, events_by_id, zone) for session in sessions]

        rollups = self.get_daily_rollups(user_id, window_days, tz, now)
        heatmap = self.get_weekly_heatmap(user_id, max(1, math.ceil(window_days / 7)), tz, now)

        weekday_frequency = [0] * 7
        for item in session_stats:
            weekday_frequency[item.start_local.weekday()] += 1

        habits = HabitStats(
            average_session_duration=safe_div(
                sum(item.duration_minutes for item in session_stats), len(session_stats)
            ),
            preferred_time_slots=self._preferred_time_slots(heatmap),
            consistency_score=round(safe_div(sum(1 for r in rollups if r.streak > 0), len(rollups)), 2),
            weekday_frequency=weekday_frequency,
            streak_days=current_streak(rollups),
        )

        return LearningStats(
            user_id=user_id,
            generated_at=now,
            sessions=session_stats,
            vocabulary=self._vocabulary_stats(events, now),
            grammar=self._grammar_stats(events, now),
            # Course progress needs the whole history, not just the insight window.
            courses=self.get_course_progress(user_id, None, now),
            habits=habits,
        )

    def _session_stats(
        self, session: Session, events_by_id: Dict[str, ActivityEvent], zone: tzinfo
    ) -> SessionStats:
        events = [events_by_id[event_id] for event_id in session.activity_ids if event_id in events_by_id]
        span = (session.last_activity_at - session.start_time).total_seconds()
        # A one-event session has no span, so the logged duration counts too.
        active = sum(event.duration_seconds or 0.0 for event in events)
        answered = [event for event in events if event.correct is not None]
        focus = [value for value in (_focus_value(event) for event in events) if value is not None]
        return SessionStats(
            session_id=session.id,
            start_local=session.start_time.astimezone(zone),
            duration_minutes=max(span, active) / 60.0,
            correct_count=sum(1 for event in answered if event.correct),
            total_count=len(answered),
            focus_score=safe_div(sum(focus), len(focus)) if focus else None,
        )

    @staticmethod
    def _preferred_time_slots(heatmap: WeeklyHeatmap) -> List[str]:
        hours = [sum(heatmap.grid[day][hour] for day in range(7)) for hour in range(24)]
        peak = hours.index(max(hours))
        if hours[peak] <= 0:
            return []
        # Two-hour slot around the peak hour, extended towards the busier neighbour.
        start = peak
        if peak == 23 or (peak > 0 and hours[peak - 1] > hours[peak + 1]):
            start = peak - 1
        return [f"{start:02d}:00-{start + 2:02d}:00"]

    @staticmethod
    def _vocabulary_stats(events: Iterable[ActivityEvent], now: datetime) -> VocabularyStats:
        words: Dict[str, WordStats] = {}
        for event in events:
            word = _text_field(event, "word")
            if word is None:
                continue
            entry = words.setdefault(word.lower(), WordStats(word=word, first_seen=event.timestamp))
            if event.timestamp < entry.first_seen:
                entry.first_seen = event.timestamp
            if event.correct is not None:
                entry.attempts += 1
                entry.correct += int(event.correct)

        tried = [entry for entry in words.values() if entry.attempts >= MIN_WORD_ATTEMPTS]
        weak = sorted(
            (entry for entry in tried if entry.accuracy < WEAK_ACCURACY),
            key=lambda entry: (entry.accuracy, -entry.attempts, entry.word),
        )
        strong = sorted(
            (
                entry
                for entry in tried
                if entry.attempts >= STRONG_WORD_ATTEMPTS and entry.accuracy >= STRONG_ACCURACY
            ),
            key=lambda entry: (-entry.accuracy, -entry.attempts, entry.word),
        )
        recent_cutoff = now - timedelta(days=RECENT_DAYS)
        recent = sorted(
            (entry for entry in words.values() if entry.first_seen and entry.first_seen >= recent_cutoff),
            key=lambda entry: entry.first_seen,
            reverse=True,
        )
        return VocabularyStats(
            learned=len(words),
            mastered=sum(1 for entry in tried if entry.accuracy >= MASTERED_ACCURACY),
            weak=weak,
            strong=strong,
            recently_learned=recent,
        )

    @staticmethod
    def _grammar_stats(events: Iterable[ActivityEvent], now: datetime) -> GrammarStats:
        points: Dict[str, List[int]] = {}
        last_seen: Dict[str, datetime] = {}
        for event in events:
            if event.activity_type is not ActivityType.GRAMMAR:
                continue
            point = _text_field(event, "grammar_point", "topic")
            if point is None:
                continue
            last_seen[point] = max(last_seen.get(point, event.timestamp), event.timestamp)
            if event.correct is not None:
                points.setdefault(point, []).append(int(event.correct))

        weak: List[str] = []
        strong: List[str] = []
        for point, outcomes in sorted(points.items()):
            if len(outcomes) < MIN_WORD_ATTEMPTS:
                continue
            accuracy = safe_div(sum(outcomes), len(outcomes))
            if accuracy < GRAMMAR_WEAK_ACCURACY:
                weak.append(point)
            elif accuracy >= GRAMMAR_STRONG_ACCURACY:
                strong.append(point)
        recent_cutoff = now - timedelta(days=RECENT_DAYS)
        recent = [
            point
            for point, seen in sorted(last_seen.items(), key=lambda item: item[1], reverse=True)
            if seen >= recent_cutoff
        ]
        return GrammarStats(strong_points=strong, weak_points=weak, recently_practiced=recent)

    def get_course_progress(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        *,
        include_positions: bool = True,
    ) -> List[CourseStats]:
        """Highest reported progress and last access per course in ``[start, end]``."""
        courses: Dict[str, CourseStats] = {}

        def _touch(course_id: str, when: datetime) -> CourseStats:
            entry = courses.setdefault(course_id, CourseStats(course_id=course_id, last_accessed=when))
            if entry.last_accessed is None or when > entry.last_accessed:
                entry.last_accessed = when
            return entry

        if include_positions:
            for position in self._db.list_positions(user_id):
                _touch(position.course_id, position.timestamp)

        for event in self._db.query_events(user_id, start, end):
            course_id = _text_field(event, "course_id")
            if course_id is None and event.resource_type == "course" and event.resource_id:
                course_id = event.resource_id
            if course_id is None:
                continue
            entry = _touch(course_id, event.timestamp)
            if event.progress is not None and event.progress > entry.progress:
                entry.progress = event.progress
        return sorted(courses.values(), key=lambda entry: entry.course_id)
