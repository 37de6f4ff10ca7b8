"""Rule-based insight generator.

Each rule is a pure function of :class:`~engines.aggregation.LearningStats`
that returns an :class:`Insight` (or :class:`Recommendation`) or ``None``.
Rules are evaluated in declared order, all of them, every time. A rule that
raises is logged and skipped; it never sinks the rest of the bundle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence, Tuple

from engines.aggregation import (
    EVENING_HOURS,
    MORNING_HOURS,
    AggregationEngine,
    LearningStats,
    SessionStats,
    safe_div,
)
from errors import RuleEvaluationError
from schemas import Insight, InsightBundle, Recommendation

logger = logging.getLogger(__name__)

INSIGHT_WINDOW_DAYS = 30
SHORT_SESSION_MINUTES = 30
LONG_SESSION_MINUTES = 45
INACTIVE_COURSE_DAYS = 7

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


@dataclass(frozen=True)
class Rule:
    rule_id: str
    dimension: str
    evaluate: Callable[[LearningStats], object]


def _mean(values: Sequence[float]) -> float:
    return safe_div(sum(values), len(values))


def _focus_scores(sessions: Sequence[SessionStats]) -> List[float]:
    return [s.focus_score for s in sessions if s.focus_score is not None]


def _focus_by_slot(stats: LearningStats) -> Optional[Tuple[float, float]]:
    morning = _focus_scores([s for s in stats.sessions if s.start_local.hour in MORNING_HOURS])
    evening = _focus_scores([s for s in stats.sessions if s.start_local.hour in EVENING_HOURS])
    if not morning or not evening:
        return None
    return _mean(morning), _mean(evening)


def _accuracy_by_length(stats: LearningStats) -> Optional[Tuple[float, float]]:
    answered = [s for s in stats.sessions if s.total_count > 0]
    short = [s.accuracy for s in answered if s.duration_minutes < SHORT_SESSION_MINUTES]
    long = [s.accuracy for s in answered if s.duration_minutes >= LONG_SESSION_MINUTES]
    if not short or not long:
        return None
    return _mean(short), _mean(long)


# ---------------------------------------------------------------------------
# Productivity
# ---------------------------------------------------------------------------

def focus_high(stats: LearningStats) -> Optional[Insight]:
    scores = _focus_scores(stats.sessions)
    if not scores:
        return None
    average = _mean(scores)
    if average > 8:
        return Insight(
            text=f"Your focus is strong: average focus score {average:.1f} out of 10.",
            confidence=0.90,
            rule_id="focus_high",
        )
    return None


def focus_low(stats: LearningStats) -> Optional[Insight]:
    scores = _focus_scores(stats.sessions)
    if not scores or _mean(scores) >= 7:
        return None
    return Insight(
        text="Your focus has room to grow; try short timed blocks with breaks in between.",
        confidence=0.85,
        rule_id="focus_low",
    )


def accuracy_summary(stats: LearningStats) -> Optional[Insight]:
    total = sum(s.total_count for s in stats.sessions)
    if total == 0:
        return None
    correct = sum(s.correct_count for s in stats.sessions)
    return Insight(
        text=f"Your average answer accuracy is {correct / total * 100:.1f}%.",
        confidence=0.95,
        rule_id="accuracy_summary",
    )


def morning_focus(stats: LearningStats) -> Optional[Insight]:
    focus = _focus_by_slot(stats)
    if focus is None or focus[0] - focus[1] <= 1.0:
        return None
    return Insight(
        text=(
            f"You focus {focus[0] - focus[1]:.1f} points better in the morning than in the evening; "
            "schedule demanding material early."
        ),
        confidence=0.82,
        rule_id="morning_focus",
    )


def evening_focus(stats: LearningStats) -> Optional[Insight]:
    focus = _focus_by_slot(stats)
    if focus is None or focus[1] - focus[0] <= 1.0:
        return None
    return Insight(
        text=(
            f"You focus {focus[1] - focus[0]:.1f} points better in the evening than in the morning; "
            "you seem to be an evening learner."
        ),
        confidence=0.82,
        rule_id="evening_focus",
    )


def short_sessions_accuracy(stats: LearningStats) -> Optional[Insight]:
    accuracy = _accuracy_by_length(stats)
    if accuracy is None or accuracy[0] - accuracy[1] <= 0.10:
        return None
    return Insight(
        text="Short sessions (under 30 minutes) score higher than long ones; study more often for less time.",
        confidence=0.78,
        rule_id="short_sessions_accuracy",
    )


def long_sessions_accuracy(stats: LearningStats) -> Optional[Insight]:
    accuracy = _accuracy_by_length(stats)
    if accuracy is None or accuracy[1] - accuracy[0] <= 0.10:
        return None
    return Insight(
        text="Long sessions (45 minutes or more) score higher than short ones; you need time to warm up.",
        confidence=0.78,
        rule_id="long_sessions_accuracy",
    )


# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

def vocabulary_mastery(stats: LearningStats) -> Optional[Insight]:
    vocabulary = stats.vocabulary
    if vocabulary.learned <= 0:
        return None
    rate = vocabulary.mastered / vocabulary.learned * 100
    return Insight(
        text=f"You have mastered {vocabulary.mastered} words, {rate:.1f}% of the words you studied.",
        confidence=0.95,
        rule_id="vocabulary_mastery",
    )


def vocabulary_weak_words(stats: LearningStats) -> Optional[Insight]:
    if not stats.vocabulary.weak:
        return None
    words = ", ".join(entry.word for entry in stats.vocabulary.weak)
    return Insight(
        text=f"Words that need review: {words}.",
        confidence=0.90,
        rule_id="vocabulary_weak_words",
    )


def vocabulary_strong_words(stats: LearningStats) -> Optional[Insight]:
    if not stats.vocabulary.strong:
        return None
    words = ", ".join(entry.word for entry in stats.vocabulary.strong[:5])
    return Insight(
        text=f"You answer these words reliably: {words}.",
        confidence=0.85,
        rule_id="vocabulary_strong_words",
    )


def vocabulary_recent(stats: LearningStats) -> Optional[Insight]:
    count = len(stats.vocabulary.recently_learned)
    if count == 0:
        return None
    return Insight(
        text=f"You learned {count} new words in the last 7 days; review them within 48 hours to retain them.",
        confidence=0.88,
        rule_id="vocabulary_recent",
    )


# ---------------------------------------------------------------------------
# Habits
# ---------------------------------------------------------------------------

def preferred_time_slots(stats: LearningStats) -> Optional[Insight]:
    slots = stats.habits.preferred_time_slots
    if not slots:
        return None
    return Insight(
        text=f"You study most often during {' and '.join(slots)}.",
        confidence=0.92,
        rule_id="preferred_time_slots",
    )


def consistency_high(stats: LearningStats) -> Optional[Insight]:
    score = stats.habits.consistency_score
    if score <= 0.8:
        return None
    return Insight(
        text=f"Your study rhythm is very regular, consistency {score * 10:.1f}/10. Keep it up!",
        confidence=0.90,
        rule_id="consistency_high",
    )


def consistency_low(stats: LearningStats) -> Optional[Insight]:
    score = stats.habits.consistency_score
    if score >= 0.5:
        return None
    return Insight(
        text=f"Your study rhythm is irregular, consistency only {score * 10:.1f}/10; try a fixed study plan.",
        confidence=0.88,
        rule_id="consistency_low",
    )


def streak(stats: LearningStats) -> Optional[Insight]:
    days = stats.habits.streak_days
    if days <= 0:
        return None
    return Insight(
        text=f"You have studied {days} days in a row. Keep going!",
        confidence=1.0,
        rule_id="streak",
    )


def weekday_pattern(stats: LearningStats) -> Optional[Insight]:
    frequency = stats.habits.weekday_frequency
    if not any(frequency):
        return None
    busiest = frequency.index(max(frequency))
    quietest = frequency.index(min(frequency))
    return Insight(
        text=(
            f"{WEEKDAY_NAMES[busiest]} is your most active day, "
            f"{WEEKDAY_NAMES[quietest]} your least active."
        ),
        confidence=0.85,
        rule_id="weekday_pattern",
    )


# ---------------------------------------------------------------------------
# Recommendations
# ---------------------------------------------------------------------------

def vocabulary_weakness(stats: LearningStats) -> Optional[Recommendation]:
    if not stats.vocabulary.weak:
        return None
    return Recommendation(
        action="Review difficult words",
        reason=f'Build a focused review set around words such as "{stats.vocabulary.weak[0].word}".',
        priority=9,
        rule_id="vocabulary_weakness",
    )


def grammar_weakness(stats: LearningStats) -> Optional[Recommendation]:
    points = stats.grammar.weak_points
    if not points:
        return None
    return Recommendation(
        action="Strengthen weak grammar points",
        reason=f"Practise sentences built on {' and '.join(points)}.",
        priority=8,
        rule_id="grammar_weakness",
    )


def consistency(stats: LearningStats) -> Optional[Recommendation]:
    if stats.habits.consistency_score >= 0.7:
        return None
    return Recommendation(
        action="Set a fixed study time",
        reason="A regular schedule improves efficiency and long-term retention.",
        priority=7,
        rule_id="consistency",
    )


def session_too_short(stats: LearningStats) -> Optional[Recommendation]:
    if not stats.sessions or stats.habits.average_session_duration >= 25:
        return None
    return Recommendation(
        action="Study a little longer per session",
        reason="Your sessions are short on average; aim for 30 to 45 minutes.",
        priority=6,
        rule_id="session_too_short",
    )


def session_too_long(stats: LearningStats) -> Optional[Recommendation]:
    if stats.habits.average_session_duration <= 60:
        return None
    return Recommendation(
        action="Split long sessions into shorter ones",
        reason="Spaced practice beats one long block of study.",
        priority=5,
        rule_id="session_too_long",
    )


def inactive_course_reset(stats: LearningStats) -> Optional[Recommendation]:
    cutoff = stats.generated_at - timedelta(days=INACTIVE_COURSE_DAYS)
    idle = [
        course
        for course in stats.courses
        if course.last_accessed is not None and course.last_accessed < cutoff and course.progress < 90
    ]
    if not idle:
        return None
    return Recommendation(
        action="Restart a paused course",
        reason=f"{len(idle)} unfinished course(s) untouched for more than {INACTIVE_COURSE_DAYS} days.",
        priority=8,
        rule_id="inactive_course_reset",
    )


def morning_study(stats: LearningStats) -> Optional[Recommendation]:
    active_weekdays = sum(1 for count in stats.habits.weekday_frequency if count > 0)
    if active_weekdays >= 3:
        return None
    return Recommendation(
        action="Try studying in the morning",
        reason="Mornings are often the best time for memorisation; put key material there.",
        priority=4,
        rule_id="morning_study",
    )


INSIGHT_RULES: Tuple[Rule, ...] = (
    Rule("focus_high", "productivity", focus_high),
    Rule("focus_low", "productivity", focus_low),
    Rule("accuracy_summary", "productivity", accuracy_summary),
    Rule("morning_focus", "productivity", morning_focus),
    Rule("evening_focus", "productivity", evening_focus),
    Rule("short_sessions_accuracy", "productivity", short_sessions_accuracy),
    Rule("long_sessions_accuracy", "productivity", long_sessions_accuracy),
    Rule("vocabulary_mastery", "vocabulary", vocabulary_mastery),
    Rule("vocabulary_weak_words", "vocabulary", vocabulary_weak_words),
    Rule("vocabulary_strong_words", "vocabulary", vocabulary_strong_words),
    Rule("vocabulary_recent", "vocabulary", vocabulary_recent),
    Rule("preferred_time_slots", "habit", preferred_time_slots),
    Rule("consistency_high", "habit", consistency_high),
    Rule("consistency_low", "habit", consistency_low),
    Rule("streak", "habit", streak),
    Rule("weekday_pattern", "habit", weekday_pattern),
)

RECOMMENDATION_RULES: Tuple[Rule, ...] = (
    Rule("vocabulary_weakness", "recommendation", vocabulary_weakness),
    Rule("grammar_weakness", "recommendation", grammar_weakness),
    Rule("consistency", "recommendation", consistency),
    Rule("session_too_short", "recommendation", session_too_short),
    Rule("session_too_long", "recommendation", session_too_long),
    Rule("inactive_course_reset", "recommendation", inactive_course_reset),
    Rule("morning_study", "recommendation", morning_study),
)

_DIMENSION_FIELDS = {
    "productivity": "productivity_insights",
    "vocabulary": "vocabulary_insights",
    "habit": "habit_insights",
}


def _apply(rule: Rule, stats: LearningStats):
    try:
        return rule.evaluate(stats)
    except Exception as exc:
        error = RuleEvaluationError(rule.rule_id, exc)
        logger.exception("Skipping insight rule %s for user %s: %s", rule.rule_id, stats.user_id, error)
        return None


def evaluate_rules(
    stats: LearningStats,
    insight_rules: Sequence[Rule] = INSIGHT_RULES,
    recommendation_rules: Sequence[Rule] = RECOMMENDATION_RULES,
) -> InsightBundle:
    """Run every rule against ``stats`` and group the results."""
    bundle = InsightBundle()
    for rule in insight_rules:
        result = _apply(rule, stats)
        if result is not None:
            getattr(bundle, _DIMENSION_FIELDS[rule.dimension]).append(result)

    actions: List[Recommendation] = []
    for rule in recommendation_rules:
        result = _apply(rule, stats)
        if result is not None:
            actions.append(result)
    # sorted() is stable, so equal priorities keep declared order.
    bundle.recommended_actions = sorted(actions, key=lambda action: action.priority, reverse=True)
    return bundle


class InsightGenerator:
    def __init__(
        self,
        aggregation: AggregationEngine,
        *,
        window_days: int = INSIGHT_WINDOW_DAYS,
        insight_rules: Sequence[Rule] = INSIGHT_RULES,
        recommendation_rules: Sequence[Rule] = RECOMMENDATION_RULES,
    ) -> None:
        self._aggregation = aggregation
        self.window_days = window_days
        self.insight_rules = tuple(insight_rules)
        self.recommendation_rules = tuple(recommendation_rules)

    def generate_insights(
        self, user_id: str, tz: str = "UTC", now: Optional[datetime] = None
    ) -> InsightBundle:
        stats = self._aggregation.collect_learning_stats(
            user_id, tz=tz, window_days=self.window_days, now=now
        )
        bundle = evaluate_rules(stats, self.insight_rules, self.recommendation_rules)
        logger.debug(
            "Generated %d insights and %d recommendations for user %s",
            len(bundle.all_insights()),
            len(bundle.recommended_actions),
            user_id,
        )
        return bundle
