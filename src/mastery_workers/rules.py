"""Tier 0: deterministic rules over the assembled user state.

Rules are pure functions of ``(state, signals)``. Each returns a RuleResult;
a triggered rule may carry one direct recommendation and may ask for a
deeper assessment via ``requires_escalation``.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Protocol

from .classifier import EVENING_WINDOW_START, MORNING_WINDOW_START
from .models import SignalEntry
from .state import TaskSnapshot, UserState

logger = logging.getLogger(__name__)

# A direct recommendation at or above this score settles Tier 0 on its own.
CONCLUSIVE_SCORE = 0.7


class RuleSeverity(IntEnum):
    LOW = 0
    MEDIUM = 1
    HIGH = 2
    CRITICAL = 3


@dataclass(frozen=True)
class DirectRecommendationCandidate:
    type: str
    context: str
    target_kind: str
    title: str
    rationale: str
    score: float
    target_entity_id: uuid.UUID | None = None


@dataclass(frozen=True)
class RuleResult:
    rule_id: str
    triggered: bool
    severity: RuleSeverity = RuleSeverity.LOW
    evidence: dict[str, Any] = field(default_factory=dict)
    direct_recommendation: DirectRecommendationCandidate | None = None
    requires_escalation: bool = False


@dataclass(frozen=True)
class RuleEvaluationResult:
    all_results: tuple[RuleResult, ...]
    direct_recommendations: tuple[DirectRecommendationCandidate, ...]
    should_escalate: bool
    escalation_reason: str | None = None

    @property
    def triggered_rules(self) -> tuple[RuleResult, ...]:
        return tuple(r for r in self.all_results if r.triggered)

    @property
    def triggered_rule_ids(self) -> tuple[str, ...]:
        return tuple(r.rule_id for r in self.triggered_rules)

    @property
    def is_conclusive(self) -> bool:
        return any(c.score >= CONCLUSIVE_SCORE for c in self.direct_recommendations)


class Rule(Protocol):
    rule_id: str

    def evaluate(self, state: UserState, signals: Sequence[SignalEntry]) -> RuleResult: ...


def _not_triggered(rule_id: str) -> RuleResult:
    return RuleResult(rule_id=rule_id, triggered=False)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class CheckInMissingRule:
    """A window-start signal arrived but that window's check-in is not in yet."""

    rule_id = "CHECKIN_MISSING"

    def evaluate(self, state: UserState, signals: Sequence[SignalEntry]) -> RuleResult:
        reminder = next(
            (
                s
                for s in signals
                if s.event_type in (MORNING_WINDOW_START, EVENING_WINDOW_START, "CheckInReminderDue")
            ),
            None,
        )
        if reminder is None:
            return _not_triggered(self.rule_id)

        expected = "morning" if "morning" in reminder.event_type.lower() else "evening"
        if state.has_check_in(state.today, expected):
            return _not_triggered(self.rule_id)

        streak = state.check_in_streak
        if streak >= 14:
            severity = RuleSeverity.HIGH
        elif streak >= 7:
            severity = RuleSeverity.MEDIUM
        else:
            severity = RuleSeverity.LOW

        if streak > 0:
            title = f"Don't break your {streak}-day check-in streak"
            rationale = (
                f"You've checked in consistently for {streak} days. A quick {expected} "
                "check-in keeps your streak alive and helps you stay on track."
            )
        else:
            title = f"Time for your {expected} check-in"
            rationale = (
                f"A brief {expected} check-in helps you set intentions and track progress. "
                "It only takes a minute."
            )

        return RuleResult(
            rule_id=self.rule_id,
            triggered=True,
            severity=severity,
            evidence={
                "expected_check_in_type": expected,
                "current_streak": streak,
                "signal_type": reminder.event_type,
            },
            direct_recommendation=DirectRecommendationCandidate(
                type="CheckInConsistencyNudge",
                context="MorningCheckIn" if expected == "morning" else "EveningCheckIn",
                target_kind="UserProfile",
                title=title,
                rationale=rationale,
                score=0.8 if streak > 7 else 0.6,
            ),
        )


class HabitAdherenceThresholdRule:
    """Active habits whose 7-day adherence dropped below 50%."""

    rule_id = "HABIT_ADHERENCE_THRESHOLD"

    CRITICAL_THRESHOLD = 0.25
    WARNING_THRESHOLD = 0.50

    def evaluate(self, state: UserState, signals: Sequence[SignalEntry]) -> RuleResult:
        active = state.active_habits
        struggling = sorted(
            (h for h in active if h.adherence_7d < self.WARNING_THRESHOLD),
            key=lambda h: h.adherence_7d,
        )
        if not struggling:
            return _not_triggered(self.rule_id)

        worst = struggling[0]
        severity = (
            RuleSeverity.HIGH if worst.adherence_7d <= self.CRITICAL_THRESHOLD else RuleSeverity.MEDIUM
        )
        pct = round(worst.adherence_7d * 100)
        at_minimum = worst.mode.lower() == "minimum"

        if at_minimum:
            title = f'"{worst.title}" needs attention ({pct}% this week)'
            rationale = (
                "Even at minimum mode, you're struggling with this habit. Consider if it's "
                "the right time for this habit, or if there's an obstacle to address."
            )
        else:
            title = f'Consider scaling down "{worst.title}" ({pct}% adherence)'
            rationale = (
                f'Your adherence to "{worst.title}" has dropped to {pct}%. Switching to minimum '
                "mode might help you maintain consistency while you rebuild momentum."
            )

        return RuleResult(
            rule_id=self.rule_id,
            triggered=True,
            severity=severity,
            evidence={
                "struggling_habit_count": len(struggling),
                "active_habit_count": len(active),
                "worst_habit_id": str(worst.id),
                "worst_adherence": round(worst.adherence_7d * 100, 1),
            },
            direct_recommendation=DirectRecommendationCandidate(
                type="HabitModeSuggestion",
                context="DriftAlert",
                target_kind="Habit",
                target_entity_id=worst.id,
                title=title,
                rationale=rationale,
                score=0.85,
            ),
            # More than half of the active habits are below threshold.
            requires_escalation=len(struggling) * 2 > len(active),
        )


class DeadlineProximityRule:
    """Open tasks due within the next 48 hours."""

    rule_id = "DEADLINE_PROXIMITY"

    URGENT_HOURS = 24
    WARNING_HOURS = 48

    def evaluate(self, state: UserState, signals: Sequence[SignalEntry]) -> RuleResult:
        upcoming: list[tuple[int, TaskSnapshot]] = []
        for task in state.open_tasks:
            if task.due_date is None:
                continue
            hours_until = (task.due_date - state.today).days * 24
            if 0 < hours_until <= self.WARNING_HOURS:
                upcoming.append((hours_until, task))

        if not upcoming:
            return _not_triggered(self.rule_id)

        hours_until, task = min(upcoming, key=lambda item: item[0])
        severity = RuleSeverity.CRITICAL if hours_until <= self.URGENT_HOURS else RuleSeverity.HIGH

        return RuleResult(
            rule_id=self.rule_id,
            triggered=True,
            severity=severity,
            evidence={
                "urgent_item_count": len(upcoming),
                "most_urgent_task_id": str(task.id),
                "most_urgent_hours_until": hours_until,
            },
            direct_recommendation=DirectRecommendationCandidate(
                type="NextBestAction",
                context="DriftAlert",
                target_kind="Task",
                target_entity_id=task.id,
                title=f'Urgent: "{task.title}" due in {hours_until} hours',
                rationale=(
                    "This task is due soon. Focus on it today to avoid missing the deadline."
                ),
                score=0.95,
            ),
        )


class RecurringTaskStalenessRule:
    """Routine or repeatedly deferred tasks that keep slipping."""

    rule_id = "RECURRING_TASK_STALENESS"

    MIN_RESCHEDULES_FOR_PATTERN = 2
    HIGH_RESCHEDULE_COUNT = 3
    CRITICAL_RESCHEDULE_COUNT = 5

    RELEVANT_EVENT_TYPES = frozenset(
        {"TaskCreatedEvent", "TaskUpdatedEvent", "TaskRescheduledEvent", MORNING_WINDOW_START}
    )
    RECURRING_TITLE_PATTERNS = (
        "weekly", "daily", "monthly", "review", "planning",
        "monday", "tuesday", "wednesday", "thursday", "friday",
        "saturday", "sunday", "morning", "evening",
    )

    def _looks_recurring(self, task: TaskSnapshot) -> bool:
        if task.is_recurring:
            return True
        title = task.title.lower()
        return any(pattern in title for pattern in self.RECURRING_TITLE_PATTERNS)

    def _severity(self, reschedules: int, days_past: int, recurring: bool) -> RuleSeverity:
        if reschedules >= self.CRITICAL_RESCHEDULE_COUNT or (recurring and days_past >= 7):
            return RuleSeverity.CRITICAL
        if reschedules >= self.HIGH_RESCHEDULE_COUNT or days_past >= 3:
            return RuleSeverity.HIGH
        if reschedules >= self.MIN_RESCHEDULES_FOR_PATTERN or days_past > 0:
            return RuleSeverity.MEDIUM
        return RuleSeverity.LOW

    def _score(self, reschedules: int, recurring: bool) -> float:
        if reschedules >= self.CRITICAL_RESCHEDULE_COUNT:
            score = 0.85
        elif reschedules >= self.HIGH_RESCHEDULE_COUNT:
            score = 0.75
        elif reschedules >= self.MIN_RESCHEDULES_FOR_PATTERN:
            score = 0.65
        else:
            score = 0.55
        if recurring:
            score += 0.05
        return min(round(score, 2), 0.90)

    def evaluate(self, state: UserState, signals: Sequence[SignalEntry]) -> RuleResult:
        if not any(s.event_type in self.RELEVANT_EVENT_TYPES for s in signals):
            return _not_triggered(self.rule_id)

        stale: list[tuple[TaskSnapshot, bool, int]] = []
        for task in state.open_tasks:
            recurring = self._looks_recurring(task)
            deferred = task.reschedule_count >= self.MIN_RESCHEDULES_FOR_PATTERN
            if not recurring and not deferred:
                continue
            days_past = (
                (state.today - task.due_date).days
                if task.due_date is not None and task.due_date < state.today
                else 0
            )
            if deferred or days_past > 0:
                stale.append((task, recurring, days_past))

        if not stale:
            return _not_triggered(self.rule_id)

        task, recurring, days_past = max(stale, key=lambda item: item[0].reschedule_count)
        reschedules = task.reschedule_count
        chronic = reschedules >= self.CRITICAL_RESCHEDULE_COUNT

        return RuleResult(
            rule_id=self.rule_id,
            triggered=True,
            severity=self._severity(reschedules, days_past, recurring),
            evidence={
                "stale_task_count": len(stale),
                "most_stale_task_id": str(task.id),
                "reschedule_count": reschedules,
                "days_past_scheduled": days_past,
                "looks_recurring": recurring,
            },
            direct_recommendation=DirectRecommendationCandidate(
                type="ScheduleAdjustmentSuggestion",
                context="DriftAlert",
                target_kind="Task",
                target_entity_id=task.id,
                title=(
                    f'"{task.title}" has been deferred {reschedules} times'
                    if chronic
                    else f'"{task.title}" keeps getting pushed back'
                ),
                rationale=(
                    "Consider whether it's truly important, needs to be broken down, or should be archived."
                    if chronic
                    else "If it keeps slipping, consider whether it is too big, unclear, or low priority."
                ),
                score=self._score(reschedules, recurring),
            ),
        )


DEFAULT_RULES: tuple[Rule, ...] = (
    CheckInMissingRule(),
    HabitAdherenceThresholdRule(),
    DeadlineProximityRule(),
    RecurringTaskStalenessRule(),
)


def _escalation(
    triggered: Sequence[RuleResult],
    candidates: Sequence[DirectRecommendationCandidate],
) -> tuple[bool, str | None]:
    if not triggered:
        return False, None

    explicit = next((r for r in triggered if r.requires_escalation), None)
    if explicit is not None:
        return True, f"Rule {explicit.rule_id} requires deeper assessment"

    high = sum(1 for r in triggered if r.severity >= RuleSeverity.HIGH)
    if high >= 2:
        return True, f"Multiple high-severity issues detected ({high})"

    # Same target, different advice.
    by_target: dict[tuple[str, uuid.UUID | None], set[str]] = {}
    for c in candidates:
        by_target.setdefault((c.target_kind, c.target_entity_id), set()).add(c.type)
    if any(len(types) > 1 for types in by_target.values()):
        return True, "Conflicting recommendations require prioritization"

    if len(triggered) >= 4:
        return True, f"Many issues detected ({len(triggered)}), needs holistic assessment"

    return False, None


class DeterministicRulesEngine:
    def __init__(self, rules: Sequence[Rule] = DEFAULT_RULES) -> None:
        self._rules = tuple(rules)

    async def evaluate(self, state: UserState, signals: Sequence[SignalEntry]) -> RuleEvaluationResult:
        results: list[RuleResult] = []
        for rule in self._rules:
            try:
                results.append(rule.evaluate(state, signals))
            except Exception as exc:
                logger.warning(
                    "Rule %s failed for user %s: %s", rule.rule_id, state.user_id, exc
                )
                results.append(
                    RuleResult(rule_id=rule.rule_id, triggered=False, evidence={"error": str(exc)})
                )

        triggered = [r for r in results if r.triggered]
        candidates = tuple(
            r.direct_recommendation for r in triggered if r.direct_recommendation is not None
        )
        should_escalate, reason = _escalation(triggered, candidates)

        if triggered:
            logger.debug(
                "Tier 0 for user %s: %d/%d rules triggered (%s), escalate=%s",
                state.user_id,
                len(triggered),
                len(results),
                ", ".join(r.rule_id for r in triggered),
                should_escalate,
            )
        return RuleEvaluationResult(
            all_results=tuple(results),
            direct_recommendations=candidates,
            should_escalate=should_escalate,
            escalation_reason=reason,
        )
