"""Tiered assessment: deterministic rules, quick scoring, full pipeline.

The ladder is evaluated once per batch:

* Tier 0 (rules) always runs.
* Tier 1 (quick assessment) runs when Tier 0 is inconclusive, a rule asks
  for escalation, or the batch carries an urgent signal.
* Tier 2 (external recommendation pipeline) runs only when Tier 1 escalates.

The engine itself holds no state and writes nothing. A redelivered batch
re-runs the ladder from scratch.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any, Protocol

import httpx
from pydantic import Field

from .messages import WireModel
from .models import (
    AssessmentOutcome,
    AssessmentStatistics,
    AssessmentTier,
    Priority,
    QuickAssessmentResult,
    Recommendation,
    SignalEntry,
    StateDeltaSummary,
    WindowType,
)
from .rules import DirectRecommendationCandidate, RuleEvaluationResult, RuleSeverity
from .state import UserState
from .utils import utcnow

logger = logging.getLogger(__name__)

RECOMMENDATION_TTL = timedelta(hours=24)

TIER1_RELEVANCE_WEIGHT = 0.3
TIER1_DELTA_WEIGHT = 0.4
TIER1_URGENCY_WEIGHT = 0.3
TIER1_ESCALATION_THRESHOLD = 0.5

# Changes since the last assessment at which the delta score saturates.
DELTA_SATURATION = 10

_URGENCY_BY_PRIORITY: dict[Priority, float] = {
    Priority.URGENT: 1.0,
    Priority.WINDOW_ALIGNED: 0.6,
    Priority.STANDARD: 0.3,
    Priority.LOW: 0.1,
}


class RulesEngine(Protocol):
    async def evaluate(
        self, state: UserState, signals: Sequence[SignalEntry]
    ) -> RuleEvaluationResult: ...


class QuickAssessor(Protocol):
    async def assess(
        self,
        state: UserState,
        signals: Sequence[SignalEntry],
        tier0: RuleEvaluationResult,
    ) -> QuickAssessmentResult: ...


class RecommendationOrchestrator(Protocol):
    async def orchestrate(
        self, state: UserState, context: str, signals: Sequence[SignalEntry]
    ) -> Sequence[DirectRecommendationCandidate]: ...


class ContextSearch(Protocol):
    """Similarity of the batch to the user's stored context, in [0, 1]."""

    async def relevance(self, state: UserState, signals: Sequence[SignalEntry]) -> float: ...


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def recommendation_context(signals: Sequence[SignalEntry]) -> str:
    """Context label handed to Tier 2, derived from what the batch is about."""
    if any("checkin" in s.event_type.lower() for s in signals):
        morning = any(
            "morning" in s.event_type.lower() or s.window_type is WindowType.MORNING_WINDOW
            for s in signals
        )
        return "MorningCheckIn" if morning else "EveningCheckIn"
    if any(
        s.window_type is WindowType.WEEKLY_REVIEW or "weekly" in s.event_type.lower()
        for s in signals
    ):
        return "WeeklyReview"
    if any(s.priority == Priority.URGENT for s in signals):
        return "DriftAlert"
    return "ProactiveCheck"


class StateDeltaQuickAssessor:
    """Tier 1 scoring from state changes, signal urgency and optional context search.

    ``combined = 0.3 * relevance + 0.4 * delta + 0.3 * urgency``; escalates to
    Tier 2 at 0.5 or above. Without a ContextSearch, relevance falls back to
    the highest severity among triggered rules.
    """

    def __init__(self, context_search: ContextSearch | None = None) -> None:
        self._context_search = context_search

    async def assess(
        self,
        state: UserState,
        signals: Sequence[SignalEntry],
        tier0: RuleEvaluationResult,
    ) -> QuickAssessmentResult:
        changes = state.changes
        delta = StateDeltaSummary(
            new_entities=changes.new,
            modified_entities=changes.modified,
            completed_items=changes.completed,
            missed_items=changes.missed,
            changes_by_entity_type=dict(changes.by_entity_type),
        )
        delta_score = _clamp(delta.total_changes / DELTA_SATURATION)

        if self._context_search is not None:
            relevance = _clamp(await self._context_search.relevance(state, signals))
        else:
            highest = max((r.severity for r in tier0.triggered_rules), default=RuleSeverity.LOW)
            relevance = int(highest) / int(RuleSeverity.CRITICAL)

        urgency = max(
            (_URGENCY_BY_PRIORITY[Priority(s.priority)] for s in signals), default=0.0
        )
        if tier0.should_escalate:
            urgency = _clamp(urgency + 0.2)

        combined = round(
            TIER1_RELEVANCE_WEIGHT * relevance
            + TIER1_DELTA_WEIGHT * delta_score
            + TIER1_URGENCY_WEIGHT * urgency,
            4,
        )
        escalate = combined >= TIER1_ESCALATION_THRESHOLD

        reason = None
        if escalate:
            parts = {"relevance": relevance, "delta": delta_score, "urgency": urgency}
            dominant = max(parts, key=lambda k: parts[k])
            reason = f"combined score {combined:.2f} >= {TIER1_ESCALATION_THRESHOLD} (driven by {dominant})"
            if tier0.escalation_reason:
                reason = f"{reason}; {tier0.escalation_reason}"

        return QuickAssessmentResult(
            combined_score=combined,
            relevance_score=relevance,
            delta_score=delta_score,
            urgency_score=urgency,
            delta_summary=delta,
            should_escalate=escalate,
            escalation_reason=reason,
        )


class _OrchestratedRecommendation(WireModel):
    type: str
    target_kind: str
    title: str
    rationale: str
    score: float = Field(ge=0.0, le=1.0)
    target_entity_id: uuid.UUID | None = None
    context: str | None = None


class _OrchestrationResponse(WireModel):
    recommendations: list[_OrchestratedRecommendation] = Field(default_factory=list)
    selection_method: str | None = None


class HttpRecommendationOrchestrator:
    """Tier 2 client for the external recommendation pipeline."""

    def __init__(self, client: httpx.AsyncClient, url: str) -> None:
        self._client = client
        self._url = url

    async def orchestrate(
        self, state: UserState, context: str, signals: Sequence[SignalEntry]
    ) -> list[DirectRecommendationCandidate]:
        body: dict[str, Any] = {
            "userId": str(state.user_id),
            "context": context,
            "today": state.today.isoformat(),
            "signals": [
                {
                    "eventType": s.event_type,
                    "priority": int(s.priority),
                    "windowType": s.window_type.value,
                    "targetEntityType": s.target_entity_type,
                    "targetEntityId": str(s.target_entity_id) if s.target_entity_id else None,
                }
                for s in signals
            ],
        }
        response = await self._client.post(self._url, json=body)
        response.raise_for_status()
        parsed = _OrchestrationResponse.model_validate(response.json())
        logger.debug(
            "Tier 2 returned %d candidate(s) for user %s via %s",
            len(parsed.recommendations),
            state.user_id,
            parsed.selection_method or "unknown",
        )
        return [
            DirectRecommendationCandidate(
                type=r.type,
                context=r.context or context,
                target_kind=r.target_kind,
                target_entity_id=r.target_entity_id,
                title=r.title,
                rationale=r.rationale,
                score=r.score,
            )
            for r in parsed.recommendations
        ]


class TieredAssessmentEngine:
    def __init__(
        self,
        rules: RulesEngine,
        quick_assessor: QuickAssessor,
        orchestrator: RecommendationOrchestrator | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._rules = rules
        self._quick = quick_assessor
        self._orchestrator = orchestrator
        self._clock = clock

    def _to_recommendations(
        self,
        user_id: uuid.UUID,
        candidates: Sequence[DirectRecommendationCandidate],
        tier: AssessmentTier,
        signals: Sequence[SignalEntry],
    ) -> list[Recommendation]:
        expires_at = self._clock() + RECOMMENDATION_TTL
        event_types = tuple(dict.fromkeys(s.event_type for s in signals))
        return [
            Recommendation(
                user_id=user_id,
                type=c.type,
                context=c.context,
                target_kind=c.target_kind,
                target_entity_id=c.target_entity_id,
                title=c.title,
                rationale=c.rationale,
                score=c.score,
                source_tier=tier,
                expires_at=expires_at,
                signal_event_types=event_types,
            )
            for c in candidates
        ]

    async def assess(self, state: UserState, signals: Sequence[SignalEntry]) -> AssessmentOutcome:
        tier0 = await self._rules.evaluate(state, signals)
        recommendations = self._to_recommendations(
            state.user_id,
            tier0.direct_recommendations,
            AssessmentTier.TIER0_DETERMINISTIC,
            signals,
        )
        stats = AssessmentStatistics(
            tier0_rules_evaluated=len(tier0.all_results),
            tier0_rules_triggered=len(tier0.triggered_rules),
            tier0_recommendations=len(recommendations),
        )
        outcome = AssessmentOutcome(
            statistics=stats,
            tier0_triggered_rules=tier0.triggered_rule_ids,
            generated_recommendations=recommendations,
        )

        escalate = (
            tier0.should_escalate
            or any(r.requires_escalation for r in tier0.triggered_rules)
            or any(s.priority == Priority.URGENT for s in signals)
        )
        if not escalate and tier0.is_conclusive:
            logger.info(
                "Tier 0 sufficient for user %s: %d recommendation(s)",
                state.user_id,
                len(recommendations),
            )
            return outcome

        tier1 = await self._quick.assess(state, signals, tier0)
        outcome.tier1_result = tier1
        stats.tier1_executed = True
        stats.tier1_combined_score = tier1.combined_score

        if not tier1.should_escalate:
            logger.info(
                "Tier 1 complete for user %s: score=%.2f, no Tier 2 needed",
                state.user_id,
                tier1.combined_score,
            )
            return outcome

        if self._orchestrator is None:
            logger.warning(
                "Tier 1 escalated for user %s (%s) but no Tier 2 pipeline is configured",
                state.user_id,
                tier1.escalation_reason,
            )
            return outcome

        logger.info("Escalating to Tier 2 for user %s: %s", state.user_id, tier1.escalation_reason)
        outcome.tier2_executed = True
        stats.tier2_executed = True
        try:
            candidates = await self._orchestrator.orchestrate(
                state, recommendation_context(signals), signals
            )
        except Exception:
            logger.exception(
                "Tier 2 failed for user %s, falling back to Tier 0/1 recommendations",
                state.user_id,
            )
            return outcome

        tier2_recommendations = self._to_recommendations(
            state.user_id, candidates, AssessmentTier.TIER2_FULL_PIPELINE, signals
        )
        recommendations.extend(tier2_recommendations)
        stats.tier2_recommendations = len(tier2_recommendations)
        logger.info(
            "Tier 2 complete for user %s: %d additional recommendation(s)",
            state.user_id,
            len(tier2_recommendations),
        )
        return outcome
