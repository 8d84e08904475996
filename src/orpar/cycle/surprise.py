"""Surprise-driven control decisions for the ORPAR cycle.

Maps an externally computed surprise score to one decision, checked in
order:

1. score >= high -> RE_OBSERVE, with 1..max extra observations scaled by
   how far the score exceeds the threshold
2. score >= moderate -> EXTEND_REASONING if the cycle's momentum (mean of
   its last 10 scores) also exceeds moderate, else INJECT_CONTEXT
3. plan-related surprise and score >= plan -> RECONSIDER_PLAN
4. otherwise NO_ACTION

Momentum is tracked per cycle and must be cleared when the cycle ends.
"""

from __future__ import annotations

import logging
import math

from orpar.config import SurpriseThresholds
from orpar.cycle.types import (
    PLAN_RELATED_SURPRISES,
    PlanReconsideration,
    SurpriseContext,
    SurpriseDecisionType,
    SurpriseDetection,
    SurpriseOrparDecision,
    SurpriseProcessingContext,
    SurpriseType,
)
from orpar.events import EventBus, OrparMemoryEvent

logger = logging.getLogger(__name__)

MOMENTUM_WINDOW = 10
DEFAULT_EXPLANATION = "Unexpected observation detected"
EXTEND_REASONING_CONFIDENCE = 0.6
INJECT_CONTEXT_CONFIDENCE = 0.7
PLAN_CONFIDENCE_FACTOR = 0.9

FOCUS_AREAS: dict[SurpriseType, list[str]] = {
    SurpriseType.SCHEMA_VIOLATION: ["data structure validation", "schema compatibility"],
    SurpriseType.PREDICTION_FAILURE: ["model assumptions", "prediction accuracy"],
    SurpriseType.ANOMALY: ["statistical patterns", "outlier analysis"],
    SurpriseType.NOVEL_PATTERN: ["pattern recognition", "new information integration"],
    SurpriseType.CONTEXT_MISMATCH: ["context understanding", "state consistency"],
    SurpriseType.PERFORMANCE_DEVIATION: ["performance metrics", "resource utilization"],
    SurpriseType.UNEXPECTED_ERROR: ["error handling", "failure recovery"],
    SurpriseType.UNEXPECTED_SUCCESS: ["success factors", "approach validation"],
}
DEFAULT_FOCUS_AREAS = ["general observation", "context analysis"]

PLAN_ASPECTS: dict[SurpriseType, list[str]] = {
    SurpriseType.PREDICTION_FAILURE: ["action sequence", "expected outcomes"],
    SurpriseType.PERFORMANCE_DEVIATION: ["resource allocation", "timing estimates"],
    SurpriseType.UNEXPECTED_ERROR: ["error handling steps", "fallback strategies"],
}
COMMON_PLAN_ASPECTS = ["assumptions", "dependencies"]


class SurpriseOrparAdapter:
    """Turns surprise detections into ORPAR control decisions."""

    def __init__(
        self,
        thresholds: SurpriseThresholds | None = None,
        enabled: bool = True,
        events: EventBus | None = None,
    ):
        self.thresholds = thresholds or SurpriseThresholds()
        self.enabled = enabled
        self.events = events or EventBus()
        self._momentum: dict[str, list[float]] = {}

    def process_surprise(
        self,
        surprise: SurpriseDetection,
        context: SurpriseProcessingContext,
    ) -> SurpriseOrparDecision:
        """Decide how the cycle should react to a surprise.

        Args:
            surprise: Scored surprise from an external detector
            context: Cycle the surprise belongs to

        Returns:
            SurpriseOrparDecision
        """
        score = surprise.surprise_score
        if not self.enabled:
            return SurpriseOrparDecision(
                type=SurpriseDecisionType.NO_ACTION,
                confidence=1.0,
                surprise_score=score,
            )

        self._track_momentum(context.cycle_id, score)
        self._emit(
            OrparMemoryEvent.SURPRISE_DETECTED,
            {
                "cycle_id": context.cycle_id,
                "surprise_score": score,
                "surprise_type": surprise.type.value,
                "phase": context.current_phase.value if context.current_phase else None,
            },
            context,
        )

        t = self.thresholds
        if score >= t.high:
            decision = self._re_observe(surprise, context)
        elif score >= t.moderate:
            if self.get_momentum(context.cycle_id) > t.moderate:
                decision = SurpriseOrparDecision(
                    type=SurpriseDecisionType.EXTEND_REASONING,
                    confidence=EXTEND_REASONING_CONFIDENCE,
                    surprise_score=score,
                    extend_reasoning=True,
                    surprise_context=self._build_context(surprise),
                )
            else:
                decision = self._inject_context(surprise, context)
        elif surprise.type in PLAN_RELATED_SURPRISES and score >= t.plan:
            decision = self._reconsider_plan(surprise, context)
        else:
            decision = SurpriseOrparDecision(
                type=SurpriseDecisionType.NO_ACTION,
                confidence=1.0 - score,
                surprise_score=score,
            )

        self._emit(
            OrparMemoryEvent.SURPRISE_DECISION_MADE,
            {
                "cycle_id": context.cycle_id,
                "decision": decision.type.value,
                "confidence": decision.confidence,
                "surprise_score": score,
            },
            context,
        )
        logger.debug(
            f"Surprise {score:.2f} ({surprise.type.value}) in cycle {context.cycle_id} "
            f"-> {decision.type.value}"
        )
        return decision

    def _re_observe(
        self, surprise: SurpriseDetection, context: SurpriseProcessingContext
    ) -> SurpriseOrparDecision:
        t = self.thresholds
        score = surprise.surprise_score
        span = 1.0 - t.high
        excess = (score - t.high) / span if span > 0 else 1.0
        count = min(math.ceil(excess * t.max_extra_observations) + 1, t.max_extra_observations)
        count = max(count, 1)

        self._emit(
            OrparMemoryEvent.ADDITIONAL_OBSERVATION_QUEUED,
            {"cycle_id": context.cycle_id, "additional_observations": count, "surprise_score": score},
            context,
        )
        return SurpriseOrparDecision(
            type=SurpriseDecisionType.RE_OBSERVE,
            confidence=score,
            surprise_score=score,
            additional_observations=count,
        )

    def _inject_context(
        self, surprise: SurpriseDetection, context: SurpriseProcessingContext
    ) -> SurpriseOrparDecision:
        surprise_context = self._build_context(surprise)
        self._emit(
            OrparMemoryEvent.SURPRISE_CONTEXT_INJECTED,
            {
                "cycle_id": context.cycle_id,
                "focus_areas": surprise_context.focus_areas,
                "surprise_score": surprise.surprise_score,
            },
            context,
        )
        return SurpriseOrparDecision(
            type=SurpriseDecisionType.INJECT_CONTEXT,
            confidence=INJECT_CONTEXT_CONFIDENCE,
            surprise_score=surprise.surprise_score,
            surprise_context=surprise_context,
        )

    def _reconsider_plan(
        self, surprise: SurpriseDetection, context: SurpriseProcessingContext
    ) -> SurpriseOrparDecision:
        score = surprise.surprise_score
        reconsideration = PlanReconsideration(
            reason=surprise.explanation or DEFAULT_EXPLANATION,
            aspects_to_review=[*PLAN_ASPECTS.get(surprise.type, []), *COMMON_PLAN_ASPECTS],
            alternatives_to_consider=list(surprise.suggested_actions),
            severity=self._severity(score),
        )
        self._emit(
            OrparMemoryEvent.PLAN_RECONSIDERATION_TRIGGERED,
            {
                "cycle_id": context.cycle_id,
                "severity": reconsideration.severity,
                "aspects_to_review": reconsideration.aspects_to_review,
                "surprise_score": score,
            },
            context,
        )
        return SurpriseOrparDecision(
            type=SurpriseDecisionType.RECONSIDER_PLAN,
            confidence=score * PLAN_CONFIDENCE_FACTOR,
            surprise_score=score,
            plan_reconsideration=reconsideration,
        )

    @staticmethod
    def _severity(score: float) -> str:
        if score >= 0.8:
            return "high"
        elif score >= 0.6:
            return "medium"
        return "low"

    @staticmethod
    def _build_context(surprise: SurpriseDetection) -> SurpriseContext:
        return SurpriseContext(
            observation=surprise.observation,
            explanation=surprise.explanation or DEFAULT_EXPLANATION,
            violated_expectation=surprise.expectation,
            focus_areas=list(FOCUS_AREAS.get(surprise.type, DEFAULT_FOCUS_AREAS)),
            surprise_score=surprise.surprise_score,
        )

    # ------------------------------------------------------------------
    # Momentum
    # ------------------------------------------------------------------

    def _track_momentum(self, cycle_id: str, score: float) -> None:
        history = self._momentum.setdefault(cycle_id, [])
        history.append(score)
        if len(history) > MOMENTUM_WINDOW:
            self._momentum[cycle_id] = history[-MOMENTUM_WINDOW:]

    def get_momentum(self, cycle_id: str) -> float:
        """Mean of the cycle's recent surprise scores (0 if none)."""
        history = self._momentum.get(cycle_id)
        if not history:
            return 0.0
        return sum(history) / len(history)

    def clear_momentum(self, cycle_id: str) -> None:
        """Forget a cycle's surprise history."""
        self._momentum.pop(cycle_id, None)

    def has_momentum(self, cycle_id: str) -> bool:
        return cycle_id in self._momentum

    def update_thresholds(self, **overrides: float) -> SurpriseThresholds:
        """Override surprise thresholds.

        Raises:
            ValueError: If a threshold name is unknown
        """
        for name, value in overrides.items():
            if not hasattr(self.thresholds, name):
                raise ValueError(f"Unknown surprise threshold: {name}")
            setattr(self.thresholds, name, value)
        return self.thresholds

    def _emit(self, event: OrparMemoryEvent, payload: dict, context: SurpriseProcessingContext) -> None:
        self.events.emit(event, payload, agent_id=context.agent_id, channel_id=context.channel_id)
