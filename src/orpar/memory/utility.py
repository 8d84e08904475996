"""Utility-aware memory ranking.

Blends semantic similarity with learned Q-values:

    final = (1 - lambda) * norm(similarity) + lambda * norm(q_value)

Lambda trades exploration (low, trust similarity) against exploitation
(high, trust memories that paid off before). Each ORPAR phase has its
own default lambda.

With Q-value learning disabled, ranking falls back to raw similarity.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any

from orpar.memory.config import DEFAULT_PHASE_LAMBDAS, QValueConfig, check_unit_interval
from orpar.memory.normalization import NormalizationMethod, normalize
from orpar.memory.qvalues import QValueStore
from orpar.phases import OrparPhase

logger = logging.getLogger(__name__)


@dataclass
class MemoryCandidate:
    """A memory returned by similarity search, awaiting utility ranking.

    If `q_value` is None it is looked up in the Q-value store.
    """

    memory_id: str
    similarity: float
    q_value: float | None = None
    content: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ScoreBreakdown:
    """Components of a blended score."""

    normalized_similarity: float
    normalized_q_value: float
    lambda_: float
    raw_similarity: float
    raw_q_value: float

    def to_dict(self) -> dict[str, float]:
        """Serialize to dictionary."""
        return {
            "normalized_similarity": self.normalized_similarity,
            "normalized_q_value": self.normalized_q_value,
            "lambda": self.lambda_,
            "raw_similarity": self.raw_similarity,
            "raw_q_value": self.raw_q_value,
        }


@dataclass
class ScoredMemory:
    """A ranked candidate."""

    memory_id: str
    final_score: float
    similarity: float
    q_value: float
    content: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    breakdown: ScoreBreakdown | None = None


@dataclass
class ScoringStats:
    """Bookkeeping for one scoring call."""

    candidates_considered: int
    results_returned: int
    lambda_used: float
    scoring_time_ms: float


@dataclass
class ScoringResult:
    """Ranked memories plus stats."""

    results: list[ScoredMemory]
    stats: ScoringStats


@dataclass
class ScoringOptions:
    """Per-call overrides for scoring."""

    lambda_: float | None = None
    phase: OrparPhase | None = None
    max_results: int | None = None
    normalization: NormalizationMethod | None = None
    include_breakdown: bool = False


class UtilityScorer:
    """Ranks memory candidates by blended similarity and utility."""

    def __init__(
        self,
        config: QValueConfig | None = None,
        q_store: QValueStore | None = None,
    ):
        """Initialize the scorer.

        Args:
            config: Q-value configuration (shared with the Q-value store)
            q_store: Source of Q-values for candidates that carry none
        """
        self.config = config or (q_store.config if q_store else QValueConfig())
        self.q_store = q_store

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def score_memories(
        self,
        query: str,
        candidates: list[MemoryCandidate],
        options: ScoringOptions | None = None,
    ) -> ScoringResult:
        """Rank candidates for a query.

        Args:
            query: Query text (used for logging only; similarity is precomputed)
            candidates: Memories with similarity scores
            options: Lambda, phase, result count and normalization overrides

        Returns:
            ScoringResult sorted by descending final score
        """
        start = time.perf_counter()
        options = options or ScoringOptions()
        max_results = options.max_results or self.config.max_results

        if not self.enabled:
            return self._passthrough(candidates, max_results, start)

        if not candidates:
            return ScoringResult(
                results=[],
                stats=ScoringStats(0, 0, self._resolve_lambda(options), 0.0),
            )

        lambda_ = self._resolve_lambda(options)
        method = options.normalization or self.config.normalization

        pool = sorted(candidates, key=lambda c: c.similarity, reverse=True)
        pool = pool[: self.config.max_candidates]

        similarities = [c.similarity for c in pool]
        q_values = [self._candidate_q_value(c) for c in pool]
        norm_sim = normalize(similarities, method)
        norm_q = normalize(q_values, method)

        scored: list[ScoredMemory] = []
        for i, candidate in enumerate(pool):
            final = (1 - lambda_) * float(norm_sim[i]) + lambda_ * float(norm_q[i])
            breakdown = None
            if options.include_breakdown:
                breakdown = ScoreBreakdown(
                    normalized_similarity=float(norm_sim[i]),
                    normalized_q_value=float(norm_q[i]),
                    lambda_=lambda_,
                    raw_similarity=candidate.similarity,
                    raw_q_value=q_values[i],
                )
            scored.append(
                ScoredMemory(
                    memory_id=candidate.memory_id,
                    final_score=final,
                    similarity=candidate.similarity,
                    q_value=q_values[i],
                    content=candidate.content,
                    metadata=candidate.metadata,
                    breakdown=breakdown,
                )
            )

        scored.sort(key=lambda s: s.final_score, reverse=True)
        results = scored[:max_results]

        logger.debug(
            f"Scored {len(pool)} candidates for '{query[:50]}' with lambda={lambda_}"
        )
        return ScoringResult(
            results=results,
            stats=ScoringStats(
                candidates_considered=len(pool),
                results_returned=len(results),
                lambda_used=lambda_,
                scoring_time_ms=(time.perf_counter() - start) * 1000,
            ),
        )

    def score_for_phase(
        self,
        query: str,
        candidates: list[MemoryCandidate],
        phase: OrparPhase | str,
        options: ScoringOptions | None = None,
    ) -> ScoringResult:
        """Rank candidates using the phase's lambda."""
        options = replace(options or ScoringOptions(), phase=OrparPhase(phase), lambda_=None)
        return self.score_memories(query, candidates, options)

    def _passthrough(
        self, candidates: list[MemoryCandidate], max_results: int, start: float
    ) -> ScoringResult:
        ranked = sorted(candidates, key=lambda c: c.similarity, reverse=True)[:max_results]
        results = [
            ScoredMemory(
                memory_id=c.memory_id,
                final_score=c.similarity,
                similarity=c.similarity,
                q_value=c.q_value if c.q_value is not None else self.config.default_q_value,
                content=c.content,
                metadata=c.metadata,
            )
            for c in ranked
        ]
        return ScoringResult(
            results=results,
            stats=ScoringStats(
                candidates_considered=len(candidates),
                results_returned=len(results),
                lambda_used=0.0,
                scoring_time_ms=(time.perf_counter() - start) * 1000,
            ),
        )

    def _candidate_q_value(self, candidate: MemoryCandidate) -> float:
        if candidate.q_value is not None:
            return candidate.q_value
        if self.q_store is not None:
            return self.q_store.get_q_value(candidate.memory_id)
        return self.config.default_q_value

    def _resolve_lambda(self, options: ScoringOptions) -> float:
        if options.lambda_ is not None:
            return options.lambda_
        if options.phase is not None:
            return self.get_lambda(options.phase)
        return self.config.lambda_default

    # ------------------------------------------------------------------
    # Lambda management
    # ------------------------------------------------------------------

    def get_lambda(self, phase: OrparPhase | str | None = None) -> float:
        """Get the lambda for a phase, or the default lambda."""
        if phase is None:
            return self.config.lambda_default
        return self.config.phase_lambdas.get(OrparPhase(phase), self.config.lambda_default)

    def set_lambda(self, phase: OrparPhase | str, value: float) -> None:
        """Set a phase's lambda.

        Raises:
            ValueError: If value is outside [0, 1]
        """
        check_unit_interval("lambda", value)
        self.config.phase_lambdas[OrparPhase(phase)] = value
        logger.info(f"Set lambda for {OrparPhase(phase).value} to {value}")

    def get_phase_lambdas(self) -> dict[OrparPhase, float]:
        return dict(self.config.phase_lambdas)

    def reset_lambdas(self) -> None:
        """Restore the default per-phase lambdas."""
        self.config.phase_lambdas = dict(DEFAULT_PHASE_LAMBDAS)
