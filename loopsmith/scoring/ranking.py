from __future__ import annotations

from typing import Sequence

from loopsmith.config import RankingWeights
from loopsmith.errors import InsufficientData, InvalidConfiguration
from loopsmith.models import LoopCandidate, ScoredCandidate

# advisory candidates win ties over algorithmic ones
SOURCE_PREFERENCE = {"advisory": 0, "algorithm": 1}


def score_candidate(
    candidate: LoopCandidate,
    ideal_duration: float,
    weights: RankingWeights | None = None,
) -> ScoredCandidate:
    """Score one candidate and keep the per-term breakdown."""

    weights = weights or RankingWeights()
    deviation = abs(candidate.duration - ideal_duration)
    duration_fit = max(0.0, 1.0 - deviation / (2.0 * ideal_duration))
    similarity = _clamp(candidate.similarity)
    boost = weights.advisory_boost if candidate.source == "advisory" else 0.0

    similarity_component = weights.similarity * similarity
    score = _clamp(similarity_component + weights.duration_fit * duration_fit + boost)

    return ScoredCandidate(
        candidate=candidate,
        score=score,
        similarity_component=similarity_component,
        duration_fit=duration_fit,
        source_boost=boost,
        duration_deviation=deviation,
    )


def rank_candidates(
    candidates: Sequence[LoopCandidate],
    ideal_duration: float,
    weights: RankingWeights | None = None,
) -> list[ScoredCandidate]:
    """Score candidates and order them best-first with deterministic tie-breakers."""

    if not candidates:
        raise InsufficientData("No loop candidates to rank.", diagnostics={"candidate_count": 0})
    if ideal_duration <= 0:
        raise InvalidConfiguration(f"ideal_duration must be positive, got {ideal_duration}.")

    scored = [score_candidate(candidate, ideal_duration, weights) for candidate in candidates]
    return sorted(scored, key=_ranking_key)


def _ranking_key(scored: ScoredCandidate) -> tuple[float, float, int, float, float, float]:
    return (
        -scored.score,
        -scored.similarity,
        SOURCE_PREFERENCE.get(scored.source, len(SOURCE_PREFERENCE)),
        scored.duration_deviation,
        scored.start_time,
        scored.end_time,
    )


def _clamp(value: float, minimum: float = 0.0, maximum: float = 1.0) -> float:
    return max(minimum, min(maximum, value))
