from __future__ import annotations

from loopsmith.models import (
    EncodingMetrics,
    LoopPoints,
    OptimizationResult,
    QualityMetrics,
    ScoredCandidate,
    TransitionPlan,
)

ARTIFACT_BASE = {
    "none": 100.0,
    "cut": 95.0,
    "crossfade": 85.0,
    "morph": 70.0,
}
MAX_COMPRESSION_PENALTY = 30.0


def assemble_result(
    candidate: ScoredCandidate,
    plan: TransitionPlan,
    metrics: EncodingMetrics | None = None,
) -> OptimizationResult:
    """Package the chosen loop, its transition and quality metrics."""

    metrics = metrics or EncodingMetrics()
    return OptimizationResult(
        loop_points=LoopPoints(start=candidate.start_time, end=candidate.end_time),
        transition=plan,
        quality_metrics=QualityMetrics(
            seamless_score=_clamp_percent(round(candidate.score * 100)),
            artifact_rating=artifact_rating(plan, metrics.compression_ratio),
        ),
    )


def artifact_rating(plan: TransitionPlan, compression_ratio: float) -> int:
    """Higher is cleaner: blends and heavy compression both cost points."""

    penalty = min(MAX_COMPRESSION_PENALTY, 5.0 * max(0.0, compression_ratio - 1.0))
    return _clamp_percent(round(ARTIFACT_BASE[plan.type] - penalty))


def _clamp_percent(value: int) -> int:
    return max(0, min(100, int(value)))
