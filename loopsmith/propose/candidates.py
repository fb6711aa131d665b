from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

import numpy as np
from pydantic import ValidationError

from loopsmith.errors import InsufficientData, InvalidConfiguration, NoViableLoopFound
from loopsmith.models import AdvisorySuggestion, LoopCandidate, SimilarityMatrix

logger = logging.getLogger(__name__)

DURATION_TOLERANCE = 1e-9
MIN_RELAXATION_RETRIES = 3


def generate_candidates(
    matrix: SimilarityMatrix,
    suggestions: Iterable[AdvisorySuggestion | Mapping[str, Any]] | None,
    min_duration: float,
    max_duration: float,
    rate: float | None = None,
    *,
    similarity_threshold: float = 0.8,
    relaxation_step: float = 0.05,
    relaxation_retries: int = MIN_RELAXATION_RETRIES,
) -> list[LoopCandidate]:
    """Scan the similarity matrix and merge advisory hints into loop candidates.

    Pipeline:
    1) map advisory suggestions that satisfy the duration bounds (others dropped)
    2) emit every in-bounds pair at or above the similarity threshold
    3) while nothing was found, lower the threshold by ``relaxation_step``
       for up to ``relaxation_retries`` extra rounds
    """

    rate = float(rate if rate is not None else matrix.rate)
    _validate_bounds(min_duration, max_duration, rate, relaxation_retries)

    if matrix.size < 2:
        raise InsufficientData(
            f"Similarity matrix has {matrix.size} position(s); at least 2 are required.",
            diagnostics={"matrix_size": matrix.size},
        )

    advisory = _advisory_candidates(matrix, suggestions or [], min_duration, max_duration, rate)

    pair_i, pair_j = np.triu_indices(matrix.size, k=1)
    durations = (pair_j - pair_i) / rate
    in_bounds = (durations >= min_duration - DURATION_TOLERANCE) & (durations <= max_duration + DURATION_TOLERANCE)
    pair_i, pair_j = pair_i[in_bounds], pair_j[in_bounds]
    pair_similarity = matrix.values[pair_i, pair_j]

    diagnostics: dict[str, Any] = {
        "matrix_size": matrix.size,
        "in_bounds_pairs": int(len(pair_i)),
        "highest_similarity": float(pair_similarity.max()) if len(pair_similarity) else None,
        "advisory_candidates": len(advisory),
    }

    if not len(pair_i) and not advisory:
        raise InsufficientData(
            f"No interval between {min_duration}s and {max_duration}s fits in the analysed clip.",
            diagnostics=diagnostics,
        )

    thresholds = relaxation_schedule(similarity_threshold, relaxation_step, relaxation_retries)
    for attempt, threshold in enumerate(thresholds):
        selected = pair_similarity >= threshold
        algorithmic = [
            _algorithmic_candidate(int(i), int(j), float(sim), rate)
            for i, j, sim in zip(pair_i[selected], pair_j[selected], pair_similarity[selected])
        ]
        candidates = [*advisory, *algorithmic]
        if candidates:
            if attempt:
                logger.warning("Relaxed similarity threshold to %.2f to find loop candidates", threshold)
            logger.debug(
                "Generated %d candidates (%d advisory) at threshold %.2f",
                len(candidates),
                len(advisory),
                threshold,
            )
            return candidates

    diagnostics["thresholds_tried"] = thresholds
    raise NoViableLoopFound(
        f"No loop candidate reached similarity {thresholds[-1]:.2f} after {relaxation_retries} relaxation(s).",
        diagnostics=diagnostics,
    )


def relaxation_schedule(threshold: float, step: float, retries: int) -> list[float]:
    """Thresholds tried in order, e.g. 0.95 -> 0.90 -> 0.85 -> 0.80."""

    return [round(max(threshold - attempt * step, 0.0), 6) for attempt in range(retries + 1)]


def _advisory_candidates(
    matrix: SimilarityMatrix,
    suggestions: Iterable[AdvisorySuggestion | Mapping[str, Any]],
    min_duration: float,
    max_duration: float,
    rate: float,
) -> list[LoopCandidate]:
    candidates: list[LoopCandidate] = []
    for raw in suggestions:
        try:
            suggestion = raw if isinstance(raw, AdvisorySuggestion) else AdvisorySuggestion.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Dropping malformed advisory suggestion %r: %s", raw, exc)
            continue

        duration = suggestion.duration
        if duration < min_duration - DURATION_TOLERANCE or duration > max_duration + DURATION_TOLERANCE:
            logger.debug("Dropping advisory suggestion outside duration bounds: %s", suggestion)
            continue

        start_index = int(round(suggestion.start_time * rate))
        end_index = int(round(suggestion.end_time * rate))
        if end_index >= matrix.size or start_index >= end_index:
            logger.debug("Dropping advisory suggestion outside analysed clip: %s", suggestion)
            continue

        candidates.append(
            LoopCandidate(
                start_time=suggestion.start_time,
                end_time=suggestion.end_time,
                start_index=start_index,
                end_index=end_index,
                similarity=matrix.similarity(start_index, end_index),
                source="advisory",
                transition_hint=suggestion.transition_type,
                confidence=suggestion.confidence,
            )
        )
    return candidates


def _algorithmic_candidate(i: int, j: int, similarity: float, rate: float) -> LoopCandidate:
    return LoopCandidate(
        start_time=i / rate,
        end_time=j / rate,
        start_index=i,
        end_index=j,
        similarity=similarity,
        source="algorithm",
        transition_hint="cut" if similarity > 0.9 else "crossfade",
    )


def _validate_bounds(min_duration: float, max_duration: float, rate: float, relaxation_retries: int) -> None:
    if min_duration <= 0 or max_duration <= 0:
        raise InvalidConfiguration("Loop duration bounds must be positive.")
    if min_duration > max_duration:
        raise InvalidConfiguration(
            f"min_loop_duration ({min_duration}) exceeds max_loop_duration ({max_duration})."
        )
    if rate <= 0:
        raise InvalidConfiguration(f"Sample rate must be positive, got {rate}.")
    if relaxation_retries < MIN_RELAXATION_RETRIES:
        raise InvalidConfiguration(
            f"Threshold relaxation needs at least {MIN_RELAXATION_RETRIES} retries, got {relaxation_retries}."
        )
