from __future__ import annotations

import numpy as np
import pytest

from loopsmith.config import RankingWeights
from loopsmith.errors import InsufficientData, InvalidConfiguration
from loopsmith.models import LoopCandidate
from loopsmith.scoring.ranking import rank_candidates, score_candidate


def _candidate(start: float, end: float, similarity: float, source: str = "algorithm") -> LoopCandidate:
    return LoopCandidate(
        start_time=start,
        end_time=end,
        start_index=int(start * 10),
        end_index=int(end * 10),
        similarity=similarity,
        source=source,
    )


def test_score_combines_similarity_duration_fit_and_boost() -> None:
    scored = score_candidate(_candidate(0.0, 7.0, 0.9), ideal_duration=5.0)

    assert scored.duration_fit == pytest.approx(0.8)
    assert scored.score == pytest.approx(0.6 * 0.9 + 0.3 * 0.8)
    assert scored.source_boost == 0.0


def test_scores_stay_within_unit_interval() -> None:
    rng = np.random.default_rng(13)
    candidates = [
        _candidate(float(start), float(start + length), float(sim), source)
        for start, length, sim, source in zip(
            rng.uniform(0, 10, 50),
            rng.uniform(0.5, 30, 50),
            rng.uniform(0, 1, 50),
            rng.choice(["algorithm", "advisory"], 50),
        )
    ]
    weights = RankingWeights(similarity=0.8, duration_fit=0.4, advisory_boost=0.3)

    for scored in rank_candidates(candidates, 5.0, weights):
        assert 0.0 <= scored.score <= 1.0
        assert 0.0 <= scored.duration_fit <= 1.0


def test_ranking_is_idempotent() -> None:
    candidates = [
        _candidate(0.0, 4.0, 0.9),
        _candidate(1.0, 6.5, 0.85),
        _candidate(2.0, 5.0, 0.95, "advisory"),
        _candidate(0.5, 9.0, 0.99),
    ]

    first = rank_candidates(candidates, 5.0)
    second = rank_candidates([scored.candidate for scored in first], 5.0)

    assert [s.candidate for s in first] == [s.candidate for s in second]


def test_advisory_candidate_outranks_equal_algorithmic_candidate() -> None:
    algorithmic = _candidate(1.0, 6.0, 0.9)
    advisory = _candidate(1.0, 6.0, 0.9, "advisory")

    ranked = rank_candidates([algorithmic, advisory], 5.0)

    assert ranked[0].source == "advisory"
    assert ranked[0].score == pytest.approx(ranked[1].score + 0.1)


def test_equal_duration_deviation_ties_break_deterministically() -> None:
    four_seconds = _candidate(0.0, 4.0, 0.9)
    six_seconds = _candidate(1.0, 7.0, 0.9)

    forward = rank_candidates([four_seconds, six_seconds], 5.0)
    backward = rank_candidates([six_seconds, four_seconds], 5.0)

    assert forward[0].score == pytest.approx(forward[1].score)
    assert [s.candidate for s in forward] == [s.candidate for s in backward]
    assert forward[0].candidate == four_seconds


def test_rank_rejects_empty_input_and_bad_ideal() -> None:
    with pytest.raises(InsufficientData):
        rank_candidates([], 5.0)
    with pytest.raises(InvalidConfiguration):
        rank_candidates([_candidate(0.0, 4.0, 0.9)], 0.0)
