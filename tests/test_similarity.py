from __future__ import annotations

import numpy as np
import pytest

from loopsmith.config import AnalysisSettings
from loopsmith.errors import InsufficientData
from loopsmith.features.extractor import extract_features
from loopsmith.models import DecodedMedia, FeatureSet
from loopsmith.scoring.similarity import build_similarity_matrix, enforce_matrix_invariants


def _random_video(frame_count: int = 24, seed: int = 11) -> DecodedMedia:
    rng = np.random.default_rng(seed)
    frames = [rng.integers(0, 256, size=(12, 12, 3), dtype=np.uint8) for _ in range(frame_count)]
    return DecodedMedia(modality="video", duration_seconds=frame_count / 12.0, frame_rate=12.0, frames=frames)


def _assert_matrix_invariants(values: np.ndarray) -> None:
    assert np.array_equal(values, values.T)
    assert np.all(np.diag(values) == 1.0)
    assert values.min() >= 0.0
    assert values.max() <= 1.0


def test_video_matrix_is_symmetric_bounded_with_unit_diagonal() -> None:
    features = extract_features(_random_video())

    matrix = build_similarity_matrix(features)

    assert matrix.modality == "video"
    assert matrix.size == 24
    assert matrix.rate == pytest.approx(12.0)
    _assert_matrix_invariants(matrix.values)


def test_audio_matrix_is_symmetric_bounded_with_unit_diagonal(pulsing_audio: DecodedMedia) -> None:
    settings = AnalysisSettings(audio_window_size=400)
    features = extract_features(pulsing_audio, settings)

    matrix = build_similarity_matrix(features, settings)

    assert matrix.modality == "audio"
    assert matrix.size == 200
    assert matrix.rate == pytest.approx(20.0)
    _assert_matrix_invariants(matrix.values)


def test_audio_matrix_scores_one_period_apart_above_half_period(pulsing_audio: DecodedMedia) -> None:
    settings = AnalysisSettings(audio_window_size=400)
    matrix = build_similarity_matrix(extract_features(pulsing_audio, settings), settings)

    # 2 s modulation period at 20 windows per second
    assert matrix.similarity(10, 50) > matrix.similarity(10, 30)


def test_parallel_rows_match_sequential_rows() -> None:
    features = extract_features(_random_video(frame_count=30))

    sequential = build_similarity_matrix(features, AnalysisSettings(matrix_workers=1))
    parallel = build_similarity_matrix(features, AnalysisSettings(matrix_workers=3))

    assert np.allclose(sequential.values, parallel.values)


def test_prefer_audio_uses_soundtrack_of_video(pulsing_audio: DecodedMedia) -> None:
    media = _random_video(frame_count=12)
    media.samples = pulsing_audio.samples
    media.sample_rate = pulsing_audio.sample_rate
    settings = AnalysisSettings(prefer_modality="audio", audio_window_size=400)

    matrix = build_similarity_matrix(extract_features(media, settings), settings)

    assert matrix.modality == "audio"


def test_empty_feature_set_is_insufficient_data() -> None:
    with pytest.raises(InsufficientData):
        build_similarity_matrix(FeatureSet())


def test_enforce_matrix_invariants_repairs_asymmetry_and_range() -> None:
    raw = np.array([[0.4, 1.3], [0.9, -0.2]])

    repaired = enforce_matrix_invariants(raw)

    _assert_matrix_invariants(repaired)
    assert repaired[0, 1] == pytest.approx(1.0)


def test_unrelated_noise_frames_never_look_alike(noise_media: DecodedMedia) -> None:
    matrix = build_similarity_matrix(extract_features(noise_media))

    off_diagonal = matrix.values[~np.eye(matrix.size, dtype=bool)]
    assert off_diagonal.max() < 0.3


def test_static_clip_is_uniformly_similar() -> None:
    frame = np.random.default_rng(2).integers(0, 256, size=(16, 16, 3), dtype=np.uint8)
    frames = [frame.copy() for _ in range(20)]
    media = DecodedMedia(modality="video", duration_seconds=2.0, frame_rate=10.0, frames=frames)

    matrix = build_similarity_matrix(extract_features(media))

    assert np.allclose(matrix.values, 1.0)


def test_rearranged_pixels_with_equal_histograms_are_told_apart() -> None:
    left = np.zeros((16, 16, 3), dtype=np.uint8)
    left[:, :8] = 255
    right = left[:, ::-1].copy()
    media = DecodedMedia(modality="video", duration_seconds=0.2, frame_rate=10.0, frames=[left, right])

    matrix = build_similarity_matrix(extract_features(media))

    assert matrix.similarity(0, 1) == pytest.approx(0.0)


def test_near_duplicate_head_and_tail_score_high(near_duplicate_media: DecodedMedia) -> None:
    matrix = build_similarity_matrix(extract_features(near_duplicate_media))

    assert matrix.similarity(19, 81) == pytest.approx(0.9354, abs=1e-3)
    assert matrix.similarity(10, 50) < 0.5
