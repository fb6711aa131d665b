from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

import numpy as np

from loopsmith.config import AnalysisSettings
from loopsmith.errors import InsufficientData
from loopsmith.models import AudioFeature, FeatureSet, FrameFeature, SimilarityMatrix

logger = logging.getLogger(__name__)

RowFunction = Callable[[int], np.ndarray]

# mean |a - b| of two independent uniform values in [0, 1]
CHANCE_PIXEL_DISTANCE = 1.0 / 3.0


def build_similarity_matrix(features: FeatureSet, settings: AnalysisSettings | None = None) -> SimilarityMatrix:
    """Build the pairwise similarity matrix for the preferred available stream."""

    settings = settings or AnalysisSettings()
    use_video = bool(features.frames) and (settings.prefer_modality == "video" or features.audio is None)

    if use_video:
        frames = features.frames or []
        rate = features.sampled_frame_rate or 0.0
        row_fn = _video_row_function(frames, settings.similarity_weights.normalized())
        size = len(frames)
        modality = "video"
    elif features.audio is not None:
        audio = features.audio
        rate = audio.window_rate
        row_fn = _audio_row_function(audio, settings.audio_context_windows)
        size = len(audio.envelope)
        modality = "audio"
    else:
        raise InsufficientData("Feature set holds neither frame nor audio features.", diagnostics={"matrix_size": 0})

    values = _fill_upper_triangle(size, row_fn, workers=settings.matrix_workers)
    matrix = SimilarityMatrix(values=enforce_matrix_invariants(values), rate=float(rate), modality=modality)
    logger.debug("Built %s similarity matrix of size %d (rate=%.3f/s)", modality, size, matrix.rate)
    return matrix


def enforce_matrix_invariants(values: np.ndarray) -> np.ndarray:
    """Symmetrize, clip to [0, 1] and pin the diagonal to exactly 1."""

    symmetric = (values + values.T) / 2.0
    np.clip(symmetric, 0.0, 1.0, out=symmetric)
    np.fill_diagonal(symmetric, 1.0)
    return symmetric


def _fill_upper_triangle(size: int, row_fn: RowFunction, *, workers: int = 1) -> np.ndarray:
    upper = np.zeros((size, size), dtype=np.float64)
    if size == 0:
        return upper

    def fill(rows: range) -> None:
        for i in rows:
            upper[i, i:] = row_fn(i)

    if workers <= 1 or size < 2 * workers:
        fill(range(size))
    else:
        chunks = [range(start, size, workers) for start in range(workers)]
        with ThreadPoolExecutor(max_workers=workers) as executor:
            for future in [executor.submit(fill, chunk) for chunk in chunks]:
                future.result()

    mirrored = upper + np.triu(upper, k=1).T
    return mirrored


def _video_row_function(frames: list[FrameFeature], weights: tuple[float, float, float]) -> RowFunction:
    histograms = np.stack([frame.histogram.stacked().ravel() for frame in frames]) if frames else np.zeros((0, 0))
    layouts = _stack_thumbnails(frames)
    motion = np.array([frame.motion.magnitude for frame in frames], dtype=np.float64)
    edges = np.array([frame.edge_energy for frame in frames], dtype=np.float64)

    # three channel histograms, each with an L1 distance of at most 2
    max_histogram_distance = 6.0
    w_hist, w_motion, w_edges = weights

    def row(i: int) -> np.ndarray:
        hist_distance = np.abs(histograms[i:] - histograms[i]).sum(axis=1) / max_histogram_distance
        if layouts is None:
            layout_distance = np.zeros_like(hist_distance)
        else:
            pixel_distance = np.abs(layouts[i:] - layouts[i]).mean(axis=1)
            layout_distance = np.minimum(pixel_distance / CHANCE_PIXEL_DISTANCE, 1.0)
        appearance = 1.0 - np.maximum(hist_distance, layout_distance)

        # magnitudes and edge energies are already in [0, 1]
        motion_agreement = 1.0 - np.abs(motion[i:] - motion[i])
        edge_agreement = 1.0 - np.abs(edges[i:] - edges[i])

        # motion and edges only count as far as the frames look alike
        return appearance * (w_hist + w_motion * motion_agreement + w_edges * edge_agreement)

    return row


def _audio_row_function(audio: AudioFeature, context_windows: int) -> RowFunction:
    envelope = np.asarray(audio.envelope, dtype=np.float64)
    size = len(envelope)
    padded = np.full(size + context_windows, np.nan)
    padded[:size] = envelope
    contexts = np.lib.stride_tricks.sliding_window_view(padded, context_windows)[:size]
    valid = ~np.isnan(contexts)
    peak = float(envelope.max()) if size else 0.0

    def row(i: int) -> np.ndarray:
        mask = valid[i] & valid[i:]
        count = mask.sum(axis=1).astype(np.float64)
        a = np.where(mask, contexts[i], 0.0)
        b = np.where(mask, contexts[i:], 0.0)

        safe_count = np.maximum(count, 1.0)
        mean_a = a.sum(axis=1) / safe_count
        mean_b = b.sum(axis=1) / safe_count
        da = np.where(mask, a - mean_a[:, None], 0.0)
        db = np.where(mask, b - mean_b[:, None], 0.0)
        covariance = (da * db).sum(axis=1)
        variance = (da * da).sum(axis=1) * (db * db).sum(axis=1)

        flat = (variance <= 1e-18) | (count < 2)
        correlation = np.where(flat, 0.0, covariance / np.sqrt(np.where(flat, 1.0, variance)))
        correlated = (np.clip(correlation, -1.0, 1.0) + 1.0) / 2.0

        mean_abs_diff = np.abs(a - b).sum(axis=1) / safe_count
        level_match = 1.0 - np.minimum(mean_abs_diff / peak, 1.0) if peak > 0 else np.ones_like(mean_abs_diff)
        return np.where(flat, level_match, correlated)

    return row


def _stack_thumbnails(frames: list[FrameFeature]) -> np.ndarray | None:
    if not frames or any(frame.thumbnail is None for frame in frames):
        return None
    return np.stack([np.asarray(frame.thumbnail, dtype=np.float64).ravel() for frame in frames])
