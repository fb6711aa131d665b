from __future__ import annotations

import math
from typing import Sequence

import numpy as np

from loopsmith.models import ColorHistogram, FrameFeature, MotionVector

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float32)
MAX_GRADIENT = 255.0 * math.sqrt(2.0)
MOTION_ANALYSIS_SIDE = 160
THUMBNAIL_SIDE = 16


def extract_frame_features(
    frames: Sequence[np.ndarray],
    frame_rate: float,
    *,
    sample_every: int = 1,
    max_samples: int = 450,
    histogram_bins: int = 32,
) -> tuple[list[FrameFeature], int]:
    """Compute histogram, edge and motion descriptors for sampled frames.

    Returns the features and the effective sampling stride (in source frames).
    """

    indices, stride = sample_positions(len(frames), sample_every=sample_every, max_samples=max_samples)

    features: list[FrameFeature] = []
    prev_luma: np.ndarray | None = None
    for index in indices:
        pixels = _as_float_pixels(frames[index])
        luma = to_luma(pixels)

        motion = MotionVector(0.0, 0.0, 0.0) if prev_luma is None else estimate_motion(prev_luma, luma)
        features.append(
            FrameFeature(
                index=index,
                timestamp=index / frame_rate,
                histogram=frame_histogram(pixels, bins=histogram_bins),
                motion=motion,
                edge_energy=edge_energy(luma),
                thumbnail=frame_thumbnail(pixels),
            )
        )
        prev_luma = luma

    return features, stride


def sample_positions(frame_count: int, *, sample_every: int = 1, max_samples: int = 450) -> tuple[list[int], int]:
    """Pick evenly strided frame indices, widening the stride to respect the cap."""

    if frame_count <= 0:
        return [], max(sample_every, 1)

    stride = max(sample_every, 1)
    if max_samples > 0:
        stride = max(stride, math.ceil(frame_count / max_samples))
    return list(range(0, frame_count, stride)), stride


def frame_histogram(pixels: np.ndarray, bins: int = 32) -> ColorHistogram:
    if pixels.ndim == 2:
        channel = _normalized_histogram(pixels, bins)
        return ColorHistogram(r=channel, g=channel.copy(), b=channel.copy())

    return ColorHistogram(
        r=_normalized_histogram(pixels[..., 0], bins),
        g=_normalized_histogram(pixels[..., 1], bins),
        b=_normalized_histogram(pixels[..., 2], bins),
    )


def frame_thumbnail(pixels: np.ndarray, side: int = THUMBNAIL_SIDE) -> np.ndarray:
    """Nearest-neighbour ``side`` x ``side`` sample of the frame, scaled to [0, 1]."""

    rows = (np.arange(side) * pixels.shape[0]) // side
    cols = (np.arange(side) * pixels.shape[1]) // side
    return pixels[np.ix_(rows, cols)] / 255.0


def to_luma(pixels: np.ndarray) -> np.ndarray:
    if pixels.ndim == 2:
        return pixels.astype(np.float32, copy=False)
    return pixels[..., :3].astype(np.float32, copy=False) @ LUMA_WEIGHTS


def edge_energy(luma: np.ndarray) -> float:
    """Mean gradient magnitude of the luma plane, scaled to [0, 1]."""

    if luma.shape[0] < 2 or luma.shape[1] < 2:
        return 0.0

    gx = np.diff(luma, axis=1)[:-1, :]
    gy = np.diff(luma, axis=0)[:, :-1]
    magnitude = np.sqrt(np.square(gx) + np.square(gy))
    return float(min(float(np.mean(magnitude)) / MAX_GRADIENT, 1.0))


def estimate_motion(prev_luma: np.ndarray, luma: np.ndarray) -> MotionVector:
    """Global motion between two luma planes.

    ``magnitude`` is the mean absolute difference scaled to [0, 1]; ``x``/``y``
    are the translation (source pixels) found by phase correlation.
    """

    if prev_luma.shape != luma.shape:
        raise ValueError("Consecutive frames must share the same dimensions.")

    magnitude = float(np.mean(np.abs(luma - prev_luma)) / 255.0)

    step = max(1, math.ceil(max(luma.shape) / MOTION_ANALYSIS_SIDE))
    a = prev_luma[::step, ::step]
    b = luma[::step, ::step]
    dy, dx = _phase_correlation(a, b)

    return MotionVector(x=float(dx * step), y=float(dy * step), magnitude=min(magnitude, 1.0))


def _phase_correlation(prev: np.ndarray, current: np.ndarray) -> tuple[int, int]:
    height, width = prev.shape
    cross_power = np.fft.fft2(current) * np.conj(np.fft.fft2(prev))
    cross_power /= np.abs(cross_power) + 1e-9
    response = np.fft.ifft2(cross_power).real

    peak_y, peak_x = np.unravel_index(int(np.argmax(response)), response.shape)
    if peak_y > height // 2:
        peak_y -= height
    if peak_x > width // 2:
        peak_x -= width
    return int(peak_y), int(peak_x)


def _normalized_histogram(channel: np.ndarray, bins: int) -> np.ndarray:
    counts, _ = np.histogram(channel, bins=bins, range=(0.0, 256.0))
    total = counts.sum()
    if total == 0:
        return np.full(bins, 1.0 / bins)
    return counts.astype(np.float64) / float(total)


def _as_float_pixels(frame: np.ndarray) -> np.ndarray:
    pixels = np.asarray(frame)
    if pixels.ndim not in (2, 3):
        raise ValueError(f"Frames must be HxW or HxWxC arrays, got shape {pixels.shape}.")
    if pixels.ndim == 3 and pixels.shape[2] < 3:
        pixels = pixels[..., 0]

    if np.issubdtype(pixels.dtype, np.floating) and pixels.size and float(pixels.max()) <= 1.0:
        return pixels.astype(np.float32) * 255.0
    return pixels.astype(np.float32)
