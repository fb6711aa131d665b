from __future__ import annotations

import math

import numpy as np

from loopsmith.models import AudioFeature, SilenceInterval


def extract_audio_feature(
    samples: np.ndarray,
    sample_rate: int,
    *,
    window_size: int = 1024,
    max_windows: int | None = None,
    silence_threshold_db: float = -50.0,
    min_silence_seconds: float = 0.5,
) -> AudioFeature:
    """Window the signal, compute the RMS envelope and detect silences.

    ``max_windows`` caps the envelope length by widening the window, the
    same way video sampling widens its stride.
    """

    channel_count = 1 if samples.ndim == 1 else int(samples.shape[1])
    mono = to_mono(samples)
    window_size = effective_window_size(len(mono), window_size, max_windows)
    envelope = rms_envelope(mono, window_size=window_size)
    silences = detect_silence(
        envelope,
        window_size=window_size,
        sample_rate=sample_rate,
        threshold_db=silence_threshold_db,
        min_seconds=min_silence_seconds,
    )

    return AudioFeature(
        sample_rate=int(sample_rate),
        channel_count=channel_count,
        window_size=window_size,
        envelope=envelope,
        silence_intervals=silences,
    )


def effective_window_size(sample_count: int, window_size: int, max_windows: int | None = None) -> int:
    if max_windows is None or max_windows <= 0:
        return window_size
    return max(window_size, math.ceil(sample_count / max_windows))


def to_mono(samples: np.ndarray) -> np.ndarray:
    """Mix down to float mono in [-1, 1]; unsigned PCM is centred first."""

    data = np.asarray(samples)
    if np.issubdtype(data.dtype, np.unsignedinteger):
        midpoint = (float(np.iinfo(data.dtype).max) + 1.0) / 2.0
        data = (data.astype(np.float64) - midpoint) / midpoint
    elif np.issubdtype(data.dtype, np.integer):
        scale = float(np.iinfo(data.dtype).max) + 1.0
        data = data.astype(np.float64) / scale
    else:
        data = data.astype(np.float64)

    if data.ndim == 2:
        data = data.mean(axis=1)
    elif data.ndim != 1:
        raise ValueError(f"Audio samples must be shaped (n,) or (n, channels), got {data.shape}.")
    return data


def rms_envelope(mono: np.ndarray, window_size: int = 1024) -> np.ndarray:
    """RMS per fixed window; a trailing partial window is kept."""

    if len(mono) == 0:
        return np.zeros(0, dtype=np.float64)

    window_count = int(np.ceil(len(mono) / window_size))
    padded = np.zeros(window_count * window_size, dtype=np.float64)
    padded[: len(mono)] = mono
    squares = np.square(padded).reshape(window_count, window_size)

    lengths = np.full(window_count, window_size, dtype=np.float64)
    lengths[-1] = len(mono) - (window_count - 1) * window_size
    return np.sqrt(squares.sum(axis=1) / lengths)


def detect_silence(
    envelope: np.ndarray,
    *,
    window_size: int,
    sample_rate: int,
    threshold_db: float = -50.0,
    min_seconds: float = 0.5,
) -> list[SilenceInterval]:
    """Find runs of windows quieter than ``threshold_db`` dBFS.

    Confidence grows with duration and saturates at two seconds of silence.
    """

    if len(envelope) == 0 or sample_rate <= 0:
        return []

    threshold = 10.0 ** (threshold_db / 20.0)
    quiet = envelope < threshold
    window_seconds = window_size / float(sample_rate)

    silences: list[SilenceInterval] = []
    run_start: int | None = None
    for idx, is_quiet in enumerate([*quiet.tolist(), False]):
        if is_quiet and run_start is None:
            run_start = idx
            continue
        if is_quiet or run_start is None:
            continue

        start = run_start * window_seconds
        end = idx * window_seconds
        run_start = None
        duration = end - start
        if duration < min_seconds:
            continue
        silences.append(
            SilenceInterval(
                start=round(start, 6),
                end=round(end, 6),
                confidence=min(1.0, duration / 2.0),
            )
        )

    return silences
