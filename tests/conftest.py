from __future__ import annotations

import logging

import numpy as np
import pytest

from loopsmith.models import DecodedMedia

FRAME_RATE = 10.0
FRAME_SIDE = 16


@pytest.fixture(autouse=True)
def _restore_root_logging():
    """Undo CLI logging setup so handlers bound to a closed CliRunner stream don't leak between tests."""

    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _frame(value: int, accent: int | None = None) -> np.ndarray:
    frame = np.full((FRAME_SIDE, FRAME_SIDE, 3), value, dtype=np.uint8)
    if accent is not None:
        frame[0] = accent
    return frame


def near_duplicate_frames() -> list[np.ndarray]:
    """10 s at 10 fps: frames 0-19 and 81-99 look alike (similarity ~0.935), the rest is unique."""

    head = [_frame(0) for _ in range(20)]
    middle = [_frame(4 * (k + 2)) for k in range(60)]
    tail = [_frame(0, accent=40) for _ in range(20)]
    return head + middle + tail


def noise_frames(count: int = 100, seed: int = 5) -> list[np.ndarray]:
    rng = np.random.default_rng(seed)
    return [rng.integers(0, 256, size=(FRAME_SIDE, FRAME_SIDE, 3), dtype=np.uint8) for _ in range(count)]


def video_media(frames: list[np.ndarray]) -> DecodedMedia:
    return DecodedMedia(
        modality="video",
        duration_seconds=len(frames) / FRAME_RATE,
        frame_rate=FRAME_RATE,
        frames=frames,
    )


@pytest.fixture
def near_duplicate_media() -> DecodedMedia:
    return video_media(near_duplicate_frames())


@pytest.fixture
def noise_media() -> DecodedMedia:
    """Uniformly random frames: no two of them should ever look alike."""

    return video_media(noise_frames())


@pytest.fixture
def pulsing_audio() -> DecodedMedia:
    sample_rate = 8000
    t = np.arange(10 * sample_rate) / sample_rate
    envelope = 0.5 + 0.4 * np.sin(2 * np.pi * t / 2.0)
    samples = (envelope * np.sin(2 * np.pi * 220.0 * t)).astype(np.float32)
    return DecodedMedia(modality="audio", duration_seconds=10.0, sample_rate=sample_rate, samples=samples)
