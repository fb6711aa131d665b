from __future__ import annotations

import numpy as np
import pytest

from loopsmith.config import AnalysisSettings
from loopsmith.errors import UnsupportedModality
from loopsmith.features.audio_envelope import detect_silence, extract_audio_feature, rms_envelope, to_mono
from loopsmith.features.extractor import extract_features
from loopsmith.features.video_frames import (
    edge_energy,
    estimate_motion,
    extract_frame_features,
    frame_histogram,
    frame_thumbnail,
    sample_positions,
)
from loopsmith.models import DecodedMedia


def test_sample_positions_widens_stride_to_respect_cap() -> None:
    indices, stride = sample_positions(1000, sample_every=1, max_samples=450)

    assert stride == 3
    assert indices[:3] == [0, 3, 6]
    assert len(indices) <= 450


def test_frame_histogram_is_normalized_per_channel() -> None:
    rng = np.random.default_rng(7)
    pixels = rng.integers(0, 256, size=(12, 16, 3)).astype(np.float32)

    histogram = frame_histogram(pixels, bins=16)

    for channel in (histogram.r, histogram.g, histogram.b):
        assert channel.shape == (16,)
        assert channel.sum() == pytest.approx(1.0)


def test_frame_thumbnail_is_a_fixed_size_unit_range_sample() -> None:
    pixels = np.full((48, 64, 3), 255.0)
    pixels[:24] = 0.0

    thumbnail = frame_thumbnail(pixels)

    assert thumbnail.shape == (16, 16, 3)
    assert thumbnail[:8].max() == 0.0
    assert thumbnail[8:].min() == 1.0


def test_estimate_motion_recovers_global_translation() -> None:
    rng = np.random.default_rng(3)
    previous = rng.uniform(0, 255, size=(32, 32)).astype(np.float32)
    current = np.roll(previous, shift=(2, 3), axis=(0, 1))

    motion = estimate_motion(previous, current)

    assert (motion.y, motion.x) == (2.0, 3.0)
    assert 0.0 < motion.magnitude <= 1.0


def test_edge_energy_is_zero_for_flat_frames_and_positive_for_stripes() -> None:
    flat = np.full((8, 8), 120.0, dtype=np.float32)
    stripes = np.tile(np.array([0.0, 255.0], dtype=np.float32), (8, 4))

    assert edge_energy(flat) == 0.0
    assert 0.0 < edge_energy(stripes) <= 1.0


def test_extract_frame_features_uses_source_timestamps() -> None:
    frames = [np.full((4, 4, 3), value, dtype=np.uint8) for value in range(0, 200, 10)]

    features, stride = extract_frame_features(frames, 10.0, sample_every=2)

    assert stride == 2
    assert [feature.index for feature in features[:3]] == [0, 2, 4]
    assert features[1].timestamp == pytest.approx(0.2)
    assert features[0].motion.magnitude == 0.0


def test_to_mono_scales_integer_pcm_and_averages_channels() -> None:
    stereo = np.array([[16384, -16384], [32767, 32767]], dtype=np.int16)

    mono = to_mono(stereo)

    assert mono[0] == pytest.approx(0.0)
    assert mono[1] == pytest.approx(32767 / 32768)


def test_to_mono_centres_unsigned_pcm() -> None:
    mono = to_mono(np.array([0, 128, 255], dtype=np.uint8))

    assert mono == pytest.approx([-1.0, 0.0, 127 / 128])


def test_unsigned_pcm_at_midpoint_is_silence() -> None:
    feature = extract_audio_feature(np.full(16000, 128, dtype=np.uint8), 8000)

    assert np.all(feature.envelope == 0.0)
    assert len(feature.silence_intervals) == 1
    assert feature.silence_intervals[0].start == 0.0


def test_rms_envelope_keeps_trailing_partial_window() -> None:
    envelope = rms_envelope(np.ones(250), window_size=100)

    assert envelope.shape == (3,)
    assert envelope == pytest.approx([1.0, 1.0, 1.0])


def test_detect_silence_reports_interval_and_duration_confidence() -> None:
    sample_rate = 1000
    tone = 0.5 * np.sin(2 * np.pi * 50 * np.arange(sample_rate) / sample_rate)
    signal = np.concatenate([tone, np.zeros(sample_rate), tone])

    feature = extract_audio_feature(signal, sample_rate, window_size=100, min_silence_seconds=0.5)

    assert len(feature.silence_intervals) == 1
    silence = feature.silence_intervals[0]
    assert silence.start == pytest.approx(1.0)
    assert silence.end == pytest.approx(2.0)
    assert silence.confidence == pytest.approx(0.5)


def test_long_audio_widens_window_to_respect_cap() -> None:
    feature = extract_audio_feature(np.zeros(60 * 44100, dtype=np.float32), 44100, max_windows=450)

    assert feature.window_size == 5880
    assert len(feature.envelope) == 450
    assert feature.window_rate == pytest.approx(7.5)


def test_extract_features_caps_audio_windows_with_max_samples() -> None:
    media = DecodedMedia(
        modality="audio",
        duration_seconds=1.0,
        sample_rate=8000,
        samples=np.zeros(8000, dtype=np.float32),
    )

    features = extract_features(media, AnalysisSettings(max_samples=50, audio_window_size=100))

    assert features.audio is not None
    assert features.audio.window_size == 160
    assert len(features.audio.envelope) == 50


def test_detect_silence_ignores_short_gaps() -> None:
    envelope = np.array([0.5, 0.0, 0.0, 0.5])

    assert detect_silence(envelope, window_size=100, sample_rate=1000, min_seconds=0.5) == []


def test_extract_features_rejects_unknown_modality() -> None:
    media = DecodedMedia(modality="image", duration_seconds=1.0)

    with pytest.raises(UnsupportedModality):
        extract_features(media)


def test_extract_features_rejects_video_without_frames() -> None:
    media = DecodedMedia(modality="video", duration_seconds=1.0, frame_rate=25.0, frames=[])

    with pytest.raises(UnsupportedModality):
        extract_features(media)


def test_extract_features_keeps_both_streams_of_a_video_with_soundtrack() -> None:
    frames = [np.zeros((4, 4, 3), dtype=np.uint8) for _ in range(10)]
    media = DecodedMedia(
        modality="video",
        duration_seconds=1.0,
        frame_rate=10.0,
        sample_rate=8000,
        frames=frames,
        samples=np.zeros(8000, dtype=np.float32),
    )

    features = extract_features(media)

    assert features.frames is not None and len(features.frames) == 10
    assert features.audio is not None
    assert features.sampled_frame_rate == pytest.approx(10.0)
