from __future__ import annotations

import logging

import numpy as np

from loopsmith.config import AnalysisSettings
from loopsmith.errors import UnsupportedModality
from loopsmith.features.audio_envelope import extract_audio_feature
from loopsmith.features.video_frames import extract_frame_features
from loopsmith.models import DecodedMedia, FeatureSet

logger = logging.getLogger(__name__)


def extract_features(media: DecodedMedia, settings: AnalysisSettings | None = None) -> FeatureSet:
    """Turn a decoded, modality-tagged buffer into per-position descriptors."""

    settings = settings or AnalysisSettings()
    modality = str(media.modality).lower().strip()
    if modality not in {"video", "audio"}:
        raise UnsupportedModality(
            f"Unsupported media modality '{media.modality}'. Expected video or audio.",
            diagnostics={"modality": media.modality},
        )

    frame_count = len(media.frames) if media.frames is not None else 0
    has_video = frame_count > 0 and float(media.frame_rate or 0) > 0
    has_audio = media.samples is not None and len(media.samples) > 0 and int(media.sample_rate or 0) > 0

    if modality == "video" and not has_video:
        raise UnsupportedModality(
            "Video input carries no decodable frames or frame rate.",
            diagnostics={"frame_count": frame_count, "frame_rate": media.frame_rate},
        )
    if modality == "audio" and not has_audio:
        raise UnsupportedModality(
            "Audio input carries no decodable samples or sample rate.",
            diagnostics={"sample_rate": media.sample_rate},
        )

    feature_set = FeatureSet(duration_seconds=float(media.duration_seconds))

    if has_video:
        frames, stride = extract_frame_features(
            media.frames,
            float(media.frame_rate),
            sample_every=settings.sample_every,
            max_samples=settings.max_samples,
            histogram_bins=settings.histogram_bins,
        )
        feature_set.frames = frames
        feature_set.frame_rate = float(media.frame_rate)
        feature_set.sample_stride = stride
        logger.debug("Extracted %d frame features (stride=%d)", len(frames), stride)

    if has_audio:
        feature_set.audio = extract_audio_feature(
            np.asarray(media.samples),
            int(media.sample_rate),
            window_size=settings.audio_window_size,
            max_windows=settings.max_samples,
            silence_threshold_db=settings.silence_threshold_db,
            min_silence_seconds=settings.min_silence_seconds,
        )
        logger.debug(
            "Extracted audio envelope with %d windows of %d samples and %d silence intervals",
            len(feature_set.audio.envelope),
            feature_set.audio.window_size,
            len(feature_set.audio.silence_intervals),
        )

    return feature_set
