from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Sequence

import numpy as np
from pydantic import BaseModel, Field, field_validator, model_validator

Modality = Literal["video", "audio"]
CandidateSource = Literal["algorithm", "advisory"]
TransitionType = Literal["cut", "crossfade", "morph", "none"]
BlendUnit = Literal["frames", "samples"]

TRANSITION_TYPES: frozenset[str] = frozenset({"cut", "crossfade", "morph", "none"})


@dataclass(slots=True, frozen=True)
class ColorHistogram:
    """Per-channel L1-normalized color histogram of one frame."""

    r: np.ndarray
    g: np.ndarray
    b: np.ndarray

    def stacked(self) -> np.ndarray:
        return np.stack([self.r, self.g, self.b])


@dataclass(slots=True, frozen=True)
class MotionVector:
    x: float
    y: float
    magnitude: float


@dataclass(slots=True, frozen=True)
class FrameFeature:
    """Visual descriptors for one sampled frame."""

    index: int
    timestamp: float
    histogram: ColorHistogram
    motion: MotionVector
    edge_energy: float = 0.0
    thumbnail: np.ndarray | None = None


@dataclass(slots=True, frozen=True)
class SilenceInterval:
    start: float
    end: float
    confidence: float

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(slots=True)
class AudioFeature:
    """RMS envelope and silence map for one analysed clip."""

    sample_rate: int
    channel_count: int
    window_size: int
    envelope: np.ndarray
    silence_intervals: list[SilenceInterval] = field(default_factory=list)

    @property
    def window_rate(self) -> float:
        return self.sample_rate / self.window_size


@dataclass(slots=True)
class FeatureSet:
    """Output of feature extraction; a clip with both streams carries both."""

    frames: list[FrameFeature] | None = None
    audio: AudioFeature | None = None
    frame_rate: float | None = None
    sample_stride: int = 1
    duration_seconds: float = 0.0

    @property
    def sampled_frame_rate(self) -> float | None:
        if self.frame_rate is None:
            return None
        return self.frame_rate / max(self.sample_stride, 1)


@dataclass(slots=True)
class SimilarityMatrix:
    """Pairwise similarity over sampled positions (frames or audio windows).

    ``rate`` is the number of positions per second, so ``(j - i) / rate`` is
    the duration of the interval between positions ``i`` and ``j``.
    """

    values: np.ndarray
    rate: float
    modality: Modality

    @property
    def size(self) -> int:
        return int(self.values.shape[0])

    def similarity(self, i: int, j: int) -> float:
        return float(self.values[i, j])


@dataclass(slots=True, frozen=True)
class LoopCandidate:
    """A loop interval proposed by the matrix scan or by an advisory source."""

    start_time: float
    end_time: float
    start_index: int
    end_index: int
    similarity: float
    source: CandidateSource = "algorithm"
    transition_hint: TransitionType | None = None
    confidence: float | None = None

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


@dataclass(slots=True, frozen=True)
class ScoredCandidate:
    """Ranked candidate with an explainable score breakdown."""

    candidate: LoopCandidate
    score: float
    similarity_component: float
    duration_fit: float
    source_boost: float
    duration_deviation: float

    @property
    def start_time(self) -> float:
        return self.candidate.start_time

    @property
    def end_time(self) -> float:
        return self.candidate.end_time

    @property
    def duration(self) -> float:
        return self.candidate.duration

    @property
    def similarity(self) -> float:
        return self.candidate.similarity

    @property
    def source(self) -> CandidateSource:
        return self.candidate.source

    def to_dict(self) -> dict[str, Any]:
        return {
            **asdict(self.candidate),
            "duration": round(self.duration, 6),
            "score": self.score,
            "duration_fit": self.duration_fit,
            "source_boost": self.source_boost,
        }


@dataclass(slots=True, frozen=True)
class TransitionPlan:
    """How the loop boundary is joined.

    ``blend_unit_count`` counts frames for video and samples for audio.
    ``duration`` is zero exactly when ``type`` is ``cut`` or ``none``.
    """

    type: TransitionType
    duration: float
    blend_unit_count: int
    unit: BlendUnit = "frames"

    def __post_init__(self) -> None:
        if self.type not in TRANSITION_TYPES:
            raise ValueError(f"Unknown transition type '{self.type}'.")
        if self.duration < 0 or self.blend_unit_count < 0:
            raise ValueError("Transition duration and blend unit count must be non-negative.")
        if (self.duration == 0) != (self.type in {"cut", "none"}):
            raise ValueError("Transition duration must be zero exactly for cut/none transitions.")

    @property
    def is_blend(self) -> bool:
        return self.type in {"crossfade", "morph"}


@dataclass(slots=True, frozen=True)
class QualityMetrics:
    seamless_score: int
    artifact_rating: int


@dataclass(slots=True, frozen=True)
class LoopPoints:
    start: float
    end: float


@dataclass(slots=True, frozen=True)
class OptimizationResult:
    """Terminal output of one optimization run."""

    loop_points: LoopPoints
    transition: TransitionPlan
    quality_metrics: QualityMetrics

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class DecodedMedia:
    """Decoder output handed to the core.

    Video carries ``frames`` (HxWx3 RGB or HxW gray arrays) and ``frame_rate``;
    audio carries ``samples`` shaped ``(n,)`` or ``(n, channels)`` and
    ``sample_rate``. A video with a soundtrack may carry both.
    """

    modality: str
    duration_seconds: float
    frame_rate: float | None = None
    sample_rate: int | None = None
    frames: Sequence[np.ndarray] | None = None
    samples: np.ndarray | None = None
    source_path: str | None = None


@dataclass(slots=True, frozen=True)
class EncodingRequest:
    """One loop to render.

    ``cancel_event`` is set once the caller stops waiting; encoders should
    stop and remove partial output when they see it.
    """

    loop_start: float
    loop_end: float
    transition_plan: TransitionPlan
    cancel_event: threading.Event | None = field(default=None, compare=False)


@dataclass(slots=True, frozen=True)
class EncodingMetrics:
    compression_ratio: float = 1.0
    file_size_bytes: int = 0
    output_path: str | None = None


class AdvisorySuggestion(BaseModel):
    """Untrusted loop-point hint from an external advisory source."""

    start_time: float = Field(ge=0.0)
    end_time: float
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    transition_type: TransitionType | None = None

    @field_validator("transition_type", mode="before")
    @classmethod
    def _normalize_transition_type(cls, value: Any) -> Any:
        if value is None:
            return None
        normalized = str(value).lower().strip()
        return normalized if normalized in TRANSITION_TYPES else None

    @model_validator(mode="after")
    def _check_interval(self) -> "AdvisorySuggestion":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be greater than start_time.")
        return self

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time
