from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from loopsmith.errors import InvalidConfiguration
from loopsmith.models import TransitionType

DEFAULT_CONFIG_PATH = Path("configs/default.yaml")
ENV_PREFIX = "LOOPSMITH_"
OutputFormat = Literal["mp4", "webm", "gif", "mp3", "wav"]


class SimilarityWeights(BaseModel):
    histogram: float = Field(default=0.4, ge=0.0)
    motion: float = Field(default=0.3, ge=0.0)
    edges: float = Field(default=0.3, ge=0.0)

    @model_validator(mode="after")
    def _check_total(self) -> "SimilarityWeights":
        if self.histogram + self.motion + self.edges <= 0:
            raise ValueError("At least one similarity weight must be positive.")
        return self

    def normalized(self) -> tuple[float, float, float]:
        total = self.histogram + self.motion + self.edges
        return self.histogram / total, self.motion / total, self.edges / total


class AnalysisSettings(BaseModel):
    sample_every: int = Field(default=1, ge=1)
    max_samples: int = Field(default=450, ge=2)
    histogram_bins: int = Field(default=32, ge=2, le=256)
    audio_window_size: int = Field(default=1024, ge=16)
    audio_context_windows: int = Field(default=8, ge=2)
    silence_threshold_db: float = -50.0
    min_silence_seconds: float = Field(default=0.5, gt=0.0)
    similarity_weights: SimilarityWeights = Field(default_factory=SimilarityWeights)
    matrix_workers: int = Field(default=1, ge=1)
    prefer_modality: Literal["video", "audio"] = "video"


class CandidateSettings(BaseModel):
    relaxation_step: float = Field(default=0.05, gt=0.0, le=1.0)
    relaxation_retries: int = Field(default=3, ge=3)


class RankingWeights(BaseModel):
    similarity: float = Field(default=0.6, ge=0.0)
    duration_fit: float = Field(default=0.3, ge=0.0)
    advisory_boost: float = Field(default=0.1, ge=0.0)


class TransitionSettings(BaseModel):
    allow_cut_fallback: bool = True


class OptimizeOptions(BaseModel):
    """Per-request loop constraints, validated before any analysis starts."""

    min_loop_duration: float = Field(default=2.0, gt=0.0)
    max_loop_duration: float = Field(default=15.0, gt=0.0)
    ideal_duration: float = Field(default=5.0, gt=0.0)
    similarity_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    preferred_transition: TransitionType | None = None

    @field_validator("preferred_transition", mode="before")
    @classmethod
    def _normalize_transition(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.lower().strip()
            return value or None
        return value

    @model_validator(mode="after")
    def _check_bounds(self) -> "OptimizeOptions":
        if self.min_loop_duration > self.max_loop_duration:
            raise ValueError(
                f"min_loop_duration ({self.min_loop_duration}) exceeds max_loop_duration ({self.max_loop_duration})."
            )
        if not self.min_loop_duration <= self.ideal_duration <= self.max_loop_duration:
            raise ValueError("ideal_duration must lie within [min_loop_duration, max_loop_duration].")
        return self


class AdvisorySettings(BaseModel):
    enabled: bool = False
    provider: str = "ollama"
    model: str = "qwen2.5:7b-instruct-q4_K_M"
    endpoint: str = "http://localhost:11434"
    timeout_seconds: int = 45
    max_retries: int = Field(default=2, ge=0)
    max_suggestions: int = Field(default=5, ge=1)


class EncoderSettings(BaseModel):
    ffmpeg_binary: str = "ffmpeg"
    ffprobe_binary: str = "ffprobe"
    video_codec_args: list[str] = Field(
        default_factory=lambda: ["-c:v", "libx264", "-preset", "veryfast", "-crf", "18"]
    )
    audio_codec_args: list[str] = Field(default_factory=lambda: ["-c:a", "aac", "-b:a", "160k"])
    output_format: OutputFormat | None = None
    quality: Literal["low", "medium", "high"] = "medium"
    gif_loop_count: int = Field(default=0, ge=-1)
    timeout_seconds: int = Field(default=300, gt=0)
    output_dir: Path = Path("data/outputs")

    @field_validator("output_format", mode="before")
    @classmethod
    def _normalize_format(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.lower().strip().lstrip(".")
            return value or None
        return value


class LoggingSettings(BaseModel):
    level: str = "INFO"
    format: str | None = None
    file: Path | None = None


class Settings(BaseModel):
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    candidates: CandidateSettings = Field(default_factory=CandidateSettings)
    ranking: RankingWeights = Field(default_factory=RankingWeights)
    transitions: TransitionSettings = Field(default_factory=TransitionSettings)
    defaults: OptimizeOptions = Field(default_factory=OptimizeOptions)
    advisory: AdvisorySettings = Field(default_factory=AdvisorySettings)
    encoder: EncoderSettings = Field(default_factory=EncoderSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load typed settings from YAML with environment-variable overrides."""

    resolved_path = Path(
        config_path
        or os.getenv(f"{ENV_PREFIX}CONFIG")
        or DEFAULT_CONFIG_PATH
    )
    if resolved_path.exists():
        raw_config = yaml.safe_load(resolved_path.read_text(encoding="utf-8")) or {}
    elif resolved_path == DEFAULT_CONFIG_PATH:
        raw_config = {}
    else:
        raise FileNotFoundError(f"Config file not found: {resolved_path}")

    try:
        data = Settings.model_validate(raw_config).model_dump(mode="python")

        for key, raw_value in os.environ.items():
            if not key.startswith(ENV_PREFIX):
                continue

            suffix = key[len(ENV_PREFIX) :]
            if suffix == "CONFIG":
                continue

            path = [part.lower() for part in suffix.split("__")]
            _apply_override(data, path, raw_value)

        return Settings.model_validate(data)
    except ValidationError as exc:
        raise InvalidConfiguration(f"Invalid settings in {resolved_path}: {exc}") from exc


def build_options(defaults: OptimizeOptions | None = None, **overrides: Any) -> OptimizeOptions:
    """Merge non-null overrides into default options and validate the result."""

    base = (defaults or OptimizeOptions()).model_dump(mode="python")
    base.update({key: value for key, value in overrides.items() if value is not None})
    try:
        return OptimizeOptions.model_validate(base)
    except ValidationError as exc:
        raise InvalidConfiguration(f"Invalid optimize options: {exc}") from exc


def _apply_override(data: dict[str, Any], path: list[str], raw_value: str) -> None:
    current: Any = data
    for segment in path[:-1]:
        if not isinstance(current, dict) or segment not in current:
            return
        current = current[segment]

    if not isinstance(current, dict):
        return

    final_key = path[-1]
    if final_key not in current:
        return

    current[final_key] = _coerce_value(raw_value, current[final_key])


def _coerce_value(raw_value: str, existing_value: Any) -> Any:
    if isinstance(existing_value, bool):
        return raw_value.lower() in {"1", "true", "yes", "on"}
    if isinstance(existing_value, int) and not isinstance(existing_value, bool):
        return int(raw_value)
    if isinstance(existing_value, float):
        return float(raw_value)
    if isinstance(existing_value, list | dict):
        return json.loads(raw_value)
    if isinstance(existing_value, Path):
        return Path(raw_value)
    return raw_value
