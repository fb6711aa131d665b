from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable
from urllib import request
from urllib.error import HTTPError, URLError

import numpy as np
from pydantic import ValidationError

from loopsmith.config import AdvisorySettings, OptimizeOptions
from loopsmith.models import AdvisorySuggestion, FeatureSet

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "qwen2.5:7b-instruct-q4_K_M"
DEFAULT_ENDPOINT = "http://localhost:11434"
DEFAULT_TIMEOUT_SECONDS = 45
DEFAULT_MAX_RETRIES = 2
DEFAULT_MAX_SUGGESTIONS = 5
PROFILE_POINTS = 48
SUGGESTION_KEYS = {"start_time", "end_time", "confidence", "transition_type"}
PROMPT_TEMPLATE_PATH = Path(__file__).parent / "prompts" / "loop_suggestion_prompt.txt"


def request_loop_suggestions(
    feature_summary: dict[str, Any],
    *,
    endpoint: str = DEFAULT_ENDPOINT,
    model: str = DEFAULT_MODEL,
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
    max_retries: int = DEFAULT_MAX_RETRIES,
    max_suggestions: int = DEFAULT_MAX_SUGGESTIONS,
) -> list[AdvisorySuggestion]:
    """Ask a local Ollama model for loop points, validating its JSON strictly.

    Returns an empty list when the model stays unreachable or keeps producing
    invalid output; advisory hints are optional input to candidate generation.
    """

    for attempt in range(max(0, max_retries) + 1):
        try:
            prompt = _format_prompt(feature_summary)
            response_text = _request_ollama(
                endpoint=endpoint,
                model=model,
                prompt=prompt,
                timeout_seconds=timeout_seconds,
            )
            parsed = json.loads(response_text)
            return _validate_suggestion_schema(parsed)[: max(max_suggestions, 0)]
        except (json.JSONDecodeError, ValueError, HTTPError, URLError, TimeoutError, OSError, KeyError, TypeError) as exc:
            logger.debug("Advisory attempt %d failed: %s", attempt + 1, exc)
            continue

    logger.warning("Advisory service unavailable; continuing without suggestions.")
    return []


def summarize_features(
    features: FeatureSet,
    *,
    min_duration: float,
    max_duration: float,
) -> dict[str, Any]:
    """Compact, model-friendly view of the extracted features."""

    summary: dict[str, Any] = {
        "duration_seconds": round(features.duration_seconds, 3),
        "min_loop_duration": min_duration,
        "max_loop_duration": max_duration,
    }

    if features.frames:
        timestamps = np.array([frame.timestamp for frame in features.frames])
        motion = np.array([frame.motion.magnitude for frame in features.frames])
        picks = _profile_indices(len(features.frames))
        summary["video"] = {
            "frame_rate": features.frame_rate,
            "sampled_frames": len(features.frames),
            "motion_profile": [
                {"time": round(float(timestamps[idx]), 3), "motion": round(float(motion[idx]), 4)}
                for idx in picks
            ],
        }

    if features.audio is not None:
        audio = features.audio
        picks = _profile_indices(len(audio.envelope))
        summary["audio"] = {
            "sample_rate": audio.sample_rate,
            "envelope_profile": [
                {"time": round(idx / audio.window_rate, 3), "rms": round(float(audio.envelope[idx]), 5)}
                for idx in picks
            ],
            "silence_intervals": [
                {"start": s.start, "end": s.end, "confidence": round(s.confidence, 3)}
                for s in audio.silence_intervals
            ],
        }

    return summary


def load_advisory_suggestions(path: str | Path) -> list[AdvisorySuggestion]:
    """Load suggestions from a JSON array or a ``{"suggestions": [...]}`` object."""

    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get("suggestions")
    if not isinstance(payload, list):
        raise ValueError("Advisory suggestions must be a JSON array.")

    suggestions: list[AdvisorySuggestion] = []
    for idx, row in enumerate(payload, start=1):
        if not isinstance(row, dict):
            raise ValueError(f"Advisory suggestion {idx} must be an object.")
        try:
            suggestions.append(AdvisorySuggestion.model_validate(row))
        except ValidationError as exc:
            raise ValueError(f"Advisory suggestion {idx} is invalid: {exc}") from exc
    return suggestions


def _format_prompt(feature_summary: dict[str, Any]) -> str:
    template = PROMPT_TEMPLATE_PATH.read_text(encoding="utf-8").strip()
    summary_json = json.dumps(feature_summary, ensure_ascii=False, indent=2, sort_keys=True)
    return f"{template}\n\nMedia JSON:\n{summary_json}\n"


def _request_ollama(*, endpoint: str, model: str, prompt: str, timeout_seconds: int) -> str:
    body = json.dumps(
        {
            "model": model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
        }
    ).encode("utf-8")

    req = request.Request(
        f"{endpoint.rstrip('/')}/api/generate",
        data=body,
        method="POST",
        headers={"Content-Type": "application/json"},
    )

    with request.urlopen(req, timeout=timeout_seconds) as response:
        payload = json.loads(response.read().decode("utf-8"))

    content = payload.get("response")
    if not isinstance(content, str):
        raise ValueError("Ollama response missing JSON text in 'response' field.")
    return content


def _validate_suggestion_schema(payload: dict[str, Any]) -> list[AdvisorySuggestion]:
    if not isinstance(payload, dict) or set(payload.keys()) != {"suggestions"}:
        raise ValueError("LLM output must be an object with exactly one key 'suggestions'.")

    rows = payload["suggestions"]
    if not isinstance(rows, list):
        raise ValueError("'suggestions' must be a list.")

    suggestions: list[AdvisorySuggestion] = []
    for row in rows:
        if not isinstance(row, dict) or not set(row.keys()) <= SUGGESTION_KEYS:
            raise ValueError(f"Suggestion keys must be a subset of {sorted(SUGGESTION_KEYS)}.")
        if isinstance(row.get("start_time"), bool) or isinstance(row.get("end_time"), bool):
            raise ValueError("Suggestion times must be numbers.")
        try:
            suggestions.append(AdvisorySuggestion.model_validate(row))
        except ValidationError as exc:
            raise ValueError(f"Invalid suggestion {row!r}: {exc}") from exc

    return sorted(suggestions, key=lambda s: (-s.confidence, s.start_time, s.end_time))


def _profile_indices(count: int) -> list[int]:
    if count <= 0:
        return []
    if count <= PROFILE_POINTS:
        return list(range(count))
    return sorted({int(round(v)) for v in np.linspace(0, count - 1, PROFILE_POINTS)})


def ollama_advisor(settings: AdvisorySettings) -> Callable[[FeatureSet, OptimizeOptions], list[AdvisorySuggestion]]:
    """Bind advisory settings into a callable the pipeline invokes after extraction."""

    def _advise(features: FeatureSet, options: OptimizeOptions) -> list[AdvisorySuggestion]:
        summary = summarize_features(
            features,
            min_duration=options.min_loop_duration,
            max_duration=options.max_loop_duration,
        )
        suggestions = request_loop_suggestions(
            summary,
            endpoint=settings.endpoint,
            model=settings.model,
            timeout_seconds=settings.timeout_seconds,
            max_retries=settings.max_retries,
            max_suggestions=settings.max_suggestions,
        )
        logger.info("Advisory model %s returned %d suggestion(s)", settings.model, len(suggestions))
        return suggestions

    return _advise
