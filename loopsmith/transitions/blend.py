from __future__ import annotations

from typing import Sequence

import numpy as np

from loopsmith.errors import InsufficientBlendMaterial
from loopsmith.models import LoopCandidate, TransitionPlan


def blend_weights(count: int) -> np.ndarray:
    """Linear weights ``i / (count - 1)``; a single unit gets weight 0."""

    if count <= 0:
        return np.zeros(0, dtype=np.float64)
    if count == 1:
        return np.zeros(1, dtype=np.float64)
    return np.arange(count, dtype=np.float64) / float(count - 1)


def blend_units(end_region: np.ndarray, start_region: np.ndarray, count: int) -> np.ndarray:
    """Blend the loop tail into the loop head.

    Unit ``i`` is ``(1 - w) * end[i] + w * start[i]``. Weight 0 returns the end
    unit and weight 1 returns the start unit unchanged.
    """

    end = np.asarray(end_region)
    start = np.asarray(start_region)
    if len(end) < count or len(start) < count:
        raise InsufficientBlendMaterial(
            f"Blend needs {count} units per region, got {len(end)} (end) and {len(start)} (start).",
            diagnostics={"blend_unit_count": count, "end_units": len(end), "start_units": len(start)},
        )
    if end.shape[1:] != start.shape[1:]:
        raise ValueError(f"Blend regions differ in unit shape: {end.shape[1:]} vs {start.shape[1:]}.")

    end = end[:count].astype(np.float64)
    start = start[:count].astype(np.float64)
    weights = blend_weights(count).reshape((count,) + (1,) * (end.ndim - 1))

    blended = (1.0 - weights) * end + weights * start
    at_end = weights.reshape(-1) == 0.0
    at_start = weights.reshape(-1) == 1.0
    blended[at_end] = end[at_end]
    blended[at_start] = start[at_start]
    return blended


def check_blend_material(loop_unit_count: int, blend_unit_count: int) -> None:
    if blend_unit_count < 0 or loop_unit_count < 2 * blend_unit_count:
        raise InsufficientBlendMaterial(
            f"Loop of {loop_unit_count} units cannot hold two distinct blend regions of {blend_unit_count} units.",
            diagnostics={"loop_units": loop_unit_count, "blend_unit_count": blend_unit_count},
        )


def build_seamless_loop(buffer: np.ndarray, start: int, end: int, count: int) -> np.ndarray:
    """Loop body followed by the blended boundary.

    The output is ``buffer[start + count : end - count]`` then the blend of
    ``buffer[end - count : end]`` into ``buffer[start : start + count]``; played
    back to back it wraps from the last blended unit into ``buffer[start + count]``.
    """

    data = np.asarray(buffer)
    if start < 0 or end > len(data) or start >= end:
        raise InsufficientBlendMaterial(
            f"Loop [{start}, {end}) does not fit in a buffer of {len(data)} units.",
            diagnostics={"start": start, "end": end, "buffer_units": len(data)},
        )
    check_blend_material(end - start, count)
    if count == 0:
        return data[start:end].copy()

    blended = blend_units(data[end - count : end], data[start : start + count], count)
    body = data[start + count : end - count]
    return np.concatenate([body, _restore_dtype(blended, data.dtype)])


def blend_video_boundary(
    frames: Sequence[np.ndarray],
    candidate: LoopCandidate,
    plan: TransitionPlan,
    frame_rate: float,
) -> list[np.ndarray]:
    """Blended boundary frames for a video loop, in the source dtype."""

    start, end = _unit_bounds(candidate, frame_rate, len(frames))
    count = plan.blend_unit_count
    check_blend_material(end - start, count)
    if count == 0:
        return []

    end_region = np.stack([np.asarray(frame) for frame in frames[end - count : end]])
    start_region = np.stack([np.asarray(frame) for frame in frames[start : start + count]])
    blended = _restore_dtype(blend_units(end_region, start_region, count), end_region.dtype)
    return list(blended)


def crossfade_audio_boundary(
    samples: np.ndarray,
    candidate: LoopCandidate,
    plan: TransitionPlan,
    sample_rate: int,
) -> np.ndarray:
    """Crossfaded boundary samples for an audio loop (mono or multichannel)."""

    data = np.asarray(samples)
    start, end = _unit_bounds(candidate, float(sample_rate), len(data))
    count = plan.blend_unit_count
    check_blend_material(end - start, count)
    if count == 0:
        return data[:0].copy()

    blended = blend_units(data[end - count : end], data[start : start + count], count)
    return _restore_dtype(blended, data.dtype)


def _unit_bounds(candidate: LoopCandidate, rate: float, available: int) -> tuple[int, int]:
    start = int(round(candidate.start_time * rate))
    end = min(int(round(candidate.end_time * rate)), available)
    if start < 0 or start >= end:
        raise InsufficientBlendMaterial(
            f"Loop [{candidate.start_time:.3f}s, {candidate.end_time:.3f}s] has no material in a buffer of {available} units.",
            diagnostics={"start": start, "end": end, "buffer_units": available},
        )
    return start, end


def _restore_dtype(values: np.ndarray, dtype: np.dtype) -> np.ndarray:
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        return np.clip(np.rint(values), info.min, info.max).astype(dtype)
    return values.astype(dtype, copy=False)
