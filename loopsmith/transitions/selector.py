from __future__ import annotations

import logging
from dataclasses import dataclass

from loopsmith.errors import InsufficientBlendMaterial
from loopsmith.models import BlendUnit, LoopCandidate, TransitionPlan, TransitionType
from loopsmith.transitions.blend import check_blend_material

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class TransitionRule:
    """Applies when candidate similarity is strictly above ``above``."""

    above: float
    type: TransitionType
    duration: float


DEFAULT_TRANSITION_TABLE: tuple[TransitionRule, ...] = (
    TransitionRule(above=0.95, type="none", duration=0.0),
    TransitionRule(above=0.90, type="crossfade", duration=0.2),
    TransitionRule(above=0.70, type="crossfade", duration=0.5),
    TransitionRule(above=0.40, type="crossfade", duration=1.0),
)
FALLBACK_RULE = TransitionRule(above=float("-inf"), type="morph", duration=1.5)


def lookup_transition(
    similarity: float,
    table: tuple[TransitionRule, ...] = DEFAULT_TRANSITION_TABLE,
) -> TransitionRule:
    for rule in table:
        if similarity > rule.above:
            return rule
    return FALLBACK_RULE


def select_transition(
    candidate: LoopCandidate,
    rate: float,
    *,
    unit: BlendUnit = "frames",
    preferred: TransitionType | None = None,
    table: tuple[TransitionRule, ...] = DEFAULT_TRANSITION_TABLE,
) -> TransitionPlan:
    """Pick transition type and blend length from the candidate's similarity.

    ``rate`` is frames per second for video and samples per second for audio.
    The blend never covers more than half the loop; when clamped, the duration
    shrinks with it.
    """

    rule = lookup_transition(candidate.similarity, table)
    transition_type: TransitionType = rule.type
    duration = rule.duration

    if preferred in {"cut", "none"}:
        return TransitionPlan(type=preferred, duration=0.0, blend_unit_count=0, unit=unit)
    if preferred in {"crossfade", "morph"} and duration > 0:
        transition_type = preferred

    if duration <= 0:
        return TransitionPlan(type=transition_type, duration=0.0, blend_unit_count=0, unit=unit)

    loop_units = loop_unit_count(candidate, rate)
    requested = int(round(duration * rate))
    blend_count = min(requested, loop_units // 2)
    if blend_count < 1:
        raise InsufficientBlendMaterial(
            f"Loop of {loop_units} {unit} is too short for a {transition_type} transition.",
            diagnostics={"loop_units": loop_units, "requested_blend_units": requested},
        )
    if blend_count < requested:
        duration = blend_count / rate

    return TransitionPlan(type=transition_type, duration=duration, blend_unit_count=blend_count, unit=unit)


def plan_transition(
    candidate: LoopCandidate,
    rate: float,
    *,
    unit: BlendUnit = "frames",
    preferred: TransitionType | None = None,
    allow_cut_fallback: bool = True,
    available_units: int | None = None,
    table: tuple[TransitionRule, ...] = DEFAULT_TRANSITION_TABLE,
) -> TransitionPlan:
    """Select a transition and verify there is material to blend.

    Blend failures degrade to a cut unless ``allow_cut_fallback`` is off.
    """

    try:
        plan = select_transition(candidate, rate, unit=unit, preferred=preferred, table=table)
        loop_units = loop_unit_count(candidate, rate)
        if available_units is not None:
            start_unit = int(round(candidate.start_time * rate))
            loop_units = min(loop_units, max(available_units - start_unit, 0))
        check_blend_material(loop_units, plan.blend_unit_count)
        return plan
    except InsufficientBlendMaterial as exc:
        if not allow_cut_fallback:
            raise
        logger.warning("Falling back to cut transition: %s", exc)
        return TransitionPlan(type="cut", duration=0.0, blend_unit_count=0, unit=unit)


def loop_unit_count(candidate: LoopCandidate, rate: float) -> int:
    return int(round(candidate.duration * rate))
