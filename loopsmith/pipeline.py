from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Mapping, Sequence

from pydantic import ValidationError

from loopsmith.assembler import assemble_result
from loopsmith.config import OptimizeOptions, Settings, build_options
from loopsmith.errors import InvalidConfiguration, ProcessingTimeout, RunCancelled
from loopsmith.features.extractor import extract_features
from loopsmith.models import (
    AdvisorySuggestion,
    BlendUnit,
    DecodedMedia,
    EncodingMetrics,
    EncodingRequest,
    FeatureSet,
    OptimizationResult,
    ScoredCandidate,
    SimilarityMatrix,
    TransitionPlan,
)
from loopsmith.propose.candidates import generate_candidates
from loopsmith.scoring.ranking import rank_candidates
from loopsmith.scoring.similarity import build_similarity_matrix
from loopsmith.transitions.selector import plan_transition

logger = logging.getLogger(__name__)

Encoder = Callable[[EncodingRequest], EncodingMetrics]
Advisor = Callable[[FeatureSet, OptimizeOptions], Sequence[AdvisorySuggestion]]
Suggestions = Iterable[AdvisorySuggestion | Mapping[str, Any]]


@dataclass(slots=True)
class AnalysisReport:
    """Everything an optimization run decides before encoding."""

    modality: str
    matrix_size: int
    matrix_rate: float
    candidates: list[ScoredCandidate]
    transition: TransitionPlan
    options: OptimizeOptions

    @property
    def best(self) -> ScoredCandidate:
        return self.candidates[0]

    def to_dict(self, top_n: int | None = None) -> dict[str, Any]:
        ranked = self.candidates if top_n is None else self.candidates[:top_n]
        return {
            "modality": self.modality,
            "matrix_size": self.matrix_size,
            "matrix_rate": self.matrix_rate,
            "candidate_count": len(self.candidates),
            "candidates": [candidate.to_dict() for candidate in ranked],
            "transition": {
                "type": self.transition.type,
                "duration": self.transition.duration,
                "blend_unit_count": self.transition.blend_unit_count,
                "unit": self.transition.unit,
            },
            "options": self.options.model_dump(mode="json"),
        }


@dataclass(slots=True)
class OptimizeRequest:
    """One entry of a batch run."""

    media: DecodedMedia
    options: OptimizeOptions | Mapping[str, Any] | None = None
    suggestions: list[AdvisorySuggestion | Mapping[str, Any]] = field(default_factory=list)
    encoder: Encoder | None = None


def analyze(
    media: DecodedMedia,
    options: OptimizeOptions | Mapping[str, Any] | None = None,
    *,
    settings: Settings | None = None,
    suggestions: Suggestions | None = None,
    advisor: Advisor | None = None,
    cancel_event: threading.Event | None = None,
) -> AnalysisReport:
    """Run extraction, matching, ranking and transition selection.

    ``advisor`` is called with the extracted features when given; its
    suggestions are merged with ``suggestions``.
    """

    settings = settings or Settings()
    options = resolve_options(options, settings)

    features = extract_features(media, settings.analysis)
    _check_cancelled(cancel_event, "feature extraction")

    advisory: list[AdvisorySuggestion | Mapping[str, Any]] = list(suggestions or [])
    if advisor is not None:
        advisory.extend(advisor(features, options))

    matrix = build_similarity_matrix(features, settings.analysis)
    _check_cancelled(cancel_event, "similarity matrix")
    logger.info(
        "Built %dx%d %s similarity matrix at %.3f positions/s",
        matrix.size,
        matrix.size,
        matrix.modality,
        matrix.rate,
    )

    candidates = generate_candidates(
        matrix,
        advisory,
        options.min_loop_duration,
        options.max_loop_duration,
        similarity_threshold=options.similarity_threshold,
        relaxation_step=settings.candidates.relaxation_step,
        relaxation_retries=settings.candidates.relaxation_retries,
    )
    _check_cancelled(cancel_event, "candidate generation")

    ranked = rank_candidates(candidates, options.ideal_duration, settings.ranking)
    best = ranked[0]
    logger.info(
        "Best loop %.3fs-%.3fs (similarity %.3f, score %.3f, source %s) out of %d candidates",
        best.start_time,
        best.end_time,
        best.similarity,
        best.score,
        best.source,
        len(ranked),
    )

    rate, unit, available = _transition_rate(media, matrix)
    plan = plan_transition(
        best.candidate,
        rate,
        unit=unit,
        preferred=options.preferred_transition,
        allow_cut_fallback=settings.transitions.allow_cut_fallback,
        available_units=available,
    )
    logger.info("Transition: %s over %.3fs (%d %s)", plan.type, plan.duration, plan.blend_unit_count, plan.unit)

    return AnalysisReport(
        modality=matrix.modality,
        matrix_size=matrix.size,
        matrix_rate=matrix.rate,
        candidates=ranked,
        transition=plan,
        options=options,
    )


def optimize(
    media: DecodedMedia,
    options: OptimizeOptions | Mapping[str, Any] | None = None,
    *,
    settings: Settings | None = None,
    suggestions: Suggestions | None = None,
    advisor: Advisor | None = None,
    encoder: Encoder | None = None,
    cancel_event: threading.Event | None = None,
) -> OptimizationResult:
    """Find the best loop in ``media`` and, when an encoder is given, render it."""

    settings = settings or Settings()
    report = analyze(
        media,
        options,
        settings=settings,
        suggestions=suggestions,
        advisor=advisor,
        cancel_event=cancel_event,
    )

    if encoder is None:
        metrics = EncodingMetrics()
    else:
        request = EncodingRequest(
            loop_start=report.best.start_time,
            loop_end=report.best.end_time,
            transition_plan=report.transition,
        )
        metrics = run_encoder(encoder, request, timeout_seconds=settings.encoder.timeout_seconds)

    return assemble_result(report.best, report.transition, metrics)


def optimize_many(
    requests: Sequence[OptimizeRequest],
    *,
    settings: Settings | None = None,
    max_workers: int = 4,
    cancel_event: threading.Event | None = None,
) -> list[OptimizationResult | Exception]:
    """Optimize independent clips in parallel.

    Results keep the input order; a failed request leaves its exception in
    its slot instead of aborting the batch.
    """

    settings = settings or Settings()
    if not requests:
        return []

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(requests)))) as executor:
        futures = [
            executor.submit(
                optimize,
                request.media,
                request.options,
                settings=settings,
                suggestions=request.suggestions,
                encoder=request.encoder,
                cancel_event=cancel_event,
            )
            for request in requests
        ]

        results: list[OptimizationResult | Exception] = []
        for idx, future in enumerate(futures):
            try:
                results.append(future.result())
            except Exception as exc:
                logger.warning("Batch request %d failed: %s", idx, exc)
                results.append(exc)

    return results


def resolve_options(
    options: OptimizeOptions | Mapping[str, Any] | None,
    settings: Settings,
) -> OptimizeOptions:
    """Validate per-request options against the configured defaults."""

    if options is None:
        return settings.defaults
    if isinstance(options, OptimizeOptions):
        try:
            return OptimizeOptions.model_validate(options.model_dump(mode="python"))
        except ValidationError as exc:
            raise InvalidConfiguration(f"Invalid optimize options: {exc}") from exc
    return build_options(settings.defaults, **dict(options))


def run_encoder(encoder: Encoder, request: EncodingRequest, *, timeout_seconds: float) -> EncodingMetrics:
    """Call ``encoder`` with a deadline.

    The worker thread cannot be killed, so on timeout the request's
    ``cancel_event`` is set and the encoder is expected to stop and discard
    its partial output. ``FfmpegLoopEncoder`` also bounds its own subprocess.
    """

    cancel_event = request.cancel_event or threading.Event()
    request = replace(request, cancel_event=cancel_event)
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="loopsmith-encoder")
    try:
        future = executor.submit(encoder, request)
        try:
            return future.result(timeout=timeout_seconds)
        except FuturesTimeout as exc:
            cancel_event.set()
            future.cancel()
            raise ProcessingTimeout(
                f"Encoder did not finish within {timeout_seconds}s.",
                diagnostics={"timeout_seconds": timeout_seconds},
            ) from exc
    finally:
        executor.shutdown(wait=False)


def _transition_rate(media: DecodedMedia, matrix: SimilarityMatrix) -> tuple[float, BlendUnit, int | None]:
    if matrix.modality == "video":
        frames = media.frames
        return float(media.frame_rate), "frames", len(frames) if frames is not None else None
    samples = media.samples
    return float(media.sample_rate), "samples", len(samples) if samples is not None else None


def _check_cancelled(cancel_event: threading.Event | None, phase: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        logger.info("Run cancelled after %s", phase)
        raise RunCancelled(f"Run cancelled after {phase}.", diagnostics={"phase": phase})
