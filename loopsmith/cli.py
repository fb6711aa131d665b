from __future__ import annotations

import json
import logging
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, TypeVar

import typer
from pydantic import ValidationError

from loopsmith.config import (
    DEFAULT_CONFIG_PATH,
    EncoderSettings,
    OptimizeOptions,
    Settings,
    build_options,
    load_settings,
)
from loopsmith.errors import InvalidConfiguration, LoopOptimizationError
from loopsmith.ingest.decode import decode_media
from loopsmith.ingest.probe import probe_media
from loopsmith.logging_config import configure_logging
from loopsmith.models import AdvisorySuggestion, DecodedMedia
from loopsmith.pipeline import analyze, optimize
from loopsmith.propose.exporter import export_final_outputs, export_result
from loopsmith.render.ffmpeg_encoder import FfmpegLoopEncoder
from loopsmith.scoring.advisory import load_advisory_suggestions, ollama_advisor

app = typer.Typer(help="Find seamless loop points in video and audio clips.")
config_app = typer.Typer(help="Configuration commands.")

app.add_typer(config_app, name="config")

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONFIG_OPTION = typer.Option(
    DEFAULT_CONFIG_PATH,
    "--config",
    "-c",
    envvar="LOOPSMITH_CONFIG",
    help="Path to YAML configuration file.",
)


def _run_with_progress(step_index: int, total_steps: int, label: str, work: Callable[[], T]) -> T:
    typer.echo(f"[{step_index}/{total_steps}] {label}...", err=True)
    started_at = perf_counter()
    try:
        result = work()
    except Exception:
        elapsed = perf_counter() - started_at
        typer.echo(f"[{step_index}/{total_steps}] {label} failed after {elapsed:.1f}s", err=True)
        raise
    elapsed = perf_counter() - started_at
    typer.echo(f"[{step_index}/{total_steps}] {label} done in {elapsed:.1f}s", err=True)
    return result


def _bootstrap(config_path: Path) -> Settings:
    settings = load_settings(config_path)
    configure_logging(settings.logging)
    logger.debug("Loaded runtime settings from %s", config_path)
    return settings


def _fail(exc: Exception) -> typer.Exit:
    logger.error("Run failed: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    return typer.Exit(code=1)


@config_app.command("show")
def show_config(config_path: Path = CONFIG_OPTION) -> None:
    """Print resolved runtime configuration."""

    try:
        settings = _bootstrap(config_path)
    except (LoopOptimizationError, RuntimeError, ValueError, FileNotFoundError) as exc:
        raise _fail(exc) from exc
    typer.echo(json.dumps(settings.model_dump(mode="json"), indent=2))


@app.command("analyze")
def analyze_media(
    media_path: Path = typer.Argument(..., help="Video or audio clip to analyse."),
    config_path: Path = CONFIG_OPTION,
    min_duration: float | None = typer.Option(None, "--min-duration", help="Shortest acceptable loop in seconds."),
    max_duration: float | None = typer.Option(None, "--max-duration", help="Longest acceptable loop in seconds."),
    ideal_duration: float | None = typer.Option(None, "--ideal-duration", help="Preferred loop length in seconds."),
    threshold: float | None = typer.Option(None, "--threshold", help="Starting similarity threshold in [0, 1]."),
    preferred_transition: str | None = typer.Option(
        None, "--preferred-transition", help="cut, crossfade, morph or none."
    ),
    suggestions_path: Path | None = typer.Option(None, "--suggestions", help="JSON file with advisory loop points."),
    advisory: bool | None = typer.Option(
        None, "--advisory/--no-advisory", help="Ask the local Ollama model for loop suggestions."
    ),
    output_dir: Path | None = typer.Option(None, "--output-dir", "-o", help="Directory for JSON/CSV/review outputs."),
    top_n: int = typer.Option(20, help="Number of ranked candidates to export."),
) -> None:
    """Rank loop candidates and export a review report without rendering."""

    total_steps = 4
    try:
        settings = _bootstrap(config_path)
        options = _options(settings, min_duration, max_duration, ideal_duration, threshold, preferred_transition)
        suggestions = _load_suggestions(suggestions_path)
        advisor = ollama_advisor(settings.advisory) if _advisory_enabled(settings, advisory) else None

        probe = _run_with_progress(1, total_steps, "Probe media", lambda: _probe(media_path, settings))
        media = _run_with_progress(2, total_steps, "Decode media", lambda: _decode(media_path, probe, settings))
        report = _run_with_progress(
            3,
            total_steps,
            "Analyse loop candidates",
            lambda: analyze(media, options, settings=settings, suggestions=suggestions, advisor=advisor),
        )
        exported = _run_with_progress(
            4,
            total_steps,
            "Export report",
            lambda: export_final_outputs(
                report.candidates[:top_n],
                output_dir or settings.encoder.output_dir,
                basename=f"{media_path.stem}_loops",
                media_path=str(media_path),
            ),
        )
    except (LoopOptimizationError, RuntimeError, ValueError, FileNotFoundError) as exc:
        raise _fail(exc) from exc

    typer.echo(
        json.dumps(
            {
                "status": "ok",
                "media_path": str(media_path),
                **report.to_dict(top_n=5),
                "outputs": {key: str(path) for key, path in exported.items()},
            },
            indent=2,
        )
    )


@app.command("optimize")
def optimize_media(
    media_path: Path = typer.Argument(..., help="Video or audio clip to loop."),
    config_path: Path = CONFIG_OPTION,
    min_duration: float | None = typer.Option(None, "--min-duration", help="Shortest acceptable loop in seconds."),
    max_duration: float | None = typer.Option(None, "--max-duration", help="Longest acceptable loop in seconds."),
    ideal_duration: float | None = typer.Option(None, "--ideal-duration", help="Preferred loop length in seconds."),
    threshold: float | None = typer.Option(None, "--threshold", help="Starting similarity threshold in [0, 1]."),
    preferred_transition: str | None = typer.Option(
        None, "--preferred-transition", help="cut, crossfade, morph or none."
    ),
    suggestions_path: Path | None = typer.Option(None, "--suggestions", help="JSON file with advisory loop points."),
    advisory: bool | None = typer.Option(
        None, "--advisory/--no-advisory", help="Ask the local Ollama model for loop suggestions."
    ),
    output_path: Path | None = typer.Option(None, "--output", "-o", help="Rendered loop path."),
    output_format: str | None = typer.Option(
        None, "--format", help="mp4, webm, gif, mp3 or wav (default: source container)."
    ),
    quality: str | None = typer.Option(None, "--quality", help="low, medium or high bitrate preset for --format."),
    gif_loops: int | None = typer.Option(None, "--gif-loops", help="GIF repeat count; 0 loops forever."),
    render: bool = typer.Option(True, "--render/--no-render", help="Encode the loop with ffmpeg."),
) -> None:
    """Find the best loop, render it and print the optimization result."""

    total_steps = 4
    try:
        settings = _bootstrap(config_path)
        encoder_settings = _encoder_settings(settings.encoder, output_format, quality, gif_loops)
        options = _options(settings, min_duration, max_duration, ideal_duration, threshold, preferred_transition)
        suggestions = _load_suggestions(suggestions_path)
        advisor = ollama_advisor(settings.advisory) if _advisory_enabled(settings, advisory) else None

        probe = _run_with_progress(1, total_steps, "Probe media", lambda: _probe(media_path, settings))
        media = _run_with_progress(2, total_steps, "Decode media", lambda: _decode(media_path, probe, settings))

        output_dir = Path(settings.encoder.output_dir)
        fmt = encoder_settings.output_format
        suffix = f".{fmt}" if fmt else media_path.suffix or ".mp4"
        target = output_path or output_dir / f"{media_path.stem}_loop{suffix}"
        encoder = _encoder(media_path, target, media, probe, settings, encoder_settings) if render else None

        result = _run_with_progress(
            3,
            total_steps,
            "Optimize loop",
            lambda: optimize(
                media,
                options,
                settings=settings,
                suggestions=suggestions,
                advisor=advisor,
                encoder=encoder,
            ),
        )
        result_path = _run_with_progress(
            4,
            total_steps,
            "Export result",
            lambda: export_result(result, target.with_name(f"{media_path.stem}_loop_result.json")),
        )
    except (LoopOptimizationError, RuntimeError, ValueError, FileNotFoundError) as exc:
        raise _fail(exc) from exc

    payload: dict[str, Any] = {
        "status": "ok",
        "media_path": str(media_path),
        **result.to_dict(),
        "result_path": str(result_path),
    }
    if encoder is not None:
        payload["output_path"] = str(target)
    typer.echo(json.dumps(payload, indent=2))


def _options(
    settings: Settings,
    min_duration: float | None,
    max_duration: float | None,
    ideal_duration: float | None,
    threshold: float | None,
    preferred_transition: str | None,
) -> OptimizeOptions:
    return build_options(
        settings.defaults,
        min_loop_duration=min_duration,
        max_loop_duration=max_duration,
        ideal_duration=ideal_duration,
        similarity_threshold=threshold,
        preferred_transition=preferred_transition,
    )


def _encoder_settings(
    base: EncoderSettings,
    output_format: str | None,
    quality: str | None,
    gif_loops: int | None,
) -> EncoderSettings:
    overrides = {"output_format": output_format, "quality": quality, "gif_loop_count": gif_loops}
    data = base.model_dump(mode="python")
    data.update({key: value for key, value in overrides.items() if value is not None})
    try:
        return EncoderSettings.model_validate(data)
    except ValidationError as exc:
        raise InvalidConfiguration(f"Invalid encoder options: {exc}") from exc


def _load_suggestions(path: Path | None) -> list[AdvisorySuggestion]:
    if path is None:
        return []
    suggestions = load_advisory_suggestions(path)
    logger.info("Loaded %d advisory suggestion(s) from %s", len(suggestions), path)
    return suggestions


def _advisory_enabled(settings: Settings, flag: bool | None) -> bool:
    return settings.advisory.enabled if flag is None else flag


def _probe(media_path: Path, settings: Settings) -> dict[str, Any]:
    return probe_media(
        media_path,
        ffprobe_binary=settings.encoder.ffprobe_binary,
        timeout_seconds=settings.encoder.timeout_seconds,
    )


def _decode(media_path: Path, probe: dict[str, Any], settings: Settings) -> DecodedMedia:
    return decode_media(
        media_path,
        probe,
        ffmpeg_binary=settings.encoder.ffmpeg_binary,
        timeout_seconds=settings.encoder.timeout_seconds,
        include_audio=settings.analysis.prefer_modality == "audio",
    )


def _encoder(
    media_path: Path,
    target: Path,
    media: DecodedMedia,
    probe: dict[str, Any],
    settings: Settings,
    encoder_settings: EncoderSettings,
) -> FfmpegLoopEncoder:
    # must match the stream the similarity matrix was built from
    use_audio = media.samples is not None and (not media.frames or settings.analysis.prefer_modality == "audio")
    modality = "audio" if use_audio else "video"
    return FfmpegLoopEncoder(
        media_path,
        target,
        modality=modality,
        source_duration=media.duration_seconds,
        source_size_bytes=probe.get("size_bytes"),
        has_audio=modality == "video" and probe.get("sample_rate") is not None,
        settings=encoder_settings,
    )


if __name__ == "__main__":
    app()
