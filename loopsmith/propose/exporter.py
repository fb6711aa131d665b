from __future__ import annotations

import csv
import json
import shlex
from pathlib import Path
from typing import Any

from loopsmith.models import OptimizationResult, ScoredCandidate


def export_candidates(candidates: list[ScoredCandidate], output_path: str | Path) -> Path:
    """Export ranked candidates to JSON (default) or CSV, based on file extension."""

    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if path.suffix.lower() == ".csv":
        _write_csv(candidates, path)
    else:
        _write_json(candidates, path)

    return path


def export_result(result: OptimizationResult, output_path: str | Path) -> Path:
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
    return path


def export_final_outputs(
    candidates: list[ScoredCandidate],
    output_dir: str | Path,
    *,
    basename: str = "loop_candidates",
    media_path: str | None = None,
    result: OptimizationResult | None = None,
    include_ffmpeg_commands: bool = True,
) -> dict[str, Path]:
    """Export JSON/CSV candidate files, a review manifest and optionally the chosen result."""

    resolved_output_dir = Path(output_dir)
    resolved_output_dir.mkdir(parents=True, exist_ok=True)

    json_path = resolved_output_dir / f"{basename}.json"
    csv_path = resolved_output_dir / f"{basename}.csv"
    review_path = resolved_output_dir / f"{basename}_review.json"

    export_candidates(candidates, json_path)
    export_candidates(candidates, csv_path)

    review_manifest = generate_review_manifest(
        candidates,
        media_path=media_path,
        include_ffmpeg_commands=include_ffmpeg_commands,
    )
    review_path.write_text(json.dumps(review_manifest, indent=2, ensure_ascii=False), encoding="utf-8")

    exported = {
        "json": json_path,
        "csv": csv_path,
        "review": review_path,
    }
    if result is not None:
        exported["result"] = export_result(result, resolved_output_dir / f"{basename}_result.json")
    return exported


def generate_review_manifest(
    candidates: list[ScoredCandidate],
    *,
    media_path: str | None = None,
    include_ffmpeg_commands: bool = True,
) -> list[dict[str, Any]]:
    """Build a lightweight review manifest with confidence labels per candidate."""

    manifest: list[dict[str, Any]] = []
    for idx, scored in enumerate(candidates, start=1):
        entry = {
            "rank": idx,
            "start_time": round(scored.start_time, 3),
            "end_time": round(scored.end_time, 3),
            "duration": round(scored.duration, 3),
            "similarity": round(scored.similarity, 4),
            "score": round(scored.score, 4),
            "source": scored.source,
            "confidence": _confidence_label(scored.score),
            "transition_hint": scored.candidate.transition_hint,
        }
        if include_ffmpeg_commands and media_path:
            entry["ffmpeg_command"] = build_ffmpeg_clip_command(
                media_path=media_path,
                candidate=scored,
                rank=idx,
            )
        manifest.append(entry)

    return manifest


def build_ffmpeg_clip_command(
    *,
    media_path: str,
    candidate: ScoredCandidate,
    rank: int,
    output_dir: str = "loops",
) -> str:
    """Generate a copy-paste ffmpeg command that cuts one candidate loop for review."""

    start = max(0.0, candidate.start_time)
    suffix = Path(media_path).suffix or ".mp4"
    output_path = f"{output_dir.rstrip('/')}/loop_{rank:02d}_{start:.2f}-{candidate.end_time:.2f}{suffix}"

    return (
        "ffmpeg "
        f"-ss {start:.3f} "
        f"-i {shlex.quote(media_path)} "
        f"-t {candidate.duration:.3f} "
        f"{shlex.quote(output_path)}"
    )


def _write_json(candidates: list[ScoredCandidate], path: Path) -> None:
    payload = [scored.to_dict() for scored in candidates]
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _write_csv(candidates: list[ScoredCandidate], path: Path) -> None:
    fields = [
        "rank",
        "start_time",
        "end_time",
        "duration",
        "similarity",
        "score",
        "duration_fit",
        "source",
        "confidence",
        "transition_hint",
    ]

    with path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=fields)
        writer.writeheader()
        for idx, scored in enumerate(candidates, start=1):
            writer.writerow(
                {
                    "rank": idx,
                    "start_time": f"{scored.start_time:.3f}",
                    "end_time": f"{scored.end_time:.3f}",
                    "duration": f"{scored.duration:.3f}",
                    "similarity": f"{scored.similarity:.4f}",
                    "score": f"{scored.score:.4f}",
                    "duration_fit": f"{scored.duration_fit:.4f}",
                    "source": scored.source,
                    "confidence": _confidence_label(scored.score),
                    "transition_hint": scored.candidate.transition_hint or "",
                }
            )


def _confidence_label(score: float) -> str:
    if score >= 0.8:
        return "high"
    if score >= 0.6:
        return "medium"
    return "low"
