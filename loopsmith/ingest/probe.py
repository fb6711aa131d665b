from __future__ import annotations

import json
import subprocess
from fractions import Fraction
from pathlib import Path
from typing import Any

from loopsmith.errors import ProcessingTimeout

DEFAULT_PROBE_TIMEOUT_SECONDS = 60


def probe_media(
    media_path: str | Path,
    *,
    ffprobe_binary: str = "ffprobe",
    timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
) -> dict[str, Any]:
    """Probe media metadata via ffprobe and classify the clip as video or audio."""

    source_path = Path(media_path).expanduser().resolve()
    if not source_path.exists():
        raise FileNotFoundError(f"Media file not found: {source_path}")

    ffprobe_payload = _run_ffprobe(source_path, ffprobe_binary=ffprobe_binary, timeout_seconds=timeout_seconds)
    return _normalize_probe_payload(source_path, ffprobe_payload)


def _run_ffprobe(media_path: Path, *, ffprobe_binary: str, timeout_seconds: float) -> dict[str, Any]:
    command = [
        ffprobe_binary,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        str(media_path),
    ]

    try:
        completed = subprocess.run(
            command,
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
        )
    except FileNotFoundError as exc:
        raise RuntimeError(
            "ffprobe executable was not found. Install FFmpeg so ffprobe is available on PATH."
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise ProcessingTimeout(
            f"ffprobe did not finish within {timeout_seconds}s for {media_path}.",
            diagnostics={"media_path": str(media_path), "timeout_seconds": timeout_seconds},
        ) from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        details = f" ffprobe stderr: {stderr}" if stderr else ""
        raise RuntimeError(
            f"ffprobe failed to read media file: {media_path}.{details}"
        ) from exc

    try:
        return json.loads(completed.stdout)
    except json.JSONDecodeError as exc:
        raise RuntimeError("ffprobe returned invalid JSON output.") from exc


def _normalize_probe_payload(media_path: Path, payload: dict[str, Any]) -> dict[str, Any]:
    stream_entries = payload.get("streams", [])
    format_entry = payload.get("format", {})

    streams = [_normalize_stream(stream) for stream in stream_entries]
    # cover art shows up as a single-frame video stream
    video_streams = [
        stream
        for stream in streams
        if stream["codec_type"] == "video" and not stream["attached_pic"]
    ]
    audio_streams = [stream for stream in streams if stream["codec_type"] == "audio"]

    if video_streams:
        modality = "video"
    elif audio_streams:
        modality = "audio"
    else:
        modality = "unknown"

    video = video_streams[0] if video_streams else None
    audio = audio_streams[0] if audio_streams else None
    duration = _to_float(format_entry.get("duration"))
    if duration is None:
        duration = next(
            (stream["duration_seconds"] for stream in (video, audio) if stream and stream["duration_seconds"]),
            None,
        )

    return {
        "media_path": str(media_path),
        "modality": modality,
        "duration_seconds": duration,
        "frame_rate": _parse_rate(video["avg_frame_rate"]) if video else None,
        "sample_rate": audio["sample_rate"] if audio else None,
        "channels": audio["channels"] if audio else None,
        "width": video["width"] if video else None,
        "height": video["height"] if video else None,
        "size_bytes": _to_int(format_entry.get("size")),
        "format_name": format_entry.get("format_name"),
        "streams": streams,
    }


def _normalize_stream(stream: dict[str, Any]) -> dict[str, Any]:
    return {
        "index": stream.get("index"),
        "codec_type": stream.get("codec_type"),
        "codec_name": stream.get("codec_name"),
        "sample_rate": _to_int(stream.get("sample_rate")),
        "channels": _to_int(stream.get("channels")),
        "width": _to_int(stream.get("width")),
        "height": _to_int(stream.get("height")),
        "avg_frame_rate": stream.get("avg_frame_rate"),
        "duration_seconds": _to_float(stream.get("duration")),
        "attached_pic": bool(stream.get("disposition", {}).get("attached_pic", 0)),
    }


def _parse_rate(raw_value: Any) -> float | None:
    if raw_value in (None, "N/A", "", "0/0"):
        return None
    try:
        rate = float(Fraction(str(raw_value)))
    except (ValueError, ZeroDivisionError):
        return None
    return rate if rate > 0 else None


def _to_float(raw_value: Any) -> float | None:
    if raw_value in (None, "N/A", ""):
        return None
    return float(raw_value)


def _to_int(raw_value: Any) -> int | None:
    if raw_value in (None, "N/A", ""):
        return None
    return int(raw_value)
