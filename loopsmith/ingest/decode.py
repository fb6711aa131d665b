from __future__ import annotations

import logging
import subprocess
import tempfile
import wave
from pathlib import Path
from time import perf_counter
from typing import Any

import numpy as np

from loopsmith.errors import ProcessingTimeout, UnsupportedModality
from loopsmith.ingest.probe import probe_media
from loopsmith.models import DecodedMedia

logger = logging.getLogger(__name__)

DEFAULT_DECODE_TIMEOUT_SECONDS = 300
DEFAULT_PROCESSING_WIDTH = 320
PCM_DTYPES = {1: np.uint8, 2: np.int16, 4: np.int32}


def decode_media(
    media_path: str | Path,
    probe: dict[str, Any] | None = None,
    *,
    ffmpeg_binary: str = "ffmpeg",
    ffprobe_binary: str = "ffprobe",
    timeout_seconds: float = DEFAULT_DECODE_TIMEOUT_SECONDS,
    processing_width: int = DEFAULT_PROCESSING_WIDTH,
    include_audio: bool = False,
) -> DecodedMedia:
    """Decode a media file into the in-memory buffers the optimizer works on.

    Video frames are read with OpenCV, converted to RGB and resized to
    ``processing_width`` (``<= 0`` keeps the native size). Audio is read from
    16-bit PCM WAV; other containers are transcoded to WAV with ffmpeg first.
    """

    source_path = Path(media_path).expanduser().resolve()
    if probe is None:
        probe = probe_media(source_path, ffprobe_binary=ffprobe_binary, timeout_seconds=timeout_seconds)

    modality = probe.get("modality")
    duration = float(probe.get("duration_seconds") or 0.0)

    if modality == "video":
        frames, frame_rate = read_video_frames(
            source_path,
            timeout_seconds=timeout_seconds,
            processing_width=processing_width,
            fallback_fps=probe.get("frame_rate"),
        )
        samples = None
        sample_rate = None
        if include_audio and probe.get("sample_rate"):
            samples, sample_rate = _decode_audio(
                source_path, ffmpeg_binary=ffmpeg_binary, timeout_seconds=timeout_seconds
            )
        if duration <= 0 and frame_rate:
            duration = len(frames) / frame_rate
        logger.info("Decoded %d video frames at %.3f fps from %s", len(frames), frame_rate, source_path.name)
        return DecodedMedia(
            modality="video",
            duration_seconds=duration,
            frame_rate=frame_rate,
            sample_rate=sample_rate,
            frames=frames,
            samples=samples,
            source_path=str(source_path),
        )

    if modality == "audio":
        samples, sample_rate = _decode_audio(source_path, ffmpeg_binary=ffmpeg_binary, timeout_seconds=timeout_seconds)
        if duration <= 0:
            duration = len(samples) / sample_rate
        logger.info("Decoded %d audio samples at %d Hz from %s", len(samples), sample_rate, source_path.name)
        return DecodedMedia(
            modality="audio",
            duration_seconds=duration,
            sample_rate=sample_rate,
            samples=samples,
            source_path=str(source_path),
        )

    raise UnsupportedModality(
        f"No decodable audio or video stream in {source_path}.",
        diagnostics={"media_path": str(source_path), "modality": modality},
    )


def read_video_frames(
    video_path: str | Path,
    *,
    timeout_seconds: float = DEFAULT_DECODE_TIMEOUT_SECONDS,
    processing_width: int = DEFAULT_PROCESSING_WIDTH,
    fallback_fps: float | None = None,
) -> tuple[list[np.ndarray], float]:
    import cv2

    capture = cv2.VideoCapture(str(video_path))
    if not capture.isOpened():
        raise RuntimeError(f"Unable to open video for decoding: {video_path}")

    frame_rate = float(capture.get(cv2.CAP_PROP_FPS) or 0.0)
    if frame_rate <= 0:
        frame_rate = float(fallback_fps or 0.0)
    if frame_rate <= 0:
        capture.release()
        raise UnsupportedModality(f"Video has no usable frame rate: {video_path}")

    frames: list[np.ndarray] = []
    started_at = perf_counter()
    try:
        while True:
            ok, frame = capture.read()
            if not ok:
                break
            if processing_width > 0 and frame.shape[1] > processing_width:
                height = max(int(round(frame.shape[0] * processing_width / frame.shape[1])), 1)
                frame = cv2.resize(frame, (processing_width, height), interpolation=cv2.INTER_AREA)
            frames.append(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))
            if perf_counter() - started_at > timeout_seconds:
                raise ProcessingTimeout(
                    f"Video decoding exceeded {timeout_seconds}s after {len(frames)} frames.",
                    diagnostics={"decoded_frames": len(frames), "timeout_seconds": timeout_seconds},
                )
    finally:
        capture.release()

    return frames, frame_rate


def read_wav(wav_path: str | Path) -> tuple[np.ndarray, int]:
    """Read PCM WAV into ``(n,)`` or ``(n, channels)`` integer samples."""

    with wave.open(str(wav_path), "rb") as handle:
        sample_width = handle.getsampwidth()
        channels = handle.getnchannels()
        sample_rate = handle.getframerate()
        raw = handle.readframes(handle.getnframes())

    dtype = PCM_DTYPES.get(sample_width)
    if dtype is None:
        raise ValueError(f"Unsupported WAV sample width: {sample_width * 8} bits.")

    samples = np.frombuffer(raw, dtype=np.dtype(dtype).newbyteorder("<"))
    if channels > 1:
        samples = samples.reshape(-1, channels)
    return samples, sample_rate


def _decode_audio(source_path: Path, *, ffmpeg_binary: str, timeout_seconds: float) -> tuple[np.ndarray, int]:
    if source_path.suffix.lower() == ".wav":
        try:
            return read_wav(source_path)
        except (wave.Error, ValueError) as exc:
            logger.debug("Direct WAV read failed for %s (%s); transcoding.", source_path, exc)

    with tempfile.TemporaryDirectory(prefix="loopsmith-") as tmp_dir:
        wav_path = Path(tmp_dir) / f"{source_path.stem}.wav"
        _run_ffmpeg_extract(source_path, wav_path, ffmpeg_binary=ffmpeg_binary, timeout_seconds=timeout_seconds)
        samples, sample_rate = read_wav(wav_path)
        return samples.copy(), sample_rate


def _run_ffmpeg_extract(source_path: Path, output_path: Path, *, ffmpeg_binary: str, timeout_seconds: float) -> None:
    command = [
        ffmpeg_binary,
        "-v",
        "error",
        "-y",
        "-i",
        str(source_path),
        "-vn",
        "-c:a",
        "pcm_s16le",
        str(output_path),
    ]
    try:
        subprocess.run(command, check=True, capture_output=True, text=True, timeout=timeout_seconds)
    except FileNotFoundError as exc:
        raise RuntimeError(
            "ffmpeg executable was not found. Install FFmpeg so ffmpeg is available on PATH."
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise ProcessingTimeout(
            f"ffmpeg audio extraction did not finish within {timeout_seconds}s.",
            diagnostics={"media_path": str(source_path), "timeout_seconds": timeout_seconds},
        ) from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        details = f" ffmpeg stderr: {stderr}" if stderr else ""
        raise RuntimeError(f"ffmpeg failed to extract audio from {source_path}.{details}") from exc
