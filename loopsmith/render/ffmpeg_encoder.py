from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from loopsmith.config import EncoderSettings
from loopsmith.errors import ProcessingTimeout, RunCancelled
from loopsmith.models import EncodingMetrics, EncodingRequest, Modality

logger = logging.getLogger(__name__)

# ffmpeg xfade transition per blend type
XFADE_TRANSITIONS = {"crossfade": "fade", "morph": "dissolve"}
DEFAULT_VIDEO_CODEC_ARGS = ("-c:v", "libx264", "-preset", "veryfast", "-crf", "18")
DEFAULT_AUDIO_CODEC_ARGS = ("-c:a", "aac", "-b:a", "160k")


@dataclass(slots=True, frozen=True)
class QualityPreset:
    video_bitrate: str
    audio_bitrate: str
    scale: int


@dataclass(slots=True, frozen=True)
class OutputProfile:
    """Streams, codec arguments and filters for one output container."""

    with_video: bool
    with_audio: bool
    video_args: tuple[str, ...] = ()
    audio_args: tuple[str, ...] = ()
    video_filter: str | None = None
    extra_args: tuple[str, ...] = ()


QUALITY_PRESETS = {
    "low": QualityPreset(video_bitrate="1000k", audio_bitrate="96k", scale=480),
    "medium": QualityPreset(video_bitrate="2500k", audio_bitrate="128k", scale=720),
    "high": QualityPreset(video_bitrate="5000k", audio_bitrate="192k", scale=1080),
}
VIDEO_FORMATS = {"mp4", "webm", "gif"}
AUDIO_FORMATS = {"mp3", "wav"}
GIF_FPS = 15


class FfmpegLoopEncoder:
    """Render a chosen loop with ffmpeg and report compression metrics.

    Blend plans render ``[start + D, end]`` and fade its tail into
    ``[start, start + D]``, so the output is ``D`` seconds shorter than the
    loop and wraps seamlessly when played back to back.
    """

    def __init__(
        self,
        source_path: str | Path,
        output_path: str | Path,
        *,
        modality: Modality,
        source_duration: float,
        source_size_bytes: int | None = None,
        has_audio: bool = False,
        settings: EncoderSettings | None = None,
    ) -> None:
        self.source_path = Path(source_path)
        self.output_path = Path(output_path)
        self.modality = modality
        self.source_duration = source_duration
        self.source_size_bytes = source_size_bytes
        self.has_audio = has_audio
        self.settings = settings or EncoderSettings()
        self.profile = resolve_output_profile(
            modality=modality,
            has_audio=has_audio,
            output_format=self.settings.output_format,
            quality=self.settings.quality,
            gif_loop_count=self.settings.gif_loop_count,
            video_codec_args=self.settings.video_codec_args,
            audio_codec_args=self.settings.audio_codec_args,
        )

    def __call__(self, request: EncodingRequest) -> EncodingMetrics:
        command = self.build_command(request)
        self._check_cancelled(request)
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Encoding loop %.3fs-%.3fs to %s", request.loop_start, request.loop_end, self.output_path)
        logger.debug("ffmpeg command: %s", shlex.join(command))

        try:
            subprocess.run(
                command,
                check=True,
                capture_output=True,
                text=True,
                timeout=self.settings.timeout_seconds,
            )
        except FileNotFoundError as exc:
            raise RuntimeError(
                "ffmpeg executable was not found. Install FFmpeg so ffmpeg is available on PATH."
            ) from exc
        except subprocess.TimeoutExpired as exc:
            self.output_path.unlink(missing_ok=True)
            raise ProcessingTimeout(
                f"ffmpeg did not finish encoding within {self.settings.timeout_seconds}s.",
                diagnostics={
                    "output_path": str(self.output_path),
                    "timeout_seconds": self.settings.timeout_seconds,
                },
            ) from exc
        except subprocess.CalledProcessError as exc:
            self.output_path.unlink(missing_ok=True)
            stderr = (exc.stderr or "").strip()
            details = f" ffmpeg stderr: {stderr}" if stderr else ""
            raise RuntimeError(f"ffmpeg failed to encode loop from {self.source_path}.{details}") from exc

        self._check_cancelled(request)
        return self._metrics(request)

    def build_command(self, request: EncodingRequest) -> list[str]:
        return build_ffmpeg_loop_command(
            source_path=str(self.source_path),
            output_path=str(self.output_path),
            request=request,
            modality=self.modality,
            has_audio=self.has_audio,
            ffmpeg_binary=self.settings.ffmpeg_binary,
            profile=self.profile,
        )

    def _check_cancelled(self, request: EncodingRequest) -> None:
        if request.cancel_event is not None and request.cancel_event.is_set():
            self.output_path.unlink(missing_ok=True)
            raise RunCancelled(
                "Encoding cancelled.",
                diagnostics={"output_path": str(self.output_path)},
            )

    def _metrics(self, request: EncodingRequest) -> EncodingMetrics:
        if not self.output_path.exists():
            raise RuntimeError(f"ffmpeg reported success but wrote no output: {self.output_path}")

        output_bytes = self.output_path.stat().st_size
        source_bytes = self.source_size_bytes
        if source_bytes is None:
            source_bytes = self.source_path.stat().st_size

        loop_duration = request.loop_end - request.loop_start
        if output_bytes <= 0 or self.source_duration <= 0:
            ratio = 1.0
        else:
            attributable = source_bytes * loop_duration / self.source_duration
            ratio = attributable / output_bytes

        return EncodingMetrics(
            compression_ratio=round(ratio, 4),
            file_size_bytes=output_bytes,
            output_path=str(self.output_path),
        )


def resolve_output_profile(
    *,
    modality: Modality,
    has_audio: bool = False,
    output_format: str | None = None,
    quality: str = "medium",
    gif_loop_count: int = 0,
    video_codec_args: Sequence[str] = DEFAULT_VIDEO_CODEC_ARGS,
    audio_codec_args: Sequence[str] = DEFAULT_AUDIO_CODEC_ARGS,
) -> OutputProfile:
    """Pick streams, codecs and filters for ``output_format``.

    ``None`` keeps the source container and the configured codec arguments.
    """

    source_has_audio = modality == "audio" or has_audio
    if output_format is None:
        return OutputProfile(
            with_video=modality == "video",
            with_audio=source_has_audio,
            video_args=tuple(video_codec_args),
            audio_args=tuple(audio_codec_args),
        )

    if output_format not in VIDEO_FORMATS | AUDIO_FORMATS:
        raise ValueError(f"Unsupported output format: {output_format}")
    if output_format in VIDEO_FORMATS and modality != "video":
        raise ValueError(f"Output format {output_format} needs a video source.")
    if output_format in AUDIO_FORMATS and not source_has_audio:
        raise ValueError(f"Output format {output_format} needs a source with audio.")

    preset = QUALITY_PRESETS[quality]
    if output_format == "gif":
        return OutputProfile(
            with_video=True,
            with_audio=False,
            video_args=("-c:v", "gif"),
            video_filter=f"fps={GIF_FPS},scale='min(iw,{preset.scale})':-1:flags=lanczos",
            extra_args=("-loop", str(gif_loop_count)),
        )
    if output_format == "mp3":
        return OutputProfile(
            with_video=False,
            with_audio=True,
            audio_args=("-c:a", "libmp3lame", "-b:a", preset.audio_bitrate),
        )
    if output_format == "wav":
        return OutputProfile(with_video=False, with_audio=True, audio_args=("-c:a", "pcm_s16le"))

    video_codec, audio_codec = ("libvpx-vp9", "libopus") if output_format == "webm" else ("libx264", "aac")
    return OutputProfile(
        with_video=True,
        with_audio=has_audio,
        video_args=("-c:v", video_codec, "-b:v", preset.video_bitrate),
        audio_args=("-c:a", audio_codec, "-b:a", preset.audio_bitrate),
        video_filter=f"scale=-2:'min(ih,{preset.scale})',format=yuv420p",
    )


def build_ffmpeg_loop_command(
    *,
    source_path: str,
    output_path: str,
    request: EncodingRequest,
    modality: Modality,
    has_audio: bool = False,
    ffmpeg_binary: str = "ffmpeg",
    video_codec_args: Sequence[str] = DEFAULT_VIDEO_CODEC_ARGS,
    audio_codec_args: Sequence[str] = DEFAULT_AUDIO_CODEC_ARGS,
    profile: OutputProfile | None = None,
) -> list[str]:
    """Build the ffmpeg argv that renders one loop."""

    if profile is None:
        profile = resolve_output_profile(
            modality=modality,
            has_audio=has_audio,
            video_codec_args=video_codec_args,
            audio_codec_args=audio_codec_args,
        )

    start = request.loop_start
    end = request.loop_end
    plan = request.transition_plan

    command = [ffmpeg_binary, "-v", "error", "-y"]

    if not plan.is_blend:
        command += ["-ss", f"{start:.3f}", "-i", source_path, "-t", f"{end - start:.3f}"]
        if profile.with_video:
            if profile.video_filter:
                command += ["-vf", profile.video_filter]
            command += list(profile.video_args)
        else:
            command += ["-vn"]
        command += list(profile.audio_args) if profile.with_audio else ["-an"]
        command += [*profile.extra_args, output_path]
        return command

    blend = plan.duration
    offset = (end - start) - 2 * blend
    filters: list[str] = []
    maps: list[str] = []

    if profile.with_video:
        filters.append(
            "[0:v]split=2[vbody][vhead];"
            f"[vbody]trim=start={start + blend:.3f}:end={end:.3f},setpts=PTS-STARTPTS[vb];"
            f"[vhead]trim=start={start:.3f}:end={start + blend:.3f},setpts=PTS-STARTPTS[vh];"
            f"[vb][vh]xfade=transition={XFADE_TRANSITIONS[plan.type]}:duration={blend:.3f}:offset={offset:.3f},"
            f"{profile.video_filter or 'format=yuv420p'}[vout]"
        )
        maps += ["-map", "[vout]"]

    if profile.with_audio:
        filters.append(
            "[0:a]asplit=2[abody][ahead];"
            f"[abody]atrim=start={start + blend:.3f}:end={end:.3f},asetpts=PTS-STARTPTS[ab];"
            f"[ahead]atrim=start={start:.3f}:end={start + blend:.3f},asetpts=PTS-STARTPTS[ah];"
            f"[ab][ah]acrossfade=d={blend:.3f}[aout]"
        )
        maps += ["-map", "[aout]"]

    command += ["-i", source_path, "-filter_complex", ";".join(filters), *maps]
    if profile.with_video:
        command += list(profile.video_args)
    if profile.with_audio:
        command += list(profile.audio_args)
    command += [*profile.extra_args, output_path]
    return command
