from __future__ import annotations

import subprocess
import threading
from pathlib import Path

import pytest

from loopsmith.config import EncoderSettings
from loopsmith.errors import ProcessingTimeout, RunCancelled
from loopsmith.models import EncodingRequest, TransitionPlan
from loopsmith.render.ffmpeg_encoder import FfmpegLoopEncoder, build_ffmpeg_loop_command, resolve_output_profile

CROSSFADE = TransitionPlan(type="crossfade", duration=0.5, blend_unit_count=15)
CUT = TransitionPlan(type="cut", duration=0.0, blend_unit_count=0)


def test_cut_command_trims_the_loop() -> None:
    command = build_ffmpeg_loop_command(
        source_path="in.mp4",
        output_path="out.mp4",
        request=EncodingRequest(1.0, 6.0, CUT),
        modality="video",
    )

    assert command[:4] == ["ffmpeg", "-v", "error", "-y"]
    assert command[command.index("-ss") + 1] == "1.000"
    assert command[command.index("-t") + 1] == "5.000"
    assert "-an" in command
    assert command[-1] == "out.mp4"


def test_blend_command_fades_tail_into_head() -> None:
    command = build_ffmpeg_loop_command(
        source_path="in.mp4",
        output_path="out.mp4",
        request=EncodingRequest(1.0, 6.0, CROSSFADE),
        modality="video",
        has_audio=True,
    )

    graph = command[command.index("-filter_complex") + 1]
    assert "trim=start=1.500:end=6.000" in graph
    assert "trim=start=1.000:end=1.500" in graph
    assert "xfade=transition=fade:duration=0.500:offset=4.000" in graph
    assert "acrossfade=d=0.500" in graph
    assert command.count("-map") == 2


def test_morph_uses_dissolve_and_audio_only_skips_video_graph() -> None:
    morph = TransitionPlan(type="morph", duration=1.5, blend_unit_count=12000, unit="samples")

    command = build_ffmpeg_loop_command(
        source_path="in.wav",
        output_path="out.m4a",
        request=EncodingRequest(0.0, 8.0, morph),
        modality="audio",
    )

    graph = command[command.index("-filter_complex") + 1]
    assert "xfade" not in graph
    assert "acrossfade=d=1.500" in graph


def test_encoder_reports_compression_ratio(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    source = tmp_path / "in.mp4"
    source.write_bytes(b"x" * 1000)
    output = tmp_path / "out" / "loop.mp4"

    def _fake_run(command: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        Path(command[-1]).write_bytes(b"y" * 250)
        return subprocess.CompletedProcess(args=command, returncode=0, stdout="", stderr="")

    monkeypatch.setattr(subprocess, "run", _fake_run)
    encoder = FfmpegLoopEncoder(source, output, modality="video", source_duration=10.0)

    metrics = encoder(EncodingRequest(2.0, 7.0, CROSSFADE))

    assert metrics.file_size_bytes == 250
    assert metrics.compression_ratio == pytest.approx(2.0)
    assert metrics.output_path == str(output)


def test_encoder_timeout_discards_partial_output(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    source = tmp_path / "in.mp4"
    source.write_bytes(b"x" * 1000)
    output = tmp_path / "loop.mp4"

    def _slow_run(command: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        Path(command[-1]).write_bytes(b"partial")
        raise subprocess.TimeoutExpired(cmd=command, timeout=kwargs["timeout"])

    monkeypatch.setattr(subprocess, "run", _slow_run)
    encoder = FfmpegLoopEncoder(
        source,
        output,
        modality="video",
        source_duration=10.0,
        settings=EncoderSettings(timeout_seconds=1),
    )

    with pytest.raises(ProcessingTimeout):
        encoder(EncodingRequest(2.0, 7.0, CUT))
    assert not output.exists()


def test_encoder_wraps_ffmpeg_failures(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    source = tmp_path / "in.mp4"
    source.write_bytes(b"x")

    def _fail(command: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        raise subprocess.CalledProcessError(returncode=1, cmd=command, output="", stderr="No such filter: 'xfade'")

    monkeypatch.setattr(subprocess, "run", _fail)
    encoder = FfmpegLoopEncoder(source, tmp_path / "loop.mp4", modality="video", source_duration=10.0)

    with pytest.raises(RuntimeError, match="No such filter"):
        encoder(EncodingRequest(2.0, 7.0, CROSSFADE))


def test_gif_output_loops_forever_without_audio() -> None:
    profile = resolve_output_profile(modality="video", has_audio=True, output_format="gif", quality="low")

    command = build_ffmpeg_loop_command(
        source_path="in.mp4",
        output_path="out.gif",
        request=EncodingRequest(1.0, 6.0, CUT),
        modality="video",
        has_audio=True,
        profile=profile,
    )

    assert command[command.index("-c:v") + 1] == "gif"
    assert command[command.index("-vf") + 1] == "fps=15,scale='min(iw,480)':-1:flags=lanczos"
    assert command[command.index("-loop") + 1] == "0"
    assert "-an" in command
    assert command[-1] == "out.gif"


def test_gif_blend_applies_the_gif_filter_after_the_fade() -> None:
    profile = resolve_output_profile(modality="video", output_format="gif", gif_loop_count=3)

    command = build_ffmpeg_loop_command(
        source_path="in.mp4",
        output_path="out.gif",
        request=EncodingRequest(1.0, 6.0, CROSSFADE),
        modality="video",
        profile=profile,
    )

    graph = command[command.index("-filter_complex") + 1]
    assert graph.endswith("fps=15,scale='min(iw,720)':-1:flags=lanczos[vout]")
    assert command[command.index("-loop") + 1] == "3"
    assert command.count("-map") == 1


def test_webm_uses_vp9_and_opus_with_preset_bitrates() -> None:
    profile = resolve_output_profile(modality="video", has_audio=True, output_format="webm", quality="high")

    assert profile.video_args == ("-c:v", "libvpx-vp9", "-b:v", "5000k")
    assert profile.audio_args == ("-c:a", "libopus", "-b:a", "192k")
    assert profile.video_filter == "scale=-2:'min(ih,1080)',format=yuv420p"


def test_mp3_from_video_drops_the_picture() -> None:
    profile = resolve_output_profile(modality="video", has_audio=True, output_format="mp3")

    command = build_ffmpeg_loop_command(
        source_path="in.mp4",
        output_path="out.mp3",
        request=EncodingRequest(1.0, 6.0, CUT),
        modality="video",
        has_audio=True,
        profile=profile,
    )

    assert "-vn" in command
    assert command[command.index("-c:a") + 1] == "libmp3lame"
    assert command[command.index("-b:a") + 1] == "128k"


@pytest.mark.parametrize(
    ("modality", "has_audio", "output_format"),
    [("audio", False, "gif"), ("video", False, "wav"), ("video", True, "avi")],
)
def test_incompatible_output_formats_are_rejected(modality: str, has_audio: bool, output_format: str) -> None:
    with pytest.raises(ValueError):
        resolve_output_profile(modality=modality, has_audio=has_audio, output_format=output_format)


def test_encoder_discards_output_when_cancelled_mid_run(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    source = tmp_path / "in.mp4"
    source.write_bytes(b"x" * 1000)
    output = tmp_path / "loop.mp4"
    cancel_event = threading.Event()

    def _run_then_cancel(command: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        Path(command[-1]).write_bytes(b"late")
        cancel_event.set()
        return subprocess.CompletedProcess(args=command, returncode=0, stdout="", stderr="")

    monkeypatch.setattr(subprocess, "run", _run_then_cancel)
    encoder = FfmpegLoopEncoder(source, output, modality="video", source_duration=10.0)

    with pytest.raises(RunCancelled):
        encoder(EncodingRequest(2.0, 7.0, CUT, cancel_event=cancel_event))
    assert not output.exists()
