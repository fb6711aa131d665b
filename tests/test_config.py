from __future__ import annotations

import logging
from pathlib import Path

import pytest

from loopsmith.config import EncoderSettings, LoggingSettings, OptimizeOptions, build_options, load_settings
from loopsmith.errors import InvalidConfiguration
from loopsmith.logging_config import configure_logging


def test_load_settings_reads_yaml_sections(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("LOOPSMITH_CONFIG", raising=False)
    config = tmp_path / "loop.yaml"
    config.write_text(
        "analysis:\n  histogram_bins: 16\ndefaults:\n  ideal_duration: 4.0\nlogging:\n  level: DEBUG\n",
        encoding="utf-8",
    )

    settings = load_settings(config)

    assert settings.analysis.histogram_bins == 16
    assert settings.defaults.ideal_duration == pytest.approx(4.0)
    assert settings.logging.level == "DEBUG"
    assert settings.ranking.similarity == pytest.approx(0.6)


def test_env_overrides_are_coerced_to_existing_types(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = tmp_path / "loop.yaml"
    config.write_text("{}\n", encoding="utf-8")
    monkeypatch.setenv("LOOPSMITH_DEFAULTS__MIN_LOOP_DURATION", "3")
    monkeypatch.setenv("LOOPSMITH_ANALYSIS__MATRIX_WORKERS", "4")
    monkeypatch.setenv("LOOPSMITH_TRANSITIONS__ALLOW_CUT_FALLBACK", "no")
    monkeypatch.setenv("LOOPSMITH_ENCODER__VIDEO_CODEC_ARGS", '["-c:v", "libvpx-vp9"]')

    settings = load_settings(config)

    assert settings.defaults.min_loop_duration == pytest.approx(3.0)
    assert settings.analysis.matrix_workers == 4
    assert settings.transitions.allow_cut_fallback is False
    assert settings.encoder.video_codec_args == ["-c:v", "libvpx-vp9"]


def test_output_format_from_env_is_normalized(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = tmp_path / "loop.yaml"
    config.write_text("encoder:\n  quality: high\n", encoding="utf-8")
    monkeypatch.setenv("LOOPSMITH_ENCODER__OUTPUT_FORMAT", " .WebM")

    settings = load_settings(config)

    assert settings.encoder.output_format == "webm"
    assert settings.encoder.quality == "high"
    assert EncoderSettings(output_format="").output_format is None


def test_load_settings_rejects_missing_explicit_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError, match="Config file not found"):
        load_settings(tmp_path / "missing.yaml")


def test_load_settings_wraps_validation_errors(tmp_path: Path) -> None:
    config = tmp_path / "bad.yaml"
    config.write_text("defaults:\n  min_loop_duration: 10\n  max_loop_duration: 2\n", encoding="utf-8")

    with pytest.raises(InvalidConfiguration):
        load_settings(config)


@pytest.mark.parametrize(
    "overrides",
    [
        {"min_loop_duration": 8.0, "max_loop_duration": 4.0},
        {"ideal_duration": 30.0},
        {"similarity_threshold": 1.5},
        {"min_loop_duration": -1.0},
    ],
)
def test_build_options_rejects_inconsistent_constraints(overrides: dict[str, float]) -> None:
    with pytest.raises(InvalidConfiguration):
        build_options(**overrides)


def test_build_options_ignores_unset_overrides() -> None:
    defaults = OptimizeOptions(min_loop_duration=1.0, max_loop_duration=8.0, ideal_duration=3.0)

    options = build_options(defaults, min_loop_duration=None, preferred_transition="  Morph ")

    assert options.min_loop_duration == pytest.approx(1.0)
    assert options.max_loop_duration == pytest.approx(8.0)
    assert options.preferred_transition == "morph"


def test_configure_logging_appends_to_log_file(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "loopsmith.log"

    configure_logging(LoggingSettings(level="debug", file=log_file))
    logging.getLogger("loopsmith.test").debug("matrix ready")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert "DEBUG | loopsmith.test | matrix ready" in log_file.read_text(encoding="utf-8")
    configure_logging(LoggingSettings())
