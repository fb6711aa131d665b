from __future__ import annotations

import logging
import sys

from loopsmith.config import LoggingSettings

DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(settings: LoggingSettings) -> None:
    """Configure process-wide logging once at CLI startup.

    Log lines go to stderr so JSON printed on stdout stays machine-readable;
    ``settings.file`` adds a second handler that appends to a log file.
    """

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if settings.file is not None:
        settings.file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(settings.file, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, settings.level.upper(), logging.INFO),
        format=settings.format or DEFAULT_LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
