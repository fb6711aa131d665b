from __future__ import annotations

from typing import Any


class LoopOptimizationError(Exception):
    """Base error for a failed optimization run.

    ``diagnostics`` holds whatever partial state was known when the run stopped
    (matrix size, best similarity seen, thresholds tried, ...) so callers can
    relax their constraints and retry.
    """

    kind = "LoopOptimizationError"

    def __init__(self, message: str, *, diagnostics: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.diagnostics: dict[str, Any] = dict(diagnostics or {})


class UnsupportedModality(LoopOptimizationError):
    """Raised when the decoded buffer is neither audio nor video."""

    kind = "UnsupportedModality"


class InsufficientData(LoopOptimizationError):
    """Raised when there are too few samples or no candidates to work with."""

    kind = "InsufficientData"


class NoViableLoopFound(LoopOptimizationError):
    """Raised when threshold relaxation is exhausted without a candidate."""

    kind = "NoViableLoopFound"


class InsufficientBlendMaterial(LoopOptimizationError):
    """Raised when a loop is too short for the requested blend."""

    kind = "InsufficientBlendMaterial"


class ProcessingTimeout(LoopOptimizationError):
    """Raised when an external decode/encode step exceeds its time budget."""

    kind = "ProcessingTimeout"


class InvalidConfiguration(LoopOptimizationError):
    """Raised before any analysis when options or settings are inconsistent."""

    kind = "InvalidConfiguration"


class RunCancelled(LoopOptimizationError):
    """Raised when the caller sets the cancellation flag between phases or during encoding."""

    kind = "RunCancelled"
