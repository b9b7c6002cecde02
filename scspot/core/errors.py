"""Error types with stage context for the analysis engine.

Structural and parameter problems are raised at stage boundaries.
Per-item statistical shortfalls (a cluster too small to test, a gene set
with no genes in the matrix) are recorded inline in result tables instead
of aborting the run.

Error Codes:
    E100_INPUT: Malformed or mismatched matrix, identifiers or coordinates
    E200_CONFIGURATION: Parameter outside its valid range
    E300_INSUFFICIENT_DATA: Item too small for the requested statistic
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for engine errors.

    Parameters
    ----------
    message : str
        Human-readable error description
    stage : str, optional
        Name of the stage that raised the error
    parameter : str, optional
        Offending parameter or input name
    context : Dict[str, Any], optional
        Additional context for debugging
    """

    error_code = "E000_UNKNOWN"

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        parameter: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.stage = stage
        self.parameter = parameter
        self.context = dict(context or {})
        super().__init__(str(self))

    def __str__(self) -> str:
        prefix = f"[{self.error_code}]"
        if self.stage:
            prefix += f" {self.stage}:"
        text = f"{prefix} {self.message}"
        if self.parameter:
            text += f" (parameter: {self.parameter})"
        return text

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_code": self.error_code,
            "error_type": type(self).__name__,
            "stage": self.stage,
            "parameter": self.parameter,
            "message": self.message,
            "context": {k: str(v) for k, v in self.context.items()},
        }


class InputError(EngineError):
    """Malformed or mismatched input, or an infeasible parameter for the data."""

    error_code = "E100_INPUT"


class ConfigurationError(EngineError):
    """Parameter out of its valid range (negative k, resolution <= 0, ...)."""

    error_code = "E200_CONFIGURATION"


class InsufficientDataError(EngineError):
    """An item is too small for the requested statistical test.

    Raised only where a single item is processed; multi-item stages record
    ``to_dict()`` of this error in their output and keep going.
    """

    error_code = "E300_INSUFFICIENT_DATA"

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        parameter: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        item: Optional[str] = None,
    ):
        self.item = item
        super().__init__(message, stage=stage, parameter=parameter, context=context)

    def to_dict(self) -> Dict[str, Any]:
        record = super().to_dict()
        record["item"] = self.item
        return record


class NonConvergenceWarning(UserWarning):
    """An iterative stage hit its iteration cap; the best result so far is kept."""
