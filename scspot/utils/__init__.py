"""Utility functions for scspot.

Provides statistical helpers used across modules.
"""

from .stats import (
    CORRECTION_METHODS,
    adjust_pvalues,
)

__all__ = [
    "CORRECTION_METHODS",
    "adjust_pvalues",
]
