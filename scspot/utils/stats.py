"""Statistical utilities for scspot.

Provides multiple-testing correction shared by the testing stages.
"""

from __future__ import annotations

from typing import Iterable, Union

import numpy as np
from statsmodels.stats.multitest import multipletests

ArrayLike = Union[Iterable[float], np.ndarray]

CORRECTION_METHODS = ("fdr_bh", "fdr_by", "bonferroni", "holm", "none")


def adjust_pvalues(p_values: ArrayLike, method: str = "fdr_bh") -> np.ndarray:
    """Apply multiple testing correction to p-values.

    Non-finite entries are left as NaN and do not count as tests.

    Parameters
    ----------
    p_values : ArrayLike
        Raw p-values
    method : str
        Correction method: "fdr_bh", "fdr_by", "bonferroni", "holm", "none"

    Returns
    -------
    np.ndarray
        Corrected p-values with the input's shape
    """
    if method not in CORRECTION_METHODS:
        raise ValueError(f"Unknown correction method: {method}")
    if not isinstance(p_values, np.ndarray):
        p_values = list(p_values)
    arr = np.asarray(p_values, dtype=float)
    flat = arr.ravel()
    out = np.full(flat.shape, np.nan)
    finite = np.isfinite(flat)
    if not finite.any():
        return out.reshape(arr.shape)

    if method == "none":
        out[finite] = flat[finite]
    else:
        _, corrected, _, _ = multipletests(flat[finite], method=method)
        out[finite] = corrected
    return out.reshape(arr.shape)
