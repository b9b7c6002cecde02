"""Sparse matrix primitives.

All reductions accumulate in float64 regardless of storage dtype, and no
function densifies a sparse input except ``scale_rows``, whose output is
dense by definition. Element-wise transforms only touch stored values, so
exact zeros stay implicit.
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
from scipy import sparse


def _csr(matrix) -> sparse.csr_matrix:
    if isinstance(matrix, sparse.csr_matrix):
        return matrix
    return sparse.csr_matrix(matrix)


def row_sums(matrix) -> np.ndarray:
    """Sum of each row as a float64 vector."""
    return np.asarray(matrix.sum(axis=1, dtype=np.float64)).ravel()


def column_sums(matrix) -> np.ndarray:
    """Sum of each column as a float64 vector."""
    return np.asarray(matrix.sum(axis=0, dtype=np.float64)).ravel()


def row_nnz(matrix) -> np.ndarray:
    """Number of non-zero entries per row."""
    m = _csr(matrix)
    return np.asarray((m != 0).sum(axis=1)).ravel().astype(np.int64)


def column_nnz(matrix) -> np.ndarray:
    """Number of non-zero entries per column."""
    m = _csr(matrix)
    return np.asarray((m != 0).sum(axis=0)).ravel().astype(np.int64)


def multiply_columns(matrix, factors: np.ndarray) -> sparse.csr_matrix:
    """Multiply column ``j`` by ``factors[j]``."""
    m = _csr(matrix).astype(np.float64)
    factors = np.asarray(factors, dtype=np.float64)
    if factors.shape != (m.shape[1],):
        raise ValueError(
            f"Expected {m.shape[1]} column factors, got {factors.shape}"
        )
    out = m @ sparse.diags(factors)
    out = sparse.csr_matrix(out)
    out.eliminate_zeros()
    return out


def divide_columns(matrix, divisors: np.ndarray) -> sparse.csr_matrix:
    """Divide column ``j`` by ``divisors[j]``; zero divisors leave the column at zero."""
    divisors = np.asarray(divisors, dtype=np.float64)
    inv = np.zeros_like(divisors)
    nz = divisors != 0
    inv[nz] = 1.0 / divisors[nz]
    return multiply_columns(matrix, inv)


def log1p(matrix) -> sparse.csr_matrix:
    """Natural log1p of stored values."""
    out = _csr(matrix).astype(np.float64, copy=True)
    np.log1p(out.data, out=out.data)
    return out


def expm1(matrix) -> sparse.csr_matrix:
    """Inverse of :func:`log1p` on stored values."""
    out = _csr(matrix).astype(np.float64, copy=True)
    np.expm1(out.data, out=out.data)
    return out


def row_mean_var(matrix, ddof: int = 1) -> Tuple[np.ndarray, np.ndarray]:
    """Per-row mean and variance, counting implicit zeros.

    Parameters
    ----------
    matrix : sparse matrix
        Input rows x columns matrix
    ddof : int
        Delta degrees of freedom for the variance

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        (mean, variance) as float64 vectors
    """
    m = _csr(matrix)
    n = m.shape[1]
    if n == 0:
        nan = np.full(m.shape[0], np.nan)
        return nan, nan.copy()
    mean = row_sums(m) / n
    sq = m.multiply(m)
    mean_sq = row_sums(sq) / n
    var = mean_sq - mean**2
    var[var < 0] = 0.0
    if ddof and n > ddof:
        var *= n / (n - ddof)
    return mean, var


def scale_rows(
    matrix,
    center: bool = True,
    max_value: Optional[float] = None,
    ddof: int = 1,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Standardize each row to zero mean and unit variance.

    Rows with zero variance are left at zero after centering.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray, np.ndarray]
        (dense scaled matrix, row means, row standard deviations)
    """
    mean, var = row_mean_var(matrix, ddof=ddof)
    std = np.sqrt(var)
    dense = matrix.toarray() if sparse.issparse(matrix) else np.asarray(matrix)
    dense = dense.astype(np.float64, copy=True)
    if center:
        dense -= mean[:, None]
    safe = std.copy()
    safe[safe == 0] = 1.0
    dense /= safe[:, None]
    dense[std == 0, :] = 0.0
    if max_value is not None:
        np.clip(dense, -max_value if center else None, max_value, out=dense)
    return dense, mean, std
