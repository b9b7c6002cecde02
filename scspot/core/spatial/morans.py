"""Moran's I spatial autocorrelation for many genes at once.

Measures whether each gene's expression is similar at neighboring spots
(+1), dissimilar (-1), or spatially random (~ -1/(n-1)).

Formula:
    I = (n / S0) * (z^T W z) / (z^T z),  z = x - mean(x)
"""

from dataclasses import dataclass
from typing import List, Tuple

import numpy as np
from joblib import Parallel, delayed
from scipy import sparse
from scipy.stats import norm

# Genes per dense block
_GENE_BLOCK = 512


@dataclass
class WeightStatistics:
    """Constants of a spatial weights matrix used by the analytic test.

    Attributes
    ----------
    n : int
        Number of spots
    s0 : float
        Sum of all weights
    s1 : float
        0.5 * sum((w_ij + w_ji)^2)
    s2 : float
        sum_i (row_sum_i + col_sum_i)^2
    """

    n: int
    s0: float
    s1: float
    s2: float

    @classmethod
    def from_weights(cls, weights: sparse.csr_matrix) -> "WeightStatistics":
        weights = sparse.csr_matrix(weights, dtype=np.float64)
        sym = weights + weights.T
        s1 = 0.5 * float(sym.multiply(sym).sum())
        row = np.asarray(weights.sum(axis=1)).ravel()
        col = np.asarray(weights.sum(axis=0)).ravel()
        s2 = float(np.sum((row + col) ** 2))
        return cls(n=weights.shape[0], s0=float(weights.sum()), s1=s1, s2=s2)

    @property
    def expected(self) -> float:
        return -1.0 / (self.n - 1)

    @property
    def variance_normal(self) -> float:
        """Variance of I under the normality assumption."""
        n, s0 = self.n, self.s0
        numer = n * n * self.s1 - n * self.s2 + 3.0 * s0 * s0
        denom = s0 * s0 * (n * n - 1.0)
        return numer / denom - self.expected ** 2


def _dense_block(values, start: int, stop: int) -> np.ndarray:
    block = values[:, start:stop]
    if sparse.issparse(block):
        block = block.toarray()
    return np.asarray(block, dtype=np.float64)


def morans_i(weights: sparse.csr_matrix, values) -> np.ndarray:
    """Moran's I for every column of ``values``.

    Parameters
    ----------
    weights : sparse.csr_matrix
        (n_obs, n_obs) spatial weights
    values : np.ndarray or sparse matrix
        (n_obs, n_genes) expression

    Returns
    -------
    np.ndarray
        Moran's I per gene; NaN for constant genes or an empty graph
    """
    n_obs, n_genes = values.shape
    s0 = float(weights.sum())
    out = np.full(n_genes, np.nan)
    if n_obs == 0 or s0 == 0:
        return out
    for start in range(0, n_genes, _GENE_BLOCK):
        stop = min(start + _GENE_BLOCK, n_genes)
        z = _dense_block(values, start, stop)
        z = z - z.mean(axis=0)
        numerator = np.sum(z * (weights @ z), axis=0)
        denominator = np.sum(z * z, axis=0)
        valid = denominator > 0
        block = np.full(stop - start, np.nan)
        block[valid] = (n_obs / s0) * numerator[valid] / denominator[valid]
        out[start:stop] = block
    return out


def analytic_pvalues(
    statistic: np.ndarray,
    stats: WeightStatistics,
    alternative: str = "greater",
) -> Tuple[np.ndarray, np.ndarray]:
    """Normal-approximation z-scores and p-values.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        (z_scores, p_values); NaN statistics give NaN z and p = 1
    """
    variance = stats.variance_normal
    if not variance > 0:
        z = np.full(statistic.shape, np.nan)
    else:
        z = (statistic - stats.expected) / np.sqrt(variance)
    if alternative == "greater":
        p = norm.sf(z)
    else:
        p = 2.0 * norm.sf(np.abs(z))
    p = np.where(np.isnan(p), 1.0, p)
    return z, p


def _permutation_batch(
    weights: sparse.csr_matrix,
    values,
    seeds: List[np.random.SeedSequence],
) -> np.ndarray:
    """Moran's I under ``len(seeds)`` random relabelings of the spots."""
    n_obs = values.shape[0]
    out = np.empty((len(seeds), values.shape[1]))
    for i, seed in enumerate(seeds):
        perm = np.random.default_rng(seed).permutation(n_obs)
        out[i] = morans_i(weights, values[perm])
    return out


def permutation_pvalues(
    weights: sparse.csr_matrix,
    values,
    statistic: np.ndarray,
    n_permutations: int = 199,
    random_seed: int = 0,
    alternative: str = "greater",
    n_jobs: int = 1,
    batch_size: int = 16,
) -> Tuple[np.ndarray, np.ndarray]:
    """Pseudo p-values from random relabelings of the spots.

    Each permutation gets its own child seed, so results do not depend on
    ``n_jobs`` or ``batch_size``.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        (z_scores against the permutation null, p_values)
    """
    seeds = np.random.SeedSequence(random_seed).spawn(n_permutations)
    batches = [seeds[i:i + batch_size] for i in range(0, n_permutations, batch_size)]
    if n_jobs == 1:
        results = [_permutation_batch(weights, values, batch) for batch in batches]
    else:
        results = Parallel(n_jobs=n_jobs)(
            delayed(_permutation_batch)(weights, values, batch) for batch in batches
        )
    null = np.vstack(results)

    null_mean = null.mean(axis=0)
    if null.shape[0] > 1:
        null_std = null.std(axis=0, ddof=1)
    else:
        null_std = np.full(null.shape[1], np.nan)
    with np.errstate(invalid="ignore", divide="ignore"):
        z = (statistic - null_mean) / null_std
        if alternative == "greater":
            exceed = np.sum(null >= statistic[None, :], axis=0)
        else:
            expected = -1.0 / (values.shape[0] - 1)
            exceed = np.sum(
                np.abs(null - expected) >= np.abs(statistic - expected)[None, :], axis=0
            )
    p = (exceed + 1.0) / (n_permutations + 1.0)
    p = np.where(np.isnan(statistic), 1.0, p)
    return z, p
