"""Highly variable gene selection with a variance-stabilizing trend.

The trend is a LOWESS fit of log10(variance) on log10(mean). Each gene is
standardized by the variance the trend expects at its mean, values are
clipped at sqrt(n_obs), and the variance of the standardized values ranks
the genes.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

import numpy as np
import pandas as pd
from scipy import sparse
from statsmodels.nonparametric.smoothers_lowess import lowess

from ..data import ExpressionMatrix
from ..errors import InputError
from . import matrix_ops
from .config import FeatureSelectionConfig

logger = logging.getLogger(__name__)


@dataclass
class FeatureSelectionResult:
    """Result from highly variable gene selection.

    Attributes
    ----------
    statistics : pd.DataFrame
        Per-gene ``mean``, ``variance``, ``variance_expected``,
        ``variance_standardized``, ``rank`` (1 = most variable) and
        ``highly_variable``
    selected : List[str]
        Selected gene ids in rank order
    """

    statistics: pd.DataFrame
    selected: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_genes": int(len(self.statistics)),
            "n_selected": len(self.selected),
            "top_genes": self.selected[:10],
        }


class FeatureSelector:
    """Rank and select highly variable genes.

    Parameters
    ----------
    config : FeatureSelectionConfig, optional
        Feature selection configuration. If None, uses defaults.

    Example
    -------
    >>> selector = FeatureSelector(FeatureSelectionConfig(n_variable_features=2000))
    >>> result = selector.select(normalized)
    >>> result.selected[:5]
    """

    def __init__(
        self,
        config: Optional[FeatureSelectionConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or FeatureSelectionConfig()
        self.config.validate()
        self.logger = logger or logging.getLogger(__name__)

    def _fit_trend(self, mean: np.ndarray, var: np.ndarray) -> np.ndarray:
        """Expected variance for every gene from the log-log trend."""
        expected = np.zeros_like(mean)
        fit_mask = (mean > 0) & (var > 0)
        n_fit = int(fit_mask.sum())
        if n_fit == 0:
            return expected

        x = np.log10(mean[fit_mask])
        y = np.log10(var[fit_mask])
        if n_fit >= 10 and np.ptp(x) > 0:
            fitted = lowess(
                y, x, frac=self.config.span, it=0, return_sorted=False
            )
        elif n_fit >= 2 and np.ptp(x) > 0:
            self.logger.warning(
                "Only %d genes with non-zero variance; using a linear trend", n_fit
            )
            slope, intercept = np.polyfit(x, y, deg=1)
            fitted = slope * x + intercept
        else:
            fitted = np.full_like(y, y.mean())
        expected[fit_mask] = np.power(10.0, fitted)
        return expected

    @staticmethod
    def _standardized_variance(
        matrix: sparse.csr_matrix,
        mean: np.ndarray,
        expected_var: np.ndarray,
    ) -> np.ndarray:
        """Variance of clipped standardized values, computed on the sparse rows."""
        n_genes, n_obs = matrix.shape
        out = np.zeros(n_genes)
        if n_obs < 2:
            return out
        sd = np.sqrt(expected_var)
        valid = sd > 0
        safe_sd = np.where(valid, sd, 1.0)
        clip_max = np.sqrt(n_obs)

        row_of = np.repeat(np.arange(n_genes), np.diff(matrix.indptr))
        z = (matrix.data - mean[row_of]) / safe_sd[row_of]
        np.minimum(z, clip_max, out=z)
        sum_nz = np.bincount(row_of, weights=z, minlength=n_genes)
        sq_nz = np.bincount(row_of, weights=z * z, minlength=n_genes)

        n_zero = n_obs - np.diff(matrix.indptr)
        z0 = np.minimum(-mean / safe_sd, clip_max)
        total = sum_nz + n_zero * z0
        total_sq = sq_nz + n_zero * z0 * z0
        var = (total_sq - total * total / n_obs) / (n_obs - 1)
        var[var < 0] = 0.0
        out[valid] = var[valid]
        return out

    def compute_statistics(self, expression: ExpressionMatrix) -> pd.DataFrame:
        """Per-gene mean, variance and standardized variance.

        Parameters
        ----------
        expression : ExpressionMatrix
            Normalized expression (genes x observations)

        Returns
        -------
        pd.DataFrame
            Feature statistics indexed by gene id, with ``rank`` assigned by
            descending standardized variance and ties broken by gene id
        """
        if expression.n_obs < 2:
            raise InputError(
                "At least 2 observations are required to estimate gene variance",
                stage="feature_selection",
                parameter="expression",
            )
        matrix = expression.matrix.astype(np.float64)
        matrix.sum_duplicates()
        mean, var = matrix_ops.row_mean_var(matrix, ddof=1)
        expected = self._fit_trend(mean, var)
        standardized = self._standardized_variance(matrix, mean, expected)

        stats = pd.DataFrame(
            {
                "mean": mean,
                "variance": var,
                "variance_expected": expected,
                "variance_standardized": standardized,
            },
            index=expression.gene_ids,
        )
        gene_names = np.asarray(expression.gene_ids, dtype=str)
        order = np.lexsort((gene_names, -standardized))
        rank = np.empty(len(order), dtype=np.int64)
        rank[order] = np.arange(1, len(order) + 1)
        stats["rank"] = rank
        return stats

    def select(
        self,
        expression: ExpressionMatrix,
        n_features: Optional[int] = None,
    ) -> FeatureSelectionResult:
        """Select the top ``n_features`` genes by standardized variance.

        Parameters
        ----------
        expression : ExpressionMatrix
            Normalized expression (genes x observations)
        n_features : int, optional
            Number of genes to select. Uses config default if None.

        Returns
        -------
        FeatureSelectionResult
            Statistics table and selected gene ids in rank order
        """
        n_features = n_features if n_features is not None else self.config.n_variable_features
        if n_features < 1:
            raise InputError(
                "n_features must be >= 1",
                stage="feature_selection",
                parameter="n_variable_features",
            )
        stats = self.compute_statistics(expression)
        n_take = min(n_features, len(stats))
        if n_take < n_features:
            self.logger.info(
                "Requested %d variable genes but only %d genes exist", n_features, n_take
            )
        stats["highly_variable"] = stats["rank"] <= n_take
        selected = stats.sort_values("rank").index[:n_take].astype(str).tolist()
        self.logger.info(
            "Selected %d highly variable genes out of %d", len(selected), len(stats)
        )
        return FeatureSelectionResult(statistics=stats, selected=selected)
