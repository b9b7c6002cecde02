"""Library-size normalization, log transform and per-gene scaling."""

from dataclasses import dataclass, field
from typing import Optional, Sequence
import logging

import numpy as np
import pandas as pd

from ..data import CountMatrix, ExpressionMatrix
from ..errors import InputError
from . import matrix_ops
from .config import NormalizationConfig

logger = logging.getLogger(__name__)


@dataclass
class NormalizationResult:
    """Result from log-normalizing a count matrix.

    Attributes
    ----------
    normalized : ExpressionMatrix
        log1p(counts / size_factor * scale_factor)
    size_factors : pd.Series
        Total counts per observation used as divisor
    scale_factor : float
        Target total per observation
    """

    normalized: ExpressionMatrix
    size_factors: pd.Series
    scale_factor: float


@dataclass
class ScaledMatrix:
    """Dense observations x genes z-scored matrix.

    Attributes
    ----------
    values : np.ndarray
        Scaled values (n_obs, n_genes)
    gene_ids : pd.Index
        Genes in column order
    obs_ids : pd.Index
        Observations in row order
    means : np.ndarray
        Per-gene mean before scaling
    stds : np.ndarray
        Per-gene standard deviation before scaling
    """

    values: np.ndarray
    gene_ids: pd.Index
    obs_ids: pd.Index
    means: np.ndarray = field(default_factory=lambda: np.array([]))
    stds: np.ndarray = field(default_factory=lambda: np.array([]))

    @property
    def shape(self):
        return self.values.shape


class Normalizer:
    """Log-normalization and scaling of count matrices.

    Parameters
    ----------
    config : NormalizationConfig, optional
        Normalization configuration. If None, uses defaults.

    Example
    -------
    >>> from scspot.core.preprocessing import Normalizer
    >>> normalizer = Normalizer()
    >>> result = normalizer.log_normalize(counts)
    >>> scaled = normalizer.scale(result.normalized, genes=hvg_ids)
    """

    def __init__(
        self,
        config: Optional[NormalizationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or NormalizationConfig()
        self.config.validate()
        self.logger = logger or logging.getLogger(__name__)

    def normalize_total(
        self,
        counts: ExpressionMatrix,
        scale_factor: Optional[float] = None,
    ) -> NormalizationResult:
        """Scale every observation to the same total.

        Observations with zero total stay all-zero.
        """
        scale_factor = scale_factor if scale_factor is not None else self.config.scale_factor
        totals = matrix_ops.column_sums(counts.matrix)
        n_empty = int((totals == 0).sum())
        if n_empty:
            self.logger.warning(
                "%d observations have zero total counts and stay at zero", n_empty
            )
        scaled = matrix_ops.divide_columns(counts.matrix, totals / scale_factor)
        return NormalizationResult(
            normalized=counts.with_matrix(scaled),
            size_factors=pd.Series(totals, index=counts.obs_ids, name="size_factor"),
            scale_factor=float(scale_factor),
        )

    def log_normalize(
        self,
        counts: CountMatrix,
        scale_factor: Optional[float] = None,
    ) -> NormalizationResult:
        """Library-size normalize then apply log1p.

        Parameters
        ----------
        counts : CountMatrix
            Raw counts (genes x observations)
        scale_factor : float, optional
            Target total per observation. Uses config default if None.

        Returns
        -------
        NormalizationResult
            Log-normalized matrix and the size factors used
        """
        result = self.normalize_total(counts, scale_factor)
        result.normalized = result.normalized.with_matrix(
            matrix_ops.log1p(result.normalized.matrix)
        )
        self.logger.info(
            "Log-normalized %d genes x %d observations (scale_factor=%.0f)",
            counts.n_genes,
            counts.n_obs,
            result.scale_factor,
        )
        return result

    @staticmethod
    def denormalize(result: NormalizationResult) -> ExpressionMatrix:
        """Invert :meth:`log_normalize`, recovering the original counts."""
        linear = matrix_ops.expm1(result.normalized.matrix)
        factors = result.size_factors.to_numpy(dtype=float) / result.scale_factor
        return result.normalized.with_matrix(matrix_ops.multiply_columns(linear, factors))

    def scale(
        self,
        expression: ExpressionMatrix,
        genes: Optional[Sequence[str]] = None,
        max_value: Optional[float] = None,
    ) -> ScaledMatrix:
        """Center and scale genes to unit variance.

        Parameters
        ----------
        expression : ExpressionMatrix
            Log-normalized expression (genes x observations)
        genes : Sequence[str], optional
            Genes to keep, in order. All genes if None.
        max_value : float, optional
            Clip bound. Uses config ``scale_max`` if None.

        Returns
        -------
        ScaledMatrix
            Dense observations x genes matrix
        """
        if max_value is None:
            max_value = self.config.scale_max
        if genes is not None:
            if len(genes) == 0:
                raise InputError(
                    "No genes selected for scaling", stage="scale", parameter="genes"
                )
            expression = expression.subset_genes(list(genes))
        values, means, stds = matrix_ops.scale_rows(
            expression.matrix, center=True, max_value=max_value
        )
        n_constant = int((stds == 0).sum())
        if n_constant:
            self.logger.info("%d genes have zero variance and scale to 0", n_constant)
        return ScaledMatrix(
            values=values.T.copy(),
            gene_ids=expression.gene_ids,
            obs_ids=expression.obs_ids,
            means=means,
            stds=stds,
        )
