"""Observation-level quality control.

Computes per-observation count metrics and threshold-based keep masks.
Filtering never happens implicitly: ``QCFilter.compute`` returns masks and
the caller applies them with ``QCResult.apply``.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional
import logging

import numpy as np
import pandas as pd

from ..data import CountMatrix
from ..errors import InputError
from . import matrix_ops
from .config import QCConfig

logger = logging.getLogger(__name__)


# Reason columns for tracking removal causes
REASON_COLUMNS = [
    "zero_counts",
    "low_features",
    "high_features",
    "low_counts",
    "high_control_fraction",
]


@dataclass
class QCResult:
    """Result from QC metric computation.

    Attributes
    ----------
    metrics : pd.DataFrame
        Per-observation ``total_counts``, ``n_features``, ``control_counts``,
        ``control_fraction`` and ``qc_pass``
    keep_obs : np.ndarray
        Boolean keep-mask, one entry per observation
    keep_genes : np.ndarray
        Boolean keep-mask, one entry per gene
    reasons : pd.DataFrame
        Boolean failure flags per observation and reason
    control_genes : list
        Gene ids matched by the control predicate
    """

    metrics: pd.DataFrame
    keep_obs: np.ndarray
    keep_genes: np.ndarray
    reasons: pd.DataFrame
    control_genes: list = field(default_factory=list)

    @property
    def obs_total(self) -> int:
        return int(self.keep_obs.size)

    @property
    def obs_kept(self) -> int:
        return int(self.keep_obs.sum())

    @property
    def genes_total(self) -> int:
        return int(self.keep_genes.size)

    @property
    def genes_kept(self) -> int:
        return int(self.keep_genes.sum())

    @property
    def reason_counts(self) -> Dict[str, int]:
        return {col: int(self.reasons[col].sum()) for col in REASON_COLUMNS}

    def apply(self, counts: CountMatrix) -> CountMatrix:
        """Return ``counts`` restricted to kept observations and genes."""
        if counts.shape != (self.keep_genes.size, self.keep_obs.size):
            raise InputError(
                f"QC masks were computed for shape "
                f"{(self.keep_genes.size, self.keep_obs.size)}, got {counts.shape}",
                stage="qc",
                parameter="counts",
            )
        return counts.subset_obs(self.keep_obs).subset_genes(self.keep_genes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        result = {
            "obs_before": self.obs_total,
            "obs_after": self.obs_kept,
            "obs_removed": self.obs_total - self.obs_kept,
            "genes_before": self.genes_total,
            "genes_after": self.genes_kept,
            "genes_removed": self.genes_total - self.genes_kept,
            "n_control_genes": len(self.control_genes),
        }
        for reason, count in self.reason_counts.items():
            result[f"removed_{reason}"] = count
        return result


def prefix_predicate(prefix: str) -> Callable[[str], bool]:
    """Case-insensitive gene-id prefix matcher."""
    lowered = prefix.lower()
    return lambda gene_id: str(gene_id).lower().startswith(lowered)


class QCFilter:
    """Threshold-based observation filter.

    Parameters
    ----------
    config : QCConfig, optional
        QC configuration. If None, uses defaults.
    control_predicate : Callable[[str], bool], optional
        Identifies control genes. Defaults to a prefix match on
        ``config.control_gene_prefix``.

    Example
    -------
    >>> from scspot.core.preprocessing import QCFilter, QCConfig
    >>> qc = QCFilter(QCConfig(min_features=200, max_control_fraction=0.05))
    >>> result = qc.compute(counts)
    >>> filtered = result.apply(counts)
    """

    def __init__(
        self,
        config: Optional[QCConfig] = None,
        control_predicate: Optional[Callable[[str], bool]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or QCConfig()
        self.config.validate()
        self.control_predicate = control_predicate or prefix_predicate(
            self.config.control_gene_prefix
        )
        self.logger = logger or logging.getLogger(__name__)

    def compute_metrics(self, counts: CountMatrix) -> pd.DataFrame:
        """Compute per-observation count metrics.

        Parameters
        ----------
        counts : CountMatrix
            Raw counts (genes x observations)

        Returns
        -------
        pd.DataFrame
            ``total_counts``, ``n_features``, ``control_counts`` and
            ``control_fraction`` indexed by observation id. Observations with
            zero total counts get a NaN control fraction.
        """
        control_mask = np.array(
            [bool(self.control_predicate(g)) for g in counts.gene_ids], dtype=bool
        )
        total = matrix_ops.column_sums(counts.matrix)
        n_features = matrix_ops.column_nnz(counts.matrix)
        if control_mask.any():
            control = matrix_ops.column_sums(counts.matrix[np.flatnonzero(control_mask), :])
        else:
            control = np.zeros(counts.n_obs, dtype=np.float64)

        fraction = np.full(counts.n_obs, np.nan)
        nz = total > 0
        fraction[nz] = control[nz] / total[nz]

        return pd.DataFrame(
            {
                "total_counts": total,
                "n_features": n_features,
                "control_counts": control,
                "control_fraction": fraction,
            },
            index=counts.obs_ids,
        )

    def compute(self, counts: CountMatrix) -> QCResult:
        """Compute metrics and keep-masks.

        Parameters
        ----------
        counts : CountMatrix
            Raw counts (genes x observations)

        Returns
        -------
        QCResult
            Metrics plus observation and gene keep-masks
        """
        cfg = self.config
        metrics = self.compute_metrics(counts)

        total = metrics["total_counts"].to_numpy()
        n_features = metrics["n_features"].to_numpy()
        fraction = metrics["control_fraction"].to_numpy()

        reasons = pd.DataFrame(index=metrics.index)
        reasons["zero_counts"] = total <= 0
        reasons["low_features"] = n_features < cfg.min_features
        if cfg.max_features is not None:
            reasons["high_features"] = n_features > cfg.max_features
        else:
            reasons["high_features"] = False
        reasons["low_counts"] = total < cfg.min_counts
        # NaN fractions (zero totals) fail the comparison and are dropped
        with np.errstate(invalid="ignore"):
            reasons["high_control_fraction"] = ~(fraction <= cfg.max_control_fraction)

        keep_obs = ~reasons[REASON_COLUMNS].any(axis=1).to_numpy()
        metrics["qc_pass"] = keep_obs

        detected_in = matrix_ops.row_nnz(counts.matrix)
        keep_genes = detected_in >= cfg.min_cells_per_gene

        control_genes = [
            str(g) for g in counts.gene_ids if self.control_predicate(g)
        ]
        if not control_genes:
            self.logger.warning(
                "No control genes matched; control fraction is 0 for all observations"
            )

        result = QCResult(
            metrics=metrics,
            keep_obs=keep_obs,
            keep_genes=keep_genes,
            reasons=reasons,
            control_genes=control_genes,
        )
        self.logger.info(
            "QC: observations %d -> %d, genes %d -> %d (%d control genes)",
            result.obs_total,
            result.obs_kept,
            result.genes_total,
            result.genes_kept,
            len(control_genes),
        )
        for reason, count in result.reason_counts.items():
            if count:
                self.logger.debug("QC reason %s: %d observations", reason, count)
        return result
