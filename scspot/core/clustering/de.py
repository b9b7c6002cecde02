"""Differential expression testing for cluster markers.

Each cluster is compared against all remaining observations with a
Wilcoxon rank-sum test. Fold changes are computed on the linear scale of
log-normalized data (``expm1``) with a pseudocount of 1.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union
import logging
import time

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import sparse
from scipy.stats import mannwhitneyu

from ..data import ExpressionMatrix
from ..errors import InputError, InsufficientDataError
from ..preprocessing import matrix_ops
from .config import MarkerConfig
from .louvain import ClusterAssignment

logger = logging.getLogger(__name__)


MARKER_COLUMNS = [
    "cluster",
    "gene",
    "avg_log2FC",
    "pct_1",
    "pct_2",
    "p_val",
    "p_val_adj",
    "status",
]

STATUS_OK = "ok"
STATUS_INSUFFICIENT = "insufficient_data"

# Genes per dense block handed to the rank-sum test
_GENE_BLOCK = 512


@dataclass
class MarkerResult:
    """Result from marker detection.

    Attributes
    ----------
    table : pd.DataFrame
        One row per (cluster, gene) marker, sorted by cluster then by
        descending absolute fold change and ascending p-value. Clusters
        that could not be tested contribute a single row with
        ``status == "insufficient_data"`` and no gene.
    errors : List[Dict[str, Any]]
        ``InsufficientDataError.to_dict()`` records for untested clusters
    elapsed_seconds : float
        Time taken for testing
    """

    table: pd.DataFrame
    errors: List[Dict[str, Any]] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def markers(self) -> pd.DataFrame:
        """Rows for tested genes only."""
        return self.table[self.table["status"] == STATUS_OK].reset_index(drop=True)

    def for_cluster(self, cluster: int) -> pd.DataFrame:
        markers = self.markers
        return markers[markers["cluster"] == cluster].reset_index(drop=True)

    def top_markers(self, n: int = 1) -> Dict[int, List[str]]:
        """Top ``n`` marker genes per tested cluster."""
        top: Dict[int, List[str]] = {}
        for cluster, group in self.markers.groupby("cluster", sort=True):
            top[int(cluster)] = group["gene"].head(n).astype(str).tolist()
        return top

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_markers": int(len(self.markers)),
            "n_untested_clusters": len(self.errors),
            "top_markers": {str(k): v for k, v in self.top_markers(3).items()},
        }


def _insufficient_row(cluster: int) -> Dict[str, Any]:
    return {
        "cluster": cluster,
        "gene": None,
        "avg_log2FC": np.nan,
        "pct_1": np.nan,
        "pct_2": np.nan,
        "p_val": np.nan,
        "p_val_adj": np.nan,
        "status": STATUS_INSUFFICIENT,
    }


def _cluster_markers(
    cluster: int,
    in_mask: np.ndarray,
    data: sparse.csr_matrix,
    gene_ids: np.ndarray,
    config: MarkerConfig,
) -> pd.DataFrame:
    """Test every gene for one cluster versus the rest."""
    n_genes_total = data.shape[1]
    in_rows = np.flatnonzero(in_mask)
    out_rows = np.flatnonzero(~in_mask)
    x_in = data[in_rows]
    x_out = data[out_rows]

    pct_1 = matrix_ops.column_nnz(x_in) / in_rows.size
    pct_2 = matrix_ops.column_nnz(x_out) / out_rows.size
    mean_in = matrix_ops.column_sums(matrix_ops.expm1(x_in)) / in_rows.size
    mean_out = matrix_ops.column_sums(matrix_ops.expm1(x_out)) / out_rows.size
    log_fc = np.log2(mean_in + 1.0) - np.log2(mean_out + 1.0)

    passing = np.maximum(pct_1, pct_2) >= config.min_pct
    if config.only_positive:
        passing &= log_fc >= config.min_logfc
    else:
        passing &= np.abs(log_fc) >= config.min_logfc
    genes = np.flatnonzero(passing)
    if genes.size == 0:
        return pd.DataFrame(columns=MARKER_COLUMNS)

    p_values = np.empty(genes.size)
    for start in range(0, genes.size, _GENE_BLOCK):
        block = genes[start:start + _GENE_BLOCK]
        dense_in = x_in[:, block].toarray()
        dense_out = x_out[:, block].toarray()
        _, p = mannwhitneyu(
            dense_in,
            dense_out,
            alternative="two-sided",
            use_continuity=True,
            axis=0,
            method="asymptotic",
        )
        p_values[start:start + block.size] = p
    # All-tied blocks give NaN
    p_values = np.where(np.isnan(p_values), 1.0, p_values)

    frame = pd.DataFrame(
        {
            "cluster": cluster,
            "gene": gene_ids[genes],
            "avg_log2FC": log_fc[genes],
            "pct_1": np.round(pct_1[genes], 3),
            "pct_2": np.round(pct_2[genes], 3),
            "p_val": p_values,
            "p_val_adj": np.minimum(p_values * n_genes_total, 1.0),
            "status": STATUS_OK,
        }
    )
    frame["_abs_fc"] = frame["avg_log2FC"].abs()
    frame = frame.sort_values(
        ["_abs_fc", "p_val", "gene"], ascending=[False, True, True], kind="mergesort"
    ).drop(columns="_abs_fc")
    if config.top_n is not None:
        frame = frame.head(config.top_n)
    return frame.reset_index(drop=True)


class MarkerFinder:
    """Per-cluster one-versus-rest marker detection.

    Rows within a cluster are ordered by descending absolute ``avg_log2FC``,
    then ``p_val``, then gene id. With ``only_positive`` (the default) every
    kept fold change is positive, so this is descending fold change; otherwise
    a strongly down-regulated gene ranks with the strongest up-regulated ones
    and keeps its negative sign.

    Parameters
    ----------
    config : MarkerConfig, optional
        Marker configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> finder = MarkerFinder(MarkerConfig(min_pct=0.25, min_logfc=0.25))
    >>> result = finder.find_markers(normalized, assignment)
    >>> result.top_markers(5)
    """

    def __init__(
        self,
        config: Optional[MarkerConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or MarkerConfig()
        self.config.validate()
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def _labels(
        expression: ExpressionMatrix,
        clusters: Union[ClusterAssignment, pd.Series, Sequence[int]],
    ) -> np.ndarray:
        if isinstance(clusters, ClusterAssignment):
            if not clusters.obs_ids.equals(expression.obs_ids):
                series = clusters.to_series()
                missing = expression.obs_ids.difference(series.index)
                if len(missing):
                    raise InputError(
                        f"{len(missing)} observations have no cluster label",
                        stage="markers",
                        parameter="clusters",
                    )
                return series.reindex(expression.obs_ids).to_numpy(dtype=np.int64)
            return np.asarray(clusters.labels, dtype=np.int64)
        if isinstance(clusters, pd.Series):
            aligned = clusters.reindex(expression.obs_ids)
            if aligned.isna().any():
                raise InputError(
                    f"{int(aligned.isna().sum())} observations have no cluster label",
                    stage="markers",
                    parameter="clusters",
                )
            return aligned.to_numpy(dtype=np.int64)
        labels = np.asarray(clusters, dtype=np.int64)
        if labels.shape != (expression.n_obs,):
            raise InputError(
                f"Expected {expression.n_obs} labels, got {labels.shape[0]}",
                stage="markers",
                parameter="clusters",
            )
        return labels

    def find_markers(
        self,
        expression: ExpressionMatrix,
        clusters: Union[ClusterAssignment, pd.Series, Sequence[int]],
        n_jobs: Optional[int] = None,
    ) -> MarkerResult:
        """Find markers for every cluster.

        Parameters
        ----------
        expression : ExpressionMatrix
            Log-normalized expression (genes x observations)
        clusters : ClusterAssignment, pd.Series or sequence of int
            Cluster label per observation
        n_jobs : int, optional
            Parallel workers over clusters. Uses config default if None.

        Returns
        -------
        MarkerResult
            Marker table plus records for clusters too small to test
        """
        cfg = self.config
        n_jobs = n_jobs if n_jobs is not None else cfg.n_jobs
        labels = self._labels(expression, clusters)
        data = expression.matrix.T.tocsr().astype(np.float64)
        gene_ids = np.asarray(expression.gene_ids, dtype=object)
        cluster_ids = [int(c) for c in np.unique(labels)]

        self.logger.info(
            "Finding markers: %d observations, %d genes, %d clusters "
            "(min_pct=%.2f, min_logfc=%.2f, only_positive=%s)",
            expression.n_obs,
            expression.n_genes,
            len(cluster_ids),
            cfg.min_pct,
            cfg.min_logfc,
            cfg.only_positive,
        )
        start_time = time.time()

        testable = []
        errors: List[Dict[str, Any]] = []
        for cluster in cluster_ids:
            in_mask = labels == cluster
            n_in = int(in_mask.sum())
            n_out = labels.size - n_in
            if n_in < cfg.min_cluster_size or n_out < cfg.min_cluster_size:
                err = InsufficientDataError(
                    f"Cluster {cluster} has {n_in} members and {n_out} others; "
                    f"need at least {cfg.min_cluster_size} in each group",
                    stage="markers",
                    parameter="min_cluster_size",
                    item=str(cluster),
                )
                self.logger.warning("%s", err)
                errors.append(err.to_dict())
                continue
            testable.append((cluster, in_mask))

        frames = Parallel(n_jobs=n_jobs)(
            delayed(_cluster_markers)(cluster, in_mask, data, gene_ids, cfg)
            for cluster, in_mask in testable
        )
        by_cluster = {cluster: frame for (cluster, _), frame in zip(testable, frames)}

        parts = []
        for cluster in cluster_ids:
            if cluster in by_cluster:
                parts.append(by_cluster[cluster])
            else:
                parts.append(pd.DataFrame([_insufficient_row(cluster)]))
        parts = [p for p in parts if len(p)]
        if parts:
            table = pd.concat(parts, ignore_index=True)[MARKER_COLUMNS]
        else:
            table = pd.DataFrame(columns=MARKER_COLUMNS)
        table["cluster"] = table["cluster"].astype(np.int64)

        elapsed = time.time() - start_time
        self.logger.info(
            "Marker detection completed in %.1f seconds: %d markers",
            elapsed,
            int((table["status"] == STATUS_OK).sum()),
        )
        return MarkerResult(table=table, errors=errors, elapsed_seconds=elapsed)
