"""SpatialVariability - ranks genes by spatial autocorrelation.

Builds a spatial graph over spot coordinates (never expression space),
row-standardizes it, computes Moran's I for every candidate gene, and
flags genes significant after multiple testing correction.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
import logging
import time

import numpy as np
import pandas as pd

from ..data import ExpressionMatrix, SpatialCoordinates
from ..errors import InputError
from ...utils.stats import adjust_pvalues
from .config import SpatialConfig
from .graph import build_spatial_graph, row_standardize
from .morans import (
    WeightStatistics,
    analytic_pvalues,
    morans_i,
    permutation_pvalues,
)

logger = logging.getLogger(__name__)


RANKING_COLUMNS = [
    "gene",
    "morans_i",
    "expected_i",
    "z_score",
    "p_val",
    "p_val_adj",
    "rank",
    "spatially_variable",
]


@dataclass
class SpatialVariabilityResult:
    """Result from spatial variability ranking.

    Attributes
    ----------
    ranking : pd.DataFrame
        One row per gene ordered by ``rank`` (1 = strongest positive
        autocorrelation). Constant genes have NaN statistics, p = 1 and
        rank last.
    n_spots : int
        Spots analyzed
    n_edges : int
        Undirected edges in the spatial graph
    n_isolated : int
        Spots without spatial neighbors
    method : str
        Significance method used
    execution_time_seconds : float
        Total execution time
    warnings : List[str]
        Warnings encountered
    """

    ranking: pd.DataFrame
    n_spots: int = 0
    n_edges: int = 0
    n_isolated: int = 0
    method: str = "analytic"
    execution_time_seconds: float = 0.0
    warnings: List[str] = field(default_factory=list)

    @property
    def significant_genes(self) -> List[str]:
        return self.ranking.loc[self.ranking["spatially_variable"], "gene"].tolist()

    def to_dict(self) -> Dict[str, Any]:
        """Return summary dictionary for JSON export."""
        return {
            "n_genes": int(len(self.ranking)),
            "n_spatially_variable": len(self.significant_genes),
            "n_spots": self.n_spots,
            "n_edges": self.n_edges,
            "n_isolated": self.n_isolated,
            "method": self.method,
            "top_genes": self.ranking["gene"].head(10).tolist(),
            "execution_time_seconds": round(self.execution_time_seconds, 2),
            "n_warnings": len(self.warnings),
        }


class SpatialVariability:
    """Rank genes by Moran's I over a spatial neighbor graph.

    Parameters
    ----------
    config : SpatialConfig, optional
        Spatial configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> sv = SpatialVariability(SpatialConfig())
    >>> result = sv.rank_genes(normalized, coordinates, genes=hvg)
    >>> result.significant_genes[:10]
    """

    def __init__(
        self,
        config: Optional[SpatialConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or SpatialConfig()
        self.config.validate()
        self.logger = logger or logging.getLogger(__name__)

    def build_weights(self, coordinates: SpatialCoordinates):
        """Row-standardized spatial weights for the coordinates' spots."""
        cfg = self.config.graph
        if cfg.coordinate_space == "pixel":
            coords = coordinates.pixel_positions()
        else:
            coords = coordinates.grid_positions()
        adjacency = build_spatial_graph(coords, mode=cfg.mode, k=cfg.k, radius=cfg.radius)
        return adjacency, row_standardize(adjacency)

    def rank_genes(
        self,
        expression: ExpressionMatrix,
        coordinates: SpatialCoordinates,
        genes: Optional[Sequence[str]] = None,
    ) -> SpatialVariabilityResult:
        """Compute Moran's I, significance and rank for each gene.

        Parameters
        ----------
        expression : ExpressionMatrix
            Normalized expression (genes x spots)
        coordinates : SpatialCoordinates
            Spot positions keyed by the matrix's observation ids
        genes : Sequence[str], optional
            Candidate genes. All genes if None.

        Returns
        -------
        SpatialVariabilityResult
            Ranking table plus graph statistics
        """
        start_time = time.time()
        test = self.config.test
        result_warnings: List[str] = []

        if genes is not None:
            if len(genes) == 0:
                raise InputError(
                    "No candidate genes given", stage="spatial", parameter="genes"
                )
            expression = expression.subset_genes(list(genes))
        coordinates = coordinates.align(expression.obs_ids)
        n_spots = expression.n_obs
        if n_spots < 3:
            raise InputError(
                f"At least 3 spots are required, got {n_spots}",
                stage="spatial",
                parameter="coordinates",
            )

        adjacency, weights = self.build_weights(coordinates)
        n_isolated = int(np.sum(np.diff(adjacency.indptr) == 0))
        if n_isolated:
            msg = f"{n_isolated} spots have no spatial neighbors"
            self.logger.warning(msg)
            result_warnings.append(msg)

        self.logger.info(
            "Spatial variability: %d genes, %d spots, %d edges (%s graph), %s test",
            expression.n_genes,
            n_spots,
            adjacency.nnz // 2,
            self.config.graph.mode,
            test.method,
        )

        values = expression.matrix.T.tocsr().astype(np.float64)
        statistic = morans_i(weights, values)
        stats = WeightStatistics.from_weights(weights)

        if test.method == "analytic":
            z_scores, p_values = analytic_pvalues(statistic, stats, test.alternative)
        else:
            z_scores, p_values = permutation_pvalues(
                weights,
                values,
                statistic,
                n_permutations=test.n_permutations,
                random_seed=test.random_seed,
                alternative=test.alternative,
                n_jobs=test.n_jobs,
                batch_size=test.batch_size,
            )
        p_adj = adjust_pvalues(p_values, method=test.correction)

        n_constant = int(np.isnan(statistic).sum())
        if n_constant:
            msg = f"{n_constant} genes are constant across spots and rank last"
            self.logger.info(msg)
            result_warnings.append(msg)

        gene_names = np.asarray(expression.gene_ids, dtype=str)
        sort_key = np.where(np.isnan(statistic), np.inf, -statistic)
        order = np.lexsort((gene_names, sort_key))
        rank = np.empty(order.size, dtype=np.int64)
        rank[order] = np.arange(1, order.size + 1)

        significant = (p_adj < test.alpha) & ~np.isnan(statistic)
        if test.alternative == "greater":
            significant &= statistic > stats.expected

        ranking = pd.DataFrame(
            {
                "gene": gene_names,
                "morans_i": statistic,
                "expected_i": stats.expected,
                "z_score": z_scores,
                "p_val": p_values,
                "p_val_adj": p_adj,
                "rank": rank,
                "spatially_variable": significant,
            }
        )
        ranking = ranking.sort_values("rank").reset_index(drop=True)[RANKING_COLUMNS]

        elapsed = time.time() - start_time
        self.logger.info(
            "Spatial variability completed in %.1f seconds: %d of %d genes significant",
            elapsed,
            int(significant.sum()),
            len(ranking),
        )
        return SpatialVariabilityResult(
            ranking=ranking,
            n_spots=n_spots,
            n_edges=int(adjacency.nnz // 2),
            n_isolated=n_isolated,
            method=test.method,
            execution_time_seconds=elapsed,
            warnings=result_warnings,
        )
