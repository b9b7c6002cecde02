"""Spatial analysis module for spot-resolved data.

Ranks genes by Moran's I spatial autocorrelation over a neighbor graph
built from spot coordinates.

Example Usage
-------------
>>> from scspot.core.spatial import SpatialVariability, SpatialConfig
>>> sv = SpatialVariability(SpatialConfig())
>>> result = sv.rank_genes(normalized, coordinates)
>>> result.ranking.head()
"""

from .config import (
    SpatialGraphConfig,
    MoranTestConfig,
    SpatialConfig,
)
from .graph import (
    build_spatial_graph,
    row_standardize,
)
from .morans import (
    WeightStatistics,
    morans_i,
    analytic_pvalues,
    permutation_pvalues,
)
from .engine import (
    SpatialVariability,
    SpatialVariabilityResult,
    RANKING_COLUMNS,
)

__all__ = [
    # Config
    "SpatialGraphConfig",
    "MoranTestConfig",
    "SpatialConfig",
    # Graph
    "build_spatial_graph",
    "row_standardize",
    # Statistics
    "WeightStatistics",
    "morans_i",
    "analytic_pvalues",
    "permutation_pvalues",
    # Engine
    "SpatialVariability",
    "SpatialVariabilityResult",
    "RANKING_COLUMNS",
]
