"""Clustering module for population identification.

Provides PCA, exact shared-nearest-neighbor graphs, Louvain clustering,
a UMAP-style layout and one-versus-rest marker detection.

Example Usage
-------------
>>> from scspot.core.clustering import (
...     ClusteringEngine, ClusteringStageConfig,
...     MarkerFinder, MarkerConfig,
... )
>>> engine = ClusteringEngine(ClusteringStageConfig())
>>> result = engine.run_clustering(scaled, resolution=0.5)
>>> markers = MarkerFinder(MarkerConfig()).find_markers(normalized, result.assignment)
"""

__version__ = "1.0.0"

# Configuration
from .config import (
    PCAConfig,
    NeighborConfig,
    ClusteringConfig,
    EmbeddingConfig,
    MarkerConfig,
    ClusteringStageConfig,
)

# Dimensionality reduction
from .pca import (
    DimReducer,
    ReducedEmbedding,
)

# Neighbor graph
from .neighbors import (
    NeighborGraph,
    NeighborGraphBuilder,
    exact_knn,
    shared_neighbor_graph,
)

# Community detection
from .louvain import (
    GraphClusterer,
    ClusterAssignment,
    modularity,
)

# Layout
from .embedding import (
    Embedder,
    EmbeddingResult,
)

# Differential expression
from .de import (
    MarkerFinder,
    MarkerResult,
    MARKER_COLUMNS,
)

# Engine
from .engine import (
    ClusteringEngine,
    ClusteringResult,
)

__all__ = [
    # Config
    "PCAConfig",
    "NeighborConfig",
    "ClusteringConfig",
    "EmbeddingConfig",
    "MarkerConfig",
    "ClusteringStageConfig",
    # PCA
    "DimReducer",
    "ReducedEmbedding",
    # Neighbors
    "NeighborGraph",
    "NeighborGraphBuilder",
    "exact_knn",
    "shared_neighbor_graph",
    # Clustering
    "GraphClusterer",
    "ClusterAssignment",
    "modularity",
    # Layout
    "Embedder",
    "EmbeddingResult",
    # DE
    "MarkerFinder",
    "MarkerResult",
    "MARKER_COLUMNS",
    # Engine
    "ClusteringEngine",
    "ClusteringResult",
]
