"""Clustering engine for cell and spot population identification.

Chains PCA -> shared-neighbor graph -> Louvain (-> layout optional) on a
scaled variable-gene matrix.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence
import logging

import pandas as pd

from ..preprocessing.normalization import ScaledMatrix
from .config import ClusteringStageConfig
from .embedding import Embedder, EmbeddingResult
from .louvain import ClusterAssignment, GraphClusterer
from .neighbors import NeighborGraph, NeighborGraphBuilder
from .pca import DimReducer, ReducedEmbedding


@dataclass
class ClusteringResult:
    """Result from the clustering chain.

    Attributes
    ----------
    reduced : ReducedEmbedding
        PCA scores and loadings
    graph : NeighborGraph
        Shared-neighbor graph
    assignment : ClusterAssignment
        Cluster labels
    embedding : EmbeddingResult, optional
        2D/3D layout when computed
    """

    reduced: ReducedEmbedding
    graph: NeighborGraph
    assignment: ClusterAssignment
    embedding: Optional[EmbeddingResult] = None

    @property
    def n_clusters(self) -> int:
        return self.assignment.n_clusters

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "n_clusters": self.n_clusters,
            "pca": self.reduced.to_dict(),
            "neighbors": self.graph.to_dict(),
            "clusters": self.assignment.to_dict(),
        }
        if self.embedding is not None:
            result["embedding"] = self.embedding.to_dict()
        return result


class ClusteringEngine:
    """Clustering engine over a scaled matrix.

    Parameters
    ----------
    config : ClusteringStageConfig, optional
        Clustering configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from scspot.core.clustering import ClusteringEngine, ClusteringStageConfig
    >>> engine = ClusteringEngine(ClusteringStageConfig())
    >>> result = engine.run_clustering(scaled, resolution=0.5)
    >>> result.assignment.sizes
    """

    def __init__(
        self,
        config: Optional[ClusteringStageConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ClusteringStageConfig()
        self.config.validate()
        self.logger = logger or logging.getLogger(__name__)
        self.reducer = DimReducer(self.config.pca, logger=self.logger)
        self.graph_builder = NeighborGraphBuilder(self.config.neighbors, logger=self.logger)
        self.clusterer = GraphClusterer(self.config.clustering, logger=self.logger)
        self.embedder = Embedder(self.config.embedding, logger=self.logger)

    def run_clustering(
        self,
        scaled: ScaledMatrix,
        n_components: Optional[int] = None,
        neighbors_k: Optional[int] = None,
        resolution: Optional[float] = None,
        random_seed: Optional[int] = None,
        compute_embedding: bool = True,
    ) -> ClusteringResult:
        """Run the full clustering chain.

        Pipeline: PCA -> neighbors -> Louvain (-> layout optional)

        Parameters
        ----------
        scaled : ScaledMatrix
            Scaled observations x genes matrix of variable genes
        n_components : int, optional
            Number of principal components. Uses config default if None.
        neighbors_k : int, optional
            k for the neighbor graph. Uses config default if None.
        resolution : float, optional
            Louvain resolution. Uses config default if None.
        random_seed : int, optional
            Seed for clustering and layout. Uses config defaults if None.
        compute_embedding : bool
            Compute the 2D/3D layout

        Returns
        -------
        ClusteringResult
            Every intermediate output of the chain
        """
        self.logger.info(
            "Running clustering pipeline: %d observations x %d genes",
            scaled.shape[0],
            scaled.shape[1],
        )
        reduced = self.reducer.fit(scaled, n_components=n_components)
        graph = self.graph_builder.build(reduced, k=neighbors_k)
        assignment = self.clusterer.cluster(
            graph, resolution=resolution, random_seed=random_seed
        )
        embedding = None
        if compute_embedding:
            embedding = self.embedder.embed(reduced, graph, random_seed=random_seed)

        sizes = assignment.sizes
        self.logger.info(
            "Found %d clusters (largest=%d, smallest=%d)",
            assignment.n_clusters,
            int(sizes.max()),
            int(sizes.min()),
        )
        return ClusteringResult(
            reduced=reduced,
            graph=graph,
            assignment=assignment,
            embedding=embedding,
        )

    def resolution_sweep(
        self,
        graph: NeighborGraph,
        resolutions: Sequence[float],
        random_seed: Optional[int] = None,
    ) -> pd.DataFrame:
        """Cluster one graph at several resolutions.

        Returns
        -------
        pd.DataFrame
            ``resolution``, ``n_clusters`` and ``modularity`` per resolution,
            in the order given
        """
        rows = []
        for resolution in resolutions:
            assignment = self.clusterer.cluster(
                graph, resolution=resolution, random_seed=random_seed
            )
            rows.append(
                {
                    "resolution": float(resolution),
                    "n_clusters": assignment.n_clusters,
                    "modularity": assignment.modularity,
                }
            )
        return pd.DataFrame(rows, columns=["resolution", "n_clusters", "modularity"])
