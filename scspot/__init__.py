"""scspot: clustering, marker detection and spatial variability for count data.

This package provides tools for:
- Quality control, log-normalization and highly variable gene selection
- PCA, shared-nearest-neighbor graphs and Louvain clustering
- UMAP-style 2-D layouts and one-versus-rest marker genes
- Gene-set module scores
- Moran's I ranking of spatially variable genes for spot data

Every stage takes explicit inputs and returns a new result object; the
``scspot.pipeline`` package threads them together.

Example usage:
    >>> from scspot.core.data import CountMatrix
    >>> from scspot.pipeline import AnalysisPipeline, EngineConfig
    >>>
    >>> counts = CountMatrix(matrix, gene_ids, obs_ids)
    >>> result = AnalysisPipeline(EngineConfig(random_seed=0)).run(counts)
    >>> result.markers.top_markers(3)
"""

__version__ = "1.0.0"
