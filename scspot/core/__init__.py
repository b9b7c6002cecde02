"""Core computational modules for scspot.

This package contains the analysis engines:
- data: count matrices, spot coordinates and observation metadata
- errors: stage-aware exception types
- preprocessing: QC, normalization, scaling and feature selection
- clustering: PCA, neighbor graphs, Louvain, layout and marker genes
- annotation: gene-set module scores
- spatial: Moran's I spatial variability
"""
