"""Spatial neighbor graphs over spot coordinates."""

from typing import Optional
import logging

import numpy as np
from scipy import sparse
from sklearn.neighbors import NearestNeighbors, radius_neighbors_graph

from ..errors import InputError

logger = logging.getLogger(__name__)


def build_spatial_graph(
    coords: np.ndarray,
    mode: str = "knn",
    k: int = 6,
    radius: Optional[float] = None,
) -> sparse.csr_matrix:
    """Build a symmetric binary spatial adjacency matrix.

    Parameters
    ----------
    coords : np.ndarray
        Spatial coordinates (n_obs, 2)
    mode : str
        "knn" connects each spot to its ``k`` nearest spots, "radius"
        connects spots closer than ``radius``
    k : int
        Neighbors per spot in knn mode
    radius : float, optional
        Connection radius in radius mode

    Returns
    -------
    sparse.csr_matrix
        Adjacency matrix without self-loops; knn edges are symmetrized
    """
    coords = np.asarray(coords, dtype=np.float64)
    n_obs = coords.shape[0]
    if n_obs == 0:
        return sparse.csr_matrix((0, 0))

    if mode == "knn":
        max_neighbors = n_obs - 1
        if max_neighbors < 1:
            return sparse.csr_matrix((n_obs, n_obs))
        n_neighbors = min(max(k, 1), max_neighbors)
        nn = NearestNeighbors(n_neighbors=n_neighbors, metric="euclidean")
        nn.fit(coords)
        graph = nn.kneighbors_graph(mode="connectivity")
        graph = graph.maximum(graph.T)
    elif mode == "radius":
        if radius is None or radius <= 0:
            raise InputError(
                "radius must be > 0 in radius mode", stage="spatial", parameter="radius"
            )
        graph = radius_neighbors_graph(
            coords, radius=radius, mode="connectivity", include_self=False
        )
    else:
        raise InputError(f"Unknown graph mode: {mode}", stage="spatial", parameter="mode")

    graph = sparse.csr_matrix(graph, dtype=np.float64)
    # Remove self-loops
    graph = graph - sparse.diags(graph.diagonal())
    graph.eliminate_zeros()
    return graph.tocsr()


def row_standardize(graph: sparse.csr_matrix) -> sparse.csr_matrix:
    """Scale each row to sum to 1; rows without neighbors stay empty."""
    graph = sparse.csr_matrix(graph, dtype=np.float64)
    row_sums = np.asarray(graph.sum(axis=1)).ravel()
    inv = np.zeros_like(row_sums)
    nz = row_sums > 0
    inv[nz] = 1.0 / row_sums[nz]
    return (sparse.diags(inv) @ graph).tocsr()
