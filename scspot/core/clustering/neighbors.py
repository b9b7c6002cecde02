"""Exact k-nearest-neighbor search and shared-nearest-neighbor weighting.

Neighbor search is exhaustive over Euclidean distances computed in chunks,
so results never depend on an approximate index. Each observation counts
itself as its first neighbor. Ties at equal distance are resolved by
observation order.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
import logging

import numpy as np
import pandas as pd
from scipy import sparse
from sklearn.metrics import pairwise_distances_chunked

from ..errors import InputError
from .config import NeighborConfig
from .pca import ReducedEmbedding

logger = logging.getLogger(__name__)


@dataclass
class NeighborGraph:
    """Shared-nearest-neighbor graph over observations.

    Attributes
    ----------
    connectivities : sparse.csr_matrix
        Symmetric (n_obs, n_obs) Jaccard weights with an empty diagonal
    knn_indices : np.ndarray
        (n_obs, k) neighbor indices; column 0 is the observation itself
    knn_distances : np.ndarray
        (n_obs, k) Euclidean distances matching ``knn_indices``
    obs_ids : pd.Index
        Observations in row order
    """

    connectivities: sparse.csr_matrix
    knn_indices: np.ndarray
    knn_distances: np.ndarray
    obs_ids: pd.Index

    @property
    def n_obs(self) -> int:
        return int(self.connectivities.shape[0])

    @property
    def k(self) -> int:
        return int(self.knn_indices.shape[1])

    @property
    def n_edges(self) -> int:
        """Number of undirected edges."""
        return int(self.connectivities.nnz // 2)

    def is_symmetric(self) -> bool:
        diff = self.connectivities - self.connectivities.T
        return diff.nnz == 0 or bool(np.all(diff.data == 0))

    def to_edge_list(self) -> pd.DataFrame:
        """Undirected edges (source < target) with weights."""
        upper = sparse.triu(self.connectivities, k=1).tocoo()
        return pd.DataFrame(
            {
                "source": self.obs_ids[upper.row],
                "target": self.obs_ids[upper.col],
                "weight": upper.data,
            }
        )

    def to_dict(self) -> Dict[str, Any]:
        degrees = np.diff(self.connectivities.indptr)
        return {
            "n_obs": self.n_obs,
            "k": self.k,
            "n_edges": self.n_edges,
            "mean_degree": float(degrees.mean()) if degrees.size else 0.0,
        }


def _select_row_neighbors(row: np.ndarray, k: int, tie_rank: np.ndarray) -> np.ndarray:
    """Indices of the k smallest values, ties broken by ``tie_rank``."""
    if k >= row.size:
        return np.lexsort((tie_rank, row))[:k]
    kth = np.partition(row, k - 1)[k - 1]
    candidates = np.flatnonzero(row <= kth)
    order = np.lexsort((tie_rank[candidates], row[candidates]))
    return candidates[order[:k]]


def exact_knn(
    coordinates: np.ndarray,
    k: int,
    working_memory: Optional[int] = None,
    tie_rank: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Exact Euclidean k-NN including each point as its own first neighbor.

    Parameters
    ----------
    coordinates : np.ndarray
        (n_obs, n_dims) points
    k : int
        Neighbors per point, counting the point itself
    working_memory : int, optional
        Chunk size hint in MiB passed to sklearn
    tie_rank : np.ndarray, optional
        Per-point order used to break equal distances; row order if None

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        (indices, distances), each (n_obs, k)
    """
    n_obs = coordinates.shape[0]
    if tie_rank is None:
        tie_rank = np.arange(n_obs)

    def reduce_func(d_chunk: np.ndarray, start: int):
        rows = np.arange(d_chunk.shape[0])
        d_chunk = d_chunk.copy()
        d_chunk[rows, start + rows] = -np.inf
        idx = np.empty((d_chunk.shape[0], k), dtype=np.int64)
        dist = np.empty((d_chunk.shape[0], k), dtype=np.float64)
        for r in rows:
            sel = _select_row_neighbors(d_chunk[r], k, tie_rank)
            idx[r] = sel
            dist[r] = d_chunk[r, sel]
        dist[:, 0] = 0.0
        return idx, dist

    indices = []
    distances = []
    for idx, dist in pairwise_distances_chunked(
        coordinates,
        metric="euclidean",
        reduce_func=reduce_func,
        working_memory=working_memory,
    ):
        indices.append(idx)
        distances.append(dist)
    if not indices:
        return np.empty((n_obs, k), dtype=np.int64), np.empty((n_obs, k))
    return np.vstack(indices), np.vstack(distances)


def shared_neighbor_graph(
    knn_indices: np.ndarray,
    prune: float = 0.0,
) -> sparse.csr_matrix:
    """Jaccard overlap of k-NN sets as a symmetric sparse graph.

    Pairs are kept when their weight exceeds ``prune`` or when either is
    in the other's k-NN list. The diagonal is removed.
    """
    n_obs, k = knn_indices.shape
    rows = np.repeat(np.arange(n_obs), k)
    membership = sparse.csr_matrix(
        (np.ones(n_obs * k, dtype=np.int64), (rows, knn_indices.ravel())),
        shape=(n_obs, n_obs),
    )
    shared = (membership @ membership.T).tocsr()
    shared.setdiag(0)
    shared.eliminate_zeros()

    inter = shared.data.astype(np.float64)
    shared = sparse.csr_matrix(
        (inter / (2.0 * k - inter), shared.indices, shared.indptr), shape=shared.shape
    )

    if prune > 0:
        adjacency = (membership + membership.T).tocsr()
        adjacency.setdiag(0)
        adjacency.eliminate_zeros()
        adjacency.data[:] = 1
        keep_knn = shared.multiply(adjacency).tocsr()
        above = shared.copy()
        above.data[above.data <= prune] = 0
        above.eliminate_zeros()
        shared = above.maximum(keep_knn).tocsr()

    shared.sort_indices()
    return shared


class NeighborGraphBuilder:
    """Build the shared-nearest-neighbor graph from a reduced embedding.

    Parameters
    ----------
    config : NeighborConfig, optional
        Neighbor configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.
    """

    def __init__(
        self,
        config: Optional[NeighborConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or NeighborConfig()
        self.config.validate()
        self.logger = logger or logging.getLogger(__name__)

    def build(
        self,
        embedding: ReducedEmbedding,
        k: Optional[int] = None,
        n_dims: Optional[int] = None,
    ) -> NeighborGraph:
        """Find exact k-NN and weight edges by neighborhood overlap.

        Parameters
        ----------
        embedding : ReducedEmbedding
            PCA scores
        k : int, optional
            Neighbors per observation including itself. Uses config if None.
        n_dims : int, optional
            Leading components to use. Uses config if None.

        Returns
        -------
        NeighborGraph
            Symmetric shared-neighbor graph plus the directed k-NN arrays
        """
        k = k if k is not None else self.config.k
        n_dims = n_dims if n_dims is not None else self.config.n_dims
        if k < 2:
            raise InputError("k must be >= 2", stage="neighbors", parameter="k")

        coords = np.ascontiguousarray(embedding.leading(n_dims), dtype=np.float64)
        n_obs = coords.shape[0]
        if n_obs < 2:
            raise InputError(
                "At least 2 observations are required for a neighbor graph",
                stage="neighbors",
                parameter="embedding",
            )
        if k > n_obs:
            self.logger.warning(
                "k=%d exceeds number of observations; using k=%d", k, n_obs
            )
            k = n_obs

        # Equidistant neighbors are taken in observation id order
        ids = np.asarray(embedding.obs_ids, dtype=str)
        id_rank = np.argsort(np.argsort(ids, kind="stable"), kind="stable")
        knn_indices, knn_distances = exact_knn(coords, k, tie_rank=id_rank)
        connectivities = shared_neighbor_graph(knn_indices, prune=self.config.prune)

        graph = NeighborGraph(
            connectivities=connectivities,
            knn_indices=knn_indices,
            knn_distances=knn_distances,
            obs_ids=embedding.obs_ids,
        )
        self.logger.info(
            "Neighbor graph: %d observations, k=%d, %d dims, %d edges",
            n_obs,
            k,
            coords.shape[1],
            graph.n_edges,
        )
        return graph
