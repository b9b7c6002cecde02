"""Louvain modularity clustering with a resolution parameter.

Each level runs local moving (nodes visited in a seeded random order, each
moved to the neighboring community with the largest modularity gain) until
no node moves, then collapses communities into nodes. Several seeded
restarts are run and the partition with highest modularity is kept.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
import logging
import warnings

import numpy as np
import pandas as pd
from scipy import sparse

from ..errors import ConfigurationError, InputError, NonConvergenceWarning
from .config import ClusteringConfig
from .neighbors import NeighborGraph

logger = logging.getLogger(__name__)

_GAIN_EPS = 1e-12


@dataclass
class ClusterAssignment:
    """Cluster label per observation.

    Labels are contiguous from 0 and ordered by descending cluster size
    (cluster 0 is the largest); equal sizes are ordered by their first
    member.

    Attributes
    ----------
    labels : np.ndarray
        Integer label per observation
    obs_ids : pd.Index
        Observations in label order
    resolution : float
        Resolution used
    modularity : float
        Modularity of the partition at ``resolution``
    converged : bool
        False when an iteration cap was reached
    n_levels : int
        Aggregation levels of the best run
    """

    labels: np.ndarray
    obs_ids: pd.Index
    resolution: float
    modularity: float = float("nan")
    converged: bool = True
    n_levels: int = 0

    @property
    def n_clusters(self) -> int:
        return int(self.labels.max()) + 1 if self.labels.size else 0

    @property
    def sizes(self) -> pd.Series:
        counts = np.bincount(self.labels, minlength=self.n_clusters)
        return pd.Series(counts, index=pd.RangeIndex(self.n_clusters), name="n_obs")

    def to_series(self, name: str = "cluster") -> pd.Series:
        return pd.Series(self.labels, index=self.obs_ids, name=name)

    def members(self, cluster: int) -> pd.Index:
        return self.obs_ids[self.labels == cluster]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_clusters": self.n_clusters,
            "resolution": self.resolution,
            "modularity": self.modularity,
            "converged": self.converged,
            "cluster_sizes": {str(k): int(v) for k, v in self.sizes.items()},
        }


def modularity(
    adjacency: sparse.csr_matrix,
    labels: np.ndarray,
    resolution: float = 1.0,
) -> float:
    """Newman modularity with resolution for a symmetric weighted graph."""
    adjacency = sparse.csr_matrix(adjacency)
    two_m = float(adjacency.sum())
    if two_m <= 0:
        return 0.0
    n_comm = int(labels.max()) + 1
    degrees = np.asarray(adjacency.sum(axis=1)).ravel()
    coo = adjacency.tocoo()
    same = labels[coo.row] == labels[coo.col]
    internal = np.bincount(labels[coo.row[same]], weights=coo.data[same], minlength=n_comm)
    totals = np.bincount(labels, weights=degrees, minlength=n_comm)
    return float(np.sum(internal / two_m - resolution * (totals / two_m) ** 2))


def order_labels_by_size(labels: np.ndarray) -> np.ndarray:
    """Relabel so 0 is the largest community; ties by first member index."""
    uniq, first, inverse, counts = np.unique(
        labels, return_index=True, return_inverse=True, return_counts=True
    )
    order = np.lexsort((first, -counts))
    remap = np.empty(len(uniq), dtype=np.int64)
    remap[order] = np.arange(len(uniq))
    return remap[inverse.ravel()]


def _local_moving(
    adjacency: sparse.csr_matrix,
    resolution: float,
    rng: np.random.Generator,
    max_passes: int,
) -> Tuple[np.ndarray, bool, bool]:
    """One level of local moving.

    Returns
    -------
    Tuple[np.ndarray, bool, bool]
        (community per node, any node moved, reached fixed point)
    """
    n = adjacency.shape[0]
    indptr = adjacency.indptr
    indices = adjacency.indices
    data = adjacency.data
    degrees = np.asarray(adjacency.sum(axis=1)).ravel()
    two_m = float(degrees.sum())
    community = np.arange(n)
    totals = degrees.copy()
    scale = resolution / two_m

    moved_any = False
    for _ in range(max_passes):
        n_moves = 0
        for node in rng.permutation(n):
            start, end = indptr[node], indptr[node + 1]
            nbrs = indices[start:end]
            weights = data[start:end]
            not_self = nbrs != node
            nbrs = nbrs[not_self]
            weights = weights[not_self]

            current = community[node]
            k_i = degrees[node]
            totals[current] -= k_i

            if nbrs.size == 0:
                totals[current] += k_i
                continue

            cand, inverse = np.unique(community[nbrs], return_inverse=True)
            links = np.bincount(inverse.ravel(), weights=weights)
            gains = links - scale * totals[cand] * k_i

            pos = np.searchsorted(cand, current)
            if pos < cand.size and cand[pos] == current:
                stay_gain = gains[pos]
            else:
                stay_gain = -scale * totals[current] * k_i

            best = int(np.argmax(gains))
            if gains[best] > stay_gain + _GAIN_EPS:
                target = cand[best]
                n_moves += 1
            else:
                target = current
            community[node] = target
            totals[target] += k_i

        if n_moves == 0:
            return community, moved_any, True
        moved_any = True
    return community, moved_any, False


def _aggregate(adjacency: sparse.csr_matrix, community: np.ndarray):
    """Collapse communities to nodes; returns (graph, contiguous labels)."""
    _, labels = np.unique(community, return_inverse=True)
    labels = labels.ravel()
    n_comm = int(labels.max()) + 1
    membership = sparse.csr_matrix(
        (np.ones(labels.size), (np.arange(labels.size), labels)),
        shape=(labels.size, n_comm),
    )
    collapsed = (membership.T @ adjacency @ membership).tocsr()
    collapsed.sum_duplicates()
    return collapsed, labels


def louvain(
    adjacency: sparse.csr_matrix,
    resolution: float,
    rng: np.random.Generator,
    max_iterations: int = 100,
) -> Tuple[np.ndarray, bool, int]:
    """Run one Louvain optimization.

    Returns
    -------
    Tuple[np.ndarray, bool, int]
        (labels per original node, converged, number of levels)
    """
    n = adjacency.shape[0]
    membership = np.arange(n)
    graph = sparse.csr_matrix(adjacency, dtype=np.float64)
    converged = True
    n_levels = 0
    for _ in range(max_iterations):
        community, moved, fixed_point = _local_moving(
            graph, resolution, rng, max_iterations
        )
        converged = converged and fixed_point
        if not moved:
            break
        graph, level_labels = _aggregate(graph, community)
        membership = level_labels[membership]
        n_levels += 1
        if graph.shape[0] == 1:
            break
    else:
        converged = False
    return membership, converged, n_levels


class GraphClusterer:
    """Modularity-based community detection on a neighbor graph.

    Parameters
    ----------
    config : ClusteringConfig, optional
        Clustering configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> clusterer = GraphClusterer(ClusteringConfig(resolution=0.5, random_seed=0))
    >>> assignment = clusterer.cluster(graph)
    >>> assignment.sizes
    """

    def __init__(
        self,
        config: Optional[ClusteringConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ClusteringConfig()
        self.config.validate()
        self.logger = logger or logging.getLogger(__name__)

    def cluster(
        self,
        graph: NeighborGraph,
        resolution: Optional[float] = None,
        random_seed: Optional[int] = None,
    ) -> ClusterAssignment:
        """Partition the graph.

        Parameters
        ----------
        graph : NeighborGraph
            Symmetric shared-neighbor graph
        resolution : float, optional
            Modularity resolution. Uses config default if None.
        random_seed : int, optional
            Seed for node visiting order. Uses config default if None.

        Returns
        -------
        ClusterAssignment
            Labels ordered by descending cluster size
        """
        cfg = self.config
        resolution = resolution if resolution is not None else cfg.resolution
        random_seed = random_seed if random_seed is not None else cfg.random_seed
        if resolution <= 0:
            raise ConfigurationError(
                "resolution must be > 0", stage="clustering", parameter="resolution"
            )

        adjacency = sparse.csr_matrix(graph.connectivities, dtype=np.float64)
        n = adjacency.shape[0]
        if n == 0:
            raise InputError(
                "Cannot cluster an empty graph", stage="clustering", parameter="graph"
            )
        if adjacency.sum() <= 0:
            self.logger.warning(
                "Graph has no edges; every observation forms its own cluster"
            )
            labels = order_labels_by_size(np.arange(n))
            return ClusterAssignment(
                labels=labels,
                obs_ids=graph.obs_ids,
                resolution=resolution,
                modularity=0.0,
            )

        seeds = np.random.SeedSequence(random_seed).spawn(cfg.n_starts)
        best: Optional[Tuple[float, np.ndarray, bool, int]] = None
        for start, seed in enumerate(seeds):
            rng = np.random.default_rng(seed)
            labels, converged, n_levels = louvain(
                adjacency, resolution, rng, max_iterations=cfg.max_iterations
            )
            score = modularity(adjacency, labels, resolution)
            self.logger.debug(
                "Louvain start %d: %d clusters, modularity %.6f",
                start,
                int(labels.max()) + 1,
                score,
            )
            if best is None or score > best[0] + _GAIN_EPS:
                best = (score, labels, converged, n_levels)

        score, labels, converged, n_levels = best
        if not converged:
            message = (
                f"Louvain reached max_iterations={cfg.max_iterations} before "
                f"converging; keeping best partition found"
            )
            warnings.warn(message, NonConvergenceWarning, stacklevel=2)
            self.logger.warning(message)

        assignment = ClusterAssignment(
            labels=order_labels_by_size(labels),
            obs_ids=graph.obs_ids,
            resolution=resolution,
            modularity=score,
            converged=converged,
            n_levels=n_levels,
        )
        self.logger.info(
            "Louvain (resolution=%.3f): %d clusters, modularity %.4f",
            resolution,
            assignment.n_clusters,
            score,
        )
        return assignment
