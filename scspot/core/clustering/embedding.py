"""UMAP-style 2D/3D layout of the reduced representation.

The k-NN distances are turned into a fuzzy graph (per-point ``rho`` and
``sigma`` calibrated by binary search, symmetrized with the probabilistic
union). The layout is initialized from the leading principal components
and optimized for a fixed number of epochs with attractive updates along
sampled edges and repulsive updates against random negative samples.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
import logging

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.optimize import curve_fit

from ..errors import InputError
from .config import EmbeddingConfig
from .neighbors import NeighborGraph
from .pca import ReducedEmbedding

logger = logging.getLogger(__name__)

_SMOOTH_K_TOLERANCE = 1e-5
_MIN_K_DIST_SCALE = 1e-3
_GRAD_CLIP = 4.0


@dataclass
class EmbeddingResult:
    """Low-dimensional layout of the observations.

    Attributes
    ----------
    coordinates : np.ndarray
        (n_obs, n_components) layout
    obs_ids : pd.Index
        Observations in row order
    a : float
        Fitted curve parameter
    b : float
        Fitted curve parameter
    n_epochs : int
        Epochs run
    """

    coordinates: np.ndarray
    obs_ids: pd.Index
    a: float
    b: float
    n_epochs: int

    def to_dataframe(self) -> pd.DataFrame:
        columns = [f"UMAP_{i + 1}" for i in range(self.coordinates.shape[1])]
        return pd.DataFrame(self.coordinates, index=self.obs_ids, columns=columns)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_components": int(self.coordinates.shape[1]),
            "n_epochs": self.n_epochs,
            "a": self.a,
            "b": self.b,
        }


def find_ab_params(spread: float, min_dist: float) -> Tuple[float, float]:
    """Fit ``1 / (1 + a * d^(2b))`` to the target membership curve."""

    def curve(x, a, b):
        return 1.0 / (1.0 + a * x ** (2 * b))

    xv = np.linspace(0, spread * 3, 300)
    yv = np.zeros(xv.shape)
    yv[xv < min_dist] = 1.0
    yv[xv >= min_dist] = np.exp(-(xv[xv >= min_dist] - min_dist) / spread)
    params, _ = curve_fit(curve, xv, yv)
    return float(params[0]), float(params[1])


def smooth_knn_dist(
    distances: np.ndarray,
    n_iter: int = 64,
    bandwidth: float = 1.0,
) -> Tuple[np.ndarray, np.ndarray]:
    """Per-point ``sigma`` and ``rho`` so memberships sum to log2(k).

    Parameters
    ----------
    distances : np.ndarray
        (n_obs, k) distances to neighbors, self excluded, ascending

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        (sigmas, rhos)
    """
    n_obs, k = distances.shape
    target = np.log2(k) * bandwidth

    positive = np.where(distances > 0, distances, np.inf)
    rhos = positive.min(axis=1)
    rhos[~np.isfinite(rhos)] = 0.0

    lo = np.zeros(n_obs)
    hi = np.full(n_obs, np.inf)
    mid = np.ones(n_obs)
    shifted = np.maximum(distances - rhos[:, None], 0.0)
    for _ in range(n_iter):
        psum = np.exp(-shifted / mid[:, None]).sum(axis=1)
        done = np.abs(psum - target) < _SMOOTH_K_TOLERANCE
        if done.all():
            break
        too_high = (psum > target) & ~done
        too_low = (psum < target) & ~done
        hi[too_high] = mid[too_high]
        mid[too_high] = (lo[too_high] + hi[too_high]) / 2.0
        lo[too_low] = mid[too_low]
        unbounded = too_low & ~np.isfinite(hi)
        bounded = too_low & np.isfinite(hi)
        mid[unbounded] *= 2.0
        mid[bounded] = (lo[bounded] + hi[bounded]) / 2.0

    mean_all = distances.mean() if distances.size else 0.0
    mean_rows = distances.mean(axis=1)
    floor = np.where(
        rhos > 0, _MIN_K_DIST_SCALE * mean_rows, _MIN_K_DIST_SCALE * mean_all
    )
    sigmas = np.maximum(mid, floor)
    return sigmas, rhos


def fuzzy_graph(knn_indices: np.ndarray, knn_distances: np.ndarray) -> sparse.csr_matrix:
    """Symmetric fuzzy membership graph from k-NN arrays (self excluded)."""
    n_obs, k = knn_indices.shape
    sigmas, rhos = smooth_knn_dist(knn_distances)
    weights = np.exp(
        -np.maximum(knn_distances - rhos[:, None], 0.0) / sigmas[:, None]
    )
    rows = np.repeat(np.arange(n_obs), k)
    directed = sparse.csr_matrix(
        (weights.ravel(), (rows, knn_indices.ravel())), shape=(n_obs, n_obs)
    )
    transpose = directed.T.tocsr()
    product = directed.multiply(transpose)
    graph = (directed + transpose - product).tocsr()
    graph.eliminate_zeros()
    return graph


def _rescale(init: np.ndarray, upper: float = 10.0) -> np.ndarray:
    lo = init.min(axis=0)
    span = init.max(axis=0) - lo
    span[span == 0] = 1.0
    return upper * (init - lo) / span


def _clip(grad: np.ndarray) -> np.ndarray:
    return np.clip(grad, -_GRAD_CLIP, _GRAD_CLIP)


class Embedder:
    """Neighbor-graph layout for visualization.

    Parameters
    ----------
    config : EmbeddingConfig, optional
        Embedding configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> embedder = Embedder(EmbeddingConfig(random_seed=0))
    >>> layout = embedder.embed(reduced, graph)
    >>> layout.to_dataframe().head()
    """

    def __init__(
        self,
        config: Optional[EmbeddingConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or EmbeddingConfig()
        self.config.validate()
        self.logger = logger or logging.getLogger(__name__)

    def _initial_layout(
        self, reduced: ReducedEmbedding, rng: np.random.Generator
    ) -> np.ndarray:
        n_components = self.config.n_components
        init = np.zeros((reduced.n_obs, n_components))
        n_copy = min(n_components, reduced.n_components)
        init[:, :n_copy] = reduced.coordinates[:, :n_copy]
        init = _rescale(init)
        # Small jitter separates duplicate points
        init += rng.normal(scale=1e-4, size=init.shape)
        return init

    def _optimize(
        self,
        layout: np.ndarray,
        graph: sparse.csr_matrix,
        a: float,
        b: float,
        rng: np.random.Generator,
    ) -> np.ndarray:
        cfg = self.config
        coo = graph.tocoo()
        heads = coo.row
        tails = coo.col
        weights = coo.data
        n_obs = layout.shape[0]
        if weights.size == 0:
            return layout

        # Edges too weak to be sampled within n_epochs are dropped
        keep = weights >= weights.max() / cfg.n_epochs
        heads, tails, weights = heads[keep], tails[keep], weights[keep]
        sample_prob = weights / weights.max()

        for epoch in range(cfg.n_epochs):
            alpha = cfg.learning_rate * (1.0 - epoch / cfg.n_epochs)
            active = rng.random(sample_prob.size) < sample_prob
            h = heads[active]
            t = tails[active]
            if h.size == 0:
                continue

            diff = layout[h] - layout[t]
            dist_sq = np.sum(diff * diff, axis=1)
            coef = np.zeros_like(dist_sq)
            pos = dist_sq > 0
            coef[pos] = (-2.0 * a * b * dist_sq[pos] ** (b - 1.0)) / (
                a * dist_sq[pos] ** b + 1.0
            )
            grad = _clip(coef[:, None] * diff) * alpha
            update = np.zeros_like(layout)
            np.add.at(update, h, grad)
            np.add.at(update, t, -grad)

            if cfg.negative_sample_rate > 0:
                neg_heads = np.repeat(h, cfg.negative_sample_rate)
                neg_tails = rng.integers(0, n_obs, size=neg_heads.size)
                distinct = neg_heads != neg_tails
                neg_heads = neg_heads[distinct]
                neg_tails = neg_tails[distinct]
                diff = layout[neg_heads] - layout[neg_tails]
                dist_sq = np.sum(diff * diff, axis=1)
                coef = (2.0 * b) / ((0.001 + dist_sq) * (a * dist_sq ** b + 1.0))
                grad = _clip(coef[:, None] * diff) * alpha
                np.add.at(update, neg_heads, grad)

            layout = layout + update
        return layout

    def embed(
        self,
        reduced: ReducedEmbedding,
        graph: NeighborGraph,
        random_seed: Optional[int] = None,
    ) -> EmbeddingResult:
        """Compute the layout.

        Parameters
        ----------
        reduced : ReducedEmbedding
            PCA scores used for initialization
        graph : NeighborGraph
            Provides the k-NN indices and distances
        random_seed : int, optional
            Seed for initialization jitter and sampling. Uses config if None.

        Returns
        -------
        EmbeddingResult
            Layout coordinates, one row per observation
        """
        cfg = self.config
        random_seed = random_seed if random_seed is not None else cfg.random_seed
        if graph.n_obs != reduced.n_obs:
            raise InputError(
                f"Neighbor graph has {graph.n_obs} observations, "
                f"embedding has {reduced.n_obs}",
                stage="embedding",
                parameter="graph",
            )
        if graph.k < 2:
            raise InputError(
                "Neighbor graph must hold at least one neighbor besides self",
                stage="embedding",
                parameter="graph",
            )

        rng = np.random.default_rng(random_seed)
        a, b = find_ab_params(cfg.spread, cfg.min_dist)
        fuzzy = fuzzy_graph(graph.knn_indices[:, 1:], graph.knn_distances[:, 1:])
        layout = self._initial_layout(reduced, rng)
        layout = self._optimize(layout, fuzzy, a, b, rng)

        self.logger.info(
            "Embedding: %d observations -> %dD over %d epochs (a=%.3f, b=%.3f)",
            reduced.n_obs,
            cfg.n_components,
            cfg.n_epochs,
            a,
            b,
        )
        return EmbeddingResult(
            coordinates=layout,
            obs_ids=reduced.obs_ids,
            a=a,
            b=b,
            n_epochs=cfg.n_epochs,
        )
