"""Principal component analysis of the scaled variable-gene matrix."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA

from ..errors import InputError
from ..preprocessing.normalization import ScaledMatrix
from .config import DEFAULT_MAX_COMPONENTS, PCAConfig

logger = logging.getLogger(__name__)


@dataclass
class ReducedEmbedding:
    """Observations projected onto principal components.

    Attributes
    ----------
    coordinates : np.ndarray
        Scores (n_obs, n_components)
    obs_ids : pd.Index
        Observations in row order
    loadings : pd.DataFrame
        Gene loadings (n_genes, n_components) indexed by gene id
    explained_variance : np.ndarray
        Variance captured by each component
    explained_variance_ratio : np.ndarray
        Fraction of total variance captured by each component
    """

    coordinates: np.ndarray
    obs_ids: pd.Index
    loadings: pd.DataFrame
    explained_variance: np.ndarray
    explained_variance_ratio: np.ndarray

    @property
    def n_obs(self) -> int:
        return int(self.coordinates.shape[0])

    @property
    def n_components(self) -> int:
        return int(self.coordinates.shape[1])

    @property
    def component_names(self) -> List[str]:
        return [f"PC{i + 1}" for i in range(self.n_components)]

    def leading(self, n_dims: Optional[int] = None) -> np.ndarray:
        """Scores restricted to the first ``n_dims`` components."""
        if n_dims is None:
            return self.coordinates
        if n_dims > self.n_components:
            raise InputError(
                f"Requested {n_dims} dimensions but only {self.n_components} "
                f"components were computed",
                stage="neighbors",
                parameter="n_dims",
            )
        return self.coordinates[:, :n_dims]

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(
            self.coordinates, index=self.obs_ids, columns=self.component_names
        )

    def variance_table(self) -> pd.DataFrame:
        """Per-component explained variance and cumulative fraction."""
        return pd.DataFrame(
            {
                "explained_variance": self.explained_variance,
                "explained_variance_ratio": self.explained_variance_ratio,
                "cumulative_ratio": np.cumsum(self.explained_variance_ratio),
            },
            index=self.component_names,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_components": self.n_components,
            "total_variance_ratio": float(np.sum(self.explained_variance_ratio)),
        }


class DimReducer:
    """PCA on a scaled observations x genes matrix.

    Parameters
    ----------
    config : PCAConfig, optional
        PCA configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> reducer = DimReducer(PCAConfig(n_components=30))
    >>> reduced = reducer.fit(scaled)
    >>> reduced.explained_variance_ratio[:5]
    """

    def __init__(
        self,
        config: Optional[PCAConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or PCAConfig()
        self.config.validate()
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def feasible_rank(n_obs: int, n_genes: int) -> int:
        return min(n_obs, n_genes) - 1

    def _resolve_components(self, n_obs: int, n_genes: int, requested: Optional[int]) -> int:
        max_rank = self.feasible_rank(n_obs, n_genes)
        if max_rank < 1:
            raise InputError(
                f"PCA needs at least 2 observations and 2 genes, got "
                f"{n_obs} x {n_genes}",
                stage="pca",
                parameter="scaled",
            )
        if requested is None:
            n_components = min(DEFAULT_MAX_COMPONENTS, max_rank)
            if n_components < DEFAULT_MAX_COMPONENTS:
                self.logger.info(
                    "Using %d components (feasible rank of %d x %d matrix)",
                    n_components,
                    n_obs,
                    n_genes,
                )
            return n_components
        if requested < 1:
            raise InputError(
                "n_components must be >= 1", stage="pca", parameter="n_components"
            )
        if requested > max_rank:
            raise InputError(
                f"n_components={requested} exceeds feasible rank {max_rank} "
                f"for a {n_obs} x {n_genes} matrix",
                stage="pca",
                parameter="n_components",
                context={"n_obs": n_obs, "n_genes": n_genes},
            )
        return requested

    def fit(
        self,
        scaled: ScaledMatrix,
        n_components: Optional[int] = None,
    ) -> ReducedEmbedding:
        """Compute the leading principal components.

        Parameters
        ----------
        scaled : ScaledMatrix
            Zero-mean, unit-variance observations x genes matrix
        n_components : int, optional
            Number of components. Uses config default if None.

        Returns
        -------
        ReducedEmbedding
            Scores, loadings and explained variance. Each component is
            oriented so its largest-magnitude loading is positive.
        """
        if n_components is None:
            n_components = self.config.n_components
        values = np.asarray(scaled.values, dtype=np.float64)
        n_obs, n_genes = values.shape
        n_components = self._resolve_components(n_obs, n_genes, n_components)

        pca = PCA(
            n_components=n_components,
            svd_solver=self.config.svd_solver,
            random_state=self.config.random_seed,
        )
        scores = pca.fit_transform(values)
        components = pca.components_.copy()

        # Fix the sign indeterminacy of SVD
        pivot = np.argmax(np.abs(components), axis=1)
        signs = np.sign(components[np.arange(n_components), pivot])
        signs[signs == 0] = 1.0
        components *= signs[:, None]
        scores = scores * signs[None, :]

        reduced = ReducedEmbedding(
            coordinates=scores,
            obs_ids=scaled.obs_ids,
            loadings=pd.DataFrame(
                components.T,
                index=scaled.gene_ids,
                columns=[f"PC{i + 1}" for i in range(n_components)],
            ),
            explained_variance=pca.explained_variance_.copy(),
            explained_variance_ratio=pca.explained_variance_ratio_.copy(),
        )
        self.logger.info(
            "PCA: %d components explain %.1f%% of variance",
            n_components,
            100.0 * float(np.sum(reduced.explained_variance_ratio)),
        )
        return reduced
