"""Configuration classes for clustering module.

Covers dimensionality reduction, neighbor graph construction, graph
clustering, 2D embedding and marker detection.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..errors import ConfigurationError


DEFAULT_MAX_COMPONENTS = 50


@dataclass
class PCAConfig:
    """Configuration for principal component analysis.

    Attributes
    ----------
    n_components : int, optional
        Number of components. If None, uses min(50, n_obs - 1, n_genes - 1).
        An explicit value larger than the feasible rank is an input error.
    svd_solver : str
        Solver passed to sklearn.decomposition.PCA
    random_seed : int
        Seed for randomized solvers
    """

    n_components: Optional[int] = None
    svd_solver: str = "full"
    random_seed: int = 1337

    def validate(self) -> None:
        if self.n_components is not None and self.n_components < 1:
            raise ConfigurationError(
                "n_components must be >= 1", stage="pca", parameter="n_components"
            )
        if self.svd_solver not in ("auto", "full", "arpack", "randomized"):
            raise ConfigurationError(
                f"Unknown svd_solver '{self.svd_solver}'",
                stage="pca",
                parameter="svd_solver",
            )


@dataclass
class NeighborConfig:
    """Configuration for the shared-nearest-neighbor graph.

    Attributes
    ----------
    k : int
        Neighbors per observation, counting the observation itself
    n_dims : int, optional
        Use only the first ``n_dims`` components. All if None.
    prune : float
        Drop shared-neighbor edges with Jaccard weight <= prune unless
        the pair is in either k-NN list
    """

    k: int = 20
    n_dims: Optional[int] = None
    prune: float = 0.0

    def validate(self) -> None:
        if self.k < 2:
            raise ConfigurationError("k must be >= 2", stage="neighbors", parameter="k")
        if self.n_dims is not None and self.n_dims < 1:
            raise ConfigurationError(
                "n_dims must be >= 1", stage="neighbors", parameter="n_dims"
            )
        if not 0.0 <= self.prune < 1.0:
            raise ConfigurationError(
                "prune must be in [0, 1)", stage="neighbors", parameter="prune"
            )


@dataclass
class ClusteringConfig:
    """Configuration for Louvain clustering.

    Attributes
    ----------
    resolution : float
        Modularity resolution; higher values give more, smaller clusters
    n_starts : int
        Random restarts; the partition with best modularity is kept
    max_iterations : int
        Cap on local-moving passes per level and on aggregation levels
    random_seed : int
        Random seed for node visiting order
    """

    resolution: float = 0.8
    n_starts: int = 10
    max_iterations: int = 100
    random_seed: int = 1337

    def validate(self) -> None:
        if self.resolution <= 0:
            raise ConfigurationError(
                "resolution must be > 0", stage="clustering", parameter="resolution"
            )
        if self.n_starts < 1:
            raise ConfigurationError(
                "n_starts must be >= 1", stage="clustering", parameter="n_starts"
            )
        if self.max_iterations < 1:
            raise ConfigurationError(
                "max_iterations must be >= 1",
                stage="clustering",
                parameter="max_iterations",
            )


@dataclass
class EmbeddingConfig:
    """Configuration for the UMAP-style layout.

    Attributes
    ----------
    n_components : int
        Output dimensionality (2 or 3)
    n_epochs : int
        Fixed number of optimization epochs
    min_dist : float
        Minimum distance between embedded points
    spread : float
        Scale of embedded points
    learning_rate : float
        Initial learning rate, decayed linearly to 0
    negative_sample_rate : int
        Negative samples per positive edge sample
    random_seed : int
        Random seed for edge and negative sampling
    """

    n_components: int = 2
    n_epochs: int = 200
    min_dist: float = 0.3
    spread: float = 1.0
    learning_rate: float = 1.0
    negative_sample_rate: int = 5
    random_seed: int = 1337

    def validate(self) -> None:
        if self.n_components not in (2, 3):
            raise ConfigurationError(
                "n_components must be 2 or 3", stage="embedding", parameter="n_components"
            )
        if self.n_epochs < 1:
            raise ConfigurationError(
                "n_epochs must be >= 1", stage="embedding", parameter="n_epochs"
            )
        if self.spread <= 0:
            raise ConfigurationError(
                "spread must be > 0", stage="embedding", parameter="spread"
            )
        if not 0.0 <= self.min_dist <= self.spread:
            raise ConfigurationError(
                "min_dist must be in [0, spread]", stage="embedding", parameter="min_dist"
            )
        if self.learning_rate <= 0:
            raise ConfigurationError(
                "learning_rate must be > 0", stage="embedding", parameter="learning_rate"
            )
        if self.negative_sample_rate < 0:
            raise ConfigurationError(
                "negative_sample_rate must be >= 0",
                stage="embedding",
                parameter="negative_sample_rate",
            )


@dataclass
class MarkerConfig:
    """Configuration for cluster marker detection.

    Attributes
    ----------
    min_pct : float
        Test genes detected in at least this fraction of in-cluster or
        out-of-cluster observations
    min_logfc : float
        Minimum average log2 fold change
    only_positive : bool
        Keep only genes up-regulated in the cluster
    min_cluster_size : int
        Clusters (and their complements) smaller than this are not tested
    top_n : int, optional
        Keep at most this many markers per cluster. All if None.
    n_jobs : int
        Parallel workers over clusters (joblib)
    """

    min_pct: float = 0.25
    min_logfc: float = 0.25
    only_positive: bool = True
    min_cluster_size: int = 3
    top_n: Optional[int] = None
    n_jobs: int = 1

    def validate(self) -> None:
        if not 0.0 <= self.min_pct <= 1.0:
            raise ConfigurationError(
                "min_pct must be in [0, 1]", stage="markers", parameter="min_pct"
            )
        if self.min_logfc < 0:
            raise ConfigurationError(
                "min_logfc must be >= 0", stage="markers", parameter="min_logfc"
            )
        if self.min_cluster_size < 2:
            raise ConfigurationError(
                "min_cluster_size must be >= 2",
                stage="markers",
                parameter="min_cluster_size",
            )
        if self.top_n is not None and self.top_n < 1:
            raise ConfigurationError(
                "top_n must be >= 1", stage="markers", parameter="top_n"
            )
        if self.n_jobs == 0:
            raise ConfigurationError(
                "n_jobs must be non-zero", stage="markers", parameter="n_jobs"
            )


@dataclass
class ClusteringStageConfig:
    """Master configuration for the clustering stages.

    Attributes
    ----------
    pca : PCAConfig
    neighbors : NeighborConfig
    clustering : ClusteringConfig
    embedding : EmbeddingConfig
    markers : MarkerConfig
    """

    pca: PCAConfig = field(default_factory=PCAConfig)
    neighbors: NeighborConfig = field(default_factory=NeighborConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    markers: MarkerConfig = field(default_factory=MarkerConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> "ClusteringStageConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested clustering section
        if "clustering_stage" in data:
            data = data["clustering_stage"]

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusteringStageConfig":
        return cls(
            pca=PCAConfig(**data.get("pca", {})),
            neighbors=NeighborConfig(**data.get("neighbors", {})),
            clustering=ClusteringConfig(**data.get("clustering", {})),
            embedding=EmbeddingConfig(**data.get("embedding", {})),
            markers=MarkerConfig(**data.get("markers", {})),
        )

    def validate(self) -> None:
        self.pca.validate()
        self.neighbors.validate()
        self.clustering.validate()
        self.embedding.validate()
        self.markers.validate()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "pca": asdict(self.pca),
            "neighbors": asdict(self.neighbors),
            "clustering": asdict(self.clustering),
            "embedding": asdict(self.embedding),
            "markers": asdict(self.markers),
        }
