"""Engine configuration aggregating every stage's settings.

Accepts nested per-stage sections and the flat option names::

    engine:
      min_features: 200
      max_control_fraction: 0.05
      control_gene_prefix: "MT-"
      n_variable_features: 2000
      n_pca_components: 30
      neighbor_k: 20
      cluster_resolution: 0.8
      marker_min_pct: 0.25
      marker_min_logfc: 0.25
      module_score_bins: 24
      module_score_control_size: 100
      random_seed: 0
      preprocessing:
        qc: {min_cells_per_gene: 3}

Flat options override nested values; ``random_seed`` is applied to every
randomized stage.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from ..core.annotation.config import ModuleScoreConfig
from ..core.clustering.config import ClusteringStageConfig
from ..core.errors import ConfigurationError
from ..core.preprocessing.config import PreprocessingConfig
from ..core.spatial.config import SpatialConfig


# Flat option name -> (section attribute path)
FLAT_OPTIONS: Dict[str, Tuple[str, ...]] = {
    "min_features": ("preprocessing", "qc", "min_features"),
    "max_control_fraction": ("preprocessing", "qc", "max_control_fraction"),
    "control_gene_prefix": ("preprocessing", "qc", "control_gene_prefix"),
    "n_variable_features": ("preprocessing", "features", "n_variable_features"),
    "n_pca_components": ("clustering", "pca", "n_components"),
    "neighbor_k": ("clustering", "neighbors", "k"),
    "cluster_resolution": ("clustering", "clustering", "resolution"),
    "marker_min_pct": ("clustering", "markers", "min_pct"),
    "marker_min_logfc": ("clustering", "markers", "min_logfc"),
    "module_score_bins": ("module_score", "n_bins"),
    "module_score_control_size": ("module_score", "control_size"),
}

# Accepted value types per flat option; ints are allowed where floats are
OPTION_TYPES: Dict[str, Tuple[type, ...]] = {
    "min_features": (int,),
    "max_control_fraction": (int, float),
    "control_gene_prefix": (str,),
    "n_variable_features": (int,),
    "n_pca_components": (int, type(None)),
    "neighbor_k": (int,),
    "cluster_resolution": (int, float),
    "marker_min_pct": (int, float),
    "marker_min_logfc": (int, float),
    "module_score_bins": (int,),
    "module_score_control_size": (int,),
}

SECTIONS = ("preprocessing", "clustering", "module_score", "spatial")


def check_option(option: str, value: Any) -> None:
    """Raise ConfigurationError if ``value`` has the wrong type for ``option``."""
    expected = OPTION_TYPES[option]
    if isinstance(value, bool) or not isinstance(value, expected):
        names = " or ".join(t.__name__ for t in expected)
        raise ConfigurationError(
            f"{option} must be {names}, got {type(value).__name__} {value!r}",
            stage="config",
            parameter=option,
        )


@dataclass
class EngineConfig:
    """Master configuration for the analysis engine.

    Attributes
    ----------
    preprocessing : PreprocessingConfig
        QC, normalization and feature selection
    clustering : ClusteringStageConfig
        PCA, neighbors, clustering, layout and markers
    module_score : ModuleScoreConfig
        Gene-set scoring
    spatial : SpatialConfig
        Spatial variability
    random_seed : int, optional
        Seed applied to every randomized stage when set
    compute_embedding : bool
        Run the layout stage
    """

    preprocessing: PreprocessingConfig = field(default_factory=PreprocessingConfig)
    clustering: ClusteringStageConfig = field(default_factory=ClusteringStageConfig)
    module_score: ModuleScoreConfig = field(default_factory=ModuleScoreConfig)
    spatial: SpatialConfig = field(default_factory=SpatialConfig)
    random_seed: Optional[int] = None
    compute_embedding: bool = True

    def __post_init__(self):
        if self.random_seed is not None:
            self.apply_seed(self.random_seed)

    @classmethod
    def from_yaml(cls, path: Path) -> "EngineConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested engine section
        if "engine" in data:
            data = data["engine"]

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """Build from nested sections plus flat option names."""
        known = set(SECTIONS) | set(FLAT_OPTIONS) | {"random_seed", "compute_embedding"}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown configuration keys: {unknown}",
                stage="config",
                parameter=unknown[0],
            )
        try:
            config = cls(
                preprocessing=PreprocessingConfig.from_dict(data.get("preprocessing") or {}),
                clustering=ClusteringStageConfig.from_dict(data.get("clustering") or {}),
                module_score=ModuleScoreConfig(**(data.get("module_score") or {})),
                spatial=SpatialConfig.from_dict(data.get("spatial") or {}),
                compute_embedding=bool(data.get("compute_embedding", True)),
            )
        except TypeError as e:
            raise ConfigurationError(str(e), stage="config") from e

        for option, path in FLAT_OPTIONS.items():
            if option in data:
                config.set_option(path, data[option])
        seed = data.get("random_seed")
        if seed is not None:
            if isinstance(seed, bool) or not isinstance(seed, int):
                raise ConfigurationError(
                    f"random_seed must be int, got {type(seed).__name__} {seed!r}",
                    stage="config",
                    parameter="random_seed",
                )
            config.apply_seed(seed)
        return config

    def set_option(self, path: Tuple[str, ...], value: Any) -> None:
        for option, option_path in FLAT_OPTIONS.items():
            if option_path == tuple(path):
                check_option(option, value)
        target: Any = self
        for attr in path[:-1]:
            target = getattr(target, attr)
        setattr(target, path[-1], value)

    def apply_seed(self, seed: int) -> None:
        """Use ``seed`` for every randomized stage."""
        self.random_seed = seed
        self.clustering.pca.random_seed = seed
        self.clustering.clustering.random_seed = seed
        self.clustering.embedding.random_seed = seed
        self.module_score.random_seed = seed
        self.spatial.test.random_seed = seed

    def validate(self) -> None:
        for section in SECTIONS:
            try:
                getattr(self, section).validate()
            except (TypeError, ValueError) as e:
                # Wrongly typed nested values fail inside the range checks
                raise ConfigurationError(str(e), stage=section) from e

    def flat_options(self) -> Dict[str, Any]:
        """Current values of the flat option names."""
        values = {}
        for option, path in FLAT_OPTIONS.items():
            target: Any = self
            for attr in path:
                target = getattr(target, attr)
            values[option] = target
        values["random_seed"] = self.random_seed
        return values

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "preprocessing": self.preprocessing.to_dict(),
            "clustering": self.clustering.to_dict(),
            "module_score": self.module_score.to_dict(),
            "spatial": self.spatial.to_dict(),
            "random_seed": self.random_seed,
            "compute_embedding": self.compute_embedding,
        }
