"""Configuration for spatial analysis.

Provides dataclasses for configuring:
- Spatial graph construction (k-NN or radius over coordinates)
- Moran's I significance testing (analytic or permutation)
- Multiple testing correction
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..errors import ConfigurationError
from ...utils.stats import CORRECTION_METHODS


@dataclass
class SpatialGraphConfig:
    """Configuration for the spatial neighbor graph.

    Attributes
    ----------
    mode : str
        "knn" or "radius"
    k : int
        Neighbors per spot in knn mode
    radius : float, optional
        Connection radius in radius mode, in coordinate units
    coordinate_space : str
        "pixel" (continuous positions) or "grid" (array row/col)
    """

    mode: str = "knn"
    k: int = 6
    radius: Optional[float] = None
    coordinate_space: str = "pixel"

    def validate(self) -> None:
        if self.mode not in ("knn", "radius"):
            raise ConfigurationError(
                f"Unknown graph mode '{self.mode}'", stage="spatial", parameter="mode"
            )
        if self.mode == "knn" and self.k < 1:
            raise ConfigurationError("k must be >= 1", stage="spatial", parameter="k")
        if self.mode == "radius" and (self.radius is None or self.radius <= 0):
            raise ConfigurationError(
                "radius must be > 0 in radius mode", stage="spatial", parameter="radius"
            )
        if self.coordinate_space not in ("pixel", "grid"):
            raise ConfigurationError(
                f"Unknown coordinate_space '{self.coordinate_space}'",
                stage="spatial",
                parameter="coordinate_space",
            )


@dataclass
class MoranTestConfig:
    """Configuration for Moran's I significance.

    Attributes
    ----------
    method : str
        "analytic" (normal approximation) or "permutation"
    alternative : str
        "greater" (positive autocorrelation) or "two-sided"
    n_permutations : int
        Permutations in permutation mode
    correction : str
        Multiple testing correction: "fdr_bh", "fdr_by", "bonferroni",
        "holm", "none"
    alpha : float
        Significance threshold on corrected p-values
    random_seed : int
        Random seed for permutations
    n_jobs : int
        Parallel workers over permutation batches (joblib)
    batch_size : int
        Permutations per worker task
    """

    method: str = "analytic"
    alternative: str = "greater"
    n_permutations: int = 199
    correction: str = "fdr_bh"
    alpha: float = 0.05
    random_seed: int = 1337
    n_jobs: int = 1
    batch_size: int = 16

    def validate(self) -> None:
        if self.method not in ("analytic", "permutation"):
            raise ConfigurationError(
                f"Unknown test method '{self.method}'", stage="spatial", parameter="method"
            )
        if self.alternative not in ("greater", "two-sided"):
            raise ConfigurationError(
                f"Unknown alternative '{self.alternative}'",
                stage="spatial",
                parameter="alternative",
            )
        if self.n_permutations < 1:
            raise ConfigurationError(
                "n_permutations must be >= 1", stage="spatial", parameter="n_permutations"
            )
        if self.correction not in CORRECTION_METHODS:
            raise ConfigurationError(
                f"Unknown correction '{self.correction}'",
                stage="spatial",
                parameter="correction",
            )
        if not 0.0 < self.alpha < 1.0:
            raise ConfigurationError(
                "alpha must be in (0, 1)", stage="spatial", parameter="alpha"
            )
        if self.batch_size < 1:
            raise ConfigurationError(
                "batch_size must be >= 1", stage="spatial", parameter="batch_size"
            )
        if self.n_jobs == 0:
            raise ConfigurationError(
                "n_jobs must be non-zero", stage="spatial", parameter="n_jobs"
            )


@dataclass
class SpatialConfig:
    """Main configuration for spatial variability.

    Attributes
    ----------
    graph : SpatialGraphConfig
        Spatial graph settings
    test : MoranTestConfig
        Significance settings
    """

    graph: SpatialGraphConfig = field(default_factory=SpatialGraphConfig)
    test: MoranTestConfig = field(default_factory=MoranTestConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> "SpatialConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if "spatial" in data:
            data = data["spatial"]

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpatialConfig":
        return cls(
            graph=SpatialGraphConfig(**data.get("graph", {})),
            test=MoranTestConfig(**data.get("test", {})),
        )

    def validate(self) -> None:
        self.graph.validate()
        self.test.validate()

    def to_dict(self) -> Dict[str, Any]:
        return {"graph": asdict(self.graph), "test": asdict(self.test)}
