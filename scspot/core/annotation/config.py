"""Configuration classes for gene-set scoring."""

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict

import yaml

from ..errors import ConfigurationError


@dataclass
class ModuleScoreConfig:
    """Configuration for control-corrected gene-set scoring.

    Attributes
    ----------
    n_bins : int
        Number of equal-occupancy expression bins
    control_size : int
        Control genes drawn from the bin of each set gene
    random_seed : int
        Seed for control gene sampling
    """

    n_bins: int = 24
    control_size: int = 100
    random_seed: int = 1337

    @classmethod
    def from_yaml(cls, path: Path) -> "ModuleScoreConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if "module_score" in data:
            data = data["module_score"]

        return cls(**data)

    def validate(self) -> None:
        if self.n_bins < 1:
            raise ConfigurationError(
                "n_bins must be >= 1", stage="module_score", parameter="n_bins"
            )
        if self.control_size < 1:
            raise ConfigurationError(
                "control_size must be >= 1",
                stage="module_score",
                parameter="control_size",
            )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
