"""Configuration classes for preprocessing stages.

All preprocessing parameters are configurable via YAML.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..errors import ConfigurationError


@dataclass
class QCConfig:
    """Configuration for observation and gene QC.

    Attributes
    ----------
    min_features : int
        Minimum detected genes per observation
    max_features : int, optional
        Maximum detected genes per observation (doublet guard)
    min_counts : int
        Minimum total counts per observation
    max_control_fraction : float
        Maximum fraction of counts from the control gene set
    control_gene_prefix : str
        Case-insensitive gene-id prefix identifying control genes
    min_cells_per_gene : int
        Drop genes detected in fewer observations
    """

    min_features: int = 200
    max_features: Optional[int] = None
    min_counts: int = 0
    max_control_fraction: float = 0.05
    control_gene_prefix: str = "MT-"
    min_cells_per_gene: int = 3

    def validate(self) -> None:
        if self.min_features < 0:
            raise ConfigurationError(
                "min_features must be >= 0", stage="qc", parameter="min_features"
            )
        if self.max_features is not None and self.max_features < self.min_features:
            raise ConfigurationError(
                "max_features must be >= min_features",
                stage="qc",
                parameter="max_features",
            )
        if self.min_counts < 0:
            raise ConfigurationError(
                "min_counts must be >= 0", stage="qc", parameter="min_counts"
            )
        if not 0.0 <= self.max_control_fraction <= 1.0:
            raise ConfigurationError(
                "max_control_fraction must be in [0, 1]",
                stage="qc",
                parameter="max_control_fraction",
            )
        if self.min_cells_per_gene < 0:
            raise ConfigurationError(
                "min_cells_per_gene must be >= 0",
                stage="qc",
                parameter="min_cells_per_gene",
            )


@dataclass
class NormalizationConfig:
    """Configuration for library-size normalization and scaling.

    Attributes
    ----------
    scale_factor : float
        Target total per observation before log1p
    scale_max : float, optional
        Clip scaled values to [-scale_max, scale_max]
    """

    scale_factor: float = 1e4
    scale_max: Optional[float] = 10.0

    def validate(self) -> None:
        if self.scale_factor <= 0:
            raise ConfigurationError(
                "scale_factor must be > 0",
                stage="normalization",
                parameter="scale_factor",
            )
        if self.scale_max is not None and self.scale_max <= 0:
            raise ConfigurationError(
                "scale_max must be > 0", stage="normalization", parameter="scale_max"
            )


@dataclass
class FeatureSelectionConfig:
    """Configuration for highly variable gene selection.

    Attributes
    ----------
    n_variable_features : int
        Number of top genes to select
    span : float
        LOWESS span for the mean-variance trend
    """

    n_variable_features: int = 2000
    span: float = 0.3

    def validate(self) -> None:
        if self.n_variable_features < 1:
            raise ConfigurationError(
                "n_variable_features must be >= 1",
                stage="feature_selection",
                parameter="n_variable_features",
            )
        if not 0.0 < self.span <= 1.0:
            raise ConfigurationError(
                "span must be in (0, 1]", stage="feature_selection", parameter="span"
            )


@dataclass
class PreprocessingConfig:
    """Master configuration for preprocessing.

    Attributes
    ----------
    qc : QCConfig
        QC configuration
    normalization : NormalizationConfig
        Normalization configuration
    features : FeatureSelectionConfig
        Feature selection configuration
    """

    qc: QCConfig = field(default_factory=QCConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    features: FeatureSelectionConfig = field(default_factory=FeatureSelectionConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> "PreprocessingConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if "preprocessing" in data:
            data = data["preprocessing"]

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreprocessingConfig":
        return cls(
            qc=QCConfig(**data.get("qc", {})),
            normalization=NormalizationConfig(**data.get("normalization", {})),
            features=FeatureSelectionConfig(**data.get("features", {})),
        )

    def validate(self) -> None:
        self.qc.validate()
        self.normalization.validate()
        self.features.validate()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "qc": asdict(self.qc),
            "normalization": asdict(self.normalization),
            "features": asdict(self.features),
        }
