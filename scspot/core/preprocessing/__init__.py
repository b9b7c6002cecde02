"""Preprocessing module for quality control, normalization and feature selection.

Pipeline Stages
---------------
- QC: observation-level count metrics and keep-masks
- Normalization: library-size scaling, log1p and per-gene z-scoring
- Features: highly variable gene selection against a mean-variance trend

Example Usage
-------------
>>> from scspot.core.preprocessing import (
...     QCFilter, QCConfig,
...     Normalizer, NormalizationConfig,
...     FeatureSelector, FeatureSelectionConfig,
... )
>>> qc_result = QCFilter(QCConfig()).compute(counts)
>>> filtered = qc_result.apply(counts)
>>> norm = Normalizer().log_normalize(filtered)
>>> hvg = FeatureSelector().select(norm.normalized)
>>> scaled = Normalizer().scale(norm.normalized, genes=hvg.selected)
"""

__version__ = "1.0.0"

# Configuration classes
from .config import (
    QCConfig,
    NormalizationConfig,
    FeatureSelectionConfig,
    PreprocessingConfig,
)

# Sparse primitives
from . import matrix_ops

# QC
from .qc import (
    QCFilter,
    QCResult,
    REASON_COLUMNS,
    prefix_predicate,
)

# Normalization
from .normalization import (
    Normalizer,
    NormalizationResult,
    ScaledMatrix,
)

# Feature selection
from .features import (
    FeatureSelector,
    FeatureSelectionResult,
)

__all__ = [
    # Config
    "QCConfig",
    "NormalizationConfig",
    "FeatureSelectionConfig",
    "PreprocessingConfig",
    # Primitives
    "matrix_ops",
    # QC
    "QCFilter",
    "QCResult",
    "REASON_COLUMNS",
    "prefix_predicate",
    # Normalization
    "Normalizer",
    "NormalizationResult",
    "ScaledMatrix",
    # Features
    "FeatureSelector",
    "FeatureSelectionResult",
]
