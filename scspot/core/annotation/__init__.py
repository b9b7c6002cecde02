"""Gene-set scoring for annotating observations.

Mapping scores or clusters to cell-type names is left to the caller as a
plain lookup table.

Example Usage
-------------
>>> from scspot.core.annotation import ModuleScorer, ModuleScoreConfig
>>> scorer = ModuleScorer(ModuleScoreConfig(random_seed=0))
>>> result = scorer.score(normalized, {"t_cell": ["CD3D", "CD3E", "CD2"]})
"""

from .config import ModuleScoreConfig
from .module_score import (
    ModuleScorer,
    ModuleScoreResult,
    expression_bins,
)

__all__ = [
    "ModuleScoreConfig",
    "ModuleScorer",
    "ModuleScoreResult",
    "expression_bins",
]
