"""Gene-set activity scores corrected by expression-matched control genes.

Genes are split into equal-occupancy bins by average expression. For every
gene in a set, ``control_size`` genes are sampled without replacement from
the same bin, and the union of those samples forms the control set. The
score of an observation is the mean expression of the set genes minus the
mean expression of the control genes.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence
import logging

import numpy as np
import pandas as pd

from ..data import ExpressionMatrix
from ..errors import InputError, InsufficientDataError
from ..preprocessing import matrix_ops
from .config import ModuleScoreConfig

logger = logging.getLogger(__name__)


@dataclass
class ModuleScoreResult:
    """Result from gene-set scoring.

    Attributes
    ----------
    scores : pd.DataFrame
        One column per gene set, indexed by observation id
    genes_used : Dict[str, List[str]]
        Set genes found in the matrix
    controls : Dict[str, List[str]]
        Control genes sampled for each set
    warnings : List[Dict[str, Any]]
        Records for sets with no genes present
    """

    scores: pd.DataFrame
    genes_used: Dict[str, List[str]] = field(default_factory=dict)
    controls: Dict[str, List[str]] = field(default_factory=dict)
    warnings: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_sets": int(self.scores.shape[1]),
            "genes_used": {k: len(v) for k, v in self.genes_used.items()},
            "n_controls": {k: len(v) for k, v in self.controls.items()},
            "n_warnings": len(self.warnings),
        }


def expression_bins(means: np.ndarray, n_bins: int) -> np.ndarray:
    """Assign genes to equal-occupancy bins by ascending mean.

    Equal means keep their input order, so the assignment is deterministic.
    """
    n_genes = means.size
    n_bins = max(1, min(n_bins, n_genes))
    order = np.argsort(means, kind="stable")
    bins = np.empty(n_genes, dtype=np.int64)
    bins[order] = (np.arange(n_genes) * n_bins) // n_genes
    return bins


class ModuleScorer:
    """Score gene sets per observation.

    Parameters
    ----------
    config : ModuleScoreConfig, optional
        Scoring configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> scorer = ModuleScorer(ModuleScoreConfig(n_bins=24, control_size=100))
    >>> result = scorer.score(normalized, {"t_cell": ["CD3D", "CD3E"]})
    >>> result.scores["t_cell"].describe()
    """

    def __init__(
        self,
        config: Optional[ModuleScoreConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ModuleScoreConfig()
        self.config.validate()
        self.logger = logger or logging.getLogger(__name__)

    def _sample_controls(
        self,
        set_idx: np.ndarray,
        bins: np.ndarray,
        rng: np.random.Generator,
    ) -> np.ndarray:
        chosen = []
        for gene in set_idx:
            pool = np.flatnonzero(bins == bins[gene])
            size = min(self.config.control_size, pool.size)
            chosen.append(rng.choice(pool, size=size, replace=False))
        return np.unique(np.concatenate(chosen))

    def score(
        self,
        expression: ExpressionMatrix,
        gene_sets: Mapping[str, Sequence[str]],
        random_seed: Optional[int] = None,
    ) -> ModuleScoreResult:
        """Compute one score per (observation, gene set).

        Parameters
        ----------
        expression : ExpressionMatrix
            Log-normalized expression (genes x observations)
        gene_sets : Mapping[str, Sequence[str]]
            Set name to gene ids
        random_seed : int, optional
            Seed for control sampling. Uses config default if None.

        Returns
        -------
        ModuleScoreResult
            Scores plus the genes and controls used per set
        """
        random_seed = random_seed if random_seed is not None else self.config.random_seed
        if expression.n_genes == 0:
            raise InputError(
                "Expression matrix has no genes", stage="module_score", parameter="expression"
            )

        matrix = expression.matrix.astype(np.float64)
        means, _ = matrix_ops.row_mean_var(matrix, ddof=0)
        bins = expression_bins(means, self.config.n_bins)
        gene_pos = pd.Series(np.arange(expression.n_genes), index=expression.gene_ids)

        names = list(gene_sets)
        seeds = np.random.SeedSequence(random_seed).spawn(len(names))
        scores = pd.DataFrame(index=expression.obs_ids)
        result = ModuleScoreResult(scores=scores)

        for name, seed in zip(names, seeds):
            requested = list(dict.fromkeys(str(g) for g in gene_sets[name]))
            present = [g for g in requested if g in gene_pos.index]
            missing = len(requested) - len(present)
            if missing:
                self.logger.info(
                    "Gene set '%s': %d of %d genes not in matrix",
                    name,
                    missing,
                    len(requested),
                )
            result.genes_used[name] = present

            if not present:
                err = InsufficientDataError(
                    f"Gene set '{name}' has no genes in the matrix; score set to 0",
                    stage="module_score",
                    parameter="gene_sets",
                    item=name,
                )
                self.logger.warning("%s", err)
                result.warnings.append(err.to_dict())
                result.controls[name] = []
                scores[name] = 0.0
                continue

            set_idx = gene_pos[present].to_numpy()
            control_idx = self._sample_controls(set_idx, bins, np.random.default_rng(seed))
            set_mean = matrix_ops.column_sums(matrix[set_idx]) / set_idx.size
            control_mean = matrix_ops.column_sums(matrix[control_idx]) / control_idx.size
            scores[name] = set_mean - control_mean
            result.controls[name] = [str(g) for g in expression.gene_ids[control_idx]]
            self.logger.debug(
                "Gene set '%s': %d genes, %d controls", name, len(present), control_idx.size
            )

        self.logger.info(
            "Scored %d gene sets over %d observations", len(names), expression.n_obs
        )
        return result
