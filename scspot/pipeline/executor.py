"""Pipeline execution: dependency-ordered in-memory stages.

``AnalysisPipeline`` wires the engine stages

    qc -> normalize -> features -> scale -> pca -> neighbors -> cluster
       -> embed -> markers -> module_scores -> spatial

into an ``InMemoryExecutor``. Each stage receives the explicit outputs of
the stages it depends on and returns a new object; nothing is cached
between runs.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
import time

import pandas as pd

from ..core.annotation import ModuleScorer, ModuleScoreResult
from ..core.clustering import (
    ClusterAssignment,
    DimReducer,
    Embedder,
    EmbeddingResult,
    GraphClusterer,
    MarkerFinder,
    MarkerResult,
    NeighborGraph,
    NeighborGraphBuilder,
    ReducedEmbedding,
)
from ..core.data import CountMatrix, ObservationMetadata, SpatialCoordinates
from ..core.errors import EngineError, InputError
from ..core.preprocessing import (
    FeatureSelectionResult,
    FeatureSelector,
    NormalizationResult,
    Normalizer,
    QCFilter,
    QCResult,
    ScaledMatrix,
)
from ..core.spatial import SpatialVariability, SpatialVariabilityResult
from .config import EngineConfig
from .logger import PipelineLogger


class InMemoryExecutor:
    """Runs registered stage functions in dependency order.

    Parameters
    ----------
    logger : PipelineLogger, optional
        Logger instance

    Example
    -------
    >>> executor = InMemoryExecutor()
    >>> executor.register_stage("qc", qc_func)
    >>> executor.register_stage("normalize", norm_func, depends_on=["qc"])
    >>> results = executor.run(counts=counts)
    """

    def __init__(self, logger: Optional[PipelineLogger] = None):
        self.logger = logger
        self.stages: Dict[str, Dict[str, Any]] = {}
        self.completed_stages: List[str] = []
        self.durations: Dict[str, float] = {}

    def register_stage(
        self,
        stage_id: str,
        func: Callable,
        depends_on: Optional[List[str]] = None,
        name: Optional[str] = None,
        enabled: bool = True,
    ) -> None:
        """Register a stage function.

        Parameters
        ----------
        stage_id : str
            Stage identifier
        func : Callable
            Called as ``func(**kwargs, stage_results=results)``
        depends_on : List[str], optional
            Stage IDs this stage depends on
        name : str, optional
            Human-readable stage name
        enabled : bool
            Disabled stages are skipped and produce no result
        """
        if stage_id in self.stages:
            raise ValueError(f"Stage '{stage_id}' is already registered")
        self.stages[stage_id] = {
            "func": func,
            "depends_on": depends_on or [],
            "name": name or stage_id,
            "enabled": enabled,
        }

    def _get_execution_order(self) -> List[str]:
        """Topological order; ties keep registration order."""
        for stage_id, stage in self.stages.items():
            for dep in stage["depends_on"]:
                if dep not in self.stages:
                    raise ValueError(f"Stage '{stage_id}' depends on unknown stage '{dep}'")

        in_degree = {sid: len(stage["depends_on"]) for sid, stage in self.stages.items()}
        queue = deque([sid for sid, degree in in_degree.items() if degree == 0])
        order = []

        while queue:
            stage_id = queue.popleft()
            order.append(stage_id)
            for other_id, other_stage in self.stages.items():
                if stage_id in other_stage["depends_on"]:
                    in_degree[other_id] -= 1
                    if in_degree[other_id] == 0:
                        queue.append(other_id)

        if len(order) != len(self.stages):
            raise ValueError("Circular dependency detected")

        return order

    def run(self, **kwargs) -> Dict[str, Any]:
        """Execute all enabled stages in order.

        A stage whose dependency was skipped is skipped as well. Engine
        errors without a stage name are tagged with the failing stage
        before being re-raised.

        Returns
        -------
        Dict[str, Any]
            Map of stage_id to stage result
        """
        order = self._get_execution_order()
        results: Dict[str, Any] = {}
        self.completed_stages = []
        self.durations = {}

        for stage_id in order:
            stage = self.stages[stage_id]
            blocked = [dep for dep in stage["depends_on"] if dep not in results]
            if not stage["enabled"] or blocked:
                if self.logger:
                    reason = "disabled" if not stage["enabled"] else f"needs {blocked}"
                    self.logger.log_stage_skipped(stage_id, reason)
                continue

            if self.logger:
                self.logger.log_stage_start(stage_id, stage["name"])

            start_time = time.time()
            try:
                result = stage["func"](**kwargs, stage_results=results)
            except EngineError as e:
                if e.stage is None:
                    e.stage = stage_id
                if self.logger:
                    self.logger.log_stage_error(stage_id, str(e))
                raise
            except Exception as e:
                if self.logger:
                    self.logger.log_stage_error(stage_id, str(e))
                raise

            results[stage_id] = result
            self.completed_stages.append(stage_id)
            self.durations[stage_id] = time.time() - start_time
            if self.logger:
                self.logger.log_stage_complete(stage_id, self.durations[stage_id])

        return results


@dataclass
class PipelineResult:
    """Every stage output of one pipeline run.

    Attributes
    ----------
    metadata : ObservationMetadata
        QC metrics, cluster labels, layout and module scores for the
        observations that passed QC
    qc : QCResult
    normalization : NormalizationResult
    features : FeatureSelectionResult
    scaled : ScaledMatrix
    reduced : ReducedEmbedding
    graph : NeighborGraph
    clusters : ClusterAssignment
    embedding : EmbeddingResult, optional
    markers : MarkerResult
    module_scores : ModuleScoreResult, optional
    spatial : SpatialVariabilityResult, optional
    durations : Dict[str, float]
        Seconds per completed stage
    """

    metadata: ObservationMetadata
    qc: QCResult
    normalization: NormalizationResult
    features: FeatureSelectionResult
    scaled: ScaledMatrix
    reduced: ReducedEmbedding
    graph: NeighborGraph
    clusters: ClusterAssignment
    markers: MarkerResult
    embedding: Optional[EmbeddingResult] = None
    module_scores: Optional[ModuleScoreResult] = None
    spatial: Optional[SpatialVariabilityResult] = None
    durations: Dict[str, float] = field(default_factory=dict)

    def summary(self) -> Dict[str, Any]:
        """Return summary dictionary for JSON export."""
        summary = {
            "qc": self.qc.to_dict(),
            "features": self.features.to_dict(),
            "pca": self.reduced.to_dict(),
            "neighbors": self.graph.to_dict(),
            "clusters": self.clusters.to_dict(),
            "markers": self.markers.to_dict(),
            "durations_seconds": {k: round(v, 3) for k, v in self.durations.items()},
        }
        if self.embedding is not None:
            summary["embedding"] = self.embedding.to_dict()
        if self.module_scores is not None:
            summary["module_scores"] = self.module_scores.to_dict()
        if self.spatial is not None:
            summary["spatial"] = self.spatial.to_dict()
        return summary

    def tables(self) -> Dict[str, pd.DataFrame]:
        """Result tables keyed by output name."""
        tables = {
            "observations": self.metadata.frame.rename_axis("obs_id").reset_index(),
            "qc_metrics": self.qc.metrics.rename_axis("obs_id").reset_index(),
            "feature_statistics": self.features.statistics.rename_axis("gene").reset_index(),
            "pca_variance": self.reduced.variance_table().rename_axis("component").reset_index(),
            "markers": self.markers.table,
        }
        if self.module_scores is not None:
            tables["module_scores"] = (
                self.module_scores.scores.rename_axis("obs_id").reset_index()
            )
        if self.spatial is not None:
            tables["spatial_variability"] = self.spatial.ranking
        return tables


class AnalysisPipeline:
    """End-to-end analysis from raw counts.

    Parameters
    ----------
    config : EngineConfig, optional
        Engine configuration. If None, uses defaults.
    logger : PipelineLogger, optional
        Stage event logger

    Example
    -------
    >>> pipeline = AnalysisPipeline(EngineConfig.from_dict({"random_seed": 0}))
    >>> result = pipeline.run(counts, coordinates=coords, gene_sets=sets)
    >>> result.clusters.sizes
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        logger: Optional[PipelineLogger] = None,
    ):
        self.config = config or EngineConfig()
        self.config.validate()
        self.logger = logger

    def _build_executor(
        self,
        has_gene_sets: bool,
        has_coordinates: bool,
    ) -> InMemoryExecutor:
        cfg = self.config
        executor = InMemoryExecutor(logger=self.logger)
        normalizer = Normalizer(cfg.preprocessing.normalization)

        def qc_stage(counts, stage_results, **_):
            result = QCFilter(cfg.preprocessing.qc).compute(counts)
            if self.logger:
                self.logger.log_filtering("qc", "observations", result.obs_total, result.obs_kept)
                self.logger.log_filtering("qc", "genes", result.genes_total, result.genes_kept)
            if result.obs_kept == 0:
                raise InputError(
                    "QC removed every observation; relax the thresholds",
                    stage="qc",
                    parameter="min_features",
                )
            return {"result": result, "counts": result.apply(counts)}

        def normalize_stage(stage_results, **_):
            return normalizer.log_normalize(stage_results["qc"]["counts"])

        def features_stage(stage_results, **_):
            return FeatureSelector(cfg.preprocessing.features).select(
                stage_results["normalize"].normalized
            )

        def scale_stage(stage_results, **_):
            return normalizer.scale(
                stage_results["normalize"].normalized,
                genes=stage_results["features"].selected,
            )

        def pca_stage(stage_results, **_):
            return DimReducer(cfg.clustering.pca).fit(stage_results["scale"])

        def neighbors_stage(stage_results, **_):
            return NeighborGraphBuilder(cfg.clustering.neighbors).build(stage_results["pca"])

        def cluster_stage(stage_results, **_):
            return GraphClusterer(cfg.clustering.clustering).cluster(stage_results["neighbors"])

        def embed_stage(stage_results, **_):
            return Embedder(cfg.clustering.embedding).embed(
                stage_results["pca"], stage_results["neighbors"]
            )

        def markers_stage(stage_results, **_):
            return MarkerFinder(cfg.clustering.markers).find_markers(
                stage_results["normalize"].normalized, stage_results["cluster"]
            )

        def module_score_stage(gene_sets, stage_results, **_):
            return ModuleScorer(cfg.module_score).score(
                stage_results["normalize"].normalized, gene_sets
            )

        def spatial_stage(coordinates, spatial_genes, stage_results, **_):
            genes = spatial_genes
            if genes is None:
                genes = stage_results["features"].selected
            return SpatialVariability(cfg.spatial).rank_genes(
                stage_results["normalize"].normalized, coordinates, genes=genes
            )

        executor.register_stage("qc", qc_stage, name="Quality control")
        executor.register_stage("normalize", normalize_stage, ["qc"], "Log-normalization")
        executor.register_stage("features", features_stage, ["normalize"], "Variable genes")
        executor.register_stage("scale", scale_stage, ["features"], "Scaling")
        executor.register_stage("pca", pca_stage, ["scale"], "PCA")
        executor.register_stage("neighbors", neighbors_stage, ["pca"], "Neighbor graph")
        executor.register_stage("cluster", cluster_stage, ["neighbors"], "Clustering")
        executor.register_stage(
            "embed", embed_stage, ["pca", "neighbors"], "Layout",
            enabled=cfg.compute_embedding,
        )
        executor.register_stage(
            "markers", markers_stage, ["normalize", "cluster"], "Marker genes"
        )
        executor.register_stage(
            "module_scores", module_score_stage, ["normalize"], "Module scores",
            enabled=has_gene_sets,
        )
        executor.register_stage(
            "spatial", spatial_stage, ["normalize", "features"], "Spatial variability",
            enabled=has_coordinates,
        )
        return executor

    def run(
        self,
        counts: CountMatrix,
        coordinates: Optional[SpatialCoordinates] = None,
        gene_sets: Optional[Mapping[str, Sequence[str]]] = None,
        spatial_genes: Optional[Sequence[str]] = None,
    ) -> PipelineResult:
        """Run every stage on ``counts``.

        Parameters
        ----------
        counts : CountMatrix
            Raw counts (genes x observations)
        coordinates : SpatialCoordinates, optional
            Spot positions; enables the spatial stage
        gene_sets : Mapping[str, Sequence[str]], optional
            Named gene sets; enables module scoring
        spatial_genes : Sequence[str], optional
            Candidate genes for spatial ranking. Variable genes if None.

        Returns
        -------
        PipelineResult
            Every stage output and the per-observation metadata
        """
        executor = self._build_executor(
            has_gene_sets=bool(gene_sets),
            has_coordinates=coordinates is not None,
        )
        results = executor.run(
            counts=counts,
            coordinates=coordinates,
            gene_sets=gene_sets or {},
            spatial_genes=spatial_genes,
        )

        qc: QCResult = results["qc"]["result"]
        metadata = ObservationMetadata(counts.obs_ids)
        metadata.add_columns(qc.metrics)
        metadata = metadata.subset(qc.keep_obs)

        clusters: ClusterAssignment = results["cluster"]
        metadata.add_column("cluster", clusters.to_series())
        embedding = results.get("embed")
        if embedding is not None:
            metadata.add_columns(embedding.to_dataframe())
        module_scores = results.get("module_scores")
        if module_scores is not None:
            metadata.add_columns(module_scores.scores.add_prefix("score_"))
        if coordinates is not None:
            metadata.add_columns(coordinates.align(metadata.obs_ids).frame)

        return PipelineResult(
            metadata=metadata,
            qc=qc,
            normalization=results["normalize"],
            features=results["features"],
            scaled=results["scale"],
            reduced=results["pca"],
            graph=results["neighbors"],
            clusters=clusters,
            markers=results["markers"],
            embedding=embedding,
            module_scores=module_scores,
            spatial=results.get("spatial"),
            durations=dict(executor.durations),
        )
