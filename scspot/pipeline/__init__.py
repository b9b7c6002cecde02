"""Pipeline orchestration for scspot.

Wires the engine stages into a dependency-ordered in-memory run with
structured stage logging.

Example Usage
-------------
>>> from scspot.pipeline import AnalysisPipeline, EngineConfig, PipelineLogger
>>> logger = PipelineLogger("out/logs")
>>> logger.setup()
>>> result = AnalysisPipeline(EngineConfig(random_seed=0), logger).run(counts)
>>> result.summary()["clusters"]["n_clusters"]
"""

from .config import EngineConfig, FLAT_OPTIONS
from .executor import AnalysisPipeline, InMemoryExecutor, PipelineResult
from .logger import PipelineLogger

__all__ = [
    "EngineConfig",
    "FLAT_OPTIONS",
    "AnalysisPipeline",
    "InMemoryExecutor",
    "PipelineResult",
    "PipelineLogger",
]
