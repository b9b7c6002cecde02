"""Pytest configuration and shared fixtures for scspot tests."""

import sys
from pathlib import Path

import pytest
import numpy as np

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Import synthetic data generators
from tests.fixtures import (
    create_two_block_counts,
    create_single_marker_counts,
    create_spot_grid,
    create_spot_counts,
    small_engine_options,
)


# ============================================================================
# Count Matrix Fixtures
# ============================================================================


@pytest.fixture
def two_block_counts():
    """100 observations x 50 genes with two expression blocks."""
    return create_two_block_counts()


@pytest.fixture
def normalized_two_block(two_block_counts):
    """Log-normalized two-block matrix."""
    from scspot.core.preprocessing import Normalizer

    return Normalizer().log_normalize(two_block_counts).normalized


@pytest.fixture
def marker_counts():
    """Two groups differing only in gene DIFF, plus their labels."""
    return create_single_marker_counts()


# ============================================================================
# Spatial Fixtures
# ============================================================================


@pytest.fixture
def spot_grid():
    """20 x 20 spot grid with SMOOTH, NOISE and CONSTANT genes."""
    return create_spot_grid(seed=0, include_constant=True)


@pytest.fixture
def spot_counts():
    """12 x 12 spot counts with a gradient gene."""
    return create_spot_counts()


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def engine_options() -> dict:
    """Flat engine options sized for the synthetic matrices."""
    return small_engine_options(seed=0)


@pytest.fixture
def engine_config(engine_options):
    """EngineConfig built from the small flat options."""
    from scspot.pipeline import EngineConfig

    return EngineConfig.from_dict(engine_options)


@pytest.fixture
def sample_engine_yaml(tmp_path, engine_options) -> Path:
    """Engine configuration file mixing flat and nested options."""
    import yaml

    config = {
        "engine": dict(
            engine_options,
            preprocessing={"qc": {"min_cells_per_gene": 2}},
            clustering={"embedding": {"n_epochs": 50}},
        )
    }
    path = tmp_path / "engine.yaml"
    with open(path, "w") as f:
        yaml.dump(config, f)
    return path


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Create a temporary output directory for tests."""
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


@pytest.fixture
def rng():
    """Seeded random generator."""
    return np.random.default_rng(1337)
