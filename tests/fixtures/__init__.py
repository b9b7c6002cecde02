"""Test fixtures for scspot.

Provides synthetic data generators and test utilities.
"""

from .mock_counts import (
    create_two_block_counts,
    two_block_labels,
    create_single_marker_counts,
    create_spot_grid,
    create_spot_counts,
    create_mock_adata,
    small_engine_options,
)

__all__ = [
    "create_two_block_counts",
    "two_block_labels",
    "create_single_marker_counts",
    "create_spot_grid",
    "create_spot_counts",
    "create_mock_adata",
    "small_engine_options",
]
