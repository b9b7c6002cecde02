"""Unit tests for cluster marker detection."""

import pytest
import numpy as np
import pandas as pd

from scspot.core.errors import ConfigurationError, InputError
from scspot.core.preprocessing import Normalizer
from scspot.core.clustering import MarkerConfig, MarkerFinder
from scspot.core.clustering.de import MARKER_COLUMNS, STATUS_INSUFFICIENT


@pytest.fixture
def marker_expression(marker_counts):
    """Log-normalized expression and labels for the DIFF design."""
    counts, labels = marker_counts
    return Normalizer().log_normalize(counts).normalized, labels


class TestMarkerConfig:
    """Tests for MarkerConfig."""

    def test_defaults(self):
        config = MarkerConfig()
        assert config.min_pct == 0.25
        assert config.only_positive is True
        assert config.min_cluster_size == 3

    def test_invalid_min_pct(self):
        """Test min_pct must be a fraction."""
        with pytest.raises(ConfigurationError, match="min_pct"):
            MarkerFinder(MarkerConfig(min_pct=1.5))


class TestMarkerFinder:
    """Tests for MarkerFinder."""

    def test_differential_gene_ranks_first(self, marker_expression):
        """Test the one differential gene is the top marker of both groups."""
        expression, labels = marker_expression
        finder = MarkerFinder(MarkerConfig(only_positive=False))
        result = finder.find_markers(expression, labels)

        top = result.top_markers(1)
        assert top == {0: ["DIFF"], 1: ["DIFF"]}
        assert result.for_cluster(0).iloc[0]["avg_log2FC"] > 2
        assert result.for_cluster(1).iloc[0]["avg_log2FC"] < -2

    def test_only_positive(self, marker_expression):
        """Test down-regulated genes are dropped by default."""
        expression, labels = marker_expression
        result = MarkerFinder().find_markers(expression, labels)
        assert (result.markers["avg_log2FC"] > 0).all()
        assert result.top_markers(1)[0] == ["DIFF"]
        assert "DIFF" not in set(result.for_cluster(1)["gene"])

    def test_table_columns_and_order(self, marker_expression):
        """Test column layout and per-cluster ordering by |log2FC|."""
        expression, labels = marker_expression
        result = MarkerFinder(MarkerConfig(only_positive=False)).find_markers(
            expression, labels
        )
        assert list(result.table.columns) == MARKER_COLUMNS
        for cluster in (0, 1):
            fc = result.for_cluster(cluster)["avg_log2FC"].abs().to_numpy()
            assert np.all(np.diff(fc) <= 0)

    def test_adjusted_pvalues(self, marker_expression):
        """Test Bonferroni adjustment over all genes."""
        expression, labels = marker_expression
        markers = MarkerFinder().find_markers(expression, labels).markers
        expected = np.minimum(markers["p_val"] * expression.n_genes, 1.0)
        np.testing.assert_allclose(markers["p_val_adj"], expected)
        assert markers.loc[markers["gene"] == "DIFF", "p_val_adj"].iloc[0] < 1e-3

    def test_top_n(self, marker_expression):
        """Test markers are truncated per cluster."""
        expression, labels = marker_expression
        result = MarkerFinder(MarkerConfig(only_positive=False, top_n=2)).find_markers(
            expression, labels
        )
        assert result.markers.groupby("cluster").size().max() <= 2

    def test_small_cluster_reported(self, marker_expression):
        """Test clusters below min_cluster_size get an insufficient_data row."""
        expression, labels = marker_expression
        labels = labels.copy()
        labels[:2] = 2
        result = MarkerFinder().find_markers(expression, labels)

        rows = result.table[result.table["cluster"] == 2]
        assert len(rows) == 1
        assert rows.iloc[0]["status"] == STATUS_INSUFFICIENT
        assert result.errors[0]["error_code"] == "E300_INSUFFICIENT_DATA"
        assert result.errors[0]["item"] == "2"
        assert len(result.for_cluster(0)) > 0

    def test_series_labels_aligned(self, marker_expression):
        """Test Series labels are matched by observation id."""
        expression, labels = marker_expression
        series = pd.Series(labels, index=expression.obs_ids)[::-1]
        from_series = MarkerFinder().find_markers(expression, series)
        from_array = MarkerFinder().find_markers(expression, labels)
        pd.testing.assert_frame_equal(from_series.table, from_array.table)

    def test_missing_labels_raise(self, marker_expression):
        """Test every observation needs a label."""
        expression, labels = marker_expression
        series = pd.Series(labels[:-1], index=expression.obs_ids[:-1])
        with pytest.raises(InputError):
            MarkerFinder().find_markers(expression, series)

    def test_parallel_matches_serial(self, marker_expression):
        """Test worker count does not change the table."""
        expression, labels = marker_expression
        finder = MarkerFinder(MarkerConfig(only_positive=False))
        serial = finder.find_markers(expression, labels, n_jobs=1)
        parallel = finder.find_markers(expression, labels, n_jobs=2)
        pd.testing.assert_frame_equal(serial.table, parallel.table)
