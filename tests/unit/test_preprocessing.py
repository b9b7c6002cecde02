"""Unit tests for preprocessing module."""

import pytest
import numpy as np
import pandas as pd
from scipy import sparse

from scspot.core.data import CountMatrix, ExpressionMatrix
from scspot.core.errors import ConfigurationError, InputError
from scspot.core.preprocessing import (
    QCConfig,
    NormalizationConfig,
    FeatureSelectionConfig,
    PreprocessingConfig,
    QCFilter,
    REASON_COLUMNS,
    Normalizer,
    FeatureSelector,
    matrix_ops,
)


class TestMatrixOps:
    """Tests for sparse primitives."""

    def test_row_mean_var_matches_dense(self, rng):
        """Test sparse mean/variance against numpy, implicit zeros included."""
        dense = rng.poisson(0.8, size=(6, 40)).astype(float)
        mean, var = matrix_ops.row_mean_var(sparse.csr_matrix(dense), ddof=1)
        np.testing.assert_allclose(mean, dense.mean(axis=1))
        np.testing.assert_allclose(var, dense.var(axis=1, ddof=1))

    def test_nnz_counts(self):
        """Test non-zero counting along both axes."""
        m = sparse.csr_matrix(np.array([[1, 0, 2], [0, 0, 3]]))
        np.testing.assert_array_equal(matrix_ops.row_nnz(m), [2, 1])
        np.testing.assert_array_equal(matrix_ops.column_nnz(m), [1, 0, 2])

    def test_divide_columns_zero_divisor(self):
        """Test columns with zero divisor stay zero."""
        m = sparse.csr_matrix(np.array([[2.0, 0.0], [4.0, 0.0]]))
        out = matrix_ops.divide_columns(m, np.array([2.0, 0.0])).toarray()
        np.testing.assert_allclose(out, [[1.0, 0.0], [2.0, 0.0]])

    def test_log1p_expm1_inverse(self, rng):
        """Test element-wise transforms invert each other."""
        m = sparse.csr_matrix(rng.poisson(2.0, size=(5, 5)).astype(float))
        back = matrix_ops.expm1(matrix_ops.log1p(m))
        np.testing.assert_allclose(back.toarray(), m.toarray())

    def test_scale_rows_clip_and_constant(self):
        """Test z-scoring with clipping and a constant row."""
        m = sparse.csr_matrix(np.array([[0.0] * 99 + [100.0], [3.0] * 100]))
        scaled, mean, std = matrix_ops.scale_rows(m, max_value=5.0)
        assert scaled.max() <= 5.0
        np.testing.assert_array_equal(scaled[1], np.zeros(100))
        assert std[1] == 0.0


class TestQCConfig:
    """Tests for QCConfig dataclass."""

    def test_default_values(self):
        """Test default QC thresholds."""
        config = QCConfig()
        assert config.min_features == 200
        assert config.max_control_fraction == 0.05
        assert config.control_gene_prefix == "MT-"
        assert config.min_cells_per_gene == 3

    def test_invalid_fraction(self):
        """Test control fraction outside [0, 1]."""
        with pytest.raises(ConfigurationError, match="max_control_fraction"):
            QCConfig(max_control_fraction=1.5).validate()

    def test_max_below_min_features(self):
        """Test inconsistent feature bounds."""
        with pytest.raises(ConfigurationError):
            QCConfig(min_features=10, max_features=5).validate()


class TestQCFilter:
    """Tests for QCFilter."""

    @pytest.fixture
    def small_counts(self):
        """Four observations, each failing a different rule except 'a'."""
        counts = np.array([
            [5, 1, 0, 3],   # G1
            [5, 0, 0, 0],   # G2
            [0, 9, 0, 0],   # mt-1 (lower case)
        ])
        return CountMatrix(sparse.csr_matrix(counts), ["G1", "G2", "mt-1"], ["a", "b", "c", "d"])

    def test_reasons(self, small_counts):
        """Test each removal reason is flagged."""
        qc = QCFilter(QCConfig(min_features=2, max_control_fraction=0.5, min_cells_per_gene=2))
        result = qc.compute(small_counts)
        np.testing.assert_array_equal(result.keep_obs, [True, False, False, False])
        assert result.reasons.loc["b", "high_control_fraction"]
        assert result.reasons.loc["c", "zero_counts"]
        assert result.reasons.loc["d", "low_features"]
        assert result.control_genes == ["mt-1"]
        np.testing.assert_array_equal(result.keep_genes, [True, False, False])

    def test_metrics(self, small_counts):
        """Test per-observation metrics."""
        metrics = QCFilter(QCConfig(min_features=0)).compute_metrics(small_counts)
        assert metrics.loc["a", "total_counts"] == 10
        assert metrics.loc["a", "n_features"] == 2
        assert metrics.loc["b", "control_fraction"] == pytest.approx(0.9)
        assert np.isnan(metrics.loc["c", "control_fraction"])

    def test_to_dict_counts(self, small_counts):
        """Test before/after counts are reported."""
        result = QCFilter(QCConfig(min_features=2, min_cells_per_gene=2)).compute(small_counts)
        record = result.to_dict()
        assert record["obs_before"] == 4
        assert record["obs_after"] == 1
        assert record["obs_removed"] == 3
        assert set(f"removed_{r}" for r in REASON_COLUMNS) <= set(record)

    def test_mask_satisfies_thresholds(self, two_block_counts):
        """Test mask size and that every kept observation passes."""
        config = QCConfig(min_features=30, max_control_fraction=0.01)
        result = QCFilter(config).compute(two_block_counts)
        assert result.keep_obs.shape == (two_block_counts.n_obs,)
        kept = result.metrics[result.keep_obs]
        assert (kept["n_features"] >= 30).all()
        assert (kept["control_fraction"] <= 0.01).all()
        assert result.metrics["qc_pass"].tolist() == result.keep_obs.tolist()

    def test_deterministic(self, two_block_counts):
        """Test identical input yields identical masks."""
        config = QCConfig(min_features=30, max_control_fraction=0.01)
        first = QCFilter(config).compute(two_block_counts)
        second = QCFilter(config).compute(two_block_counts)
        np.testing.assert_array_equal(first.keep_obs, second.keep_obs)
        np.testing.assert_array_equal(first.keep_genes, second.keep_genes)

    def test_apply(self, small_counts):
        """Test masks restrict observations and genes."""
        result = QCFilter(QCConfig(min_features=2, min_cells_per_gene=2)).compute(small_counts)
        filtered = result.apply(small_counts)
        assert isinstance(filtered, CountMatrix)
        assert list(filtered.obs_ids) == ["a"]
        assert list(filtered.gene_ids) == ["G1"]

    def test_apply_shape_mismatch(self, small_counts, two_block_counts):
        """Test applying masks to a different matrix."""
        result = QCFilter(QCConfig(min_features=0)).compute(small_counts)
        with pytest.raises(InputError):
            result.apply(two_block_counts)

    def test_custom_control_predicate(self, small_counts):
        """Test a caller-supplied control gene predicate."""
        qc = QCFilter(QCConfig(min_features=0), control_predicate=lambda g: g == "G2")
        result = qc.compute(small_counts)
        assert result.control_genes == ["G2"]


class TestNormalizer:
    """Tests for Normalizer."""

    def test_totals_equal_scale_factor(self, two_block_counts):
        """Test library-size scaling before log."""
        result = Normalizer(NormalizationConfig(scale_factor=1e4)).normalize_total(two_block_counts)
        totals = matrix_ops.column_sums(result.normalized.matrix)
        np.testing.assert_allclose(totals, 1e4)

    def test_round_trip(self, two_block_counts):
        """Test denormalize recovers the original counts."""
        result = Normalizer().log_normalize(two_block_counts)
        recovered = Normalizer.denormalize(result)
        np.testing.assert_allclose(
            recovered.matrix.toarray(), two_block_counts.matrix.toarray(), rtol=1e-9, atol=1e-9
        )

    def test_zero_total_observation(self):
        """Test empty observations stay at zero."""
        counts = CountMatrix(np.array([[1, 0], [2, 0]]), ["g1", "g2"], ["a", "b"])
        result = Normalizer().log_normalize(counts)
        np.testing.assert_array_equal(result.normalized.matrix.toarray()[:, 1], [0.0, 0.0])
        assert result.size_factors["b"] == 0

    def test_scale_unit_variance(self, normalized_two_block):
        """Test scaled genes have zero mean and unit variance."""
        scaled = Normalizer(NormalizationConfig(scale_max=None)).scale(
            normalized_two_block, genes=["Gene_0", "Gene_25"]
        )
        assert scaled.shape == (100, 2)
        np.testing.assert_allclose(scaled.values.mean(axis=0), 0.0, atol=1e-10)
        np.testing.assert_allclose(scaled.values.std(axis=0, ddof=1), 1.0)
        assert list(scaled.gene_ids) == ["Gene_0", "Gene_25"]

    def test_scale_empty_genes_raises(self, normalized_two_block):
        """Test scaling no genes."""
        with pytest.raises(InputError):
            Normalizer().scale(normalized_two_block, genes=[])


class TestFeatureSelector:
    """Tests for FeatureSelector."""

    def test_statistics_columns(self, normalized_two_block):
        """Test the statistics table layout."""
        result = FeatureSelector(FeatureSelectionConfig(n_variable_features=10)).select(
            normalized_two_block
        )
        for col in ("mean", "variance", "variance_expected", "variance_standardized",
                    "rank", "highly_variable"):
            assert col in result.statistics.columns
        assert sorted(result.statistics["rank"]) == list(range(1, 51))
        assert int(result.statistics["highly_variable"].sum()) == 10

    def test_never_more_than_requested(self, normalized_two_block):
        """Test the selection size bounds."""
        selector = FeatureSelector()
        assert len(selector.select(normalized_two_block, n_features=7).selected) == 7
        assert len(selector.select(normalized_two_block, n_features=500).selected) == 50

    def test_stable(self, normalized_two_block):
        """Test repeated runs select the same genes."""
        selector = FeatureSelector()
        first = selector.select(normalized_two_block, n_features=20).selected
        second = selector.select(normalized_two_block, n_features=20).selected
        assert first == second

    def test_block_genes_selected(self, normalized_two_block):
        """Test bimodal block genes outrank uniform genes."""
        selected = FeatureSelector().select(normalized_two_block, n_features=20).selected
        block_genes = {f"Gene_{i}" for i in range(20)}
        assert len(block_genes & set(selected)) >= 15

    def test_single_observation_raises(self):
        """Test variance needs two observations."""
        m = ExpressionMatrix(np.ones((3, 1)), ["a", "b", "c"], ["o"])
        with pytest.raises(InputError):
            FeatureSelector().select(m)


class TestPreprocessingConfig:
    """Tests for PreprocessingConfig."""

    def test_from_yaml(self, tmp_path):
        """Test loading config from YAML."""
        yaml_content = """
preprocessing:
  qc:
    min_features: 50
    control_gene_prefix: "mt-"
  features:
    n_variable_features: 500
"""
        yaml_file = tmp_path / "config.yaml"
        yaml_file.write_text(yaml_content)

        config = PreprocessingConfig.from_yaml(yaml_file)
        assert config.qc.min_features == 50
        assert config.qc.control_gene_prefix == "mt-"
        assert config.features.n_variable_features == 500
        assert config.normalization.scale_factor == 1e4

    def test_to_dict(self):
        """Test converting config to dictionary."""
        d = PreprocessingConfig().to_dict()
        assert d["qc"]["min_features"] == 200
        assert d["features"]["span"] == 0.3
