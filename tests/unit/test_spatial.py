"""Unit tests for spatial variability."""

import pytest
import numpy as np
import pandas as pd
from scipy import sparse

from scspot.core.data import ExpressionMatrix, SpatialCoordinates
from scspot.core.errors import ConfigurationError, InputError
from scspot.core.spatial import (
    MoranTestConfig,
    RANKING_COLUMNS,
    SpatialConfig,
    SpatialGraphConfig,
    SpatialVariability,
    WeightStatistics,
    analytic_pvalues,
    build_spatial_graph,
    morans_i,
    row_standardize,
)
from scspot.utils.stats import adjust_pvalues
from tests.fixtures import create_spot_grid


def grid_coords(n_rows: int, n_cols: int) -> np.ndarray:
    rows, cols = np.meshgrid(np.arange(n_rows), np.arange(n_cols), indexing="ij")
    return np.column_stack([rows.ravel(), cols.ravel()]).astype(float)


class TestSpatialConfig:
    """Tests for spatial configuration."""

    def test_defaults(self):
        config = SpatialConfig()
        assert config.graph.mode == "knn"
        assert config.graph.k == 6
        assert config.test.method == "analytic"
        assert config.test.correction == "fdr_bh"

    def test_invalid_method(self):
        with pytest.raises(ConfigurationError, match="method"):
            SpatialVariability(SpatialConfig(test=MoranTestConfig(method="bootstrap")))

    def test_radius_required(self):
        with pytest.raises(ConfigurationError):
            SpatialGraphConfig(mode="radius").validate()

    def test_round_trip(self):
        config = SpatialConfig(graph=SpatialGraphConfig(k=4))
        assert SpatialConfig.from_dict(config.to_dict()) == config


class TestSpatialGraph:
    """Tests for spatial graph construction."""

    def test_knn_symmetric_without_self(self):
        graph = build_spatial_graph(grid_coords(5, 5), mode="knn", k=4)
        assert (graph != graph.T).nnz == 0
        assert graph.diagonal().sum() == 0
        assert np.all(np.diff(graph.indptr) >= 4)

    def test_radius_rook_neighbors(self):
        graph = build_spatial_graph(grid_coords(4, 4), mode="radius", radius=1.01)
        degrees = np.diff(graph.indptr)
        # Corners have 2 neighbors, interior spots 4
        assert degrees[0] == 2
        assert degrees[5] == 4
        assert degrees.sum() == 2 * 24

    def test_unknown_mode(self):
        with pytest.raises(InputError):
            build_spatial_graph(grid_coords(3, 3), mode="delaunay")

    def test_row_standardize(self):
        graph = sparse.csr_matrix(
            np.array([[0, 1, 1, 0], [1, 0, 0, 0], [1, 0, 0, 0], [0, 0, 0, 0]], dtype=float)
        )
        weights = row_standardize(graph)
        np.testing.assert_allclose(
            np.asarray(weights.sum(axis=1)).ravel(), [1.0, 1.0, 1.0, 0.0]
        )
        assert weights[0, 1] == pytest.approx(0.5)


class TestMoransI:
    """Tests for Moran's I statistics."""

    def test_checkerboard_is_minus_one(self):
        """Test perfect alternation on a rook graph gives I = -1."""
        coords = grid_coords(4, 4)
        weights = row_standardize(build_spatial_graph(coords, mode="radius", radius=1.01))
        values = ((coords[:, 0] + coords[:, 1]) % 2).reshape(-1, 1)
        assert morans_i(weights, values)[0] == pytest.approx(-1.0)

    def test_constant_gene_is_nan(self):
        weights = row_standardize(build_spatial_graph(grid_coords(3, 3), k=3))
        values = np.column_stack([np.full(9, 4.0), np.arange(9.0)])
        statistic = morans_i(weights, values)
        assert np.isnan(statistic[0])
        assert np.isfinite(statistic[1])

    def test_sparse_and_dense_agree(self, rng):
        weights = row_standardize(build_spatial_graph(grid_coords(6, 6), k=4))
        values = rng.poisson(2.0, size=(36, 5)).astype(float)
        np.testing.assert_allclose(
            morans_i(weights, values), morans_i(weights, sparse.csr_matrix(values))
        )

    def test_weight_statistics(self):
        weights = row_standardize(build_spatial_graph(grid_coords(5, 5), k=4))
        stats = WeightStatistics.from_weights(weights)
        assert stats.n == 25
        assert stats.s0 == pytest.approx(25.0)
        assert stats.expected == pytest.approx(-1.0 / 24.0)
        assert stats.variance_normal > 0

    def test_analytic_nan_gives_p_one(self):
        weights = row_standardize(build_spatial_graph(grid_coords(5, 5), k=4))
        stats = WeightStatistics.from_weights(weights)
        z, p = analytic_pvalues(np.array([np.nan, 0.5]), stats)
        assert np.isnan(z[0])
        assert p[0] == 1.0
        assert p[1] < 0.01


class TestSpatialVariability:
    """Tests for SpatialVariability ranking."""

    def test_ranking_layout(self, spot_grid):
        expression, coords = spot_grid
        result = SpatialVariability().rank_genes(expression, coords)
        assert list(result.ranking.columns) == RANKING_COLUMNS
        assert result.ranking["rank"].tolist() == [1, 2, 3]
        assert result.n_spots == 400
        assert result.n_isolated == 0

    def test_smooth_gene_ranks_first(self, spot_grid):
        expression, coords = spot_grid
        result = SpatialVariability().rank_genes(expression, coords)
        top = result.ranking.iloc[0]
        assert top["gene"] == "SMOOTH"
        assert top["morans_i"] > 0.5
        assert "SMOOTH" in result.significant_genes

    def test_constant_gene_ranks_last(self, spot_grid):
        expression, coords = spot_grid
        ranking = SpatialVariability().rank_genes(expression, coords).ranking
        last = ranking.iloc[-1]
        assert last["gene"] == "CONSTANT"
        assert np.isnan(last["morans_i"])
        assert last["p_val"] == 1.0
        assert not last["spatially_variable"]

    def test_noise_rarely_flagged(self):
        """Test spatially random genes are mostly not called variable."""
        flagged = 0
        for seed in range(20):
            expression, coords = create_spot_grid(seed=seed)
            result = SpatialVariability().rank_genes(expression, coords)
            assert result.ranking.iloc[0]["gene"] == "SMOOTH"
            flagged += "NOISE" in result.significant_genes
        assert flagged <= 5

    def test_permutation_independent_of_workers(self, spot_grid):
        """Test permutation p-values depend only on the seed."""
        expression, coords = spot_grid
        tests = [
            MoranTestConfig(method="permutation", n_permutations=49, random_seed=3,
                            n_jobs=n_jobs, batch_size=batch)
            for n_jobs, batch in ((1, 16), (2, 7))
        ]
        rankings = [
            SpatialVariability(SpatialConfig(test=t)).rank_genes(expression, coords).ranking
            for t in tests
        ]
        pd.testing.assert_frame_equal(rankings[0], rankings[1])
        smooth = rankings[0].set_index("gene").loc["SMOOTH"]
        assert smooth["p_val"] == pytest.approx(1.0 / 50.0)

    def test_gene_subset(self, spot_grid):
        expression, coords = spot_grid
        result = SpatialVariability().rank_genes(expression, coords, genes=["NOISE"])
        assert result.ranking["gene"].tolist() == ["NOISE"]

    def test_empty_gene_list_raises(self, spot_grid):
        expression, coords = spot_grid
        with pytest.raises(InputError):
            SpatialVariability().rank_genes(expression, coords, genes=[])

    def test_too_few_spots_raises(self):
        expression = ExpressionMatrix(np.array([[1.0, 2.0]]), ["G"], ["a", "b"])
        coords = SpatialCoordinates(
            pd.DataFrame({"array_row": [0, 0], "array_col": [0, 1]}, index=["a", "b"])
        )
        with pytest.raises(InputError, match="3 spots"):
            SpatialVariability().rank_genes(expression, coords)

    def test_missing_coordinates_raise(self, spot_grid):
        expression, coords = spot_grid
        partial = SpatialCoordinates(coords.frame.iloc[:-1])
        with pytest.raises(InputError):
            SpatialVariability().rank_genes(expression, partial)

    def test_grid_space_matches_pixel_space(self, spot_grid):
        """Test the ranking on a uniformly scaled grid is unchanged."""
        expression, coords = spot_grid
        pixel = SpatialVariability().rank_genes(expression, coords).ranking
        grid_config = SpatialConfig(graph=SpatialGraphConfig(coordinate_space="grid"))
        grid = SpatialVariability(grid_config).rank_genes(expression, coords).ranking
        assert pixel["gene"].tolist() == grid["gene"].tolist()


class TestAdjustPvalues:
    """Tests for multiple testing correction."""

    def test_bonferroni(self):
        np.testing.assert_allclose(
            adjust_pvalues([0.01, 0.02, 0.5], method="bonferroni"), [0.03, 0.06, 1.0]
        )

    def test_fdr_bh(self):
        adjusted = adjust_pvalues(np.array([0.01, 0.04, 0.03]), method="fdr_bh")
        np.testing.assert_allclose(adjusted, [0.03, 0.04, 0.04])

    def test_nan_preserved(self):
        adjusted = adjust_pvalues([0.01, np.nan, 0.02], method="bonferroni")
        assert np.isnan(adjusted[1])
        np.testing.assert_allclose(adjusted[[0, 2]], [0.02, 0.04])

    def test_none(self):
        np.testing.assert_allclose(adjust_pvalues([0.2, 0.3], method="none"), [0.2, 0.3])

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="Unknown correction"):
            adjust_pvalues([0.1], method="sidak2")
