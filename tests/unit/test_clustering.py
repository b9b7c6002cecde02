"""Unit tests for clustering module."""

import pytest
import numpy as np
import pandas as pd
from scipy import sparse

from scspot.core.errors import ConfigurationError, InputError, NonConvergenceWarning
from scspot.core.preprocessing import FeatureSelector, Normalizer
from scspot.core.clustering import (
    PCAConfig,
    NeighborConfig,
    ClusteringConfig,
    EmbeddingConfig,
    ClusteringStageConfig,
    DimReducer,
    ReducedEmbedding,
    NeighborGraph,
    NeighborGraphBuilder,
    GraphClusterer,
    Embedder,
    ClusteringEngine,
    exact_knn,
    shared_neighbor_graph,
    modularity,
)
from scspot.core.clustering.embedding import find_ab_params
from scspot.core.clustering.louvain import order_labels_by_size
from tests.fixtures import two_block_labels


@pytest.fixture
def scaled_two_block(normalized_two_block):
    """Scaled matrix of the 20 most variable genes."""
    selected = FeatureSelector().select(normalized_two_block, n_features=20).selected
    return Normalizer().scale(normalized_two_block, genes=selected)


@pytest.fixture
def reduced_two_block(scaled_two_block):
    """10-component PCA of the two-block matrix."""
    return DimReducer(PCAConfig(n_components=10)).fit(scaled_two_block)


@pytest.fixture
def graph_two_block(reduced_two_block):
    """Shared-neighbor graph with k=10."""
    return NeighborGraphBuilder(NeighborConfig(k=10)).build(reduced_two_block)


class TestClusteringStageConfig:
    """Tests for clustering configuration."""

    def test_default_values(self):
        """Test default configuration values."""
        config = ClusteringStageConfig()
        assert config.pca.n_components is None
        assert config.neighbors.k == 20
        assert config.clustering.resolution == 0.8
        assert config.clustering.random_seed == 1337
        assert config.embedding.n_epochs == 200

    def test_from_yaml(self, tmp_path):
        """Test loading config from YAML."""
        yaml_content = """
clustering_stage:
  pca:
    n_components: 15
  neighbors:
    k: 12
  clustering:
    resolution: 0.5
"""
        yaml_file = tmp_path / "config.yaml"
        yaml_file.write_text(yaml_content)

        config = ClusteringStageConfig.from_yaml(yaml_file)
        assert config.pca.n_components == 15
        assert config.neighbors.k == 12
        assert config.clustering.resolution == 0.5

    def test_invalid_k(self):
        """Test k below 2 is rejected."""
        with pytest.raises(ConfigurationError, match="k"):
            NeighborConfig(k=-1).validate()

    def test_invalid_resolution(self):
        """Test non-positive resolution is rejected."""
        with pytest.raises(ConfigurationError):
            ClusteringConfig(resolution=0.0).validate()

    def test_to_dict(self):
        """Test converting config to dictionary."""
        d = ClusteringStageConfig().to_dict()
        assert d["neighbors"]["k"] == 20
        assert d["markers"]["min_pct"] == 0.25


class TestDimReducer:
    """Tests for PCA."""

    def test_shapes(self, scaled_two_block, reduced_two_block):
        """Test score and loading shapes."""
        assert reduced_two_block.coordinates.shape == (100, 10)
        assert reduced_two_block.loadings.shape == (20, 10)
        assert list(reduced_two_block.loadings.index) == list(scaled_two_block.gene_ids)
        assert reduced_two_block.component_names[0] == "PC1"

    def test_variance_descending(self, reduced_two_block):
        """Test explained variance is ordered."""
        ratio = reduced_two_block.explained_variance_ratio
        assert np.all(np.diff(ratio) <= 1e-12)
        assert ratio.sum() <= 1.0 + 1e-9

    def test_sign_convention(self, reduced_two_block):
        """Test the largest-magnitude loading of each component is positive."""
        loadings = reduced_two_block.loadings.to_numpy()
        pivots = np.argmax(np.abs(loadings), axis=0)
        assert np.all(loadings[pivots, np.arange(loadings.shape[1])] > 0)

    def test_deterministic(self, scaled_two_block):
        """Test repeated fits are identical."""
        first = DimReducer(PCAConfig(n_components=5)).fit(scaled_two_block)
        second = DimReducer(PCAConfig(n_components=5)).fit(scaled_two_block)
        np.testing.assert_array_equal(first.coordinates, second.coordinates)

    def test_pc1_separates_blocks(self, reduced_two_block):
        """Test the first component splits the two blocks."""
        pc1 = reduced_two_block.coordinates[:, 0]
        labels = two_block_labels()
        assert np.sign(pc1[labels == 0].mean()) != np.sign(pc1[labels == 1].mean())

    def test_default_components_capped(self, scaled_two_block):
        """Test default component count is limited by matrix rank."""
        reduced = DimReducer(PCAConfig(n_components=None)).fit(scaled_two_block)
        assert reduced.n_components == 19

    def test_infeasible_rank_raises(self, scaled_two_block):
        """Test explicit component count above rank."""
        with pytest.raises(InputError, match="feasible rank"):
            DimReducer().fit(scaled_two_block, n_components=25)

    def test_variance_table(self, reduced_two_block):
        """Test the per-component variance table."""
        table = reduced_two_block.variance_table()
        assert list(table.columns) == [
            "explained_variance", "explained_variance_ratio", "cumulative_ratio"
        ]
        assert table["cumulative_ratio"].is_monotonic_increasing


class TestNeighborGraph:
    """Tests for exact k-NN and shared-neighbor graphs."""

    def test_exact_knn_self_first_and_ties(self):
        """Test self is the first neighbor and ties follow index order."""
        coords = np.array([[0.0], [1.0], [-1.0], [2.0]])
        indices, distances = exact_knn(coords, k=3)
        np.testing.assert_array_equal(indices[0], [0, 1, 2])
        np.testing.assert_allclose(distances[0], [0.0, 1.0, 1.0])
        np.testing.assert_array_equal(indices[:, 0], np.arange(4))

    def test_ties_follow_observation_ids(self):
        """Test an equidistant k-th neighbor is chosen by observation id."""
        embedding = ReducedEmbedding(
            coordinates=np.array([[-1.0], [1.0], [0.0]]),
            obs_ids=pd.Index(["obs_b", "obs_a", "obs_c"]),
            loadings=pd.DataFrame(np.ones((1, 1)), index=["g"], columns=["PC1"]),
            explained_variance=np.array([1.0]),
            explained_variance_ratio=np.array([1.0]),
        )
        graph = NeighborGraphBuilder(NeighborConfig(k=2)).build(embedding)
        # obs_c is 1 away from both; obs_a sorts first
        assert graph.knn_indices[2, 1] == 1

    def test_distances_ascending(self, rng):
        """Test neighbors are sorted by distance."""
        _, distances = exact_knn(rng.normal(size=(50, 3)), k=8)
        assert np.all(np.diff(distances, axis=1) >= 0)

    def test_symmetric(self, graph_two_block):
        """Test edge(u, v) exists iff edge(v, u) with equal weight."""
        conn = graph_two_block.connectivities
        assert graph_two_block.is_symmetric()
        np.testing.assert_allclose(conn.toarray(), conn.T.toarray())
        assert conn.diagonal().sum() == 0

    def test_jaccard_weights(self):
        """Test weights equal |shared| / |union| of neighbor sets."""
        knn = np.array([[0, 1], [1, 0], [2, 1]])
        graph = shared_neighbor_graph(knn).toarray()
        # N(0) = {0, 1}, N(1) = {1, 0}: identical sets
        assert graph[0, 1] == pytest.approx(1.0)
        # N(1) = {0, 1}, N(2) = {1, 2}: one shared of three
        assert graph[1, 2] == pytest.approx(1.0 / 3.0)
        assert graph[0, 2] == pytest.approx(1.0 / 3.0)

    def test_prune_keeps_knn_pairs(self):
        """Test pruning never drops pairs from the k-NN lists."""
        knn = np.array([[0, 1], [1, 0], [2, 1]])
        graph = shared_neighbor_graph(knn, prune=0.5).toarray()
        assert graph[1, 2] == pytest.approx(1.0 / 3.0)
        assert graph[0, 2] == 0.0
        np.testing.assert_allclose(graph, graph.T)

    def test_graph_properties(self, graph_two_block):
        """Test k and summary."""
        assert graph_two_block.k == 10
        assert graph_two_block.n_obs == 100
        summary = graph_two_block.to_dict()
        assert summary["n_edges"] == graph_two_block.n_edges > 0

    def test_edge_list(self, graph_two_block):
        """Test undirected edge export."""
        edges = graph_two_block.to_edge_list()
        assert len(edges) == graph_two_block.n_edges
        assert list(edges.columns) == ["source", "target", "weight"]

    def test_k_below_two_raises(self, reduced_two_block):
        """Test k must include at least one neighbor besides self."""
        with pytest.raises(InputError):
            NeighborGraphBuilder().build(reduced_two_block, k=1)

    def test_k_capped_at_n_obs(self, reduced_two_block):
        """Test k larger than the observation count."""
        graph = NeighborGraphBuilder().build(reduced_two_block, k=500)
        assert graph.k == 100


class TestGraphClusterer:
    """Tests for Louvain clustering."""

    def test_every_observation_labeled(self, graph_two_block):
        """Test each observation gets exactly one contiguous label."""
        assignment = GraphClusterer(ClusteringConfig(random_seed=0)).cluster(graph_two_block)
        assert assignment.labels.shape == (100,)
        assert set(assignment.labels) == set(range(assignment.n_clusters))
        assert assignment.sizes.sum() == 100

    def test_labels_ordered_by_size(self, graph_two_block):
        """Test cluster 0 is the largest."""
        assignment = GraphClusterer(ClusteringConfig(random_seed=0)).cluster(graph_two_block)
        sizes = assignment.sizes.to_numpy()
        assert np.all(np.diff(sizes) <= 0)

    def test_deterministic(self, graph_two_block):
        """Test fixed seed gives identical labels."""
        clusterer = GraphClusterer(ClusteringConfig(random_seed=7))
        first = clusterer.cluster(graph_two_block)
        second = clusterer.cluster(graph_two_block)
        np.testing.assert_array_equal(first.labels, second.labels)
        assert first.modularity == second.modularity

    def test_blocks_never_mixed(self, graph_two_block):
        """Test no cluster spans both blocks."""
        assignment = GraphClusterer(ClusteringConfig(random_seed=0)).cluster(
            graph_two_block, resolution=0.1
        )
        blocks = two_block_labels()
        assert assignment.n_clusters >= 2
        for cluster in range(assignment.n_clusters):
            assert len(set(blocks[assignment.labels == cluster])) == 1

    def test_resolution_monotonic(self, graph_two_block):
        """Test higher resolution does not give fewer clusters."""
        clusterer = GraphClusterer(ClusteringConfig(random_seed=0))
        low = clusterer.cluster(graph_two_block, resolution=0.1)
        high = clusterer.cluster(graph_two_block, resolution=0.5)
        assert low.n_clusters <= high.n_clusters

    def test_invalid_resolution(self, graph_two_block):
        """Test non-positive resolution at call time."""
        with pytest.raises(ConfigurationError):
            GraphClusterer().cluster(graph_two_block, resolution=-1.0)

    def test_iteration_cap_warns(self, graph_two_block):
        """Test reaching max_iterations keeps a result and warns."""
        clusterer = GraphClusterer(ClusteringConfig(max_iterations=1, n_starts=1))
        with pytest.warns(NonConvergenceWarning):
            assignment = clusterer.cluster(graph_two_block)
        assert not assignment.converged
        assert assignment.labels.shape == (100,)

    def test_empty_graph_singletons(self):
        """Test a graph without edges gives one cluster per observation."""
        graph = NeighborGraph(
            connectivities=sparse.csr_matrix((3, 3)),
            knn_indices=np.arange(3).reshape(3, 1),
            knn_distances=np.zeros((3, 1)),
            obs_ids=pd.Index(["a", "b", "c"]),
        )
        assignment = GraphClusterer().cluster(graph)
        assert assignment.n_clusters == 3

    def test_modularity_two_triangles(self):
        """Test modularity of two disjoint triangles split correctly."""
        triangle = np.ones((3, 3)) - np.eye(3)
        adjacency = sparse.csr_matrix(sparse.block_diag([triangle, triangle]))
        labels = np.array([0, 0, 0, 1, 1, 1])
        assert modularity(adjacency, labels, resolution=1.0) == pytest.approx(0.5)

    def test_order_labels_by_size(self):
        """Test relabeling by size with first-member tie break."""
        labels = np.array([5, 5, 2, 9, 9, 9, 2])
        np.testing.assert_array_equal(order_labels_by_size(labels), [1, 1, 2, 0, 0, 0, 2])

    def test_to_series(self, graph_two_block):
        """Test label export keyed by observation id."""
        assignment = GraphClusterer(ClusteringConfig(random_seed=0)).cluster(graph_two_block)
        series = assignment.to_series()
        assert series.name == "cluster"
        assert list(series.index) == list(graph_two_block.obs_ids)


class TestEmbedder:
    """Tests for the layout."""

    def test_ab_params(self):
        """Test curve fit matches the reference values for min_dist=0.1."""
        a, b = find_ab_params(spread=1.0, min_dist=0.1)
        assert a == pytest.approx(1.577, rel=0.05)
        assert b == pytest.approx(0.895, rel=0.05)

    def test_layout(self, reduced_two_block, graph_two_block):
        """Test layout shape, finiteness and determinism."""
        embedder = Embedder(EmbeddingConfig(n_epochs=50, random_seed=3))
        first = embedder.embed(reduced_two_block, graph_two_block)
        second = embedder.embed(reduced_two_block, graph_two_block)
        assert first.coordinates.shape == (100, 2)
        assert np.isfinite(first.coordinates).all()
        np.testing.assert_array_equal(first.coordinates, second.coordinates)
        assert list(first.to_dataframe().columns) == ["UMAP_1", "UMAP_2"]

    def test_mismatched_graph_raises(self, reduced_two_block, rng):
        """Test graph and embedding must describe the same observations."""
        coords = rng.normal(size=(10, 2))
        indices, distances = exact_knn(coords, k=3)
        graph = NeighborGraph(
            connectivities=shared_neighbor_graph(indices),
            knn_indices=indices,
            knn_distances=distances,
            obs_ids=pd.Index([str(i) for i in range(10)]),
        )
        with pytest.raises(InputError):
            Embedder().embed(reduced_two_block, graph)


class TestClusteringEngine:
    """Tests for ClusteringEngine."""

    def test_run_clustering(self, scaled_two_block):
        """Test the full PCA -> graph -> Louvain -> layout chain."""
        config = ClusteringStageConfig(
            pca=PCAConfig(n_components=10),
            neighbors=NeighborConfig(k=10),
            embedding=EmbeddingConfig(n_epochs=30),
        )
        result = ClusteringEngine(config).run_clustering(scaled_two_block, random_seed=0)
        assert result.n_clusters >= 2
        assert result.embedding is not None
        assert result.to_dict()["n_clusters"] == result.n_clusters

    def test_skip_embedding(self, scaled_two_block):
        """Test layout is optional."""
        config = ClusteringStageConfig(pca=PCAConfig(n_components=10))
        result = ClusteringEngine(config).run_clustering(
            scaled_two_block, neighbors_k=10, compute_embedding=False
        )
        assert result.embedding is None

    def test_resolution_sweep(self, graph_two_block):
        """Test sweep table rows follow the requested resolutions."""
        engine = ClusteringEngine()
        sweep = engine.resolution_sweep(graph_two_block, [0.1, 0.5], random_seed=0)
        assert sweep["resolution"].tolist() == [0.1, 0.5]
        assert sweep["n_clusters"].iloc[0] <= sweep["n_clusters"].iloc[1]
