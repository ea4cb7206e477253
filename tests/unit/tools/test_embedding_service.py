"""
Unit tests for UMAP and tSNE embeddings.
"""

import numpy as np
import pytest
from scipy.spatial.distance import cdist

from scflow.tools.embedding_service import (
    UMAP_NEIGHBORS_KEY,
    EmbeddingError,
    EmbeddingService,
)


@pytest.fixture
def service():
    return EmbeddingService()


@pytest.fixture(scope="module")
def umap_adata(neighbors_adata):
    adata, _, _ = EmbeddingService().run_umap(neighbors_adata, dims=10, n_neighbors=15)
    return adata


def _within_between_ratio(adata, basis):
    embedding = adata.obsm[basis]
    labels = adata.obs["true_cell_type"].to_numpy()
    distances = cdist(embedding, embedding)
    same = labels[:, None] == labels[None, :]
    np.fill_diagonal(same, False)
    different = labels[:, None] != labels[None, :]
    return distances[same].mean() / distances[different].mean()


class TestUmap:
    def test_embedding_shape(self, umap_adata, neighbors_adata):
        embedding = umap_adata.obsm["X_umap"]

        assert embedding.shape == (neighbors_adata.n_obs, 2)
        assert np.isfinite(embedding).all()

    def test_cell_types_separated(self, umap_adata):
        assert _within_between_ratio(umap_adata, "X_umap") < 0.5

    def test_snn_graph_untouched(self, umap_adata, neighbors_adata):
        assert "umap_neighbors" in umap_adata.uns
        assert (umap_adata.obsp["snn"] != neighbors_adata.obsp["snn"]).nnz == 0
        assert "X_umap" not in neighbors_adata.obsm

    def test_dedicated_neighbor_graph(self, umap_adata):
        assert UMAP_NEIGHBORS_KEY == "umap_neighbors"
        assert umap_adata.uns[UMAP_NEIGHBORS_KEY]["params"]["n_neighbors"] == 15
        assert f"{UMAP_NEIGHBORS_KEY}_connectivities" in umap_adata.obsp
        assert "params" in umap_adata.uns["umap"]

    def test_stats_and_ir(self, service, pca_adata):
        _, stats, ir = service.run_umap(pca_adata, dims=5, n_neighbors=10, min_dist=0.5)

        assert stats["analysis_type"] == "umap"
        assert stats["dims"] == 5
        assert len(stats["embedding_range"]) == 4
        code = ir.render()
        assert "n_pcs=5" in code
        assert "metric='cosine'" in code
        assert "key_added='umap_neighbors'" in code
        assert "neighbors_key='umap_neighbors'" in code

    def test_n_neighbors_bounds(self, service, pca_adata):
        with pytest.raises(EmbeddingError, match="n_neighbors"):
            service.run_umap(pca_adata, n_neighbors=pca_adata.n_obs)

    def test_dims_bounds(self, service, pca_adata):
        with pytest.raises(EmbeddingError, match="computed PCs"):
            service.run_umap(pca_adata, dims=100)

    def test_requires_pca(self, service, scaled_adata):
        with pytest.raises(EmbeddingError, match="run_pca"):
            service.run_umap(scaled_adata)


class TestTsne:
    def test_embedding(self, service, pca_adata):
        adata, stats, ir = service.run_tsne(pca_adata, dims=10, perplexity=20)

        assert adata.obsm["X_tsne"].shape == (pca_adata.n_obs, 2)
        assert stats["perplexity"] == 20
        assert _within_between_ratio(adata, "X_tsne") < 0.5
        assert "perplexity=20" in ir.render()

    def test_perplexity_too_large(self, service, pca_adata):
        too_large = pca_adata.n_obs / 3

        with pytest.raises(EmbeddingError, match="too large") as exc_info:
            service.run_tsne(pca_adata, perplexity=too_large)
        assert exc_info.value.details["max_perplexity"] == pytest.approx(
            (pca_adata.n_obs - 1) / 3
        )

    def test_non_positive_perplexity(self, service, pca_adata):
        with pytest.raises(EmbeddingError):
            service.run_tsne(pca_adata, perplexity=0)
