"""
Non-linear embedding service.

Projects cells into two dimensions with UMAP or tSNE, starting from the same
leading PCs used for clustering. Embeddings are stored for downstream
reporting; the service does not draw plots.
"""

from typing import Any, Dict, Tuple

import anndata
import numpy as np
import scanpy as sc

from scflow.core.analysis_ir import AnalysisStep, ParameterSpec
from scflow.core.exceptions import ScflowError
from scflow.utils.logger import get_logger

logger = get_logger(__name__)

# Neighbor graph built for UMAP; sc.tl.umap writes its own parameters to uns["umap"]
UMAP_NEIGHBORS_KEY = "umap_neighbors"


class EmbeddingError(ScflowError):
    """Base exception for embedding operations."""

    pass


class EmbeddingService:
    """Stateless service computing UMAP (``obsm["X_umap"]``) and tSNE (``obsm["X_tsne"]``)."""

    def __init__(self, config=None, **kwargs):
        logger.debug("Initializing stateless EmbeddingService")
        self.config = config or {}

    def _check_dims(self, adata: anndata.AnnData, dims: int) -> None:
        if "X_pca" not in adata.obsm:
            raise EmbeddingError("No PCA embedding found. Run run_pca first")
        n_available = adata.obsm["X_pca"].shape[1]
        if dims < 1 or dims > n_available:
            raise EmbeddingError(
                f"dims={dims} must be between 1 and the {n_available} computed PCs"
            )

    def run_umap(
        self,
        adata: anndata.AnnData,
        dims: int = 10,
        n_neighbors: int = 30,
        min_dist: float = 0.3,
        metric: str = "cosine",
        spread: float = 1.0,
        random_state: int = 42,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        UMAP embedding from the first ``dims`` PCs.

        A dedicated neighbor graph (``uns["umap_neighbors"]``) is built for
        UMAP, so the SNN graph used for clustering is left untouched.

        Args:
            adata: AnnData with ``obsm["X_pca"]``
            dims: Number of leading PCs
            n_neighbors: Size of the local neighborhood
            min_dist: Minimum distance between embedded points
            metric: Distance metric in PCA space
            spread: Scale of embedded points
            random_state: Seed for the optimization

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]: AnnData with ``obsm["X_umap"]``, stats and IR

        Raises:
            EmbeddingError: If PCA is missing, parameters are invalid or UMAP fails
        """
        self._check_dims(adata, dims)
        if n_neighbors < 2 or n_neighbors >= adata.n_obs:
            raise EmbeddingError(
                f"n_neighbors={n_neighbors} must be between 2 and n_cells - 1 ({adata.n_obs - 1})"
            )

        try:
            logger.info(
                f"Running UMAP on {dims} PCs (n_neighbors={n_neighbors}, "
                f"min_dist={min_dist}, metric={metric})"
            )
            adata_umap = adata.copy()
            sc.pp.neighbors(
                adata_umap,
                n_neighbors=n_neighbors,
                n_pcs=dims,
                use_rep="X_pca",
                metric=metric,
                key_added=UMAP_NEIGHBORS_KEY,
                random_state=random_state,
            )
            sc.tl.umap(
                adata_umap,
                min_dist=min_dist,
                spread=spread,
                neighbors_key=UMAP_NEIGHBORS_KEY,
                random_state=random_state,
            )

            embedding = np.asarray(adata_umap.obsm["X_umap"])
            stats = {
                "analysis_type": "umap",
                "dims": dims,
                "n_neighbors": n_neighbors,
                "min_dist": min_dist,
                "metric": metric,
                "embedding_range": [
                    float(embedding[:, 0].min()),
                    float(embedding[:, 0].max()),
                    float(embedding[:, 1].min()),
                    float(embedding[:, 1].max()),
                ],
            }
            logger.info("UMAP complete")

            ir = AnalysisStep(
                operation="scanpy.tl.umap",
                tool_name="run_umap",
                description=f"UMAP embedding from {dims} PCs",
                library="scanpy",
                code_template="""sc.pp.neighbors(adata, n_neighbors={{ n_neighbors }}, n_pcs={{ dims }}, use_rep="X_pca", metric={{ metric | py }}, key_added={{ neighbors_key | py }}, random_state={{ random_state }})
sc.tl.umap(adata, min_dist={{ min_dist }}, spread={{ spread }}, neighbors_key={{ neighbors_key | py }}, random_state={{ random_state }})
""",
                imports=["import scanpy as sc"],
                parameters={
                    "dims": dims,
                    "neighbors_key": UMAP_NEIGHBORS_KEY,
                    "n_neighbors": n_neighbors,
                    "min_dist": min_dist,
                    "metric": metric,
                    "spread": spread,
                    "random_state": random_state,
                },
                parameter_schema={
                    "min_dist": ParameterSpec(
                        param_type="float",
                        default_value=min_dist,
                        validation_rule="min_dist >= 0",
                        description="Minimum distance between embedded points",
                    ),
                },
                execution_context={"random_state": random_state},
            )
            return adata_umap, stats, ir

        except Exception as e:
            logger.exception(f"Error in UMAP: {e}")
            raise EmbeddingError(f"UMAP failed: {str(e)}")

    def run_tsne(
        self,
        adata: anndata.AnnData,
        dims: int = 10,
        perplexity: float = 30.0,
        random_state: int = 1,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        tSNE embedding from the first ``dims`` PCs.

        Raises:
            EmbeddingError: If PCA is missing or the perplexity is too large,
                            i.e. 3 * perplexity > n_cells - 1
        """
        self._check_dims(adata, dims)
        if perplexity <= 0 or 3 * perplexity > adata.n_obs - 1:
            raise EmbeddingError(
                f"Perplexity {perplexity} is too large for {adata.n_obs} cells; "
                f"it must satisfy 3 * perplexity <= n_cells - 1",
                details={"max_perplexity": (adata.n_obs - 1) / 3},
            )

        try:
            logger.info(f"Running tSNE on {dims} PCs (perplexity={perplexity})")
            adata_tsne = adata.copy()
            sc.tl.tsne(
                adata_tsne,
                n_pcs=dims,
                use_rep="X_pca",
                perplexity=perplexity,
                random_state=random_state,
            )

            stats = {
                "analysis_type": "tsne",
                "dims": dims,
                "perplexity": perplexity,
                "random_state": random_state,
            }
            logger.info("tSNE complete")

            ir = AnalysisStep(
                operation="scanpy.tl.tsne",
                tool_name="run_tsne",
                description=f"tSNE embedding from {dims} PCs",
                library="scanpy",
                code_template='sc.tl.tsne(adata, n_pcs={{ dims }}, use_rep="X_pca", perplexity={{ perplexity }}, random_state={{ random_state }})\n',
                imports=["import scanpy as sc"],
                parameters={
                    "dims": dims,
                    "perplexity": perplexity,
                    "random_state": random_state,
                },
                execution_context={"random_state": random_state},
            )
            return adata_tsne, stats, ir

        except Exception as e:
            logger.exception(f"Error in tSNE: {e}")
            raise EmbeddingError(f"tSNE failed: {str(e)}")
