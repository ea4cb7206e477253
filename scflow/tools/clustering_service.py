"""
Graph-based clustering service for single-cell RNA-seq data.

Builds a shared-nearest-neighbor (SNN) graph in PCA space and partitions it
with modularity optimization (Louvain or Leiden). Cluster labels are numbered
by decreasing cluster size, so cluster "0" is always the largest.
"""

import random
from typing import Any, Callable, Dict, List, Optional, Tuple

import anndata
import igraph as ig
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as spr
from sklearn.metrics import (
    calinski_harabasz_score,
    davies_bouldin_score,
    silhouette_score,
)
from sklearn.neighbors import NearestNeighbors

from scflow.core.analysis_ir import AnalysisStep, ParameterSpec
from scflow.core.exceptions import ScflowError
from scflow.utils.logger import get_logger
from scflow.utils.progress_wrapper import with_periodic_progress

logger = get_logger(__name__)

CLUSTERING_ALGORITHMS = ("louvain", "leiden")
QUALITY_METRICS = ("silhouette", "davies_bouldin", "calinski_harabasz")


class ClusteringError(ScflowError):
    """Base exception for clustering operations."""

    pass


def resolution_key(algorithm: str, resolution: float) -> str:
    """obs column for one resolution, e.g. ``louvain_res0_5``."""
    return f"{algorithm}_res{resolution}".replace(".", "_")


def order_by_size(labels: np.ndarray) -> pd.Categorical:
    """Relabel clusters as "0".."n-1" by decreasing size (ties keep first-seen order)."""
    labels = np.asarray(labels)
    unique, first_seen, counts = np.unique(labels, return_index=True, return_counts=True)
    order = sorted(range(len(unique)), key=lambda i: (-counts[i], first_seen[i]))
    mapping = {unique[old]: str(new) for new, old in enumerate(order)}
    categories = [str(i) for i in range(len(unique))]
    return pd.Categorical([mapping[label] for label in labels], categories=categories)


class ClusteringService:
    """
    Stateless service for SNN graph construction and community detection.

    Results live in the AnnData:
        obsp["snn"]: Jaccard-weighted shared-nearest-neighbor graph
        obsp["knn"]: Binary k-nearest-neighbor graph (self included)
        obs[<algorithm>], obs[<algorithm>_res<r>]: Cluster labels
        uns["active_ident"]: Column holding the current identities
    """

    def __init__(self, config=None, **kwargs):
        """
        Initialize the clustering service.

        Args:
            config: Optional configuration dict
            **kwargs: Additional arguments (ignored)
        """
        logger.debug("Initializing stateless ClusteringService")
        self.config = config or {}
        self.progress_callback: Optional[Callable[[str], None]] = None

    def set_progress_callback(self, callback: Callable[[str], None]) -> None:
        """Receive periodic messages while community detection runs."""
        self.progress_callback = callback

    def find_neighbors(
        self,
        adata: anndata.AnnData,
        dims: int = 10,
        k_param: int = 20,
        prune_snn: float = 1 / 15,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Build the shared-nearest-neighbor graph from the first ``dims`` PCs.

        Every cell counts itself among its ``k_param`` nearest neighbors
        (Euclidean distance). Two cells sharing s neighbors are joined with
        weight s / (2k - s), the Jaccard index of their neighborhoods; weights
        below ``prune_snn`` are set to zero and self-edges are dropped.

        Args:
            adata: AnnData with ``obsm["X_pca"]``
            dims: Number of leading PCs to use
            k_param: Neighborhood size, including the cell itself
            prune_snn: Jaccard cutoff below which edges are removed

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]: AnnData with graphs, stats and IR

        Raises:
            ClusteringError: If PCA is missing or parameters are invalid
        """
        if "X_pca" not in adata.obsm:
            raise ClusteringError("No PCA embedding found. Run run_pca first")
        n_available = adata.obsm["X_pca"].shape[1]
        if dims < 1 or dims > n_available:
            raise ClusteringError(
                f"dims={dims} must be between 1 and the {n_available} computed PCs"
            )
        if k_param < 2 or k_param > adata.n_obs:
            raise ClusteringError(
                f"k_param={k_param} must be between 2 and the number of cells ({adata.n_obs})"
            )
        if not 0 <= prune_snn < 1:
            raise ClusteringError(f"prune_snn must be in [0, 1), got {prune_snn}")

        try:
            logger.info(
                f"Building SNN graph: {dims} PCs, k={k_param}, prune={prune_snn:.4f}"
            )
            adata_nn = adata.copy()
            embedding = np.asarray(adata_nn.obsm["X_pca"][:, :dims])

            nn = NearestNeighbors(n_neighbors=k_param, metric="euclidean")
            nn.fit(embedding)
            knn = nn.kneighbors_graph(embedding, mode="connectivity").tocsr()
            knn.data[:] = 1.0

            snn = self._compute_snn(knn, k_param, prune_snn)

            adata_nn.obsp["knn"] = knn.astype(np.float32)
            adata_nn.obsp["snn"] = snn
            adata_nn.uns["snn"] = {
                "params": {
                    "dims": dims,
                    "k_param": k_param,
                    "prune_snn": prune_snn,
                    "metric": "euclidean",
                }
            }

            degree = np.asarray((snn > 0).sum(axis=1)).ravel()
            stats = {
                "analysis_type": "snn_graph",
                "dims": dims,
                "k_param": k_param,
                "prune_snn": prune_snn,
                "n_edges": int(snn.nnz // 2),
                "mean_degree": float(degree.mean()),
                "isolated_cells": int((degree == 0).sum()),
            }
            if stats["isolated_cells"]:
                logger.warning(
                    f"{stats['isolated_cells']} cells have no SNN edges after pruning"
                )
            logger.info(
                f"SNN graph: {stats['n_edges']} edges, mean degree {stats['mean_degree']:.1f}"
            )

            ir = self._create_neighbors_ir(dims, k_param, prune_snn)
            return adata_nn, stats, ir

        except Exception as e:
            logger.exception(f"Error building SNN graph: {e}")
            raise ClusteringError(f"SNN graph construction failed: {str(e)}")

    @staticmethod
    def _compute_snn(
        knn: spr.csr_matrix, k_param: int, prune_snn: float
    ) -> spr.csr_matrix:
        shared = (knn @ knn.T).tocsr().astype(np.float64)
        shared.data = shared.data / (2 * k_param - shared.data)
        shared.data[shared.data < prune_snn] = 0.0
        shared.setdiag(0.0)
        shared.eliminate_zeros()
        return shared.astype(np.float32)

    def find_clusters(
        self,
        adata: anndata.AnnData,
        resolution: float = 0.5,
        algorithm: str = "louvain",
        resolutions: Optional[List[float]] = None,
        key_added: Optional[str] = None,
        group_singletons: bool = True,
        random_state: int = 0,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Detect communities in the SNN graph.

        Every resolution is stored as ``<algorithm>_res<r>``; the first one is
        also copied to ``key_added`` (default: the algorithm name), which
        becomes the active identity.

        Args:
            adata: AnnData with ``obsp["snn"]``
            resolution: Resolution when ``resolutions`` is not given
            algorithm: "louvain" or "leiden"
            resolutions: Several resolutions to compute in one call
            key_added: obs column for the primary clustering
            group_singletons: Merge one-cell clusters into their most
                              connected cluster
            random_state: Seed for the optimizer

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]: Clustered AnnData, stats and IR

        Raises:
            ClusteringError: If the graph is missing or parameters are invalid
        """
        if algorithm not in CLUSTERING_ALGORITHMS:
            raise ClusteringError(
                f"Unknown clustering algorithm: {algorithm}. "
                f"Must be one of: {', '.join(CLUSTERING_ALGORITHMS)}"
            )
        if "snn" not in adata.obsp:
            raise ClusteringError("No SNN graph found. Run find_neighbors first")
        resolutions_to_test = list(resolutions) if resolutions else [resolution]
        if any(res <= 0 for res in resolutions_to_test):
            raise ClusteringError(f"Resolutions must be positive: {resolutions_to_test}")
        key_added = key_added or algorithm

        try:
            adata_clustered = adata.copy()
            snn = spr.csr_matrix(adata_clustered.obsp["snn"])
            graph = self._build_graph(snn)

            clustering_results = {}
            for res in resolutions_to_test:
                key_name = resolution_key(algorithm, res)
                logger.info(
                    f"Running {algorithm} clustering at resolution {res} (key: {key_name})"
                )
                with with_periodic_progress(
                    f"Running {algorithm} clustering (resolution={res})",
                    self.progress_callback,
                    update_interval=10,
                ):
                    raw_labels = self._partition(
                        adata_clustered, graph, snn, algorithm, res, random_state
                    )

                if group_singletons:
                    raw_labels = self._group_singletons(raw_labels, snn)
                labels = order_by_size(raw_labels)
                adata_clustered.obs[key_name] = labels

                counts = pd.Series(labels).value_counts()
                clustering_results[key_name] = {
                    "resolution": res,
                    "n_clusters": int(len(labels.categories)),
                    "cluster_sizes": {
                        str(c): int(counts[c]) for c in labels.categories
                    },
                }
                logger.info(
                    f"Resolution {res}: {clustering_results[key_name]['n_clusters']} clusters"
                )

            primary_key = resolution_key(algorithm, resolutions_to_test[0])
            adata_clustered.obs[key_added] = adata_clustered.obs[primary_key].copy()
            adata_clustered.uns["active_ident"] = key_added
            adata_clustered.uns["clustering"] = {
                "algorithm": algorithm,
                "resolutions": resolutions_to_test,
                "primary_key": key_added,
                "random_state": random_state,
            }

            primary = clustering_results[primary_key]
            stats = {
                "analysis_type": "clustering",
                "algorithm": algorithm,
                "resolution": resolutions_to_test[0],
                "resolutions_tested": resolutions_to_test,
                "cluster_key": key_added,
                "n_clusters": primary["n_clusters"],
                "cluster_sizes": primary["cluster_sizes"],
                "multi_resolution_summary": clustering_results,
            }

            ir = self._create_clustering_ir(
                algorithm, resolutions_to_test, key_added, group_singletons, random_state
            )
            return adata_clustered, stats, ir

        except Exception as e:
            logger.exception(f"Error in clustering: {e}")
            raise ClusteringError(f"Clustering failed: {str(e)}")

    @staticmethod
    def _build_graph(snn: spr.csr_matrix) -> ig.Graph:
        upper = spr.triu(snn, k=1).tocoo()
        graph = ig.Graph(
            n=snn.shape[0],
            edges=list(zip(upper.row.tolist(), upper.col.tolist())),
            directed=False,
        )
        graph.es["weight"] = upper.data.astype(float).tolist()
        return graph

    def _partition(
        self,
        adata: anndata.AnnData,
        graph: ig.Graph,
        snn: spr.csr_matrix,
        algorithm: str,
        resolution: float,
        random_state: int,
    ) -> np.ndarray:
        if algorithm == "louvain":
            # python-igraph draws from the stdlib random module
            random.seed(random_state)
            partition = graph.community_multilevel(
                weights="weight", resolution=resolution
            )
            return np.asarray(partition.membership)

        scratch = anndata.AnnData(obs=pd.DataFrame(index=adata.obs_names.copy()))
        sc.tl.leiden(
            scratch,
            resolution=resolution,
            adjacency=snn,
            directed=False,
            random_state=random_state,
            key_added="leiden",
            flavor="leidenalg",
        )
        return scratch.obs["leiden"].astype(str).astype(int).to_numpy()

    @staticmethod
    def _group_singletons(labels: np.ndarray, snn: spr.csr_matrix) -> np.ndarray:
        """Assign each one-cell cluster to the cluster with the highest mean SNN connectivity."""
        labels = np.asarray(labels).copy()
        unique, counts = np.unique(labels, return_counts=True)
        sizes = dict(zip(unique.tolist(), counts.tolist()))
        singletons = set(unique[counts == 1].tolist())
        if not singletons or len(singletons) == len(unique):
            return labels

        for cell in np.where(np.isin(labels, list(singletons)))[0]:
            row = snn.getrow(cell)
            weights: Dict[Any, float] = {}
            for neighbor, weight in zip(row.indices, row.data):
                target = labels[neighbor]
                if target in singletons:
                    continue
                weights[target] = weights.get(target, 0.0) + float(weight)
            if weights:
                labels[cell] = max(
                    weights, key=lambda target: weights[target] / sizes[target]
                )
        n_merged = len(singletons) - len(set(labels.tolist()) & singletons)
        if n_merged:
            logger.debug(f"Merged {n_merged} singleton clusters")
        return labels

    def compute_clustering_quality(
        self,
        adata: anndata.AnnData,
        cluster_key: Optional[str] = None,
        dims: Optional[int] = None,
        metrics: Optional[List[str]] = None,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Compute clustering quality metrics in PCA space.

        - Silhouette score: separation of clusters (-1 to 1, higher better)
        - Davies-Bouldin index: intra/inter-cluster distance ratio (lower better)
        - Calinski-Harabasz score: between/within variance ratio (higher better)

        Comparing the metrics across ``<algorithm>_res<r>`` columns helps to
        pick a resolution.

        Args:
            adata: AnnData with clustering results and ``obsm["X_pca"]``
            cluster_key: obs column to evaluate (default: active identity)
            dims: Number of PCs to use (default: the SNN graph's dims)
            metrics: Subset of metrics to compute (default: all)

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]: AnnData with
            ``uns["clustering_quality"][cluster_key]``, stats and IR

        Raises:
            ClusteringError: If inputs are missing or fewer than 2 clusters exist
        """
        cluster_key = cluster_key or adata.uns.get("active_ident")
        if cluster_key is None or cluster_key not in adata.obs.columns:
            raise ClusteringError(
                f"Cluster key '{cluster_key}' not found in adata.obs. "
                f"Available keys: {list(adata.obs.columns)}"
            )
        if "X_pca" not in adata.obsm:
            raise ClusteringError("No PCA embedding found. Run run_pca first")
        metrics_to_compute = list(metrics) if metrics else list(QUALITY_METRICS)
        invalid = set(metrics_to_compute) - set(QUALITY_METRICS)
        if invalid:
            raise ClusteringError(
                f"Invalid metrics: {sorted(invalid)}. Valid options: {list(QUALITY_METRICS)}"
            )

        labels = adata.obs[cluster_key].astype(str).to_numpy()
        n_clusters = len(np.unique(labels))
        if n_clusters < 2 or n_clusters >= adata.n_obs:
            raise ClusteringError(
                f"Quality metrics need between 2 and n_cells - 1 clusters, found {n_clusters}"
            )

        try:
            if dims is None:
                dims = adata.uns.get("snn", {}).get("params", {}).get(
                    "dims", adata.obsm["X_pca"].shape[1]
                )
            X = np.asarray(adata.obsm["X_pca"][:, :dims])
            logger.info(
                f"Computing clustering quality for '{cluster_key}' "
                f"({n_clusters} clusters, {dims} PCs)"
            )

            results = {}
            if "silhouette" in metrics_to_compute:
                results["silhouette_score"] = float(silhouette_score(X, labels))
            if "davies_bouldin" in metrics_to_compute:
                results["davies_bouldin_index"] = float(davies_bouldin_score(X, labels))
            if "calinski_harabasz" in metrics_to_compute:
                results["calinski_harabasz_score"] = float(
                    calinski_harabasz_score(X, labels)
                )

            adata_quality = adata.copy()
            quality = dict(adata_quality.uns.get("clustering_quality", {}))
            quality[cluster_key] = results
            adata_quality.uns["clustering_quality"] = quality

            stats = {
                "analysis_type": "clustering_quality",
                "cluster_key": cluster_key,
                "n_clusters": n_clusters,
                "dims": int(dims),
                **results,
            }
            logger.info(
                "Clustering quality: "
                + ", ".join(f"{k}={v:.3f}" for k, v in results.items())
            )

            ir = AnalysisStep(
                operation="sklearn.metrics",
                tool_name="compute_clustering_quality",
                description=f"Clustering quality metrics for {cluster_key}",
                library="sklearn",
                code_template="""X = adata.obsm["X_pca"][:, :{{ dims }}]
labels = adata.obs[{{ cluster_key | py }}].astype(str)
print("silhouette", silhouette_score(X, labels))
print("davies_bouldin", davies_bouldin_score(X, labels))
print("calinski_harabasz", calinski_harabasz_score(X, labels))
""",
                imports=[
                    "from sklearn.metrics import calinski_harabasz_score, "
                    "davies_bouldin_score, silhouette_score"
                ],
                parameters={"cluster_key": cluster_key, "dims": int(dims)},
            )
            return adata_quality, stats, ir

        except Exception as e:
            logger.exception(f"Error computing clustering quality: {e}")
            raise ClusteringError(f"Clustering quality computation failed: {str(e)}")

    def _create_neighbors_ir(
        self, dims: int, k_param: int, prune_snn: float
    ) -> AnalysisStep:
        code_template = """embedding = adata.obsm["X_pca"][:, :{{ dims }}]
nn = NearestNeighbors(n_neighbors={{ k_param }}).fit(embedding)
knn = nn.kneighbors_graph(embedding, mode="connectivity").tocsr()
shared = (knn @ knn.T).tocsr().astype(float)
shared.data = shared.data / (2 * {{ k_param }} - shared.data)
shared.data[shared.data < {{ prune_snn }}] = 0
shared.setdiag(0)
shared.eliminate_zeros()
adata.obsp["snn"] = shared
"""
        return AnalysisStep(
            operation="scflow.find_neighbors",
            tool_name="find_neighbors",
            description=f"Shared-nearest-neighbor graph on {dims} PCs (k={k_param})",
            library="sklearn",
            code_template=code_template,
            imports=["from sklearn.neighbors import NearestNeighbors"],
            parameters={"dims": dims, "k_param": k_param, "prune_snn": prune_snn},
            parameter_schema={
                "dims": ParameterSpec(
                    param_type="int",
                    default_value=dims,
                    validation_rule="dims > 0",
                    description="Number of PCs used for the neighbor search",
                ),
                "k_param": ParameterSpec(
                    param_type="int",
                    default_value=k_param,
                    validation_rule="k_param > 1",
                    description="Neighborhood size including the cell itself",
                ),
                "prune_snn": ParameterSpec(
                    param_type="float",
                    default_value=prune_snn,
                    validation_rule="0 <= prune_snn < 1",
                    description="Jaccard cutoff for SNN edges",
                ),
            },
        )

    def _create_clustering_ir(
        self,
        algorithm: str,
        resolutions: List[float],
        key_added: str,
        group_singletons: bool,
        random_state: int,
    ) -> AnalysisStep:
        code_template = """adata, cluster_stats, _ = ClusteringService().find_clusters(
    adata,
    algorithm={{ algorithm | py }},
    resolutions={{ resolutions | py }},
    key_added={{ key_added | py }},
    group_singletons={{ group_singletons | py }},
    random_state={{ random_state }},
)
print(f"{cluster_stats['n_clusters']} clusters")
"""
        return AnalysisStep(
            operation=f"igraph.{algorithm}" if algorithm == "louvain" else "scanpy.tl.leiden",
            tool_name="find_clusters",
            description=f"{algorithm.capitalize()} clustering at resolution(s) {resolutions}",
            library="igraph" if algorithm == "louvain" else "scanpy",
            code_template=code_template,
            imports=["from scflow.tools.clustering_service import ClusteringService"],
            parameters={
                "algorithm": algorithm,
                "resolutions": resolutions,
                "key_added": key_added,
                "group_singletons": group_singletons,
                "random_state": random_state,
            },
            parameter_schema={
                "resolutions": ParameterSpec(
                    param_type="List[float]",
                    default_value=resolutions,
                    validation_rule="all(r > 0 for r in resolutions)",
                    description="Modularity resolution parameters",
                ),
            },
            execution_context={"random_state": random_state},
        )
