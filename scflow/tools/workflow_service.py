"""
Standard single-cell workflow.

Runs the guided clustering analysis end to end: ingestion, QC, normalization,
feature selection, scaling, PCA, choice of dimensionality, SNN graph,
clustering, embedding, marker detection and annotation. Every stage goes
through ``Dataset.apply`` so ordering is enforced and provenance recorded.
"""

from pathlib import Path
from typing import Callable, Optional, Union

import anndata

from scflow.config.workflow_config import WorkflowConfig
from scflow.core.dataset import Dataset
from scflow.core.exceptions import IngestionError, ScflowError
from scflow.tools.annotation_service import AnnotationError, AnnotationService
from scflow.tools.clustering_service import ClusteringService
from scflow.tools.differential_expression_service import (
    DifferentialExpressionService,
)
from scflow.tools.dimensionality_service import DimensionalityService
from scflow.tools.embedding_service import EmbeddingService
from scflow.tools.ingestion_service import IngestionService
from scflow.tools.preprocessing_service import PreprocessingService
from scflow.tools.quality_service import QualityService
from scflow.utils.logger import get_logger

logger = get_logger(__name__)

Source = Union[str, Path, anndata.AnnData]


class WorkflowError(ScflowError):
    """Raised when the workflow fails outside a specific stage."""

    pass


class StandardWorkflowService:
    """
    Orchestrates the stateless stage services over one ``Dataset``.

    Example:
        >>> workflow = StandardWorkflowService()
        >>> dataset = workflow.run("filtered_gene_bc_matrices/hg19/")
        >>> dataset.marker_tables["top_markers"]
    """

    def __init__(self, config=None, **kwargs):
        logger.debug("Initializing StandardWorkflowService")
        self.config = config or {}
        self.progress_callback: Optional[Callable[[str], None]] = None
        self.ingestion = IngestionService()
        self.quality = QualityService()
        self.preprocessing = PreprocessingService()
        self.dimensionality = DimensionalityService()
        self.clustering = ClusteringService()
        self.embedding = EmbeddingService()
        self.markers = DifferentialExpressionService()
        self.annotation = AnnotationService()

    def set_progress_callback(self, callback: Callable[[str], None]) -> None:
        """Receive one message per stage plus periodic messages from long stages."""
        self.progress_callback = callback
        for service in (self.dimensionality, self.clustering, self.markers):
            service.set_progress_callback(callback)

    def _report(self, message: str) -> None:
        logger.info(message)
        if self.progress_callback is not None:
            self.progress_callback(message)

    def load(self, source: Source, config: WorkflowConfig) -> Dataset:
        """
        Read the count matrix into a new Dataset.

        ``source`` is an AnnData, a 10X matrix directory or a 10X ``.h5`` file.

        Raises:
            IngestionError: If the source cannot be read
        """
        options = config.ingestion
        kwargs = {"min_cells": options.min_cells, "min_features": options.min_features}

        if isinstance(source, anndata.AnnData):
            adata, stats, ir = self.ingestion.from_anndata(source, **kwargs)
            label = "anndata"
        else:
            path = Path(source)
            if path.is_dir():
                adata, stats, ir = self.ingestion.read_10x_mtx(
                    path, var_names=options.var_names, **kwargs
                )
            elif path.suffix == ".h5":
                adata, stats, ir = self.ingestion.read_10x_h5(
                    path, var_names=options.var_names, **kwargs
                )
            else:
                raise IngestionError(
                    f"Unsupported input: {path}",
                    details={
                        "path": str(path),
                        "suggestions": [
                            "Pass a 10X matrix directory or a 10X .h5 file"
                        ],
                    },
                )
            label = str(path)

        dataset = Dataset(adata, source=label)
        dataset.record("ingest", None, stats, ir)
        return dataset

    def run(
        self,
        source: Union[Source, Dataset],
        config: Optional[WorkflowConfig] = None,
    ) -> Dataset:
        """
        Run every stage of the workflow.

        Args:
            source: AnnData, 10X directory, 10X ``.h5`` file or an already
                    ingested Dataset
            config: Stage parameters (default: the standard PBMC settings)

        Returns:
            Dataset: Final state with clusters, embeddings and marker tables

        Raises:
            ScflowError: Stage failures propagate with their own error type
        """
        config = config or WorkflowConfig()
        try:
            dataset = source if isinstance(source, Dataset) else None
            if dataset is None:
                self._report("Stage 1/12: ingestion")
                dataset = self.load(source, config)

            self._report("Stage 2/12: quality control")
            dataset.apply(
                "calculate_qc_metrics",
                self.quality.calculate_qc_metrics,
                mt_prefix=config.qc.mt_prefix,
            )
            dataset.apply(
                "filter_cells",
                self.quality.filter_cells,
                min_features=config.qc.min_features,
                max_features=config.qc.max_features,
                max_percent_mt=config.qc.max_percent_mt,
                min_counts=config.qc.min_counts,
                max_counts=config.qc.max_counts,
            )

            self._report("Stage 3/12: normalization")
            dataset.apply(
                "normalize",
                self.preprocessing.normalize,
                method=config.normalization.method,
                scale_factor=config.normalization.scale_factor,
            )

            self._report("Stage 4/12: feature selection")
            dataset.apply(
                "find_variable_features",
                self.preprocessing.find_variable_features,
                method=config.feature_selection.method,
                n_top_genes=config.feature_selection.n_top_genes,
            )

            self._report("Stage 5/12: scaling")
            dataset.apply(
                "scale",
                self.preprocessing.scale,
                features=config.scaling.features,
                vars_to_regress=config.scaling.vars_to_regress,
                max_value=config.scaling.max_value,
            )

            self._report("Stage 6/12: PCA")
            n_comps = self._feasible_n_comps(dataset, config.pca.n_comps)
            dataset.apply(
                "run_pca",
                self.dimensionality.run_pca,
                n_comps=n_comps,
                random_state=config.pca.random_state,
            )

            self._report("Stage 7/12: dimensionality selection")
            dataset.n_pcs = self._select_dimensions(dataset, config, n_comps)

            self._report("Stage 8/12: neighbor graph")
            dataset.apply(
                "find_neighbors",
                self.clustering.find_neighbors,
                dims=dataset.n_pcs,
                k_param=self._feasible_neighbors(
                    dataset, "k_param", config.neighbors.k_param, dataset.adata.n_obs
                ),
                prune_snn=config.neighbors.prune_snn,
            )

            self._report("Stage 9/12: clustering")
            dataset.apply(
                "find_clusters",
                self.clustering.find_clusters,
                resolution=config.clustering.resolution,
                algorithm=config.clustering.algorithm,
                resolutions=config.clustering.resolutions,
                random_state=config.clustering.random_state,
            )

            self._report("Stage 10/12: embedding")
            self._embed(dataset, config)

            if config.markers.enabled:
                self._report("Stage 11/12: differential expression")
                markers = dataset.apply_markers(
                    "find_all_markers",
                    "all_markers",
                    self.markers.find_all_markers,
                    test=config.markers.test,
                    only_pos=config.markers.only_pos,
                    min_pct=config.markers.min_pct,
                    logfc_threshold=config.markers.logfc_threshold,
                )
                if not markers.empty:
                    dataset.marker_tables["top_markers"] = self.markers.top_markers(
                        markers, n=config.markers.top_n
                    )

            self._report("Stage 12/12: annotation")
            self._annotate(dataset, config)

            logger.info(f"Workflow complete: {dataset}")
            return dataset

        except ScflowError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected workflow failure: {e}")
            raise WorkflowError(f"Workflow failed: {str(e)}")

    def _feasible_n_comps(self, dataset: Dataset, requested: int) -> int:
        adata = dataset.adata
        n_features = int(adata.var["highly_variable"].sum())
        feasible = min(adata.n_obs, n_features) - 1
        if requested > feasible:
            logger.warning(
                f"Reducing n_comps from {requested} to {feasible} "
                f"({adata.n_obs} cells, {n_features} variable features)"
            )
            return feasible
        return requested

    @staticmethod
    def _feasible_neighbors(
        dataset: Dataset, name: str, requested: int, limit: int
    ) -> int:
        if requested > limit:
            logger.warning(
                f"Reducing {name} from {requested} to {limit} "
                f"({dataset.adata.n_obs} cells)"
            )
            return limit
        return requested

    def _select_dimensions(
        self, dataset: Dataset, config: WorkflowConfig, n_comps: int
    ) -> int:
        pca = config.pca
        auto = pca.n_dims == "auto"
        use_jackstraw = pca.run_jackstraw or (auto and pca.selection_method == "jackstraw")

        if use_jackstraw:
            dims = min(pca.jackstraw_dims, n_comps)
            dataset.apply(
                "jackstraw",
                self.dimensionality.jackstraw,
                dims=dims,
                num_replicate=pca.num_replicate,
                prop_freq=pca.prop_freq,
                random_state=pca.random_state,
            )
            dataset.apply(
                "score_jackstraw",
                self.dimensionality.score_jackstraw,
                score_thresh=pca.score_thresh,
            )

        method = pca.selection_method
        if method == "jackstraw" and not use_jackstraw:
            method = "elbow"
        stats = dataset.apply(
            "suggest_n_pcs",
            self.dimensionality.suggest_n_pcs,
            method=method,
            alpha=pca.alpha,
        )

        if auto:
            n_pcs = stats["n_pcs"]
        else:
            n_pcs = pca.n_dims
            if n_pcs > n_comps:
                logger.warning(f"Reducing n_dims from {n_pcs} to {n_comps} computed PCs")
                n_pcs = n_comps
        logger.info(f"Using {n_pcs} PCs downstream")
        return n_pcs

    def _embed(self, dataset: Dataset, config: WorkflowConfig) -> None:
        options = config.embedding
        if options.umap:
            dataset.apply(
                "run_umap",
                self.embedding.run_umap,
                dims=dataset.n_pcs,
                n_neighbors=self._feasible_neighbors(
                    dataset, "n_neighbors", options.n_neighbors, dataset.adata.n_obs - 1
                ),
                min_dist=options.min_dist,
                metric=options.metric,
                random_state=options.random_state,
            )
        if options.tsne:
            dataset.apply(
                "run_tsne",
                self.embedding.run_tsne,
                dims=dataset.n_pcs,
                perplexity=options.perplexity,
                random_state=options.random_state,
            )

    def _annotate(self, dataset: Dataset, config: WorkflowConfig) -> None:
        options = config.annotation
        if options.suggest:
            try:
                dataset.apply("suggest_cell_types", self.annotation.suggest_cell_types)
            except AnnotationError as e:
                logger.warning(f"Skipping cell type suggestions: {e}")

        if options.labels:
            dataset.apply(
                "rename_clusters",
                self.annotation.rename_clusters,
                new_labels=options.labels,
                key_added=options.key_added,
            )
