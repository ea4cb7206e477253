"""
Manual cell-type annotation service.

Clusters are named by hand once their markers are known. This service
applies such names (merging clusters that receive the same one), proposes
names from canonical marker panels and reports how many cells ended up
annotated.
"""

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import anndata
import numpy as np
import pandas as pd
import scipy.sparse as spr

from scflow.core.analysis_ir import AnalysisStep, ParameterSpec
from scflow.core.exceptions import ScflowError
from scflow.utils.logger import get_logger

logger = get_logger(__name__)

UNASSIGNED = "Unassigned"
DEBRIS = "Debris"

# Canonical PBMC markers
PBMC_MARKERS: Dict[str, List[str]] = {
    "Naive CD4 T": ["IL7R", "CCR7"],
    "CD14+ Mono": ["CD14", "LYZ"],
    "Memory CD4 T": ["IL7R", "S100A4"],
    "B": ["MS4A1"],
    "CD8 T": ["CD8A"],
    "FCGR3A+ Mono": ["FCGR3A", "MS4A7"],
    "NK": ["GNLY", "NKG7"],
    "DC": ["FCER1A", "CST3"],
    "Platelet": ["PPBP"],
}

NewLabels = Union[Sequence[str], Mapping[str, str]]


class AnnotationError(ScflowError):
    """Base exception for annotation operations."""

    pass


class AnnotationService:
    """Stateless service for naming clusters."""

    def __init__(self, config=None, **kwargs):
        """
        Initialize the annotation service.

        Args:
            config: Optional configuration dict
            **kwargs: Additional arguments (ignored)
        """
        logger.debug("Initializing stateless AnnotationService")
        self.config = config or {}

    def _cluster_levels(
        self, adata: anndata.AnnData, cluster_key: Optional[str]
    ) -> Tuple[str, List[str]]:
        cluster_key = cluster_key or adata.uns.get("active_ident")
        if cluster_key is None or cluster_key not in adata.obs.columns:
            raise AnnotationError(
                f"Cluster column '{cluster_key}' not found in observations. "
                f"Run find_clusters first or pass cluster_key"
            )
        column = adata.obs[cluster_key]
        if isinstance(column.dtype, pd.CategoricalDtype):
            present = set(column.astype(str).unique())
            levels = [str(c) for c in column.cat.categories if str(c) in present]
        else:
            levels = sorted(column.astype(str).unique())
        return cluster_key, levels

    def rename_clusters(
        self,
        adata: anndata.AnnData,
        new_labels: NewLabels,
        cluster_key: Optional[str] = None,
        key_added: str = "cell_type",
        fill_unmapped: Optional[str] = None,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Replace cluster identities with cell-type names.

        ``new_labels`` is either a sequence with one name per cluster, in
        cluster order, or a mapping from cluster label to name. With a
        mapping, clusters that are not mentioned keep their label unless
        ``fill_unmapped`` is given. Clusters receiving the same name are
        merged. The new column becomes the active identity.

        Args:
            adata: Clustered AnnData
            new_labels: Names per cluster
            cluster_key: obs column with clusters (default: active identity)
            key_added: obs column receiving the names
            fill_unmapped: Name for clusters missing from a mapping (e.g. "Unassigned")

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]: Annotated AnnData, stats and IR

        Raises:
            AnnotationError: If the labels do not match the clusters
        """
        cluster_key, levels = self._cluster_levels(adata, cluster_key)

        if isinstance(new_labels, Mapping):
            mapping = {str(k): str(v) for k, v in new_labels.items()}
            unknown = sorted(set(mapping) - set(levels))
            if unknown:
                raise AnnotationError(
                    f"Clusters not found in '{cluster_key}': {unknown}",
                    details={"available": levels},
                )
            for level in levels:
                if level not in mapping:
                    mapping[level] = fill_unmapped if fill_unmapped is not None else level
        else:
            names = [str(name) for name in new_labels]
            if len(names) != len(levels):
                raise AnnotationError(
                    f"Got {len(names)} labels for {len(levels)} clusters in '{cluster_key}'",
                    details={"clusters": levels, "labels": names},
                )
            mapping = dict(zip(levels, names))

        try:
            logger.info(f"Renaming {len(levels)} clusters of '{cluster_key}' into '{key_added}'")
            adata_annotated = adata.copy()
            renamed = adata_annotated.obs[cluster_key].astype(str).map(mapping)

            # category order follows cluster order, first occurrence wins
            categories = list(dict.fromkeys(mapping[level] for level in levels))
            adata_annotated.obs[key_added] = pd.Categorical(
                renamed.to_numpy(), categories=categories
            )
            adata_annotated.uns["active_ident"] = key_added
            adata_annotated.uns["annotation"] = {
                "annotation_timestamp": datetime.now().isoformat(),
                "cluster_key_used": cluster_key,
                "cell_type_column": key_added,
                "mapping": mapping,
            }

            counts = adata_annotated.obs[key_added].value_counts()
            merged = {
                name: [level for level in levels if mapping[level] == name]
                for name in categories
            }
            stats = {
                "analysis_type": "cluster_annotation",
                "cluster_key": cluster_key,
                "key_added": key_added,
                "n_clusters": len(levels),
                "n_cell_types": len(categories),
                "mapping": mapping,
                "merged_clusters": {k: v for k, v in merged.items() if len(v) > 1},
                "cells_per_type": {name: int(counts[name]) for name in categories},
            }
            logger.info(
                f"Annotated {len(levels)} clusters as {len(categories)} cell types"
            )

            ir = AnalysisStep(
                operation="pandas.Series.map",
                tool_name="rename_clusters",
                description=f"Name clusters of {cluster_key}",
                library="pandas",
                code_template="""mapping = {{ mapping | py }}
adata.obs[{{ key_added | py }}] = pd.Categorical(
    adata.obs[{{ cluster_key | py }}].astype(str).map(mapping),
    categories=list(dict.fromkeys(mapping.values())),
)
""",
                imports=["import pandas as pd"],
                parameters={
                    "mapping": mapping,
                    "cluster_key": cluster_key,
                    "key_added": key_added,
                },
                parameter_schema={
                    "mapping": ParameterSpec(
                        param_type="Dict[str, str]",
                        default_value=mapping,
                        required=True,
                        description="Cluster label to cell-type name",
                    ),
                },
            )
            return adata_annotated, stats, ir

        except Exception as e:
            logger.exception(f"Error renaming clusters: {e}")
            raise AnnotationError(f"Cluster renaming failed: {str(e)}")

    def suggest_cell_types(
        self,
        adata: anndata.AnnData,
        marker_sets: Optional[Mapping[str, Sequence[str]]] = None,
        cluster_key: Optional[str] = None,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Propose a cell type per cluster from canonical marker panels.

        The mean normalized expression of every marker gene is computed per
        cluster and standardized across clusters. A cell type scores the mean
        standardized expression of its markers, and each cluster is matched to
        its best-scoring type. Suggestions are stored in
        ``uns["cell_type_suggestions"]``; no labels are changed.

        Args:
            adata: Clustered AnnData with a normalized layer
            marker_sets: Cell type to marker genes (default: PBMC panel)
            cluster_key: obs column with clusters (default: active identity)

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]: AnnData, stats and IR

        Raises:
            AnnotationError: If no marker gene is present in the data
        """
        marker_sets = dict(marker_sets or PBMC_MARKERS)
        cluster_key, levels = self._cluster_levels(adata, cluster_key)
        if "normalized" not in adata.layers:
            raise AnnotationError("No normalized layer found. Run normalize first")

        available = {
            cell_type: [gene for gene in genes if gene in adata.var_names]
            for cell_type, genes in marker_sets.items()
        }
        missing_sets = [cell_type for cell_type, genes in available.items() if not genes]
        available = {cell_type: genes for cell_type, genes in available.items() if genes}
        if not available:
            raise AnnotationError(
                "None of the marker genes are present in the data",
                details={"marker_sets": marker_sets},
            )
        if missing_sets:
            logger.warning(f"No markers present for: {missing_sets}")

        try:
            logger.info(
                f"Scoring {len(available)} marker panels across {len(levels)} clusters"
            )
            marker_genes = sorted({gene for genes in available.values() for gene in genes})
            cluster_means = self._cluster_means(adata, cluster_key, levels, marker_genes)

            std = cluster_means.std(axis=0, ddof=0).replace(0, 1.0)
            standardized = (cluster_means - cluster_means.mean(axis=0)) / std
            scores = pd.DataFrame(
                {
                    cell_type: standardized[genes].mean(axis=1)
                    for cell_type, genes in available.items()
                },
                index=levels,
            )
            suggestions = scores.idxmax(axis=1).to_dict()

            adata_out = adata.copy()
            adata_out.uns["cell_type_suggestions"] = {
                "cluster_key": cluster_key,
                "suggestions": suggestions,
                "scores": {
                    cluster: {k: float(v) for k, v in row.items()}
                    for cluster, row in scores.iterrows()
                },
            }

            stats = {
                "analysis_type": "cell_type_suggestion",
                "cluster_key": cluster_key,
                "suggestions": suggestions,
                "n_marker_sets": len(available),
                "missing_marker_sets": missing_sets,
                "best_scores": {
                    cluster: float(scores.loc[cluster].max()) for cluster in levels
                },
            }
            logger.info(f"Suggested cell types: {suggestions}")

            ir = AnalysisStep(
                operation="scflow.suggest_cell_types",
                tool_name="suggest_cell_types",
                description="Suggest cell types from canonical markers",
                library="scflow",
                code_template="""adata, suggestion_stats, _ = AnnotationService().suggest_cell_types(
    adata, marker_sets={{ marker_sets | py }}, cluster_key={{ cluster_key | py }}
)
print(suggestion_stats["suggestions"])
""",
                imports=["from scflow.tools.annotation_service import AnnotationService"],
                parameters={"marker_sets": marker_sets, "cluster_key": cluster_key},
            )
            return adata_out, stats, ir

        except Exception as e:
            logger.exception(f"Error suggesting cell types: {e}")
            raise AnnotationError(f"Cell type suggestion failed: {str(e)}")

    def _cluster_means(
        self,
        adata: anndata.AnnData,
        cluster_key: str,
        levels: List[str],
        genes: List[str],
    ) -> pd.DataFrame:
        """Mean normalized expression of ``genes`` per cluster."""
        gene_index = adata.var_names.get_indexer(genes)
        X = adata.layers["normalized"][:, gene_index]
        labels = adata.obs[cluster_key].astype(str).to_numpy()

        rows = []
        for level in levels:
            block = X[labels == level]
            means = block.mean(axis=0)
            rows.append(np.asarray(means).ravel() if spr.issparse(block) else means)
        return pd.DataFrame(np.vstack(rows), index=levels, columns=genes)

    def validate_annotation_coverage(
        self, adata: anndata.AnnData, annotation_col: str = "cell_type"
    ) -> Dict[str, Any]:
        """
        Summarize how completely cells are annotated.

        Cells labelled "Unassigned" or "Debris" count as not annotated.

        Returns:
            Dictionary with validation results
        """
        if annotation_col not in adata.obs.columns:
            return {
                "valid": False,
                "error": f"Annotation column {annotation_col} not found",
            }

        annotations = adata.obs[annotation_col].astype(str)
        total_cells = int(len(annotations))
        unassigned_cells = int((annotations == UNASSIGNED).sum())
        debris_cells = int((annotations == DEBRIS).sum())
        annotated_cells = total_cells - unassigned_cells - debris_cells
        unique_types = annotations[~annotations.isin([UNASSIGNED, DEBRIS])].unique()

        return {
            "valid": True,
            "total_cells": total_cells,
            "annotated_cells": annotated_cells,
            "unassigned_cells": unassigned_cells,
            "debris_cells": debris_cells,
            "coverage_percentage": (
                annotated_cells / total_cells * 100 if total_cells else 0.0
            ),
            "unique_cell_types": int(len(unique_types)),
            "cell_type_names": [str(t) for t in unique_types],
            "cell_type_counts": {
                str(k): int(v) for k, v in annotations.value_counts().items()
            },
        }
