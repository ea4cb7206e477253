"""
Dataset object shared by every pipeline stage.

A ``Dataset`` owns the AnnData holding the count matrix and everything
derived from it, together with the provenance of each stage, the stage
statistics and the marker tables produced by differential expression. It is
created at ingestion and updated in place as stages complete.
"""

from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import anndata
import pandas as pd

from scflow.core.analysis_ir import AnalysisStep, render_script
from scflow.core.exceptions import WorkflowOrderError
from scflow.utils.logger import get_logger

logger = get_logger(__name__)

# Stage -> stages that must have completed before it may run
STAGE_PREREQUISITES: Dict[str, Tuple[str, ...]] = {
    "ingest": (),
    "calculate_qc_metrics": ("ingest",),
    "filter_cells": ("calculate_qc_metrics",),
    "normalize": ("ingest",),
    "find_variable_features": ("normalize",),
    "scale": ("normalize",),
    "run_pca": ("find_variable_features", "scale"),
    "jackstraw": ("run_pca",),
    "score_jackstraw": ("jackstraw",),
    "suggest_n_pcs": ("run_pca",),
    "find_neighbors": ("run_pca",),
    "find_clusters": ("find_neighbors",),
    "run_umap": ("run_pca",),
    "run_tsne": ("run_pca",),
    "find_all_markers": ("find_clusters",),
    "find_markers": ("find_clusters",),
    "rename_clusters": ("find_clusters",),
    "suggest_cell_types": ("find_clusters",),
}


class Dataset:
    """
    In-memory analysis state for one single-cell experiment.

    Attributes:
        adata: Current AnnData (counts in ``layers["counts"]``, normalized
               values in ``layers["normalized"]``, scaled values in ``X``)
        source: Where the counts were read from, if known
        provenance: AnalysisStep records in execution order
        stage_stats: Statistics returned by each completed stage
        completed_stages: Names of completed stages in execution order
        marker_tables: Marker tables keyed by name (e.g., "all_markers")
        n_pcs: Number of principal components used downstream
    """

    def __init__(self, adata: anndata.AnnData, source: Optional[str] = None):
        self.adata = adata
        self.source = source
        self.provenance: List[AnalysisStep] = []
        self.stage_stats: Dict[str, Dict[str, Any]] = {}
        self.completed_stages: List[str] = []
        self.marker_tables: Dict[str, pd.DataFrame] = {}
        self.n_pcs: Optional[int] = None

    def has_completed(self, stage: str) -> bool:
        return stage in self.completed_stages

    def require(self, stage: str, *prerequisites: str) -> None:
        """
        Ensure the prerequisites of ``stage`` have completed.

        When no prerequisites are given the defaults from
        ``STAGE_PREREQUISITES`` are used.

        Raises:
            WorkflowOrderError: If any prerequisite is missing
        """
        needed = prerequisites or STAGE_PREREQUISITES.get(stage, ())
        missing = [name for name in needed if not self.has_completed(name)]
        if missing:
            raise WorkflowOrderError(
                f"'{stage}' requires {', '.join(repr(m) for m in missing)} to run first",
                details={"stage": stage, "missing": missing},
            )

    def record(
        self,
        stage: str,
        adata: Optional[anndata.AnnData],
        stats: Dict[str, Any],
        ir: Optional[AnalysisStep] = None,
    ) -> None:
        """Store the outcome of a stage, replacing the AnnData when one is given."""
        if adata is not None:
            self.adata = adata
        self.stage_stats[stage] = stats
        if ir is not None:
            self.provenance.append(ir)
        if stage not in self.completed_stages:
            self.completed_stages.append(stage)
        logger.debug(f"Recorded stage '{stage}' ({len(self.provenance)} steps)")

    def apply(self, stage: str, operation: Callable, *args, **kwargs) -> Dict[str, Any]:
        """
        Run a service operation on the current AnnData and record its outcome.

        ``operation`` must follow the service convention of returning
        ``(adata, stats, ir)``.

        Returns:
            Dict[str, Any]: The stage statistics
        """
        self.require(stage)
        adata, stats, ir = operation(self.adata, *args, **kwargs)
        self.record(stage, adata, stats, ir)
        return stats

    def apply_markers(
        self, stage: str, name: str, operation: Callable, *args, **kwargs
    ) -> pd.DataFrame:
        """Run a marker operation returning ``(table, stats, ir)`` and keep its table."""
        self.require(stage)
        table, stats, ir = operation(self.adata, *args, **kwargs)
        self.marker_tables[name] = table
        self.record(stage, None, stats, ir)
        return table

    @property
    def active_ident(self) -> Optional[str]:
        """Name of the obs column holding the current cell identities."""
        return self.adata.uns.get("active_ident")

    @property
    def identities(self) -> Optional[pd.Series]:
        """Current identity of every cell, or None before clustering."""
        key = self.active_ident
        if key is None or key not in self.adata.obs:
            return None
        return self.adata.obs[key]

    def summary(self) -> Dict[str, Any]:
        """Compact description of the current state."""
        identities = self.identities
        return {
            "source": self.source,
            "n_cells": int(self.adata.n_obs),
            "n_genes": int(self.adata.n_vars),
            "completed_stages": list(self.completed_stages),
            "n_pcs": self.n_pcs,
            "active_ident": self.active_ident,
            "n_identities": (
                int(identities.nunique()) if identities is not None else None
            ),
            "marker_tables": {
                name: int(len(table)) for name, table in self.marker_tables.items()
            },
        }

    def export_script(self, path: Optional[Union[str, Path]] = None) -> str:
        """
        Render the provenance into a Python script repeating this analysis.

        Args:
            path: Optional file to write the script to

        Returns:
            str: Script source
        """
        script = render_script(
            self.provenance, title=f"scflow analysis of {self.source or 'dataset'}"
        )
        if path is not None:
            Path(path).write_text(script)
            logger.info(f"Wrote analysis script to {path}")
        return script

    def __repr__(self) -> str:
        return (
            f"Dataset(n_cells={self.adata.n_obs}, n_genes={self.adata.n_vars}, "
            f"stages={len(self.completed_stages)})"
        )
