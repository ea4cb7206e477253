"""
Differential expression service for cluster marker discovery.

Compares normalized expression between groups of cells and reports, per
gene, the detection rate in each group, the average log2 fold change and a
Bonferroni-adjusted p-value. Genes are pre-filtered on detection rate and
fold change before testing, and p-values come from scanpy's
``rank_genes_groups``.
"""

from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import anndata
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as spr

from scflow.core.analysis_ir import AnalysisStep, ParameterSpec
from scflow.core.exceptions import ScflowError
from scflow.utils.logger import get_logger
from scflow.utils.progress_wrapper import with_periodic_progress

logger = get_logger(__name__)

DE_TESTS = ("wilcoxon", "t-test", "t-test_overestim_var")
MARKER_COLUMNS = ["gene", "p_val", "avg_log2FC", "pct_1", "pct_2", "p_val_adj"]

Identity = Union[str, Sequence[str]]


class DifferentialExpressionError(ScflowError):
    """Base exception for differential expression operations."""

    pass


def _as_labels(identity: Optional[Identity]) -> Optional[List[str]]:
    if identity is None:
        return None
    if isinstance(identity, (str, int, np.integer)):
        return [str(identity)]
    return [str(i) for i in identity]


def _group_summary(X) -> Tuple[np.ndarray, np.ndarray]:
    """Detection rate and mean of expm1 per gene for a block of normalized values."""
    if spr.issparse(X):
        pct = np.asarray((X > 0).mean(axis=0)).ravel()
        mean_expm1 = np.asarray(X.expm1().mean(axis=0)).ravel()
    else:
        X = np.asarray(X)
        pct = (X > 0).mean(axis=0)
        mean_expm1 = np.expm1(X).mean(axis=0)
    return pct, mean_expm1


def empty_marker_table(with_cluster: bool = False) -> pd.DataFrame:
    columns = list(MARKER_COLUMNS)
    if with_cluster:
        columns.insert(1, "cluster")
    return pd.DataFrame(columns=columns)


class DifferentialExpressionService:
    """
    Stateless service producing marker tables.

    Marker table columns:
        gene: Gene name
        cluster: Identity the markers belong to (``find_all_markers`` only)
        p_val: Unadjusted p-value
        avg_log2FC: log2(mean(expm1(x1)) + 1) - log2(mean(expm1(x2)) + 1)
        pct_1, pct_2: Fraction of cells with non-zero expression per group
        p_val_adj: Bonferroni-adjusted p-value over all genes in the dataset
    """

    def __init__(self, config=None, **kwargs):
        """
        Initialize the differential expression service.

        Args:
            config: Optional configuration dict
            **kwargs: Additional arguments (ignored)
        """
        logger.debug("Initializing stateless DifferentialExpressionService")
        self.config = config or {}
        self.progress_callback: Optional[Callable[[str], None]] = None

    def set_progress_callback(self, callback: Callable[[str], None]) -> None:
        self.progress_callback = callback

    def _resolve_groupby(self, adata: anndata.AnnData, groupby: Optional[str]) -> str:
        groupby = groupby or adata.uns.get("active_ident")
        if groupby is None or groupby not in adata.obs.columns:
            raise DifferentialExpressionError(
                f"Group column '{groupby}' not found in observations. "
                f"Run find_clusters first or pass groupby"
            )
        if "normalized" not in adata.layers:
            raise DifferentialExpressionError(
                "No normalized layer found. Run normalize first"
            )
        return groupby

    def _compare(
        self,
        adata: anndata.AnnData,
        mask_1: np.ndarray,
        mask_2: np.ndarray,
        test: str,
        min_pct: float,
        logfc_threshold: float,
        only_pos: bool,
    ) -> pd.DataFrame:
        """Marker statistics for cells in mask_1 versus cells in mask_2."""
        X = adata.layers["normalized"]
        if spr.issparse(X):
            X = spr.csr_matrix(X)
        pct_1, mean_1 = _group_summary(X[mask_1])
        pct_2, mean_2 = _group_summary(X[mask_2])
        avg_log2fc = np.log2(mean_1 + 1) - np.log2(mean_2 + 1)

        keep = np.maximum(pct_1, pct_2) >= min_pct
        if only_pos:
            keep &= avg_log2fc >= logfc_threshold
        else:
            keep &= np.abs(avg_log2fc) >= logfc_threshold
        if not keep.any():
            return empty_marker_table()

        genes = adata.var_names[keep]
        cells = mask_1 | mask_2
        scratch = anndata.AnnData(
            X=X[cells][:, keep],
            obs=pd.DataFrame(
                {
                    "_group": pd.Categorical(
                        np.where(mask_1[cells], "ident_1", "ident_2"),
                        categories=["ident_1", "ident_2"],
                    )
                },
                index=adata.obs_names[cells],
            ),
            var=pd.DataFrame(index=genes),
        )
        scratch.uns["log1p"] = {"base": None}

        rank_kwargs = {"tie_correct": True} if test == "wilcoxon" else {}
        sc.tl.rank_genes_groups(
            scratch,
            groupby="_group",
            groups=["ident_1"],
            reference="ident_2",
            method=test,
            n_genes=scratch.n_vars,
            use_raw=False,
            **rank_kwargs,
        )
        ranked = sc.get.rank_genes_groups_df(scratch, group="ident_1")
        p_values = (
            ranked.set_index("names")["pvals"].reindex(genes).fillna(1.0).to_numpy()
        )

        table = pd.DataFrame(
            {
                "gene": genes.to_numpy(),
                "p_val": p_values,
                "avg_log2FC": avg_log2fc[keep],
                "pct_1": np.round(pct_1[keep], 3),
                "pct_2": np.round(pct_2[keep], 3),
                "p_val_adj": np.minimum(1.0, p_values * adata.n_vars),
            }
        )
        if only_pos:
            table = table[table["avg_log2FC"] > 0]
        table = table.assign(_neg_fc=-table["avg_log2FC"])
        table = table.sort_values(["p_val", "_neg_fc"], kind="mergesort")
        return table.drop(columns="_neg_fc").reset_index(drop=True)

    def _validate_test(self, test: str) -> None:
        if test not in DE_TESTS:
            raise DifferentialExpressionError(
                f"Unknown test: {test}. Must be one of: {', '.join(DE_TESTS)}"
            )

    def find_markers(
        self,
        adata: anndata.AnnData,
        ident_1: Identity,
        ident_2: Optional[Identity] = None,
        groupby: Optional[str] = None,
        test: str = "wilcoxon",
        min_pct: float = 0.1,
        logfc_threshold: float = 0.25,
        only_pos: bool = False,
        min_cells_group: int = 3,
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Markers distinguishing one identity from another or from all other cells.

        Args:
            adata: Clustered AnnData with a normalized layer
            ident_1: Identity (or identities) of the first group
            ident_2: Identity (or identities) of the second group; None compares
                     against every other cell
            groupby: obs column with identities (default: active identity)
            test: "wilcoxon", "t-test" or "t-test_overestim_var"
            min_pct: Test genes detected in at least this fraction of either group
            logfc_threshold: Test genes with at least this absolute log2 fold change
            only_pos: Only return genes higher in the first group
            min_cells_group: Minimum number of cells in each group

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]: Marker table, stats and IR

        Raises:
            DifferentialExpressionError: If identities are unknown or groups are too small
        """
        self._validate_test(test)
        groupby = self._resolve_groupby(adata, groupby)
        labels = adata.obs[groupby].astype(str).to_numpy()
        available = set(labels.tolist())

        group_1 = _as_labels(ident_1)
        group_2 = _as_labels(ident_2)
        unknown = [g for g in group_1 + (group_2 or []) if g not in available]
        if unknown:
            raise DifferentialExpressionError(
                f"Identities not found in '{groupby}': {unknown}",
                details={"available": sorted(available)},
            )
        if group_2 is not None and set(group_1) & set(group_2):
            raise DifferentialExpressionError("ident_1 and ident_2 overlap")

        mask_1 = np.isin(labels, group_1)
        mask_2 = np.isin(labels, group_2) if group_2 is not None else ~mask_1
        for name, mask in (("ident_1", mask_1), ("ident_2", mask_2)):
            if mask.sum() < min_cells_group:
                raise DifferentialExpressionError(
                    f"Group {name} has {int(mask.sum())} cells; "
                    f"at least {min_cells_group} are required"
                )

        try:
            versus = ", ".join(group_2) if group_2 is not None else "rest"
            logger.info(
                f"Finding markers for {', '.join(group_1)} vs {versus} ({test})"
            )
            with with_periodic_progress("Finding markers", self.progress_callback):
                table = self._compare(
                    adata, mask_1, mask_2, test, min_pct, logfc_threshold, only_pos
                )
            if table.empty:
                logger.warning("No genes pass the min_pct and logfc_threshold filters")

            stats = {
                "analysis_type": "find_markers",
                "groupby": groupby,
                "ident_1": group_1,
                "ident_2": group_2 if group_2 is not None else "rest",
                "test": test,
                "n_cells_1": int(mask_1.sum()),
                "n_cells_2": int(mask_2.sum()),
                "n_markers": int(len(table)),
                "n_significant": int((table["p_val_adj"] < 0.05).sum()),
                "top_markers": table["gene"].head(10).tolist(),
            }
            logger.info(
                f"Found {stats['n_markers']} markers ({stats['n_significant']} with adjusted p < 0.05)"
            )

            ir = self._create_markers_ir(
                "find_markers",
                {
                    "ident_1": group_1,
                    "ident_2": group_2,
                    "groupby": groupby,
                    "test": test,
                    "min_pct": min_pct,
                    "logfc_threshold": logfc_threshold,
                    "only_pos": only_pos,
                },
            )
            return table, stats, ir

        except Exception as e:
            logger.exception(f"Error finding markers: {e}")
            raise DifferentialExpressionError(f"Marker detection failed: {str(e)}")

    def find_all_markers(
        self,
        adata: anndata.AnnData,
        groupby: Optional[str] = None,
        test: str = "wilcoxon",
        only_pos: bool = True,
        min_pct: float = 0.25,
        logfc_threshold: float = 0.25,
        return_thresh: float = 0.01,
        min_cells_group: int = 3,
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Markers for every identity against all remaining cells.

        Identities with fewer than ``min_cells_group`` cells (or leaving fewer
        than that many outside) are skipped with a warning. Only markers with
        ``p_val < return_thresh`` are kept.

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]: Marker table with a
            ``cluster`` column, stats and IR

        Raises:
            DifferentialExpressionError: If inputs are missing or testing fails
        """
        self._validate_test(test)
        groupby = self._resolve_groupby(adata, groupby)
        column = adata.obs[groupby]
        levels = (
            [str(c) for c in column.cat.categories]
            if isinstance(column.dtype, pd.CategoricalDtype)
            else sorted(column.astype(str).unique())
        )
        labels = column.astype(str).to_numpy()

        try:
            logger.info(f"Finding markers for {len(levels)} identities in '{groupby}'")
            tables = []
            skipped = []
            markers_per_cluster = {}
            with with_periodic_progress(
                f"Finding markers for {len(levels)} identities", self.progress_callback
            ):
                for level in levels:
                    mask_1 = labels == level
                    mask_2 = ~mask_1
                    if mask_1.sum() < min_cells_group or mask_2.sum() < min_cells_group:
                        logger.warning(
                            f"Skipping '{level}': fewer than {min_cells_group} cells in a group"
                        )
                        skipped.append(level)
                        continue

                    table = self._compare(
                        adata, mask_1, mask_2, test, min_pct, logfc_threshold, only_pos
                    )
                    table = table[table["p_val"] < return_thresh].copy()
                    markers_per_cluster[level] = int(len(table))
                    if not table.empty:
                        table.insert(1, "cluster", level)
                        tables.append(table)

            if tables:
                markers = pd.concat(tables, ignore_index=True)
            else:
                markers = empty_marker_table(with_cluster=True)
                logger.warning("No markers found for any identity")
            markers["cluster"] = pd.Categorical(markers["cluster"], categories=levels)

            stats = {
                "analysis_type": "find_all_markers",
                "groupby": groupby,
                "test": test,
                "n_identities": len(levels),
                "n_markers": int(len(markers)),
                "markers_per_cluster": markers_per_cluster,
                "skipped_identities": skipped,
                "top_markers_per_cluster": {
                    level: group["gene"].head(5).tolist()
                    for level, group in markers.groupby("cluster", observed=True)
                },
            }
            logger.info(
                f"Found {stats['n_markers']} markers across {len(markers_per_cluster)} identities"
            )

            ir = self._create_markers_ir(
                "find_all_markers",
                {
                    "groupby": groupby,
                    "test": test,
                    "only_pos": only_pos,
                    "min_pct": min_pct,
                    "logfc_threshold": logfc_threshold,
                    "return_thresh": return_thresh,
                },
            )
            return markers, stats, ir

        except Exception as e:
            logger.exception(f"Error finding markers for all identities: {e}")
            raise DifferentialExpressionError(f"Marker detection failed: {str(e)}")

    @staticmethod
    def top_markers(
        markers: pd.DataFrame, n: int = 2, by: str = "avg_log2FC"
    ) -> pd.DataFrame:
        """
        Top ``n`` markers per cluster.

        ``by="avg_log2FC"`` keeps the largest fold changes; ``by="p_val"``
        or ``"p_val_adj"`` keeps the smallest p-values.

        Raises:
            DifferentialExpressionError: If the table has no cluster column or ``by`` is unknown
        """
        if "cluster" not in markers.columns:
            raise DifferentialExpressionError("Marker table has no 'cluster' column")
        if by not in ("avg_log2FC", "p_val", "p_val_adj"):
            raise DifferentialExpressionError(f"Cannot rank markers by '{by}'")
        ascending = by != "avg_log2FC"
        ranked = markers.sort_values(by, ascending=ascending, kind="mergesort")
        top = ranked.groupby("cluster", observed=True, sort=True).head(n)
        return top.sort_values(["cluster", by], ascending=[True, ascending]).reset_index(
            drop=True
        )

    def _create_markers_ir(self, tool_name: str, parameters: Dict[str, Any]) -> AnalysisStep:
        if tool_name == "find_markers":
            code_template = """markers, _, _ = DifferentialExpressionService().find_markers(
    adata,
    ident_1={{ ident_1 | py }},
    ident_2={{ ident_2 | py }},
    groupby={{ groupby | py }},
    test={{ test | py }},
    min_pct={{ min_pct }},
    logfc_threshold={{ logfc_threshold }},
    only_pos={{ only_pos | py }},
)
print(markers.head())
"""
            description = f"Markers for {parameters['ident_1']}"
        else:
            code_template = """markers, _, _ = DifferentialExpressionService().find_all_markers(
    adata,
    groupby={{ groupby | py }},
    test={{ test | py }},
    only_pos={{ only_pos | py }},
    min_pct={{ min_pct }},
    logfc_threshold={{ logfc_threshold }},
    return_thresh={{ return_thresh }},
)
print(DifferentialExpressionService.top_markers(markers, n=2))
"""
            description = f"Markers for every identity in {parameters['groupby']}"

        return AnalysisStep(
            operation="scanpy.tl.rank_genes_groups",
            tool_name=tool_name,
            description=description,
            library="scanpy",
            code_template=code_template,
            imports=[
                "from scflow.tools.differential_expression_service import "
                "DifferentialExpressionService"
            ],
            parameters=parameters,
            parameter_schema={
                "min_pct": ParameterSpec(
                    param_type="float",
                    default_value=parameters["min_pct"],
                    validation_rule="0 <= min_pct <= 1",
                    description="Minimum detection rate in either group",
                ),
                "logfc_threshold": ParameterSpec(
                    param_type="float",
                    default_value=parameters["logfc_threshold"],
                    validation_rule="logfc_threshold >= 0",
                    description="Minimum absolute average log2 fold change",
                ),
            },
            input_entities=["adata"],
            output_entities=["markers"],
        )
