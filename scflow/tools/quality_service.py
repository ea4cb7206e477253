"""
Quality control service for single-cell RNA-seq data.

Computes the per-cell QC summary (detected genes, total UMIs, percentage of
mitochondrial reads), filters cells on fixed thresholds and suggests
data-driven thresholds from median absolute deviations.
"""

from typing import Any, Dict, Optional, Tuple

import anndata
import numpy as np
import pandas as pd
import scanpy as sc

from scflow.core.analysis_ir import AnalysisStep, ParameterSpec
from scflow.core.exceptions import ScflowError
from scflow.utils.logger import get_logger

logger = get_logger(__name__)

QC_COLUMNS = ["n_genes_by_counts", "total_counts", "pct_counts_mt"]


class QualityError(ScflowError):
    """Base exception for quality control operations."""

    pass


class QualityService:
    """
    Stateless service for per-cell quality control.

    QC metrics are computed from raw counts (``layers["counts"]`` when
    present) and stored in ``obs``: ``n_genes_by_counts`` (nFeature),
    ``total_counts`` (nCount) and ``pct_counts_mt`` (percent.mt).
    """

    def __init__(self, config=None, **kwargs):
        """
        Initialize the quality control service.

        Args:
            config: Optional configuration dict
            **kwargs: Additional arguments (ignored)
        """
        logger.debug("Initializing stateless QualityService")
        self.config = config or {}

    def _detect_mitochondrial_genes(
        self, adata: anndata.AnnData, mt_prefix: str
    ) -> Tuple[np.ndarray, str, bool]:
        """
        Flag mitochondrial genes by symbol prefix.

        The configured prefix is tried first, then the mouse (``mt-``) and
        dot-delimited (``MT.``) conventions. Returns the mask together with
        the prefix that matched and whether the match is case sensitive.
        """
        var_names = pd.Index(adata.var_names.astype(str))
        for prefix, case_sensitive in ((mt_prefix, True), ("mt-", False), ("MT.", True)):
            names = var_names if case_sensitive else var_names.str.lower()
            mask = np.asarray(names.str.startswith(prefix))
            if mask.any():
                logger.info(
                    f"Detected {int(mask.sum())} mitochondrial genes with prefix '{prefix}'"
                )
                return mask, prefix, case_sensitive

        logger.warning(
            f"No mitochondrial genes found with prefix '{mt_prefix}'; "
            f"percent.mt will be 0 for every cell"
        )
        return np.zeros(adata.n_vars, dtype=bool), mt_prefix, True

    def calculate_qc_metrics(
        self, adata: anndata.AnnData, mt_prefix: str = "MT-"
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Compute per-cell QC metrics.

        Args:
            adata: AnnData with raw counts
            mt_prefix: Prefix identifying mitochondrial genes

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]: AnnData with QC columns, summary stats and IR

        Raises:
            QualityError: If the metrics cannot be computed
        """
        try:
            logger.info("Calculating QC metrics")
            adata_qc = adata.copy()

            mt_mask, matched_prefix, case_sensitive = self._detect_mitochondrial_genes(
                adata_qc, mt_prefix
            )
            adata_qc.var["mt"] = mt_mask
            layer = "counts" if "counts" in adata_qc.layers else None
            sc.pp.calculate_qc_metrics(
                adata_qc,
                qc_vars=["mt"],
                percent_top=None,
                log1p=False,
                layer=layer,
                inplace=True,
            )

            obs = adata_qc.obs
            stats = {
                "analysis_type": "qc_metrics",
                "n_cells": int(adata_qc.n_obs),
                "n_mt_genes": int(adata_qc.var["mt"].sum()),
                "mt_prefix": matched_prefix,
                "median_genes_per_cell": float(obs["n_genes_by_counts"].median()),
                "median_counts_per_cell": float(obs["total_counts"].median()),
                "median_pct_mt": float(obs["pct_counts_mt"].median()),
                "mean_genes_per_cell": float(obs["n_genes_by_counts"].mean()),
                "mean_counts_per_cell": float(obs["total_counts"].mean()),
                "mean_pct_mt": float(obs["pct_counts_mt"].mean()),
                "max_pct_mt": float(obs["pct_counts_mt"].max()),
            }

            logger.info(
                f"QC metrics: median {stats['median_genes_per_cell']:.0f} genes, "
                f"{stats['median_counts_per_cell']:.0f} UMIs, "
                f"{stats['median_pct_mt']:.2f}% mitochondrial per cell"
            )

            ir = self._create_qc_metrics_ir(matched_prefix, case_sensitive)
            return adata_qc, stats, ir

        except Exception as e:
            logger.exception(f"Error calculating QC metrics: {e}")
            raise QualityError(f"QC metric calculation failed: {str(e)}")

    def filter_cells(
        self,
        adata: anndata.AnnData,
        min_features: Optional[int] = 200,
        max_features: Optional[int] = 2500,
        max_percent_mt: Optional[float] = 5.0,
        min_counts: Optional[int] = None,
        max_counts: Optional[int] = None,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Keep cells passing every QC threshold.

        Bounds are strict: with the defaults a cell is kept when
        200 < n_genes_by_counts < 2500 and pct_counts_mt < 5. A bound set to
        None is not applied.

        Args:
            adata: AnnData with QC metrics from ``calculate_qc_metrics``
            min_features: Exclusive lower bound on detected genes
            max_features: Exclusive upper bound on detected genes
            max_percent_mt: Exclusive upper bound on mitochondrial percentage
            min_counts: Exclusive lower bound on total counts
            max_counts: Exclusive upper bound on total counts

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]: Filtered AnnData, filtering stats and IR

        Raises:
            QualityError: If metrics are missing, bounds are inconsistent or no cell passes
        """
        missing = [col for col in QC_COLUMNS if col not in adata.obs.columns]
        if missing:
            raise QualityError(
                f"QC metrics missing from obs: {missing}. Run calculate_qc_metrics first"
            )
        for low, high, name in (
            (min_features, max_features, "features"),
            (min_counts, max_counts, "counts"),
        ):
            if low is not None and high is not None and low >= high:
                raise QualityError(
                    f"min_{name} ({low}) must be smaller than max_{name} ({high})"
                )

        try:
            logger.info("Filtering cells on QC thresholds")
            obs = adata.obs
            criteria = {
                "min_features": (
                    obs["n_genes_by_counts"] > min_features
                    if min_features is not None
                    else None
                ),
                "max_features": (
                    obs["n_genes_by_counts"] < max_features
                    if max_features is not None
                    else None
                ),
                "max_percent_mt": (
                    obs["pct_counts_mt"] < max_percent_mt
                    if max_percent_mt is not None
                    else None
                ),
                "min_counts": (
                    obs["total_counts"] > min_counts if min_counts is not None else None
                ),
                "max_counts": (
                    obs["total_counts"] < max_counts if max_counts is not None else None
                ),
            }

            keep = np.ones(adata.n_obs, dtype=bool)
            cells_failed = {}
            for name, passed in criteria.items():
                if passed is None:
                    continue
                passed = np.asarray(passed)
                cells_failed[name] = int((~passed).sum())
                keep &= passed

            n_kept = int(keep.sum())
            if n_kept == 0:
                raise QualityError(
                    "No cells pass the QC thresholds",
                    details={"cells_failed": cells_failed},
                )

            adata_filtered = adata[keep, :].copy()

            stats = {
                "analysis_type": "qc_filtering",
                "initial_cells": int(adata.n_obs),
                "final_cells": n_kept,
                "cells_removed": int(adata.n_obs) - n_kept,
                "cells_retained_pct": float(n_kept / adata.n_obs * 100),
                "cells_failed": cells_failed,
                "thresholds": {
                    "min_features": min_features,
                    "max_features": max_features,
                    "max_percent_mt": max_percent_mt,
                    "min_counts": min_counts,
                    "max_counts": max_counts,
                },
            }

            logger.info(
                f"QC filtering kept {n_kept}/{adata.n_obs} cells "
                f"({stats['cells_retained_pct']:.1f}%)"
            )

            ir = self._create_filter_ir(
                min_features, max_features, max_percent_mt, min_counts, max_counts
            )
            return adata_filtered, stats, ir

        except QualityError:
            raise
        except Exception as e:
            logger.exception(f"Error filtering cells: {e}")
            raise QualityError(f"Cell filtering failed: {str(e)}")

    def suggest_adaptive_thresholds(
        self,
        adata: anndata.AnnData,
        n_mads: float = 3.0,
        mt_prefix: str = "MT-",
    ) -> Dict[str, Dict[str, float]]:
        """
        Suggest QC thresholds using MAD-based outlier detection.

        threshold = median ± (n_mads * MAD)

        Args:
            adata: AnnData to analyze; QC metrics are computed when absent
            n_mads: Number of MADs from the median (higher is more permissive)
            mt_prefix: Prefix identifying mitochondrial genes

        Returns:
            Dict with suggested thresholds:
            {
                "n_genes_by_counts": {"lower", "upper", "median", "mad"},
                "total_counts": {"lower", "upper", "median", "mad"},
                "pct_counts_mt": {"upper", "median", "mad"}
            }

        Raises:
            QualityError: If threshold calculation fails
        """
        try:
            logger.info(f"Calculating adaptive thresholds with {n_mads} MADs")

            if any(col not in adata.obs.columns for col in QC_COLUMNS):
                adata, _, _ = self.calculate_qc_metrics(adata, mt_prefix=mt_prefix)
            qc_metrics = adata.obs[QC_COLUMNS]

            def calculate_mad_bounds(values: pd.Series) -> Dict[str, float]:
                median = values.median()
                mad = np.median(np.abs(values - median))
                return {
                    "median": float(median),
                    "mad": float(mad),
                    "lower": float(max(0.0, median - n_mads * mad)),
                    "upper": float(median + n_mads * mad),
                }

            suggestions = {
                "n_genes_by_counts": calculate_mad_bounds(
                    qc_metrics["n_genes_by_counts"]
                ),
                "total_counts": calculate_mad_bounds(qc_metrics["total_counts"]),
            }
            mt_bounds = calculate_mad_bounds(qc_metrics["pct_counts_mt"])
            suggestions["pct_counts_mt"] = {
                "median": mt_bounds["median"],
                "mad": mt_bounds["mad"],
                "upper": float(min(100.0, mt_bounds["upper"])),
            }

            logger.info(
                f"Adaptive thresholds: "
                f"n_genes={suggestions['n_genes_by_counts']['lower']:.0f}-"
                f"{suggestions['n_genes_by_counts']['upper']:.0f}, "
                f"pct_mt<={suggestions['pct_counts_mt']['upper']:.1f}%"
            )
            return suggestions

        except QualityError:
            raise
        except Exception as e:
            logger.exception(f"Error calculating adaptive thresholds: {e}")
            raise QualityError(f"Adaptive threshold calculation failed: {str(e)}")

    def _create_qc_metrics_ir(
        self, mt_prefix: str, case_sensitive: bool = True
    ) -> AnalysisStep:
        code_template = """adata.var["mt"] = adata.var_names{% if not case_sensitive %}.str.lower(){% endif %}.str.startswith({{ mt_prefix | py }})
sc.pp.calculate_qc_metrics(adata, qc_vars=["mt"], percent_top=None, log1p=False, layer="counts", inplace=True)
"""
        return AnalysisStep(
            operation="scanpy.pp.calculate_qc_metrics",
            tool_name="calculate_qc_metrics",
            description="Compute detected genes, total counts and percent mitochondrial per cell",
            library="scanpy",
            code_template=code_template,
            imports=["import scanpy as sc"],
            parameters={"mt_prefix": mt_prefix, "case_sensitive": case_sensitive},
            parameter_schema={
                "mt_prefix": ParameterSpec(
                    param_type="str",
                    default_value=mt_prefix,
                    description="Mitochondrial gene prefix that matched the data",
                ),
                "case_sensitive": ParameterSpec(
                    param_type="bool",
                    default_value=case_sensitive,
                    description="Whether gene symbols are matched case sensitively",
                ),
            },
        )

    def _create_filter_ir(
        self,
        min_features: Optional[int],
        max_features: Optional[int],
        max_percent_mt: Optional[float],
        min_counts: Optional[int],
        max_counts: Optional[int],
    ) -> AnalysisStep:
        """
        Create Intermediate Representation for QC filtering.

        Returns:
            AnalysisStep with filtering code template
        """
        parameter_schema = {
            "min_features": ParameterSpec(
                param_type="Optional[int]",
                default_value=min_features,
                validation_rule="min_features >= 0",
                description="Exclusive lower bound on detected genes per cell",
            ),
            "max_features": ParameterSpec(
                param_type="Optional[int]",
                default_value=max_features,
                validation_rule="max_features > min_features",
                description="Exclusive upper bound on detected genes per cell",
            ),
            "max_percent_mt": ParameterSpec(
                param_type="Optional[float]",
                default_value=max_percent_mt,
                validation_rule="0 <= max_percent_mt <= 100",
                description="Exclusive upper bound on mitochondrial percentage",
            ),
            "min_counts": ParameterSpec(
                param_type="Optional[int]",
                default_value=min_counts,
                description="Exclusive lower bound on total counts per cell",
            ),
            "max_counts": ParameterSpec(
                param_type="Optional[int]",
                default_value=max_counts,
                description="Exclusive upper bound on total counts per cell",
            ),
        }

        code_template = """keep = np.ones(adata.n_obs, dtype=bool)
{% if min_features is not none %}keep &= adata.obs["n_genes_by_counts"].to_numpy() > {{ min_features }}
{% endif %}{% if max_features is not none %}keep &= adata.obs["n_genes_by_counts"].to_numpy() < {{ max_features }}
{% endif %}{% if max_percent_mt is not none %}keep &= adata.obs["pct_counts_mt"].to_numpy() < {{ max_percent_mt }}
{% endif %}{% if min_counts is not none %}keep &= adata.obs["total_counts"].to_numpy() > {{ min_counts }}
{% endif %}{% if max_counts is not none %}keep &= adata.obs["total_counts"].to_numpy() < {{ max_counts }}
{% endif %}adata = adata[keep, :].copy()
print(f"After QC filtering: {adata.n_obs} cells")
"""

        return AnalysisStep(
            operation="anndata.filter_cells",
            tool_name="filter_cells",
            description="Filter cells on detected genes, counts and mitochondrial percentage",
            library="numpy",
            code_template=code_template,
            imports=["import numpy as np"],
            parameters={
                "min_features": min_features,
                "max_features": max_features,
                "max_percent_mt": max_percent_mt,
                "min_counts": min_counts,
                "max_counts": max_counts,
            },
            parameter_schema=parameter_schema,
            execution_context={"filtering_strategy": "strict_thresholds"},
        )
