"""
Single-cell RNA-seq preprocessing service.

Normalizes counts per cell, ranks genes by how variable they are relative to
their mean and scales genes across cells before dimensionality reduction.
"""

from typing import Any, Dict, List, Optional, Tuple

import anndata
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as spr

from scflow.core.analysis_ir import AnalysisStep, ParameterSpec
from scflow.core.exceptions import ScflowError
from scflow.utils.deviance import binomial_deviance
from scflow.utils.logger import get_logger

logger = get_logger(__name__)

NORMALIZATION_METHODS = ("LogNormalize", "RC", "CLR")
FEATURE_SELECTION_METHODS = ("vst", "mean_var_plot", "dispersion", "deviance")


class PreprocessingError(ScflowError):
    """Base exception for preprocessing operations."""

    pass


def _counts(adata: anndata.AnnData):
    return adata.layers["counts"] if "counts" in adata.layers else adata.X


def _expression_frame(adata: anndata.AnnData, matrix) -> anndata.AnnData:
    """Bare AnnData sharing obs/var names, used as a scratch object for scanpy calls."""
    return anndata.AnnData(
        X=matrix,
        obs=pd.DataFrame(index=adata.obs_names.copy()),
        var=pd.DataFrame(index=adata.var_names.copy()),
    )


class PreprocessingService:
    """
    Stateless preprocessing service for single-cell RNA-seq data.

    Layers written by this service:
        normalized: Per-cell normalized expression (``normalize``)
        X: Scaled expression after ``scale``; normalized values before it
    """

    def __init__(self, config=None, **kwargs):
        """
        Initialize the preprocessing service.

        Args:
            config: Optional configuration dict
            **kwargs: Additional arguments (ignored)
        """
        logger.debug("Initializing stateless PreprocessingService")
        self.config = config or {}

    def normalize(
        self,
        adata: anndata.AnnData,
        method: str = "LogNormalize",
        scale_factor: float = 10000,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Normalize raw counts.

        Methods:
            LogNormalize: log1p(count / cell_total * scale_factor)
            RC: count / cell_total * scale_factor (relative counts, no log)
            CLR: centered log-ratio of each gene across cells,
                 log1p(x / exp(sum(log1p(x[x > 0])) / n_cells))

        Args:
            adata: AnnData with raw counts in ``layers["counts"]`` or ``X``
            method: "LogNormalize", "RC" or "CLR"
            scale_factor: Per-cell target total for LogNormalize and RC

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]: Normalized AnnData, stats and IR

        Raises:
            PreprocessingError: If the method is unknown or normalization fails
        """
        if method not in NORMALIZATION_METHODS:
            raise PreprocessingError(
                f"Unknown normalization method: {method}. "
                f"Must be one of: {', '.join(NORMALIZATION_METHODS)}"
            )
        if scale_factor <= 0:
            raise PreprocessingError(f"scale_factor must be positive, got {scale_factor}")

        try:
            logger.info(f"Normalizing expression data with {method}")
            adata_norm = adata.copy()
            counts = _counts(adata_norm)
            if "counts" not in adata_norm.layers:
                adata_norm.layers["counts"] = counts.copy()

            X = spr.csr_matrix(counts, dtype=np.float32)
            cell_totals = np.asarray(X.sum(axis=1)).ravel()
            n_empty = int((cell_totals == 0).sum())
            if n_empty:
                logger.warning(f"{n_empty} cells have zero total counts")

            if method == "CLR":
                X = self._clr(X)
            else:
                scratch = _expression_frame(adata_norm, X)
                sc.pp.normalize_total(scratch, target_sum=scale_factor)
                if method == "LogNormalize":
                    sc.pp.log1p(scratch)
                X = spr.csr_matrix(scratch.X)

            adata_norm.X = X
            adata_norm.layers["normalized"] = X.copy()
            if method == "LogNormalize":
                adata_norm.uns["log1p"] = {"base": None}
            adata_norm.uns["normalization"] = {
                "method": method,
                "scale_factor": float(scale_factor),
            }

            stats = {
                "analysis_type": "normalization",
                "method": method,
                "scale_factor": float(scale_factor),
                "n_cells": int(adata_norm.n_obs),
                "n_genes": int(adata_norm.n_vars),
                "median_library_size": float(np.median(cell_totals)),
                "empty_cells": n_empty,
                "max_value": float(X.max()) if X.nnz else 0.0,
            }
            logger.info(
                f"Normalization complete ({method}, median library size "
                f"{stats['median_library_size']:.0f})"
            )

            ir = self._create_normalize_ir(method, scale_factor)
            return adata_norm, stats, ir

        except Exception as e:
            logger.exception(f"Error in normalization: {e}")
            raise PreprocessingError(f"Normalization failed: {str(e)}")

    def _clr(self, X: spr.csr_matrix) -> spr.csr_matrix:
        """Centered log-ratio per gene across cells; zeros stay zero."""
        X = X.tocsc(copy=True)
        log_data = X.copy()
        log_data.data = np.log1p(log_data.data)
        geometric = np.exp(np.asarray(log_data.sum(axis=0)).ravel() / X.shape[0])
        X = X.multiply(1.0 / geometric.reshape(1, -1)).tocsr()
        X.data = np.log1p(X.data)
        return X.astype(np.float32)

    def find_variable_features(
        self,
        adata: anndata.AnnData,
        method: str = "vst",
        n_top_genes: int = 2000,
        min_mean: float = 0.0125,
        max_mean: float = 3.0,
        min_disp: float = 0.5,
        span: float = 0.3,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Rank genes by variability relative to their mean and flag the top ones.

        Methods:
            vst: variance-stabilizing fit of log-variance on log-mean over raw
                 counts; genes ranked by standardized variance
            mean_var_plot: binned mean/dispersion cutoffs (``min_mean``,
                 ``max_mean``, ``min_disp``) instead of a fixed count
            dispersion: top ``n_top_genes`` by binned normalized dispersion
            deviance: top ``n_top_genes`` by binomial deviance on raw counts

        Args:
            adata: Normalized AnnData
            method: Selection method
            n_top_genes: Number of genes to keep (ignored by mean_var_plot)
            min_mean: Lower mean cutoff for mean_var_plot
            max_mean: Upper mean cutoff for mean_var_plot
            min_disp: Dispersion cutoff for mean_var_plot
            span: Loess span for vst

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]: AnnData with
            ``var["highly_variable"]``, ``var["variance_rank"]`` and
            ``var["variability_score"]``, stats and IR

        Raises:
            PreprocessingError: If data is not normalized or selection fails
        """
        if method not in FEATURE_SELECTION_METHODS:
            raise PreprocessingError(
                f"Unknown feature selection method: {method}. "
                f"Must be one of: {', '.join(FEATURE_SELECTION_METHODS)}"
            )
        if "normalized" not in adata.layers:
            raise PreprocessingError(
                "No normalized layer found. Run normalize before feature selection"
            )
        if n_top_genes <= 0:
            raise PreprocessingError(f"n_top_genes must be positive, got {n_top_genes}")

        try:
            logger.info(f"Finding variable features with method '{method}'")
            adata_hvg = adata.copy()

            if n_top_genes > adata_hvg.n_vars:
                logger.warning(
                    f"n_top_genes={n_top_genes} exceeds {adata_hvg.n_vars} genes; "
                    f"keeping all genes"
                )
                n_top_genes = adata_hvg.n_vars

            if method == "deviance":
                score = binomial_deviance(_counts(adata_hvg))
                extra_columns = {"deviance": score}
            else:
                score, extra_columns = self._scanpy_variability(
                    adata_hvg, method, n_top_genes, min_mean, max_mean, min_disp, span
                )

            score = pd.Series(score, index=adata_hvg.var_names).fillna(-np.inf)
            order = np.argsort(-score.to_numpy(), kind="stable")
            rank = np.empty(adata_hvg.n_vars, dtype=int)
            rank[order] = np.arange(1, adata_hvg.n_vars + 1)

            if method == "mean_var_plot":
                highly_variable = extra_columns.pop("highly_variable")
            else:
                highly_variable = rank <= n_top_genes

            for column, values in extra_columns.items():
                adata_hvg.var[column] = np.asarray(values)
            adata_hvg.var["variability_score"] = score.replace(-np.inf, np.nan).to_numpy()
            adata_hvg.var["variance_rank"] = rank
            adata_hvg.var["highly_variable"] = np.asarray(highly_variable, dtype=bool)
            adata_hvg.uns["variable_features"] = {
                "method": method,
                "n_top_genes": int(n_top_genes),
            }

            n_variable = int(adata_hvg.var["highly_variable"].sum())
            if n_variable == 0:
                raise PreprocessingError(
                    f"No variable features selected with method '{method}'"
                )

            top_genes = adata_hvg.var_names[order[:10]].tolist()
            stats = {
                "analysis_type": "feature_selection",
                "method": method,
                "n_variable_features": n_variable,
                "n_genes": int(adata_hvg.n_vars),
                "top10_variable_features": top_genes,
            }
            logger.info(
                f"Selected {n_variable} variable features; top: {', '.join(top_genes[:5])}"
            )

            ir = self._create_variable_features_ir(
                method, n_top_genes, min_mean, max_mean, min_disp, span
            )
            return adata_hvg, stats, ir

        except PreprocessingError:
            raise
        except Exception as e:
            logger.exception(f"Error in feature selection: {e}")
            raise PreprocessingError(f"Feature selection failed: {str(e)}")

    def _scanpy_variability(
        self,
        adata: anndata.AnnData,
        method: str,
        n_top_genes: int,
        min_mean: float,
        max_mean: float,
        min_disp: float,
        span: float,
    ) -> Tuple[np.ndarray, Dict[str, np.ndarray]]:
        """Run scanpy's highly_variable_genes on a scratch copy and return score plus columns."""
        if method == "vst":
            scratch = _expression_frame(adata, _counts(adata).copy())
            sc.pp.highly_variable_genes(
                scratch, flavor="seurat_v3", n_top_genes=n_top_genes, span=span
            )
            var = scratch.var
            return var["variances_norm"].to_numpy(), {
                "means": var["means"].to_numpy(),
                "variances": var["variances"].to_numpy(),
                "variances_norm": var["variances_norm"].to_numpy(),
            }

        scratch = _expression_frame(adata, adata.layers["normalized"].copy())
        scratch.uns["log1p"] = {"base": None}
        if method == "mean_var_plot":
            sc.pp.highly_variable_genes(
                scratch,
                flavor="seurat",
                min_mean=min_mean,
                max_mean=max_mean,
                min_disp=min_disp,
            )
        else:
            sc.pp.highly_variable_genes(
                scratch, flavor="seurat", n_top_genes=n_top_genes
            )
        var = scratch.var
        columns = {
            "means": var["means"].to_numpy(),
            "dispersions": var["dispersions"].to_numpy(),
            "dispersions_norm": var["dispersions_norm"].to_numpy(),
        }
        if method == "mean_var_plot":
            columns["highly_variable"] = var["highly_variable"].to_numpy()
        return var["dispersions_norm"].to_numpy(), columns

    def scale(
        self,
        adata: anndata.AnnData,
        features: str = "all",
        vars_to_regress: Optional[List[str]] = None,
        max_value: Optional[float] = 10.0,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Center and scale genes across cells.

        Each gene is shifted to mean 0 and divided by its standard deviation,
        after optionally regressing out cell-level covariates (for example
        ``pct_counts_mt``). Values are clipped at ``max_value``.

        Args:
            adata: Normalized AnnData
            features: "all" to scale every gene, "variable" for the flagged
                      variable genes only (other genes keep normalized values)
            vars_to_regress: obs columns regressed out before scaling
            max_value: Clip scaled values to [-max_value, max_value]; None disables

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]: AnnData with scaled X, stats and IR

        Raises:
            PreprocessingError: If prerequisites are missing or scaling fails
        """
        vars_to_regress = list(vars_to_regress or [])
        if features not in ("all", "variable"):
            raise PreprocessingError(
                f"features must be 'all' or 'variable', got '{features}'"
            )
        if "normalized" not in adata.layers:
            raise PreprocessingError(
                "No normalized layer found. Run normalize before scaling"
            )
        if features == "variable" and "highly_variable" not in adata.var:
            raise PreprocessingError(
                "No variable features flagged. Run find_variable_features first"
            )
        missing = [key for key in vars_to_regress if key not in adata.obs.columns]
        if missing:
            raise PreprocessingError(
                f"Variables to regress not found in obs: {missing}",
                details={"available": adata.obs.columns.tolist()},
            )

        try:
            adata_scaled = adata.copy()
            if features == "all":
                gene_mask = np.ones(adata_scaled.n_vars, dtype=bool)
            else:
                gene_mask = adata_scaled.var["highly_variable"].to_numpy(dtype=bool)
            logger.info(
                f"Scaling {int(gene_mask.sum())} genes"
                + (f", regressing out {vars_to_regress}" if vars_to_regress else "")
            )

            normalized = adata_scaled.layers["normalized"]
            subset = normalized[:, gene_mask]
            dense = subset.toarray() if spr.issparse(subset) else np.array(subset)
            scratch = _expression_frame(adata_scaled[:, gene_mask], dense)
            if vars_to_regress:
                scratch.obs = adata_scaled.obs[vars_to_regress].copy()
                sc.pp.regress_out(scratch, keys=vars_to_regress)
            sc.pp.scale(scratch, zero_center=True, max_value=max_value)

            if features == "all":
                X = np.asarray(scratch.X, dtype=np.float32)
            else:
                X = (
                    normalized.toarray()
                    if spr.issparse(normalized)
                    else np.array(normalized)
                ).astype(np.float32)
                X[:, gene_mask] = scratch.X

            adata_scaled.X = X
            adata_scaled.var["scaled"] = gene_mask
            adata_scaled.var["scale_mean"] = np.nan
            adata_scaled.var["scale_std"] = np.nan
            adata_scaled.var.loc[gene_mask, "scale_mean"] = scratch.var["mean"].to_numpy()
            adata_scaled.var.loc[gene_mask, "scale_std"] = scratch.var["std"].to_numpy()
            adata_scaled.uns["scaling"] = {
                "features": features,
                "vars_to_regress": vars_to_regress,
                "max_value": max_value,
            }

            stats = {
                "analysis_type": "scaling",
                "features": features,
                "n_scaled_genes": int(gene_mask.sum()),
                "vars_to_regress": vars_to_regress,
                "max_value": max_value,
                "n_clipped_values": (
                    int((np.abs(scratch.X) >= max_value).sum())
                    if max_value is not None
                    else 0
                ),
            }
            logger.info(f"Scaled {stats['n_scaled_genes']} genes")

            ir = self._create_scale_ir(features, vars_to_regress, max_value)
            return adata_scaled, stats, ir

        except Exception as e:
            logger.exception(f"Error in scaling: {e}")
            raise PreprocessingError(f"Scaling failed: {str(e)}")

    def _create_normalize_ir(self, method: str, scale_factor: float) -> AnalysisStep:
        """
        Create Intermediate Representation for normalization.

        Args:
            method: Normalization method
            scale_factor: Per-cell target total

        Returns:
            AnalysisStep with normalization code template
        """
        code_template = """adata.X = adata.layers["counts"].astype(np.float32)
{% if method == "CLR" %}X = adata.X.toarray()
geometric = np.exp(np.log1p(X).sum(axis=0) / X.shape[0])
adata.X = np.log1p(X / geometric)
{% else %}sc.pp.normalize_total(adata, target_sum={{ scale_factor }})
{% if method == "LogNormalize" %}sc.pp.log1p(adata)
{% endif %}{% endif %}adata.layers["normalized"] = adata.X.copy()
"""
        return AnalysisStep(
            operation="scanpy.pp.normalize_total",
            tool_name="normalize",
            description=f"Normalize counts per cell ({method}, scale factor {scale_factor:g})",
            library="scanpy",
            code_template=code_template,
            imports=["import numpy as np", "import scanpy as sc"],
            parameters={"method": method, "scale_factor": scale_factor},
            parameter_schema={
                "method": ParameterSpec(
                    param_type="str",
                    default_value=method,
                    validation_rule="method in ['LogNormalize', 'RC', 'CLR']",
                    description="Normalization method",
                ),
                "scale_factor": ParameterSpec(
                    param_type="float",
                    default_value=scale_factor,
                    validation_rule="scale_factor > 0",
                    description="Per-cell target total",
                ),
            },
        )

    def _create_variable_features_ir(
        self,
        method: str,
        n_top_genes: int,
        min_mean: float,
        max_mean: float,
        min_disp: float,
        span: float,
    ) -> AnalysisStep:
        code_template = """{% if method == "vst" %}sc.pp.highly_variable_genes(adata, flavor="seurat_v3", n_top_genes={{ n_top_genes }}, layer="counts", span={{ span }})
{% elif method == "mean_var_plot" %}sc.pp.highly_variable_genes(adata, flavor="seurat", min_mean={{ min_mean }}, max_mean={{ max_mean }}, min_disp={{ min_disp }})
{% elif method == "dispersion" %}sc.pp.highly_variable_genes(adata, flavor="seurat", n_top_genes={{ n_top_genes }})
{% else %}hvg_adata, _, _ = PreprocessingService().find_variable_features(adata, method="deviance", n_top_genes={{ n_top_genes }})
adata.var["highly_variable"] = hvg_adata.var["highly_variable"]
{% endif %}print(f"{adata.var['highly_variable'].sum()} variable features")
"""
        imports = ["import scanpy as sc"]
        if method == "deviance":
            imports.append("from scflow.tools.preprocessing_service import PreprocessingService")
        return AnalysisStep(
            operation="scanpy.pp.highly_variable_genes",
            tool_name="find_variable_features",
            description=f"Select variable features ({method})",
            library="scanpy",
            code_template=code_template,
            imports=imports,
            parameters={
                "method": method,
                "n_top_genes": n_top_genes,
                "min_mean": min_mean,
                "max_mean": max_mean,
                "min_disp": min_disp,
                "span": span,
            },
            parameter_schema={
                "n_top_genes": ParameterSpec(
                    param_type="int",
                    default_value=n_top_genes,
                    validation_rule="n_top_genes > 0",
                    description="Number of variable features to keep",
                ),
            },
        )

    def _create_scale_ir(
        self,
        features: str,
        vars_to_regress: List[str],
        max_value: Optional[float],
    ) -> AnalysisStep:
        code_template = """{% if features == "variable" %}adata_scaled = adata[:, adata.var["highly_variable"]].copy()
{% else %}adata_scaled = adata.copy()
{% endif %}adata_scaled.X = adata_scaled.layers["normalized"].copy()
{% if vars_to_regress %}sc.pp.regress_out(adata_scaled, keys={{ vars_to_regress | py }})
{% endif %}sc.pp.scale(adata_scaled, max_value={{ max_value | py }})
{% if features == "variable" %}X = adata.layers["normalized"].toarray()
X[:, adata.var["highly_variable"].to_numpy()] = adata_scaled.X
adata.X = X
{% else %}adata.X = adata_scaled.X
{% endif %}"""
        return AnalysisStep(
            operation="scanpy.pp.scale",
            tool_name="scale",
            description="Center and scale genes across cells",
            library="scanpy",
            code_template=code_template,
            imports=["import scanpy as sc"],
            parameters={
                "features": features,
                "vars_to_regress": vars_to_regress,
                "max_value": max_value,
            },
            parameter_schema={
                "max_value": ParameterSpec(
                    param_type="Optional[float]",
                    default_value=max_value,
                    validation_rule="max_value is None or max_value > 0",
                    description="Clip scaled values at this magnitude",
                ),
            },
        )
