"""
Dimensionality reduction service.

Runs PCA on the scaled variable genes and helps decide how many principal
components carry signal, either with the JackStraw permutation test or with
heuristics on the standard deviation curve (elbow and variance cutoffs).
"""

from typing import Any, Callable, Dict, List, Optional, Tuple

import anndata
import numpy as np
import scanpy as sc
from scipy.stats import chi2_contingency
from sklearn.decomposition import PCA

from scflow.core.analysis_ir import AnalysisStep, ParameterSpec
from scflow.core.exceptions import ScflowError
from scflow.utils.logger import get_logger
from scflow.utils.progress_wrapper import with_periodic_progress

logger = get_logger(__name__)

PC_SELECTION_METHODS = ("elbow", "variance", "jackstraw")


class DimensionalityError(ScflowError):
    """Base exception for dimensionality reduction operations."""

    pass


class DimensionalityService:
    """
    Stateless service for PCA and component selection.

    Results live in the AnnData:
        obsm["X_pca"]: Cell embeddings
        varm["PCs"]: Gene loadings (zero for genes not used by PCA)
        uns["pca"]: variance, variance_ratio, stdev, features and params
        varm["jackstraw_p"]: Empirical JackStraw p-values (NaN outside PCA genes)
        uns["jackstraw"]: Null loadings, parameters and per-PC scores
    """

    def __init__(self, config=None, **kwargs):
        """
        Initialize the dimensionality service.

        Args:
            config: Optional configuration dict
            **kwargs: Additional arguments (ignored)
        """
        logger.debug("Initializing stateless DimensionalityService")
        self.config = config or {}
        self.progress_callback: Optional[Callable[[str], None]] = None

    def set_progress_callback(self, callback: Callable[[str], None]) -> None:
        """Receive periodic messages during JackStraw replicates."""
        self.progress_callback = callback

    def _pca_features(
        self, adata: anndata.AnnData, use_highly_variable: bool
    ) -> np.ndarray:
        if "scaling" not in adata.uns:
            raise DimensionalityError("Data is not scaled. Run scale before PCA")
        if use_highly_variable:
            if "highly_variable" not in adata.var:
                raise DimensionalityError(
                    "No variable features flagged. Run find_variable_features first"
                )
            mask = adata.var["highly_variable"].to_numpy(dtype=bool)
        else:
            mask = np.ones(adata.n_vars, dtype=bool)
        if "scaled" in adata.var:
            unscaled = mask & ~adata.var["scaled"].to_numpy(dtype=bool)
            if unscaled.any():
                logger.warning(
                    f"{int(unscaled.sum())} PCA features were not scaled and are excluded"
                )
                mask = mask & ~unscaled
        return mask

    @staticmethod
    def _require_pca(adata: anndata.AnnData, *fields: str) -> None:
        """Check PCA results exist and carry the ``uns["pca"]`` fields written by run_pca."""
        if "pca" not in adata.uns or "X_pca" not in adata.obsm or "PCs" not in adata.varm:
            raise DimensionalityError("No PCA results found. Run run_pca first")
        missing = [name for name in fields if name not in adata.uns["pca"]]
        if missing:
            raise DimensionalityError(
                f"PCA results lack {', '.join(missing)}. Run run_pca to recompute them",
                details={"missing_fields": missing},
            )

    def run_pca(
        self,
        adata: anndata.AnnData,
        n_comps: int = 50,
        use_highly_variable: bool = True,
        svd_solver: str = "arpack",
        random_state: int = 0,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Principal component analysis of the scaled variable genes.

        Args:
            adata: Scaled AnnData
            n_comps: Number of components; must be below min(n_cells, n_features)
            use_highly_variable: Restrict PCA to flagged variable genes
            svd_solver: Solver passed to scanpy
            random_state: Seed for the solver

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]: AnnData with PCA results, stats and IR

        Raises:
            DimensionalityError: If prerequisites are missing or PCA fails
        """
        feature_mask = self._pca_features(adata, use_highly_variable)
        n_features = int(feature_mask.sum())
        max_comps = min(adata.n_obs, n_features) - 1
        if n_comps < 1 or n_comps > max_comps:
            raise DimensionalityError(
                f"n_comps={n_comps} is invalid for {adata.n_obs} cells and "
                f"{n_features} features (maximum {max_comps})"
            )

        try:
            logger.info(f"Running PCA with {n_comps} components on {n_features} genes")
            adata_pca = adata.copy()

            scratch = anndata.AnnData(
                X=np.asarray(adata_pca.X[:, feature_mask], dtype=np.float32)
            )
            sc.tl.pca(
                scratch,
                n_comps=n_comps,
                zero_center=True,
                svd_solver=svd_solver,
                random_state=random_state,
            )

            loadings = np.zeros((adata_pca.n_vars, n_comps), dtype=np.float32)
            loadings[feature_mask, :] = scratch.varm["PCs"]
            variance = np.asarray(scratch.uns["pca"]["variance"], dtype=float)
            variance_ratio = np.asarray(
                scratch.uns["pca"]["variance_ratio"], dtype=float
            )

            adata_pca.obsm["X_pca"] = scratch.obsm["X_pca"]
            adata_pca.varm["PCs"] = loadings
            adata_pca.uns["pca"] = {
                "variance": variance,
                "variance_ratio": variance_ratio,
                "stdev": np.sqrt(variance),
                "features": adata_pca.var_names[feature_mask].tolist(),
                "params": {
                    "n_comps": n_comps,
                    "use_highly_variable": use_highly_variable,
                    "svd_solver": svd_solver,
                    "random_state": random_state,
                },
            }

            top_loadings = self.get_top_loadings(adata_pca, dims=min(5, n_comps))
            for pc, genes in list(top_loadings.items())[:3]:
                logger.debug(
                    f"{pc}: positive {genes['positive']}, negative {genes['negative']}"
                )

            stats = {
                "analysis_type": "pca",
                "n_comps": n_comps,
                "n_features": n_features,
                "variance_ratio": variance_ratio[:10].round(4).tolist(),
                "cumulative_variance_ratio": float(variance_ratio.sum()),
                "top_loadings": top_loadings,
            }
            logger.info(
                f"PCA complete: first 10 PCs explain "
                f"{variance_ratio[:10].sum() * 100:.1f}% of variance"
            )

            ir = self._create_pca_ir(n_comps, use_highly_variable, svd_solver, random_state)
            return adata_pca, stats, ir

        except Exception as e:
            logger.exception(f"Error in PCA: {e}")
            raise DimensionalityError(f"PCA failed: {str(e)}")

    def get_top_loadings(
        self, adata: anndata.AnnData, dims: int = 5, n_genes: int = 5
    ) -> Dict[str, Dict[str, List[str]]]:
        """
        Genes with the most positive and most negative loadings per PC.

        Returns:
            Dict mapping "PC_1".. to {"positive": [...], "negative": [...]}

        Raises:
            DimensionalityError: If PCA has not been run
        """
        self._require_pca(adata, "features")

        features = list(adata.uns["pca"]["features"])
        index = adata.var_names.get_indexer(features)
        loadings = np.asarray(adata.varm["PCs"])[index, :]
        dims = min(dims, loadings.shape[1])

        result = {}
        for pc in range(dims):
            order = np.argsort(loadings[:, pc])
            result[f"PC_{pc + 1}"] = {
                "positive": [features[i] for i in order[::-1][:n_genes]],
                "negative": [features[i] for i in order[:n_genes]],
            }
        return result

    def jackstraw(
        self,
        adata: anndata.AnnData,
        dims: int = 20,
        num_replicate: int = 100,
        prop_freq: float = 0.01,
        random_state: int = 0,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        JackStraw permutation test for PCA significance.

        Each replicate shuffles a random ``prop_freq`` fraction of the PCA
        genes (at least 3) across cells, gene by gene, re-runs PCA and keeps
        the loadings of the shuffled genes as a null distribution. The
        empirical p-value of gene g on PC k is the fraction of null absolute
        loadings on PC k that exceed the observed absolute loading.

        Args:
            adata: AnnData with PCA results
            dims: Number of PCs to test
            num_replicate: Number of permutation replicates
            prop_freq: Fraction of genes shuffled per replicate
            random_state: Seed for gene sampling and shuffling

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]: AnnData with
            ``varm["jackstraw_p"]``, stats and IR

        Raises:
            DimensionalityError: If PCA is missing or parameters are invalid
        """
        self._require_pca(adata, "features")

        features = list(adata.uns["pca"]["features"])
        feature_index = adata.var_names.get_indexer(features)
        n_features = len(features)
        n_computed = adata.obsm["X_pca"].shape[1]

        if dims < 1 or dims > n_computed:
            raise DimensionalityError(
                f"dims={dims} must be between 1 and the {n_computed} computed PCs"
            )
        if dims >= min(adata.n_obs, n_features):
            raise DimensionalityError(
                f"dims={dims} too large for {adata.n_obs} cells and {n_features} features"
            )
        if num_replicate < 1:
            raise DimensionalityError("num_replicate must be at least 1")
        if not 0 < prop_freq <= 1:
            raise DimensionalityError(f"prop_freq must be in (0, 1], got {prop_freq}")

        try:
            logger.info(
                f"Running JackStraw: {num_replicate} replicates, {dims} PCs, "
                f"prop_freq={prop_freq}"
            )
            data = np.asarray(adata.X[:, feature_index], dtype=np.float64)
            observed = np.abs(np.asarray(adata.varm["PCs"])[feature_index, :dims])
            n_random = min(max(3, int(n_features * prop_freq)), n_features)
            rng = np.random.default_rng(random_state)

            null_loadings = []
            with with_periodic_progress(
                "Running JackStraw replicates", self.progress_callback
            ):
                for _ in range(num_replicate):
                    null_loadings.append(
                        self._jackstraw_replicate(data, dims, n_random, rng)
                    )
            null_loadings = np.vstack(null_loadings)

            empirical_p = np.empty((n_features, dims))
            for pc in range(dims):
                null_sorted = np.sort(null_loadings[:, pc])
                n_not_greater = np.searchsorted(
                    null_sorted, observed[:, pc], side="right"
                )
                empirical_p[:, pc] = (len(null_sorted) - n_not_greater) / len(
                    null_sorted
                )

            adata_js = adata.copy()
            padded = np.full((adata_js.n_vars, dims), np.nan)
            padded[feature_index, :] = empirical_p
            adata_js.varm["jackstraw_p"] = padded
            adata_js.uns["jackstraw"] = {
                "null_loadings": null_loadings,
                "params": {
                    "dims": dims,
                    "num_replicate": num_replicate,
                    "prop_freq": prop_freq,
                    "random_state": random_state,
                },
            }

            stats = {
                "analysis_type": "jackstraw",
                "dims": dims,
                "num_replicate": num_replicate,
                "genes_per_replicate": n_random,
                "null_distribution_size": int(null_loadings.shape[0]),
                "n_features": n_features,
            }
            logger.info(
                f"JackStraw complete: {null_loadings.shape[0]} null loadings per PC"
            )

            ir = self._create_jackstraw_ir(dims, num_replicate, prop_freq, random_state)
            return adata_js, stats, ir

        except Exception as e:
            logger.exception(f"Error in JackStraw: {e}")
            raise DimensionalityError(f"JackStraw failed: {str(e)}")

    def _jackstraw_replicate(
        self, data: np.ndarray, dims: int, n_random: int, rng: np.random.Generator
    ) -> np.ndarray:
        """Shuffle ``n_random`` genes across cells, refit PCA, return their |loadings|."""
        permuted = data.copy()
        random_genes = rng.choice(data.shape[1], size=n_random, replace=False)
        for gene in random_genes:
            permuted[:, gene] = rng.permutation(permuted[:, gene])

        pca = PCA(
            n_components=dims,
            svd_solver="arpack",
            random_state=int(rng.integers(0, 2**31 - 1)),
        )
        pca.fit(permuted)
        return np.abs(pca.components_[:, random_genes].T)

    def score_jackstraw(
        self,
        adata: anndata.AnnData,
        dims: Optional[int] = None,
        score_thresh: float = 1e-5,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Score each PC from its JackStraw p-value distribution.

        For each PC the number of genes with empirical p <= ``score_thresh``
        is compared with the number expected under a uniform distribution,
        floor(n_genes * score_thresh), by a two-sample test of equal
        proportions with continuity correction. A PC without any gene below
        the threshold scores 1.

        Args:
            adata: AnnData with JackStraw results
            dims: Number of PCs to score (default: every tested PC)
            score_thresh: Per-gene p-value threshold

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]: AnnData with
            ``uns["jackstraw"]["scores"]``, stats and IR

        Raises:
            DimensionalityError: If JackStraw has not been run
        """
        if "jackstraw_p" not in adata.varm or "jackstraw" not in adata.uns:
            raise DimensionalityError("No JackStraw results found. Run jackstraw first")

        empirical_p = np.asarray(adata.varm["jackstraw_p"])
        empirical_p = empirical_p[~np.isnan(empirical_p).all(axis=1)]
        tested = empirical_p.shape[1]
        dims = tested if dims is None else dims
        if dims < 1 or dims > tested:
            raise DimensionalityError(f"dims={dims} must be between 1 and {tested}")

        n_genes = empirical_p.shape[0]
        expected = int(np.floor(n_genes * score_thresh))
        scores = []
        for pc in range(dims):
            observed = int((empirical_p[:, pc] <= score_thresh).sum())
            scores.append(self._proportion_test(observed, expected, n_genes))

        adata_scored = adata.copy()
        adata_scored.uns["jackstraw"] = dict(adata_scored.uns["jackstraw"])
        adata_scored.uns["jackstraw"]["scores"] = np.asarray(scores)
        adata_scored.uns["jackstraw"]["score_thresh"] = score_thresh

        pc_scores = {f"PC_{i + 1}": float(score) for i, score in enumerate(scores)}
        stats = {
            "analysis_type": "jackstraw_score",
            "dims": dims,
            "score_thresh": score_thresh,
            "pc_scores": pc_scores,
            "significant_pcs": [pc for pc, score in pc_scores.items() if score < 0.05],
        }
        logger.info(
            f"JackStraw scores: {len(stats['significant_pcs'])}/{dims} PCs with p < 0.05"
        )

        ir = AnalysisStep(
            operation="scflow.score_jackstraw",
            tool_name="score_jackstraw",
            description="Score PCs against the JackStraw null distribution",
            library="scflow",
            code_template=(
                "adata, js_stats, _ = DimensionalityService().score_jackstraw("
                "adata, dims={{ dims }}, score_thresh={{ score_thresh }})\n"
                'print(js_stats["pc_scores"])\n'
            ),
            imports=[
                "from scflow.tools.dimensionality_service import DimensionalityService"
            ],
            parameters={"dims": dims, "score_thresh": score_thresh},
        )
        return adata_scored, stats, ir

    @staticmethod
    def _proportion_test(observed: int, expected: int, n: int) -> float:
        """Two-sample equal-proportion test with Yates correction."""
        if observed == 0:
            return 1.0
        table = np.array([[observed, n - observed], [expected, n - expected]])
        try:
            _, p_value, _, _ = chi2_contingency(table, correction=True)
        except ValueError:
            return 1.0
        return float(p_value)

    def suggest_n_pcs(
        self,
        adata: anndata.AnnData,
        method: str = "elbow",
        alpha: float = 0.05,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Suggest how many PCs to use downstream.

        Methods:
            elbow: the PC with the largest distance to the straight line
                   joining the first and last points of the (min-max
                   normalized) standard deviation curve
            variance: the smaller of (a) the first PC where cumulative
                   variance exceeds 90% while the PC itself explains under 5%
                   and (b) one past the last PC whose share drops by more
                   than 0.1 percentage points to the next
            jackstraw: the length of the leading run of PCs whose JackStraw
                   score is below ``alpha`` (at least 1)

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]: AnnData with
            ``uns["n_pcs_suggestion"]``, stats listing every available
            estimate, and IR

        Raises:
            DimensionalityError: If the method is unknown or its inputs are missing
        """
        if method not in PC_SELECTION_METHODS:
            raise DimensionalityError(
                f"Unknown PC selection method: {method}. "
                f"Must be one of: {', '.join(PC_SELECTION_METHODS)}"
            )
        self._require_pca(adata, "stdev")

        stdev = np.asarray(adata.uns["pca"]["stdev"], dtype=float)
        estimates = {
            "elbow": elbow_point(stdev),
            "variance": variance_cutoff(stdev),
        }
        jackstraw_scores = adata.uns.get("jackstraw", {}).get("scores")
        if jackstraw_scores is not None:
            estimates["jackstraw"] = leading_significant_run(jackstraw_scores, alpha)
        elif method == "jackstraw":
            raise DimensionalityError(
                "No JackStraw scores found. Run jackstraw and score_jackstraw first"
            )

        n_pcs = int(estimates[method])
        adata_out = adata.copy()
        adata_out.uns["n_pcs_suggestion"] = {"method": method, "n_pcs": n_pcs}

        stats = {
            "analysis_type": "pc_selection",
            "method": method,
            "n_pcs": n_pcs,
            "estimates": {k: int(v) for k, v in estimates.items()},
        }
        logger.info(f"Suggested {n_pcs} PCs ({method}); all estimates: {stats['estimates']}")

        ir = AnalysisStep(
            operation="scflow.suggest_n_pcs",
            tool_name="suggest_n_pcs",
            description=f"Choose the number of PCs ({method})",
            library="scflow",
            code_template=(
                "adata, pc_stats, _ = DimensionalityService().suggest_n_pcs("
                "adata, method={{ method | py }}, alpha={{ alpha }})\n"
                'n_pcs = pc_stats["n_pcs"]\n'
            ),
            imports=[
                "from scflow.tools.dimensionality_service import DimensionalityService"
            ],
            parameters={"method": method, "alpha": alpha},
        )
        return adata_out, stats, ir

    def _create_pca_ir(
        self,
        n_comps: int,
        use_highly_variable: bool,
        svd_solver: str,
        random_state: int,
    ) -> AnalysisStep:
        code_template = """{% if use_highly_variable %}pca_genes = adata.var["highly_variable"].to_numpy(dtype=bool)
{% else %}pca_genes = np.ones(adata.n_vars, dtype=bool)
{% endif %}adata_pca = sc.AnnData(np.asarray(adata.X[:, pca_genes], dtype=np.float32))
sc.tl.pca(adata_pca, n_comps={{ n_comps }}, zero_center=True, svd_solver={{ svd_solver | py }}, random_state={{ random_state }})
loadings = np.zeros((adata.n_vars, {{ n_comps }}), dtype=np.float32)
loadings[pca_genes, :] = adata_pca.varm["PCs"]
adata.obsm["X_pca"] = adata_pca.obsm["X_pca"]
adata.varm["PCs"] = loadings
adata.uns["pca"] = {
    "variance": adata_pca.uns["pca"]["variance"],
    "variance_ratio": adata_pca.uns["pca"]["variance_ratio"],
    "stdev": np.sqrt(adata_pca.uns["pca"]["variance"]),
    "features": adata.var_names[pca_genes].tolist(),
}
"""
        return AnalysisStep(
            operation="scanpy.tl.pca",
            tool_name="run_pca",
            description=f"PCA with {n_comps} components",
            library="scanpy",
            code_template=code_template,
            imports=["import numpy as np", "import scanpy as sc"],
            parameters={
                "n_comps": n_comps,
                "use_highly_variable": use_highly_variable,
                "svd_solver": svd_solver,
                "random_state": random_state,
            },
            parameter_schema={
                "n_comps": ParameterSpec(
                    param_type="int",
                    default_value=n_comps,
                    validation_rule="0 < n_comps < min(n_cells, n_features)",
                    description="Number of principal components",
                ),
            },
            execution_context={"random_state": random_state},
        )

    def _create_jackstraw_ir(
        self, dims: int, num_replicate: int, prop_freq: float, random_state: int
    ) -> AnalysisStep:
        return AnalysisStep(
            operation="scflow.jackstraw",
            tool_name="jackstraw",
            description=f"JackStraw permutation test ({num_replicate} replicates)",
            library="scflow",
            code_template=(
                "adata, _, _ = DimensionalityService().jackstraw(adata, dims={{ dims }}, "
                "num_replicate={{ num_replicate }}, prop_freq={{ prop_freq }}, "
                "random_state={{ random_state }})\n"
            ),
            imports=[
                "from scflow.tools.dimensionality_service import DimensionalityService"
            ],
            parameters={
                "dims": dims,
                "num_replicate": num_replicate,
                "prop_freq": prop_freq,
                "random_state": random_state,
            },
            parameter_schema={
                "num_replicate": ParameterSpec(
                    param_type="int",
                    default_value=num_replicate,
                    validation_rule="num_replicate > 0",
                    description="Number of permutation replicates",
                ),
            },
            execution_context={"random_state": random_state},
        )


def elbow_point(stdev: np.ndarray) -> int:
    """1-based index of the point farthest from the chord of the normalized curve."""
    n = len(stdev)
    if n <= 2:
        return n
    x = np.linspace(0.0, 1.0, n)
    span = stdev.max() - stdev.min()
    if span == 0:
        return 1
    y = (stdev - stdev.min()) / span
    # distance of (x_i, y_i) to the line through (x_0, y_0) and (x_n, y_n)
    dx, dy = x[-1] - x[0], y[-1] - y[0]
    distance = np.abs(dy * x - dx * y + x[-1] * y[0] - y[-1] * x[0]) / np.hypot(dx, dy)
    return int(np.argmax(distance)) + 1


def variance_cutoff(stdev: np.ndarray) -> int:
    """Smaller of the cumulative-variance and variance-drop cutoffs."""
    n = len(stdev)
    pct = stdev / stdev.sum() * 100
    cumulative = np.cumsum(pct)

    candidates = []
    first = np.where((cumulative > 90) & (pct < 5))[0]
    if first.size:
        candidates.append(int(first[0]) + 1)
    drops = np.where((pct[:-1] - pct[1:]) > 0.1)[0]
    if drops.size:
        candidates.append(int(drops[-1]) + 2)
    return min(candidates) if candidates else n


def leading_significant_run(scores, alpha: float = 0.05) -> int:
    """Number of leading PCs whose score is below alpha, at least 1."""
    count = 0
    for score in np.asarray(scores, dtype=float):
        if score >= alpha:
            break
        count += 1
    return max(count, 1)
