"""
Workflow parameters with Pydantic validation.

Defaults reproduce the standard PBMC 3k guided clustering analysis: load
genes seen in at least 3 cells and cells with at least 200 genes, keep cells
with 200 < nFeature < 2500 and percent.mt < 5, log-normalize to 10,000,
select 2,000 variable genes, scale every gene, compute 50 PCs, cluster on the
first 10 at resolution 0.5 and embed with UMAP.

Example:
    >>> from scflow.config.workflow_config import WorkflowConfig
    >>> config = WorkflowConfig()
    >>> config.clustering.resolution = 0.8
    >>> config.save(Path("workflow.json"))
    >>> WorkflowConfig.load(Path("workflow.json")).clustering.resolution
    0.8
"""

import json
from pathlib import Path
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from scflow.config.settings import get_settings
from scflow.core.exceptions import ParameterValidationError
from scflow.utils.logger import get_logger

logger = get_logger(__name__)

NORMALIZATION_METHODS = ["LogNormalize", "RC", "CLR"]
FEATURE_SELECTION_METHODS = ["vst", "mean_var_plot", "dispersion", "deviance"]
PC_SELECTION_METHODS = ["elbow", "variance", "jackstraw"]
CLUSTERING_ALGORITHMS = ["louvain", "leiden"]
DE_TESTS = ["wilcoxon", "t-test", "t-test_overestim_var"]


def _check_choice(value: str, choices: List[str], name: str) -> str:
    if value not in choices:
        raise ValueError(
            f"Invalid {name}: '{value}'. Must be one of: {', '.join(choices)}"
        )
    return value


class _StageConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True, extra="forbid")


class IngestionConfig(_StageConfig):
    """Reading the 10X matrix and load-time feature/cell minimums."""

    var_names: Literal["gene_symbols", "gene_ids"] = Field(
        "gene_symbols", description="Column of the features file used as gene names"
    )
    min_cells: int = Field(3, ge=0, description="Keep genes detected in >= min_cells cells")
    min_features: int = Field(
        200, ge=0, description="Keep cells with >= min_features detected genes"
    )


class QCConfig(_StageConfig):
    """Per-cell QC thresholds; bounds are strict and None disables a bound."""

    mt_prefix: str = Field("MT-", description="Prefix of mitochondrial gene symbols")
    min_features: Optional[int] = Field(200, ge=0)
    max_features: Optional[int] = Field(2500, gt=0)
    max_percent_mt: Optional[float] = Field(5.0, ge=0, le=100)
    min_counts: Optional[int] = Field(None, ge=0)
    max_counts: Optional[int] = Field(None, gt=0)


class NormalizationConfig(_StageConfig):
    method: str = Field("LogNormalize", description="LogNormalize | RC | CLR")
    scale_factor: float = Field(10000, gt=0)

    @field_validator("method")
    @classmethod
    def validate_method(cls, v):
        return _check_choice(v, NORMALIZATION_METHODS, "normalization method")


class FeatureSelectionConfig(_StageConfig):
    method: str = Field("vst", description="vst | mean_var_plot | dispersion | deviance")
    n_top_genes: int = Field(2000, gt=0)

    @field_validator("method")
    @classmethod
    def validate_method(cls, v):
        return _check_choice(v, FEATURE_SELECTION_METHODS, "feature selection method")


class ScalingConfig(_StageConfig):
    features: Literal["all", "variable"] = "all"
    vars_to_regress: List[str] = Field(default_factory=list)
    max_value: Optional[float] = Field(10.0, gt=0)


class PCAConfig(_StageConfig):
    """
    PCA and choice of dimensionality.

    ``n_dims`` is the number of PCs used downstream. "auto" picks it with
    ``selection_method``; "jackstraw" turns on the permutation test.
    """

    n_comps: int = Field(50, gt=1)
    n_dims: Union[int, Literal["auto"]] = 10
    selection_method: str = "elbow"
    run_jackstraw: bool = False
    jackstraw_dims: int = Field(20, gt=0)
    num_replicate: int = Field(100, gt=0)
    prop_freq: float = Field(0.01, gt=0, le=1)
    score_thresh: float = Field(1e-5, gt=0, lt=1)
    alpha: float = Field(0.05, gt=0, lt=1)
    random_state: int = Field(default_factory=lambda: get_settings().RANDOM_STATE)

    @field_validator("n_dims")
    @classmethod
    def validate_n_dims(cls, v):
        if isinstance(v, int) and v < 1:
            raise ValueError("n_dims must be a positive integer or 'auto'")
        return v

    @field_validator("selection_method")
    @classmethod
    def validate_selection_method(cls, v):
        return _check_choice(v, PC_SELECTION_METHODS, "PC selection method")


class NeighborsConfig(_StageConfig):
    k_param: int = Field(20, gt=1)
    prune_snn: float = Field(1 / 15, ge=0, lt=1)


class ClusteringConfig(_StageConfig):
    algorithm: str = "louvain"
    resolution: float = Field(0.5, gt=0)
    resolutions: Optional[List[float]] = None
    random_state: int = Field(default_factory=lambda: get_settings().RANDOM_STATE)

    @field_validator("algorithm")
    @classmethod
    def validate_algorithm(cls, v):
        return _check_choice(v, CLUSTERING_ALGORITHMS, "clustering algorithm")

    @field_validator("resolutions")
    @classmethod
    def validate_resolutions(cls, v):
        if v is not None:
            if not v:
                raise ValueError("resolutions must not be empty")
            if any(r <= 0 for r in v):
                raise ValueError("resolutions must all be positive")
        return v


class EmbeddingConfig(_StageConfig):
    umap: bool = True
    tsne: bool = False
    n_neighbors: int = Field(30, gt=1)
    min_dist: float = Field(0.3, ge=0)
    metric: str = "cosine"
    perplexity: float = Field(30.0, gt=0)
    random_state: int = 42


class MarkerConfig(_StageConfig):
    enabled: bool = True
    test: str = "wilcoxon"
    only_pos: bool = True
    min_pct: float = Field(0.25, ge=0, le=1)
    logfc_threshold: float = Field(0.25, ge=0)
    top_n: int = Field(2, gt=0)

    @field_validator("test")
    @classmethod
    def validate_test(cls, v):
        return _check_choice(v, DE_TESTS, "differential expression test")


class AnnotationConfig(_StageConfig):
    """
    Manual cell-type labels.

    ``labels`` is either a list with one name per cluster (cluster order) or
    a mapping from cluster label to name.
    """

    labels: Optional[Union[List[str], Dict[str, str]]] = None
    suggest: bool = True
    key_added: str = "cell_type"


class WorkflowConfig(BaseModel):
    """Parameters for every stage of the standard workflow."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    qc: QCConfig = Field(default_factory=QCConfig)
    normalization: NormalizationConfig = Field(default_factory=NormalizationConfig)
    feature_selection: FeatureSelectionConfig = Field(
        default_factory=FeatureSelectionConfig
    )
    scaling: ScalingConfig = Field(default_factory=ScalingConfig)
    pca: PCAConfig = Field(default_factory=PCAConfig)
    neighbors: NeighborsConfig = Field(default_factory=NeighborsConfig)
    clustering: ClusteringConfig = Field(default_factory=ClusteringConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    markers: MarkerConfig = Field(default_factory=MarkerConfig)
    annotation: AnnotationConfig = Field(default_factory=AnnotationConfig)

    def save(self, path: Path) -> None:
        """
        Write the configuration as indented JSON.

        Raises:
            IOError: If write operation fails
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            path.write_text(self.model_dump_json(indent=2))
            logger.info(f"Saved workflow config to {path}")
        except Exception as e:
            logger.error(f"Failed to save workflow config: {e}")
            raise

    @classmethod
    def load(cls, path: Path) -> "WorkflowConfig":
        """
        Load a configuration file.

        A missing file yields the defaults; unreadable JSON or an invalid
        schema raises.

        Raises:
            ParameterValidationError: If the file content is invalid
        """
        path = Path(path)
        if not path.exists():
            logger.debug(f"No workflow config found at {path}, using defaults")
            return cls()

        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise ParameterValidationError(
                f"Corrupted workflow config at {path}: {e}", details={"path": str(path)}
            ) from e

        try:
            config = cls(**data)
        except ValidationError as e:
            raise ParameterValidationError(
                f"Invalid workflow config at {path}: {e}",
                details={"path": str(path), "errors": e.errors()},
            ) from e

        logger.info(f"Loaded workflow config from {path}")
        return config
