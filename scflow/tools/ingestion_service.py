"""
Count matrix ingestion service.

Reads 10X Genomics output (market-matrix directories or HDF5 files) into an
AnnData object, checks the structural invariants of a count matrix and
applies the load-time gene/cell minimums.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import anndata
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as spr

from scflow.core.analysis_ir import AnalysisStep, ParameterSpec
from scflow.core.exceptions import DataValidationError, IngestionError
from scflow.utils.logger import get_logger

logger = get_logger(__name__)

# Files of a 10X directory by role; each may be plain or gzipped.
# genes.tsv is the CellRanger < 3 name of features.tsv
TENX_FILES = {
    "matrix": ("matrix.mtx",),
    "barcodes": ("barcodes.tsv",),
    "features": ("features.tsv", "genes.tsv"),
}


class IngestionService:
    """
    Stateless service turning 10X output into a validated AnnData.

    Cells are observations and genes are variables. Raw counts are kept in
    ``layers["counts"]`` so later stages can always get back to them.
    """

    def __init__(self, config=None, **kwargs):
        """
        Initialize the ingestion service.

        Args:
            config: Optional configuration dict
            **kwargs: Additional arguments (ignored)
        """
        logger.debug("Initializing stateless IngestionService")
        self.config = config or {}

    def _locate_10x_files(self, path: Path) -> Tuple[Dict[str, Path], List[str]]:
        """Find each 10X file, plain or gzipped; return the files found and the names missing."""
        found, missing = {}, []
        for role, names in TENX_FILES.items():
            candidates = [path / f"{name}{ext}" for name in names for ext in ("", ".gz")]
            match = next((c for c in candidates if c.is_file()), None)
            if match is None:
                missing.append(" or ".join(names))
            else:
                found[role] = match
        return found, missing

    def _read_10x_files(self, files: Dict[str, Path], var_names: str) -> anndata.AnnData:
        """Read a 10X directory file by file, for layouts sc.read_10x_mtx does not accept."""
        adata = sc.read_mtx(str(files["matrix"])).T
        features = pd.read_csv(files["features"], header=None, sep="\t")
        ids = features[0].astype(str).values
        symbols = features[1 if features.shape[1] > 1 else 0].astype(str).values
        if var_names == "gene_symbols":
            adata.var_names = symbols
            adata.var["gene_ids"] = ids
        else:
            adata.var_names = ids
            adata.var["gene_symbols"] = symbols
        adata.obs_names = pd.read_csv(files["barcodes"], header=None)[0].astype(str).values
        if features.shape[1] > 2:
            adata.var["feature_types"] = features[2].values
            adata = adata[:, (features[2] == "Gene Expression").to_numpy()].copy()
        return adata

    def read_10x_mtx(
        self,
        path: Union[str, Path],
        var_names: str = "gene_symbols",
        min_cells: int = 0,
        min_features: int = 0,
        project: str = "scflow",
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Read a 10X market-matrix directory.

        The directory holds ``matrix.mtx``, ``barcodes.tsv`` and either
        ``genes.tsv`` (CellRanger < 3) or ``features.tsv`` (CellRanger >= 3),
        each file plain or gzipped.

        Args:
            path: Directory containing the matrix files
            var_names: "gene_symbols" or "gene_ids" for the gene index
            min_cells: Keep genes detected in at least this many cells
            min_features: Keep cells with at least this many detected genes
            project: Value stored in ``obs["orig_ident"]``

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]: Loaded data, stats and IR

        Raises:
            IngestionError: If the directory is missing, incomplete or unreadable
            DataValidationError: If the matrix violates count invariants
        """
        path = Path(path)
        logger.info(f"Reading 10X matrix directory: {path}")

        if not path.is_dir():
            raise IngestionError(
                f"10X directory not found: {path}",
                details={
                    "path": str(path),
                    "suggestions": [
                        "Check the path points to the folder holding matrix.mtx",
                        "For an .h5 file use read_10x_h5 instead",
                    ],
                },
            )

        files, missing = self._locate_10x_files(path)
        if missing:
            raise IngestionError(
                f"Incomplete 10X directory {path}: missing {', '.join(missing)}",
                details={
                    "path": str(path),
                    "missing_files": missing,
                    "suggestions": [
                        "A 10X directory needs matrix.mtx, barcodes.tsv and "
                        "features.tsv (or genes.tsv), plain or gzipped",
                    ],
                },
            )

        if var_names not in ("gene_symbols", "gene_ids"):
            raise IngestionError(
                f"Invalid var_names '{var_names}'. Must be 'gene_symbols' or 'gene_ids'"
            )

        legacy = files["features"].name.startswith("genes.tsv")
        gzipped = [f.suffix == ".gz" for f in files.values()]
        compressed = all(gzipped)
        # scanpy reads legacy directories only uncompressed, and v3 ones only
        # with the same compression for all three files
        if legacy:
            scanpy_layout = not any(gzipped)
        else:
            scanpy_layout = compressed or not any(gzipped)

        try:
            if scanpy_layout:
                adata = sc.read_10x_mtx(
                    path,
                    var_names=var_names,
                    make_unique=False,
                    cache=False,
                    compressed=compressed,
                )
            else:
                adata = self._read_10x_files(files, var_names)
        except Exception as e:
            logger.exception(f"Error reading 10X directory {path}: {e}")
            raise IngestionError(
                f"Failed to read 10X directory {path}: {str(e)}",
                details={"path": str(path), "legacy_format": legacy},
            )

        adata, stats = self._prepare_counts(adata, min_cells, min_features, project)
        stats.update(
            {
                "source": str(path),
                "format": "10x_mtx",
                "legacy_format": legacy,
                "compressed": compressed,
            }
        )

        if scanpy_layout:
            ir = self._create_read_ir(
                "scanpy.read_10x_mtx",
                "read_10x_mtx",
                "sc.read_10x_mtx({{ path | py }}, var_names={{ var_names | py }}, "
                "compressed={{ compressed | py }}, cache=False)",
                str(path),
                var_names,
                min_cells,
                min_features,
                extra_parameters={"compressed": compressed},
            )
        else:
            ir = self._create_read_ir(
                "scanpy.read_mtx",
                "read_10x_mtx",
                """adata = sc.read_mtx({{ files.matrix | py }}).T
features = pd.read_csv({{ files.features | py }}, header=None, sep="\\t")
adata.var_names = features[{{ name_column }}].astype(str).values
adata.obs_names = pd.read_csv({{ files.barcodes | py }}, header=None)[0].astype(str).values
if features.shape[1] > 2:
    adata = adata[:, (features[2] == "Gene Expression").to_numpy()].copy()
adata.var_names_make_unique()""",
                str(path),
                var_names,
                min_cells,
                min_features,
                imports=["import pandas as pd"],
                extra_parameters={
                    "files": {role: str(f) for role, f in files.items()},
                    "name_column": 0 if var_names == "gene_ids" else 1,
                },
            )
        return adata, stats, ir

    def read_10x_h5(
        self,
        path: Union[str, Path],
        genome: Optional[str] = None,
        var_names: str = "gene_symbols",
        min_cells: int = 0,
        min_features: int = 0,
        project: str = "scflow",
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Read a 10X HDF5 feature-barcode matrix (``filtered_feature_bc_matrix.h5``).

        Arguments and return value follow ``read_10x_mtx``; ``genome``
        selects one genome from multi-genome files.

        Raises:
            IngestionError: If the file is missing or unreadable
            DataValidationError: If the matrix violates count invariants
        """
        path = Path(path)
        logger.info(f"Reading 10X HDF5 file: {path}")

        if not path.is_file():
            raise IngestionError(
                f"10X HDF5 file not found: {path}",
                details={
                    "path": str(path),
                    "suggestions": ["For a matrix directory use read_10x_mtx instead"],
                },
            )

        try:
            adata = sc.read_10x_h5(path, genome=genome, gex_only=True)
        except Exception as e:
            logger.exception(f"Error reading 10X HDF5 file {path}: {e}")
            raise IngestionError(
                f"Failed to read 10X HDF5 file {path}: {str(e)}",
                details={"path": str(path)},
            )

        if var_names == "gene_ids":
            if "gene_ids" not in adata.var:
                raise IngestionError(f"No gene_ids column in {path}")
            adata.var["gene_symbols"] = adata.var_names.astype(str)
            adata.var_names = adata.var["gene_ids"].astype(str).values

        adata, stats = self._prepare_counts(adata, min_cells, min_features, project)
        stats.update({"source": str(path), "format": "10x_h5"})

        ir = self._create_read_ir(
            "scanpy.read_10x_h5",
            "read_10x_h5",
            "sc.read_10x_h5({{ path | py }}, genome={{ genome | py }}, gex_only=True)",
            str(path),
            var_names,
            min_cells,
            min_features,
            genome=genome,
        )
        return adata, stats, ir

    def from_anndata(
        self,
        adata: anndata.AnnData,
        min_cells: int = 0,
        min_features: int = 0,
        project: str = "scflow",
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Validate an in-memory count matrix and prepare it like a file read.

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]: Prepared copy, stats and IR

        Raises:
            DataValidationError: If the matrix violates count invariants
        """
        logger.info(
            f"Preparing in-memory matrix: {adata.n_obs} cells × {adata.n_vars} genes"
        )
        adata_prepared, stats = self._prepare_counts(
            adata.copy(), min_cells, min_features, project
        )
        stats.update({"source": "anndata", "format": "anndata"})

        ir = self._create_read_ir(
            "anndata.AnnData",
            "from_anndata",
            "# Counts were supplied as an in-memory AnnData\n"
            'adata = ad.read_h5ad("counts.h5ad")',
            "anndata",
            "gene_symbols",
            min_cells,
            min_features,
            imports=["import anndata as ad"],
        )
        return adata_prepared, stats, ir

    def validate_counts(self, adata: anndata.AnnData) -> Dict[str, Any]:
        """
        Check the structural invariants of a count matrix.

        Duplicated cell barcodes, negative values and an empty matrix are
        hard violations. Duplicated gene names and non-integer values are
        reported but tolerated.

        Returns:
            Dict[str, Any]: Result of each check

        Raises:
            DataValidationError: If a hard invariant is violated
        """
        X = adata.X
        data = X.data if spr.issparse(X) else np.asarray(X).ravel()

        checks = {
            "n_cells": int(adata.n_obs),
            "n_genes": int(adata.n_vars),
            "non_empty": adata.n_obs > 0 and adata.n_vars > 0,
            "unique_barcodes": bool(adata.obs_names.is_unique),
            "unique_genes": bool(adata.var_names.is_unique),
            "non_negative": bool(data.size == 0 or data.min() >= 0),
            "integer_valued": bool(
                data.size == 0 or np.all(np.equal(np.mod(data, 1), 0))
            ),
        }

        violations = []
        if not checks["non_empty"]:
            violations.append("matrix has no cells or no genes")
        if not checks["unique_barcodes"]:
            duplicated = adata.obs_names[adata.obs_names.duplicated()].unique()
            violations.append(
                f"{len(duplicated)} duplicated cell barcodes (e.g. {duplicated[0]})"
            )
        if not checks["non_negative"]:
            violations.append(f"negative counts found (minimum {data.min()})")

        if violations:
            raise DataValidationError(
                f"Invalid count matrix: {'; '.join(violations)}",
                details={"violations": violations, "checks": checks},
            )

        if not checks["unique_genes"]:
            logger.warning("Gene names are not unique; duplicates will be suffixed")
        if not checks["integer_valued"]:
            logger.warning(
                "Count matrix contains non-integer values; "
                "methods that model raw counts may misbehave"
            )
        return checks

    def _prepare_counts(
        self,
        adata: anndata.AnnData,
        min_cells: int,
        min_features: int,
        project: str,
    ) -> Tuple[anndata.AnnData, Dict[str, Any]]:
        """Validate, make gene names unique, keep raw counts and apply load-time minimums."""
        checks = self.validate_counts(adata)

        n_duplicate_genes = int(adata.var_names.duplicated().sum())
        if n_duplicate_genes:
            adata.var_names_make_unique()

        if not spr.issparse(adata.X):
            adata.X = spr.csr_matrix(adata.X)
        elif adata.X.format != "csr":
            adata.X = adata.X.tocsr()

        initial_cells, initial_genes = adata.n_obs, adata.n_vars

        if min_features > 0:
            genes_per_cell = np.asarray((adata.X > 0).sum(axis=1)).ravel()
            adata = adata[genes_per_cell >= min_features, :].copy()
        if min_cells > 0:
            cells_per_gene = np.asarray((adata.X > 0).sum(axis=0)).ravel()
            adata = adata[:, cells_per_gene >= min_cells].copy()

        if adata.n_obs == 0 or adata.n_vars == 0:
            raise DataValidationError(
                f"No data left after load-time filtering "
                f"(min_cells={min_cells}, min_features={min_features})",
                details={"initial_cells": initial_cells, "initial_genes": initial_genes},
            )

        adata.layers["counts"] = adata.X.copy()
        adata.obs["orig_ident"] = pd.Categorical([project] * adata.n_obs)
        adata.uns["active_ident"] = "orig_ident"

        n_nonzero = adata.X.nnz
        stats = {
            "analysis_type": "ingestion",
            "initial_cells": initial_cells,
            "initial_genes": initial_genes,
            "n_cells": int(adata.n_obs),
            "n_genes": int(adata.n_vars),
            "cells_removed": initial_cells - int(adata.n_obs),
            "genes_removed": initial_genes - int(adata.n_vars),
            "duplicate_genes_renamed": n_duplicate_genes,
            "total_counts": float(adata.X.sum()),
            "sparsity": float(1 - n_nonzero / (adata.n_obs * adata.n_vars)),
            "integer_valued": checks["integer_valued"],
            "min_cells": min_cells,
            "min_features": min_features,
        }
        logger.info(
            f"Loaded {adata.n_obs} cells × {adata.n_vars} genes "
            f"({stats['cells_removed']} cells, {stats['genes_removed']} genes "
            f"below load-time minimums)"
        )
        return adata, stats

    def _create_read_ir(
        self,
        operation: str,
        tool_name: str,
        read_call: str,
        path: str,
        var_names: str,
        min_cells: int,
        min_features: int,
        genome: Optional[str] = None,
        imports: Optional[List[str]] = None,
        extra_parameters: Optional[Dict[str, Any]] = None,
    ) -> AnalysisStep:
        """
        Create Intermediate Representation for reading a count matrix.

        Args:
            operation: Library call performing the read
            tool_name: Service method name
            read_call: Template of the read expression or statement
            path: Source path
            var_names: Gene index column
            min_cells: Load-time gene minimum
            min_features: Load-time cell minimum
            genome: Genome for HDF5 files
            imports: Extra import statements
            extra_parameters: Further values referenced by ``read_call``

        Returns:
            AnalysisStep with loading code template
        """
        parameter_schema = {
            "min_cells": ParameterSpec(
                param_type="int",
                default_value=min_cells,
                validation_rule="min_cells >= 0",
                description="Keep genes detected in at least this many cells",
            ),
            "min_features": ParameterSpec(
                param_type="int",
                default_value=min_features,
                validation_rule="min_features >= 0",
                description="Keep cells with at least this many detected genes",
            ),
        }

        if read_call.startswith("sc."):
            read_block = f"adata = {read_call}\nadata.var_names_make_unique()"
        else:
            read_block = read_call

        code_template = (
            read_block
            + """
{% if min_features %}adata = adata[np.asarray((adata.X > 0).sum(axis=1)).ravel() >= {{ min_features }}, :].copy()
{% endif %}{% if min_cells %}adata = adata[:, np.asarray((adata.X > 0).sum(axis=0)).ravel() >= {{ min_cells }}].copy()
{% endif %}adata.layers["counts"] = adata.X.copy()
print(f"Loaded {adata.n_obs} cells x {adata.n_vars} genes")
"""
        )

        return AnalysisStep(
            operation=operation,
            tool_name=tool_name,
            description=f"Load count matrix from {path}",
            library="scanpy",
            code_template=code_template,
            imports=["import numpy as np", "import scanpy as sc"] + (imports or []),
            parameters={
                "path": path,
                "var_names": var_names,
                "genome": genome,
                "min_cells": min_cells,
                "min_features": min_features,
                **(extra_parameters or {}),
            },
            parameter_schema=parameter_schema,
            input_entities=[path],
            output_entities=["adata"],
        )
