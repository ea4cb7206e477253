"""
Unit tests for the ingestion service.

Covers reading both 10X directory layouts, load-time minimums, duplicate
gene handling and structural validation of count matrices.
"""

import anndata as ad
import numpy as np
import pandas as pd
import pytest
import scipy.sparse as spr

from scflow.core.analysis_ir import AnalysisStep
from scflow.core.exceptions import DataValidationError, IngestionError
from scflow.tools.ingestion_service import IngestionService
from tests.mock_data.factories import write_10x_mtx


@pytest.fixture
def service():
    return IngestionService()


class TestRead10xMtx:
    def test_legacy_directory(self, service, tenx_dir, raw_counts):
        adata, stats, ir = service.read_10x_mtx(tenx_dir)

        assert adata.shape == raw_counts.shape
        assert adata.obs_names.tolist() == raw_counts.obs_names.tolist()
        assert adata.var_names.tolist() == raw_counts.var_names.tolist()
        assert (adata.layers["counts"] != raw_counts.X).nnz == 0
        assert stats["analysis_type"] == "ingestion"
        assert stats["legacy_format"] is True
        assert stats["format"] == "10x_mtx"
        assert isinstance(ir, AnalysisStep)
        assert "sc.read_10x_mtx" in ir.render()

    def test_v3_directory(self, service, tenx_v3_dir, raw_counts):
        adata, stats, _ = service.read_10x_mtx(tenx_v3_dir)

        assert adata.shape == raw_counts.shape
        assert stats["legacy_format"] is False
        assert adata.var["gene_ids"].tolist() == raw_counts.var["gene_ids"].tolist()

    def test_uncompressed_v3_directory(self, service, tmp_path, raw_counts):
        path = write_10x_mtx(raw_counts, tmp_path / "v3", legacy=False, compressed=False)

        adata, stats, ir = service.read_10x_mtx(path)

        assert adata.shape == raw_counts.shape
        assert adata.var_names.tolist() == raw_counts.var_names.tolist()
        assert (adata.layers["counts"] != raw_counts.X).nnz == 0
        assert stats["legacy_format"] is False
        assert stats["compressed"] is False
        assert "compressed=False" in ir.render()

    def test_gzipped_legacy_directory(self, service, tmp_path, raw_counts):
        path = write_10x_mtx(raw_counts, tmp_path / "legacy_gz", legacy=True, compressed=True)

        adata, stats, ir = service.read_10x_mtx(path)

        assert adata.shape == raw_counts.shape
        assert adata.obs_names.tolist() == raw_counts.obs_names.tolist()
        assert adata.var_names.tolist() == raw_counts.var_names.tolist()
        assert adata.var["gene_ids"].tolist() == raw_counts.var["gene_ids"].tolist()
        assert (adata.layers["counts"] != raw_counts.X).nnz == 0
        assert stats["legacy_format"] is True
        assert stats["compressed"] is True
        code = ir.render()
        assert "sc.read_mtx" in code
        assert "genes.tsv.gz" in code

    def test_gzipped_legacy_gene_ids(self, service, tmp_path, raw_counts):
        path = write_10x_mtx(raw_counts, tmp_path / "legacy_gz", legacy=True, compressed=True)

        adata, _, _ = service.read_10x_mtx(path, var_names="gene_ids")

        assert adata.var_names.tolist() == raw_counts.var["gene_ids"].tolist()

    def test_gene_ids_as_index(self, service, tenx_dir, raw_counts):
        adata, _, _ = service.read_10x_mtx(tenx_dir, var_names="gene_ids")
        assert adata.var_names.tolist() == raw_counts.var["gene_ids"].tolist()

    def test_orig_ident_and_active_ident(self, service, tenx_dir):
        adata, _, _ = service.read_10x_mtx(tenx_dir, project="pbmc3k")

        assert adata.uns["active_ident"] == "orig_ident"
        assert set(adata.obs["orig_ident"]) == {"pbmc3k"}

    def test_load_time_minimums(self, service, tenx_dir, raw_counts):
        adata, stats, _ = service.read_10x_mtx(tenx_dir, min_cells=3, min_features=100)

        detected = np.asarray((raw_counts.X > 0).sum(axis=1)).ravel()
        assert adata.n_obs == int((detected >= 100).sum())
        cells_per_gene = np.asarray((adata.X > 0).sum(axis=0)).ravel()
        assert cells_per_gene.min() >= 3
        assert stats["cells_removed"] == raw_counts.n_obs - adata.n_obs

    def test_duplicate_symbols_made_unique(self, service, tmp_path, raw_counts):
        symbols = raw_counts.var_names.tolist()
        symbols[1] = symbols[0]
        path = write_10x_mtx(raw_counts, tmp_path / "dup", symbols=symbols)

        adata, stats, _ = service.read_10x_mtx(path)

        assert adata.var_names.is_unique
        assert adata.var_names[1] == f"{symbols[0]}-1"
        assert stats["duplicate_genes_renamed"] == 1

    def test_missing_directory(self, service, tmp_path):
        with pytest.raises(IngestionError, match="not found"):
            service.read_10x_mtx(tmp_path / "nowhere")

    def test_incomplete_directory(self, service, tenx_dir):
        (tenx_dir / "barcodes.tsv").unlink()

        with pytest.raises(IngestionError) as exc_info:
            service.read_10x_mtx(tenx_dir)
        assert exc_info.value.details["missing_files"] == ["barcodes.tsv"]

    def test_invalid_var_names(self, service, tenx_dir):
        with pytest.raises(IngestionError, match="var_names"):
            service.read_10x_mtx(tenx_dir, var_names="symbols")


class TestRead10xH5:
    def test_missing_file(self, service, tmp_path):
        with pytest.raises(IngestionError, match="not found"):
            service.read_10x_h5(tmp_path / "filtered_feature_bc_matrix.h5")

    def test_unreadable_file(self, service, tmp_path):
        path = tmp_path / "broken.h5"
        path.write_bytes(b"not an hdf5 file")

        with pytest.raises(IngestionError, match="Failed to read"):
            service.read_10x_h5(path)


class TestFromAnnData:
    def test_keeps_input_untouched(self, service, raw_counts):
        adata, stats, ir = service.from_anndata(raw_counts, min_cells=3)

        assert "counts" not in raw_counts.layers
        assert "counts" in adata.layers
        assert stats["format"] == "anndata"
        assert ir.tool_name == "from_anndata"

    def test_dense_input_converted_to_csr(self, service):
        dense = ad.AnnData(
            X=np.array([[1, 0, 2], [0, 3, 1]], dtype=np.float32),
            obs=pd.DataFrame(index=["c1", "c2"]),
            var=pd.DataFrame(index=["g1", "g2", "g3"]),
        )
        adata, _, _ = service.from_anndata(dense)

        assert spr.issparse(adata.X)
        assert adata.X.format == "csr"


class TestValidateCounts:
    def _adata(self, X, barcodes=None, genes=None):
        n_obs, n_vars = X.shape
        return ad.AnnData(
            X=X,
            obs=pd.DataFrame(index=barcodes or [f"c{i}" for i in range(n_obs)]),
            var=pd.DataFrame(index=genes or [f"g{i}" for i in range(n_vars)]),
        )

    def test_valid_matrix(self, service):
        checks = service.validate_counts(self._adata(np.ones((3, 2), dtype=np.float32)))

        assert checks["non_negative"]
        assert checks["integer_valued"]
        assert checks["unique_barcodes"]

    def test_negative_counts(self, service):
        X = np.array([[1, -1], [0, 2]], dtype=np.float32)
        with pytest.raises(DataValidationError, match="negative"):
            service.validate_counts(self._adata(X))

    def test_duplicate_barcodes(self, service):
        adata = self._adata(np.ones((2, 2), dtype=np.float32), barcodes=["AAAC-1", "AAAC-1"])

        with pytest.raises(DataValidationError) as exc_info:
            service.validate_counts(adata)
        assert "duplicated cell barcodes" in exc_info.value.details["violations"][0]

    def test_non_integer_values_tolerated(self, service):
        X = np.array([[0.5, 1.0], [2.0, 0.0]], dtype=np.float32)
        checks = service.validate_counts(self._adata(X))
        assert checks["integer_valued"] is False

    def test_duplicate_genes_tolerated(self, service):
        adata = self._adata(np.ones((2, 2), dtype=np.float32), genes=["CD14", "CD14"])
        assert service.validate_counts(adata)["unique_genes"] is False
