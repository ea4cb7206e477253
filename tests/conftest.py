"""
Pytest configuration and fixtures for the scflow test suite.

Pipeline fixtures are session scoped and build on each other stage by stage.
Services never modify their input, so tests share these objects; a test
that changes an AnnData in place must work on a copy.
"""

import logging
from pathlib import Path

import anndata as ad
import pytest
from faker import Faker

from scflow.config.workflow_config import WorkflowConfig
from scflow.tools.clustering_service import ClusteringService
from scflow.tools.dimensionality_service import DimensionalityService
from scflow.tools.ingestion_service import IngestionService
from scflow.tools.preprocessing_service import PreprocessingService
from scflow.tools.quality_service import QualityService
from tests.mock_data.base import DEFAULT_DATASET_CONFIG
from tests.mock_data.factories import PBMCLikeDataFactory, write_10x_mtx

# Suppress library chatter during testing
logging.getLogger("scanpy").setLevel(logging.ERROR)
logging.getLogger("anndata").setLevel(logging.ERROR)
logging.getLogger("numba").setLevel(logging.ERROR)

fake = Faker()
Faker.seed(42)

# Analysis parameters sized for the synthetic dataset
N_TOP_GENES = 150
N_COMPS = 20
DIMS = 10
K_PARAM = 20


# ==============================================================================
# Pytest Configuration Hooks
# ==============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        path = str(item.fspath)
        if "unit" in path:
            item.add_marker(pytest.mark.unit)
        elif "integration" in path:
            item.add_marker(pytest.mark.integration)


# ==============================================================================
# Raw Data Fixtures
# ==============================================================================


@pytest.fixture(scope="session")
def raw_counts() -> ad.AnnData:
    """PBMC-like raw counts: three cell types plus a few damaged cells."""
    return PBMCLikeDataFactory(config=DEFAULT_DATASET_CONFIG)


@pytest.fixture
def tenx_dir(tmp_path: Path, raw_counts: ad.AnnData) -> Path:
    """Legacy (CellRanger < 3) 10X directory holding ``raw_counts``."""
    return write_10x_mtx(raw_counts, tmp_path / "hg19", legacy=True)


@pytest.fixture
def tenx_v3_dir(tmp_path: Path, raw_counts: ad.AnnData) -> Path:
    """Gzipped (CellRanger >= 3) 10X directory holding ``raw_counts``."""
    return write_10x_mtx(raw_counts, tmp_path / "filtered_feature_bc_matrix", legacy=False)


@pytest.fixture
def small_workflow_config() -> WorkflowConfig:
    """Workflow parameters suited to the synthetic dataset."""
    config = WorkflowConfig()
    config.ingestion.min_features = 10
    config.qc.min_features = 50
    config.qc.max_features = None
    config.feature_selection.n_top_genes = N_TOP_GENES
    config.pca.n_comps = N_COMPS
    config.pca.n_dims = DIMS
    config.embedding.n_neighbors = 15
    return config


# ==============================================================================
# Pipeline Stage Fixtures
# ==============================================================================


@pytest.fixture(scope="session")
def ingested_adata(raw_counts: ad.AnnData) -> ad.AnnData:
    adata, _, _ = IngestionService().from_anndata(raw_counts, min_cells=3, min_features=10)
    return adata


@pytest.fixture(scope="session")
def qc_adata(ingested_adata: ad.AnnData) -> ad.AnnData:
    adata, _, _ = QualityService().calculate_qc_metrics(ingested_adata)
    return adata


@pytest.fixture(scope="session")
def filtered_adata(qc_adata: ad.AnnData) -> ad.AnnData:
    adata, _, _ = QualityService().filter_cells(
        qc_adata, min_features=50, max_features=None, max_percent_mt=5
    )
    return adata


@pytest.fixture(scope="session")
def normalized_adata(filtered_adata: ad.AnnData) -> ad.AnnData:
    adata, _, _ = PreprocessingService().normalize(filtered_adata)
    return adata


@pytest.fixture(scope="session")
def hvg_adata(normalized_adata: ad.AnnData) -> ad.AnnData:
    adata, _, _ = PreprocessingService().find_variable_features(
        normalized_adata, n_top_genes=N_TOP_GENES
    )
    return adata


@pytest.fixture(scope="session")
def scaled_adata(hvg_adata: ad.AnnData) -> ad.AnnData:
    adata, _, _ = PreprocessingService().scale(hvg_adata)
    return adata


@pytest.fixture(scope="session")
def pca_adata(scaled_adata: ad.AnnData) -> ad.AnnData:
    adata, _, _ = DimensionalityService().run_pca(scaled_adata, n_comps=N_COMPS)
    return adata


@pytest.fixture(scope="session")
def neighbors_adata(pca_adata: ad.AnnData) -> ad.AnnData:
    adata, _, _ = ClusteringService().find_neighbors(pca_adata, dims=DIMS, k_param=K_PARAM)
    return adata


@pytest.fixture(scope="session")
def clustered_adata(neighbors_adata: ad.AnnData) -> ad.AnnData:
    adata, _, _ = ClusteringService().find_clusters(neighbors_adata, resolution=0.5)
    return adata


