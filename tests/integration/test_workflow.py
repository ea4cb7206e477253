"""
End-to-end tests of the standard workflow on a synthetic PBMC-like dataset.
"""

import ast
import runpy

import pytest

from scflow.config.workflow_config import WorkflowConfig
from scflow.core.dataset import Dataset
from scflow.core.exceptions import IngestionError, WorkflowOrderError
from scflow.tools.clustering_service import ClusteringService
from scflow.tools.quality_service import QualityError
from scflow.tools.workflow_service import StandardWorkflowService
from tests.helpers import cluster_purity, majority_cluster
from tests.mock_data.base import CELL_TYPE_MARKERS
from tests.mock_data.factories import write_10x_mtx


def _fast_config(config: WorkflowConfig) -> WorkflowConfig:
    config = config.model_copy(deep=True)
    config.embedding.umap = False
    config.markers.enabled = False
    config.annotation.suggest = False
    return config


@pytest.fixture(scope="module")
def module_tenx_dir(tmp_path_factory, raw_counts):
    return write_10x_mtx(raw_counts, tmp_path_factory.mktemp("tenx") / "hg19")


@pytest.fixture(scope="module")
def module_config():
    config = WorkflowConfig()
    config.ingestion.min_features = 10
    config.qc.min_features = 50
    config.qc.max_features = None
    config.feature_selection.n_top_genes = 150
    config.pca.n_comps = 20
    config.pca.n_dims = 10
    config.embedding.n_neighbors = 15
    return config


@pytest.fixture(scope="module")
def completed(module_tenx_dir, module_config):
    messages = []
    workflow = StandardWorkflowService()
    workflow.set_progress_callback(messages.append)
    dataset = workflow.run(module_tenx_dir, module_config)
    return dataset, messages


class TestStandardWorkflow:
    def test_every_stage_completed(self, completed):
        dataset, _ = completed

        assert dataset.completed_stages == [
            "ingest",
            "calculate_qc_metrics",
            "filter_cells",
            "normalize",
            "find_variable_features",
            "scale",
            "run_pca",
            "suggest_n_pcs",
            "find_neighbors",
            "find_clusters",
            "run_umap",
            "find_all_markers",
            "suggest_cell_types",
        ]
        assert [step.tool_name for step in dataset.provenance][0] == "read_10x_mtx"

    def test_damaged_cells_removed(self, completed, raw_counts):
        dataset, _ = completed

        assert not dataset.adata.obs_names.isin(
            raw_counts.obs_names[raw_counts.obs["low_quality"].to_numpy()]
        ).any()
        assert dataset.stage_stats["filter_cells"]["cells_removed"] == int(
            raw_counts.obs["low_quality"].sum()
        )

    def test_clusters_match_cell_types(self, completed, raw_counts):
        dataset, _ = completed
        adata = dataset.adata.copy()
        adata.obs["true_cell_type"] = raw_counts.obs.loc[adata.obs_names, "true_cell_type"]

        assert dataset.n_pcs == 10
        assert dataset.active_ident == "louvain"
        assert cluster_purity(adata) > 0.9
        clusters = {majority_cluster(adata, cell_type) for cell_type in CELL_TYPE_MARKERS}
        assert len(clusters) == len(CELL_TYPE_MARKERS)

    def test_outputs(self, completed):
        dataset, _ = completed

        assert dataset.adata.obsm["X_umap"].shape == (dataset.adata.n_obs, 2)
        assert {"all_markers", "top_markers"} <= set(dataset.marker_tables)
        top = dataset.marker_tables["top_markers"]
        assert (top.groupby("cluster", observed=True).size() <= 2).all()
        assert "cell_type_suggestions" in dataset.adata.uns

    def test_suggestions_name_cell_types(self, completed, raw_counts):
        dataset, _ = completed
        adata = dataset.adata.copy()
        adata.obs["true_cell_type"] = raw_counts.obs.loc[adata.obs_names, "true_cell_type"]
        suggestions = dataset.stage_stats["suggest_cell_types"]["suggestions"]

        for cell_type in CELL_TYPE_MARKERS:
            assert suggestions[majority_cluster(adata, cell_type)] == cell_type

    def test_progress_messages(self, completed):
        _, messages = completed

        assert messages[0] == "Stage 1/12: ingestion"
        assert messages[-1] == "Stage 12/12: annotation"

    def test_exported_script(self, completed, tmp_path):
        dataset, _ = completed
        script = dataset.export_script(tmp_path / "analysis.py")

        ast.parse(script)
        assert "sc.read_10x_mtx" in script
        assert "sc.tl.pca(adata_pca, n_comps=20" in script
        assert (tmp_path / "analysis.py").read_text() == script

    def test_exported_script_runs(self, completed, tmp_path):
        dataset, _ = completed
        path = tmp_path / "analysis.py"
        dataset.export_script(path)

        namespace = runpy.run_path(str(path), run_name="__main__")
        adata = namespace["adata"]

        assert adata.n_obs == dataset.adata.n_obs
        assert adata.varm["PCs"].shape == (adata.n_vars, 20)
        assert len(adata.uns["pca"]["stdev"]) == 20
        assert 1 <= namespace["pc_stats"]["n_pcs"] <= 20
        assert adata.obs["louvain"].nunique() > 1
        assert "X_umap" in adata.obsm
        assert not namespace["markers"].empty

    def test_summary(self, completed):
        dataset, _ = completed
        summary = dataset.summary()

        assert summary["n_cells"] == dataset.adata.n_obs
        assert summary["n_identities"] == dataset.identities.nunique()
        assert summary["marker_tables"]["all_markers"] > 0


class TestWorkflowOptions:
    def test_jackstraw_selects_dimensions(self, raw_counts, module_config):
        config = _fast_config(module_config)
        config.pca.n_dims = "auto"
        config.pca.selection_method = "jackstraw"
        config.pca.jackstraw_dims = 5
        config.pca.num_replicate = 5
        config.pca.prop_freq = 0.05

        dataset = StandardWorkflowService().run(raw_counts, config)

        assert {"jackstraw", "score_jackstraw"} <= set(dataset.completed_stages)
        assert dataset.n_pcs == dataset.stage_stats["suggest_n_pcs"]["n_pcs"]
        assert 1 <= dataset.n_pcs <= 5
        assert dataset.stage_stats["find_neighbors"]["dims"] == dataset.n_pcs

    def test_n_comps_reduced_to_feasible(self, raw_counts, module_config):
        config = _fast_config(module_config)
        config.feature_selection.n_top_genes = 40
        config.pca.n_comps = 50

        dataset = StandardWorkflowService().run(raw_counts, config)

        assert dataset.stage_stats["run_pca"]["n_comps"] == 39
        assert dataset.adata.obsm["X_pca"].shape[1] == 39

    def test_k_param_reduced_to_cell_count(self, raw_counts, module_config, monkeypatch):
        warnings = []
        monkeypatch.setattr(
            "scflow.tools.workflow_service.logger.warning", warnings.append
        )
        config = _fast_config(module_config)
        config.neighbors.k_param = 100000

        dataset = StandardWorkflowService().run(raw_counts, config)

        n_cells = dataset.adata.n_obs
        assert dataset.stage_stats["find_neighbors"]["k_param"] == n_cells
        assert f"Reducing k_param from 100000 to {n_cells} ({n_cells} cells)" in warnings

    def test_manual_labels(self, raw_counts, module_config):
        config = _fast_config(module_config)
        config.annotation.labels = {"0": "Largest"}

        dataset = StandardWorkflowService().run(raw_counts, config)

        assert dataset.active_ident == "cell_type"
        assert "Largest" in set(dataset.identities)
        assert (
            (dataset.adata.obs["louvain"] == "0")
            == (dataset.adata.obs["cell_type"] == "Largest")
        ).all()

    def test_leiden_and_tsne(self, raw_counts, module_config):
        config = _fast_config(module_config)
        config.clustering.algorithm = "leiden"
        config.embedding.tsne = True
        config.embedding.perplexity = 20

        dataset = StandardWorkflowService().run(raw_counts, config)

        assert dataset.active_ident == "leiden"
        assert "X_tsne" in dataset.adata.obsm
        assert "run_umap" not in dataset.completed_stages

    def test_resume_from_dataset(self, raw_counts, module_config):
        config = _fast_config(module_config)
        workflow = StandardWorkflowService()
        dataset = workflow.load(raw_counts, config)

        result = workflow.run(dataset, config)

        assert result is dataset
        assert dataset.completed_stages.count("ingest") == 1
        assert dataset.source == "anndata"


class TestWorkflowErrors:
    def test_unsupported_input(self, tmp_path):
        path = tmp_path / "counts.csv"
        path.write_text("gene,cell\n")

        with pytest.raises(IngestionError, match="Unsupported input"):
            StandardWorkflowService().run(path)

    def test_stage_errors_propagate(self, raw_counts, module_config):
        config = _fast_config(module_config)
        config.qc.max_percent_mt = 0.0

        with pytest.raises(QualityError, match="No cells pass"):
            StandardWorkflowService().run(raw_counts, config)

    def test_stages_out_of_order(self, raw_counts, module_config):
        dataset = StandardWorkflowService().load(raw_counts, module_config)

        with pytest.raises(WorkflowOrderError):
            dataset.apply("find_clusters", ClusteringService().find_clusters)
        assert isinstance(dataset, Dataset)
