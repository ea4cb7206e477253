"""
Unit tests for marker discovery.
"""

import numpy as np
import pandas as pd
import pytest

from scflow.tools.differential_expression_service import (
    MARKER_COLUMNS,
    DifferentialExpressionError,
    DifferentialExpressionService,
)
from tests.helpers import majority_cluster
from tests.mock_data.base import CELL_TYPE_MARKERS


@pytest.fixture
def service():
    return DifferentialExpressionService()


@pytest.fixture(scope="module")
def b_cluster(clustered_adata):
    return majority_cluster(clustered_adata, "B")


@pytest.fixture(scope="module")
def nk_cluster(clustered_adata):
    return majority_cluster(clustered_adata, "NK")


@pytest.fixture(scope="module")
def all_markers(clustered_adata):
    markers, stats, _ = DifferentialExpressionService().find_all_markers(clustered_adata)
    return markers, stats


class TestFindMarkers:
    def test_b_cell_markers(self, service, clustered_adata, b_cluster):
        table, stats, _ = service.find_markers(clustered_adata, ident_1=b_cluster)

        assert list(table.columns) == MARKER_COLUMNS
        assert "MS4A1" in stats["top_markers"]
        assert stats["ident_2"] == "rest"
        assert stats["n_cells_1"] + stats["n_cells_2"] == clustered_adata.n_obs

    def test_sorted_by_p_value(self, service, clustered_adata, b_cluster):
        table, _, _ = service.find_markers(clustered_adata, ident_1=b_cluster)
        assert table["p_val"].is_monotonic_increasing

    def test_bonferroni_over_all_genes(self, service, clustered_adata, b_cluster):
        table, _, _ = service.find_markers(clustered_adata, ident_1=b_cluster)

        expected = np.minimum(1.0, table["p_val"] * clustered_adata.n_vars)
        np.testing.assert_allclose(table["p_val_adj"], expected)

    def test_fold_change_and_detection(self, service, clustered_adata, b_cluster):
        table, _, _ = service.find_markers(clustered_adata, ident_1=b_cluster)
        row = table.set_index("gene").loc["MS4A1"]

        in_group = (clustered_adata.obs["louvain"] == b_cluster).to_numpy()
        values = clustered_adata[:, "MS4A1"].layers["normalized"].toarray().ravel()
        expected_fc = np.log2(np.expm1(values[in_group]).mean() + 1) - np.log2(
            np.expm1(values[~in_group]).mean() + 1
        )
        assert row["avg_log2FC"] == pytest.approx(expected_fc, rel=1e-4)
        assert row["pct_1"] == pytest.approx((values[in_group] > 0).mean(), abs=1e-3)
        assert row["pct_2"] < 0.5

    def test_only_positive(self, service, clustered_adata, b_cluster):
        table, _, _ = service.find_markers(
            clustered_adata, ident_1=b_cluster, only_pos=True
        )
        assert (table["avg_log2FC"] > 0).all()

    def test_negative_markers_reported(self, service, clustered_adata, b_cluster):
        table, _, _ = service.find_markers(clustered_adata, ident_1=b_cluster)
        negative = set(table.loc[table["avg_log2FC"] < 0, "gene"])
        assert negative & set(CELL_TYPE_MARKERS["NK"] + CELL_TYPE_MARKERS["CD14+ Mono"])

    def test_against_other_cluster(self, service, clustered_adata, b_cluster, nk_cluster):
        table, stats, ir = service.find_markers(
            clustered_adata, ident_1=b_cluster, ident_2=nk_cluster, test="t-test"
        )

        assert stats["ident_2"] == [nk_cluster]
        assert stats["test"] == "t-test"
        top = set(table["gene"].head(20))
        assert top & set(CELL_TYPE_MARKERS["B"])
        assert top & set(CELL_TYPE_MARKERS["NK"])
        assert f"ident_2=['{nk_cluster}']" in ir.render()

    def test_no_genes_pass_filters(self, service, clustered_adata, b_cluster):
        table, stats, _ = service.find_markers(
            clustered_adata, ident_1=b_cluster, logfc_threshold=100
        )

        assert table.empty
        assert list(table.columns) == MARKER_COLUMNS
        assert stats["n_markers"] == 0

    def test_unknown_identity(self, service, clustered_adata):
        with pytest.raises(DifferentialExpressionError, match="not found") as exc_info:
            service.find_markers(clustered_adata, ident_1="99")
        assert "0" in exc_info.value.details["available"]

    def test_overlapping_groups(self, service, clustered_adata, b_cluster):
        with pytest.raises(DifferentialExpressionError, match="overlap"):
            service.find_markers(
                clustered_adata, ident_1=b_cluster, ident_2=[b_cluster, "0"]
            )

    def test_group_too_small(self, service, clustered_adata, b_cluster):
        with pytest.raises(DifferentialExpressionError, match="at least"):
            service.find_markers(
                clustered_adata, ident_1=b_cluster, min_cells_group=10_000
            )

    def test_unknown_test(self, service, clustered_adata, b_cluster):
        with pytest.raises(DifferentialExpressionError, match="Unknown test"):
            service.find_markers(clustered_adata, ident_1=b_cluster, test="MAST")

    def test_unknown_groupby(self, service, clustered_adata, b_cluster):
        with pytest.raises(DifferentialExpressionError, match="not found in observations"):
            service.find_markers(clustered_adata, ident_1=b_cluster, groupby="celltype")

    def test_requires_normalized_layer(self, service, clustered_adata, b_cluster):
        adata = clustered_adata.copy()
        del adata.layers["normalized"]

        with pytest.raises(DifferentialExpressionError, match="Run normalize"):
            service.find_markers(adata, ident_1=b_cluster)


class TestFindAllMarkers:
    def test_every_cluster_tested(self, clustered_adata, all_markers):
        markers, stats = all_markers

        assert stats["n_identities"] == clustered_adata.obs["louvain"].nunique()
        assert list(markers.columns) == ["gene", "cluster"] + MARKER_COLUMNS[1:]
        assert isinstance(markers["cluster"].dtype, pd.CategoricalDtype)
        assert not stats["skipped_identities"]

    def test_returned_markers_pass_thresholds(self, all_markers):
        markers, _ = all_markers

        assert (markers["p_val"] < 0.01).all()
        assert (markers["avg_log2FC"] > 0).all()
        assert (markers[["pct_1", "pct_2"]].max(axis=1) >= 0.25).all()

    def test_cell_type_markers_found(self, clustered_adata, all_markers):
        markers, stats = all_markers

        for cell_type, genes in CELL_TYPE_MARKERS.items():
            cluster = majority_cluster(clustered_adata, cell_type)
            found = set(markers.loc[markers["cluster"] == cluster, "gene"])
            assert len(found & set(genes)) >= 6, cell_type
            assert set(stats["top_markers_per_cluster"][cluster]) & set(genes)

    def test_small_identities_skipped(self, service, clustered_adata):
        adata = clustered_adata.copy()
        labels = np.where(adata.obs["true_cell_type"] == "B", "B", "other").astype(object)
        labels[:2] = "tiny"
        adata.obs["custom"] = pd.Categorical(labels)

        markers, stats, _ = service.find_all_markers(adata, groupby="custom")

        assert stats["skipped_identities"] == ["tiny"]
        assert "tiny" not in set(markers["cluster"].astype(str))
        assert "MS4A1" in set(markers.loc[markers["cluster"] == "B", "gene"])

    def test_ir_renders(self, service, clustered_adata):
        _, _, ir = service.find_all_markers(clustered_adata, min_pct=0.5, logfc_threshold=1.0)
        code = ir.render()

        assert "groupby='louvain'" in code
        assert "min_pct=0.5" in code


class TestTopMarkers:
    def test_top_by_fold_change(self, all_markers):
        markers, _ = all_markers
        top = DifferentialExpressionService.top_markers(markers, n=2)

        assert (top.groupby("cluster", observed=True).size() <= 2).all()
        for cluster, group in top.groupby("cluster", observed=True):
            best = markers.loc[markers["cluster"] == cluster, "avg_log2FC"].max()
            assert group["avg_log2FC"].iloc[0] == best
            assert group["avg_log2FC"].is_monotonic_decreasing

    def test_top_by_p_value(self, all_markers):
        markers, _ = all_markers
        top = DifferentialExpressionService.top_markers(markers, n=3, by="p_val")

        for _, group in top.groupby("cluster", observed=True):
            assert group["p_val"].is_monotonic_increasing

    def test_requires_cluster_column(self):
        table = pd.DataFrame(columns=MARKER_COLUMNS)
        with pytest.raises(DifferentialExpressionError, match="cluster"):
            DifferentialExpressionService.top_markers(table)

    def test_unknown_ranking(self, all_markers):
        markers, _ = all_markers
        with pytest.raises(DifferentialExpressionError, match="Cannot rank"):
            DifferentialExpressionService.top_markers(markers, by="pct_1")
