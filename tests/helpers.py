"""Assertion helpers shared across test modules."""

import anndata as ad
import numpy as np


def majority_cluster(adata: ad.AnnData, cell_type: str, key: str = "louvain") -> str:
    """Cluster holding most cells of a simulated cell type."""
    mask = (adata.obs["true_cell_type"] == cell_type).to_numpy()
    return adata.obs.loc[mask, key].astype(str).value_counts().idxmax()


def cluster_purity(adata: ad.AnnData, key: str = "louvain") -> float:
    """Smallest fraction of a cluster made up by its dominant cell type."""
    table = (
        adata.obs.groupby(key, observed=True)["true_cell_type"]
        .value_counts(normalize=True)
        .unstack(fill_value=0.0)
    )
    return float(np.min(table.max(axis=1)))
