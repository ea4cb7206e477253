"""
scflow - guided clustering of single-cell RNA-seq count matrices.

The standard workflow reads a 10X count matrix, filters low-quality cells,
normalizes, selects variable genes, scales, reduces dimensionality, builds a
shared-nearest-neighbor graph, clusters, embeds, finds marker genes and names
the clusters.
"""

from scflow.core.dataset import Dataset
from scflow.core.exceptions import ScflowError
from scflow.tools.workflow_service import StandardWorkflowService
from scflow.version import __version__

__all__ = ["Dataset", "ScflowError", "StandardWorkflowService", "__version__"]
