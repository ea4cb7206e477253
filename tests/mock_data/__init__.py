"""
Mock data generation utilities for the scflow test suite.

Synthetic count matrices keep the statistical shape of a small PBMC
experiment while staying fully reproducible.
"""

from .base import (
    CELL_TYPE_MARKERS,
    DEFAULT_DATASET_CONFIG,
    MT_GENES,
    SMALL_DATASET_CONFIG,
    MockDataConfig,
)
from .factories import PBMCLikeDataFactory, write_10x_mtx

__all__ = [
    "CELL_TYPE_MARKERS",
    "DEFAULT_DATASET_CONFIG",
    "MT_GENES",
    "SMALL_DATASET_CONFIG",
    "MockDataConfig",
    "PBMCLikeDataFactory",
    "write_10x_mtx",
]
