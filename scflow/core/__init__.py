"""Core data structures shared by every pipeline stage."""

from scflow.core.analysis_ir import AnalysisStep, ParameterSpec
from scflow.core.dataset import Dataset
from scflow.core.exceptions import (
    DataValidationError,
    IngestionError,
    ParameterValidationError,
    ScflowError,
    WorkflowOrderError,
)

__all__ = [
    "AnalysisStep",
    "DataValidationError",
    "Dataset",
    "IngestionError",
    "ParameterSpec",
    "ParameterValidationError",
    "ScflowError",
    "WorkflowOrderError",
]
