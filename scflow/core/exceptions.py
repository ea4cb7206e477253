"""
Core exceptions for scflow.

Every error raised by the pipeline derives from ``ScflowError`` so callers
can catch one type. Service modules add their own subclasses for failures
inside a single stage.
"""

from typing import Any, Dict, Optional


class ScflowError(Exception):
    """Base exception for all scflow errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        return self.message


class IngestionError(ScflowError):
    """
    Raised when a count matrix cannot be read from disk.

    The details dictionary carries:
    - path: The path that failed to load
    - missing_files: Expected files that were not found (10X directories)
    - suggestions: List of hints for resolution

    Example:
        try:
            adata, stats, ir = IngestionService().read_10x_mtx(path)
        except IngestionError as e:
            print(f"Cannot load matrix: {e.message}")
            for suggestion in e.details.get("suggestions", []):
                print(f"  - {suggestion}")
    """

    pass


class DataValidationError(ScflowError):
    """
    Raised when a count matrix violates a structural invariant.

    Violations include duplicated cell barcodes, negative counts and empty
    matrices. ``details["violations"]`` lists every failed check.
    """

    pass


class ParameterValidationError(ScflowError):
    """Raised when a stage receives a parameter outside its valid range."""

    pass


class WorkflowOrderError(ScflowError):
    """
    Raised when a stage runs before the stages it depends on.

    Attributes:
        details: Contains:
            - stage: The stage that was requested
            - missing: Prerequisite stages that have not been completed

    Example:
        dataset.require("find_clusters", "find_neighbors")
        # WorkflowOrderError: 'find_clusters' requires 'find_neighbors' to run first
    """

    pass
