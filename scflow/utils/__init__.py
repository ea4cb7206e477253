"""Shared helpers: logging, progress reporting and feature statistics."""
