"""Configuration for scflow: environment settings and workflow parameters."""
