"""Stateless analysis services, one per pipeline stage."""
