#!/usr/bin/env python3
"""
Entry point for running as a module: python -m scflow
"""

from scflow.cli import app

if __name__ == "__main__":
    app()
