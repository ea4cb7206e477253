"""
Logging configuration for scflow.

Every module obtains its logger through ``get_logger(__name__)`` so that
output looks the same whether the pipeline runs from the CLI, a notebook
or the test suite.
"""

import logging
import os
import sys
from typing import Optional, Union

from rich.logging import RichHandler

LOG_FORMAT = "[%(asctime)s] %(levelname)s - [%(name)s] - %(message)s"


def _resolve_level(level: Optional[Union[int, str]]) -> int:
    if level is None:
        level = os.environ.get("SCFLOW_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        return resolved if isinstance(resolved, int) else logging.INFO
    return level


def setup_logger(
    name: str, level: Optional[Union[int, str]] = None
) -> logging.Logger:
    """
    Configure a logger with consistent formatting.

    Two situations are handled:
    1. CLI usage: the CLI installs a RichHandler on the root logger.
       Records then propagate to it and no handler is added here.
    2. Library usage (tests, scripts, notebooks): a stdout StreamHandler is
       attached and propagation is disabled to avoid duplicate lines.

    Args:
        name: Name of the logger
        level: Logging level; defaults to ``SCFLOW_LOG_LEVEL`` or INFO

    Returns:
        logging.Logger: Configured logger instance
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        logger.setLevel(_resolve_level(level))

        root_logger = logging.getLogger()
        has_rich_handler = any(
            isinstance(handler, RichHandler) for handler in root_logger.handlers
        )

        if not has_rich_handler:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(handler)
            logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get (and configure on first use) the logger with the given name."""
    return setup_logger(name)


def configure_cli_logging(level: Union[int, str] = "INFO", console=None) -> None:
    """
    Route all scflow logging through a single RichHandler on the root logger.

    Loggers created before this call already own a StreamHandler; those are
    detached so their records propagate to the rich handler instead.

    Args:
        level: Root logging level
        console: Optional rich Console to render into
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if isinstance(handler, RichHandler):
            root_logger.removeHandler(handler)

    rich_handler = RichHandler(
        console=console, show_path=False, rich_tracebacks=True, markup=False
    )
    rich_handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(rich_handler)
    root_logger.setLevel(_resolve_level(level))

    for logger_name in list(logging.root.manager.loggerDict):
        if not logger_name.startswith("scflow"):
            continue
        existing = logging.getLogger(logger_name)
        for handler in list(existing.handlers):
            if isinstance(handler, logging.StreamHandler) and not isinstance(
                handler, RichHandler
            ):
                existing.removeHandler(handler)
        existing.propagate = True
        existing.setLevel(_resolve_level(level))
