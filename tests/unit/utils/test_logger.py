"""Unit tests for logging configuration."""

import logging

import pytest
from rich.logging import RichHandler

from scflow.utils.logger import configure_cli_logging, get_logger, setup_logger


@pytest.fixture
def clean_root_logger():
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    for handler in saved_handlers:
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)
    yield root
    root.handlers = saved_handlers
    root.setLevel(saved_level)


class TestSetupLogger:
    def test_library_logger_gets_stream_handler(self, clean_root_logger):
        logger = setup_logger("scflow.test.library", level="WARNING")

        assert logger.level == logging.WARNING
        assert len(logger.handlers) == 1
        assert logger.propagate is False

    def test_level_from_environment(self, monkeypatch, clean_root_logger):
        monkeypatch.setenv("SCFLOW_LOG_LEVEL", "ERROR")
        logger = setup_logger("scflow.test.env_level")
        assert logger.level == logging.ERROR

    def test_unknown_level_falls_back_to_info(self, clean_root_logger):
        logger = setup_logger("scflow.test.bad_level", level="LOUD")
        assert logger.level == logging.INFO

    def test_get_logger_is_idempotent(self, clean_root_logger):
        first = get_logger("scflow.test.idempotent")
        second = get_logger("scflow.test.idempotent")

        assert first is second
        assert len(first.handlers) == 1

    def test_logger_propagates_when_rich_handler_installed(self, clean_root_logger):
        clean_root_logger.addHandler(RichHandler())
        logger = setup_logger("scflow.test.under_cli")

        assert logger.handlers == []
        assert logger.propagate


class TestConfigureCliLogging:
    def test_installs_single_rich_handler(self, clean_root_logger):
        configure_cli_logging("DEBUG")
        configure_cli_logging("WARNING")

        rich_handlers = [
            h for h in clean_root_logger.handlers if isinstance(h, RichHandler)
        ]
        assert len(rich_handlers) == 1
        assert clean_root_logger.level == logging.WARNING

    def test_existing_scflow_loggers_propagate(self, clean_root_logger):
        logger = get_logger("scflow.test.existing")
        assert logger.handlers

        configure_cli_logging("INFO")

        assert logger.handlers == []
        assert logger.propagate
