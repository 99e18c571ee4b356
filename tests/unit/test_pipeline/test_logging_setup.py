"""
Tests for logging configuration.
"""

import logging

import colorlog
import pytest

from lumen_facemesh.logging_setup import get_logger, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_colored_console_handler(restore_root_logger):
    setup_logging(logging.DEBUG)

    root = restore_root_logger
    assert root.level == logging.DEBUG
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, colorlog.ColoredFormatter)


def test_plain_console_handler(restore_root_logger):
    setup_logging(logging.WARNING, enable_colors=False)

    formatter = restore_root_logger.handlers[0].formatter
    assert not isinstance(formatter, colorlog.ColoredFormatter)


def test_file_handler(restore_root_logger, tmp_path):
    log_file = tmp_path / "logs" / "facemesh.log"
    setup_logging(logging.INFO, log_file=log_file, enable_colors=False)

    get_logger("lumen_facemesh.test").info("pipeline ready")
    for handler in restore_root_logger.handlers:
        handler.flush()

    assert "pipeline ready" in log_file.read_text(encoding="utf-8")


def test_third_party_loggers_quieted(restore_root_logger):
    setup_logging(logging.DEBUG)
    assert logging.getLogger("onnxruntime").level == logging.WARNING
