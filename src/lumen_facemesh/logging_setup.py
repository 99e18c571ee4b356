"""Logging configuration with colorized console output.

Records carry the process name, so lines emitted by the background worker
process (``lumen-facemesh-worker``) are distinguishable from the caller's.
Usage:

    from lumen_facemesh.logging_setup import setup_logging, get_logger

    setup_logging(logging.DEBUG)
    logger = get_logger(__name__)
"""

import logging
import sys
from pathlib import Path

import colorlog

LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(processName)s %(name)s: %(message)s"
COLOR_LOG_FORMAT = (
    "%(log_color)s%(asctime)s [%(levelname)8s] %(processName)s %(name)s:%(reset)s %(message)s"
)
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are noisy below WARNING
QUIET_LOGGERS = ("onnxruntime", "multiprocessing", "PIL")


def _console_handler(enable_colors: bool) -> logging.Handler:
    if enable_colors:
        handler = colorlog.StreamHandler(sys.stdout)
        handler.setFormatter(
            colorlog.ColoredFormatter(
                COLOR_LOG_FORMAT, datefmt=DATE_FORMAT, log_colors=LOG_COLORS
            )
        )
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def _file_handler(log_file: Path) -> logging.Handler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(
    level: int = logging.INFO,
    log_file: Path | None = None,
    enable_colors: bool = True,
) -> None:
    """Configure the root logger; replaces any handlers already installed.

    Args:
        level: Logging level for the root logger and every handler.
        log_file: Optional plain-text log file, created with its parents.
        enable_colors: Colorize console output with colorlog.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handlers = [_console_handler(enable_colors)]
    if log_file:
        handlers.append(_file_handler(Path(log_file)))
    for handler in handlers:
        handler.setLevel(level)
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
