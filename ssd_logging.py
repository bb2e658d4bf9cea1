"""
Logging helper shared by the detection scripts.
Provides get_logger(name) that configures console logging on stderr, so
stdout carries only detection results.
"""

import logging
import sys
from logging import Logger

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def get_logger(name: str, level: int = logging.INFO) -> Logger:
    """
    Returns a configured logger.

    Args:
        name: logger name (e.g., "ssd_sources")
        level: logging level

    Returns:
        logging.Logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    # Handlers are attached once per logger name
    if not logger.handlers:
        ch = logging.StreamHandler(sys.stderr)
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(ch)

        logger.propagate = False
    else:
        for handler in logger.handlers:
            handler.setLevel(level)

    return logger


def set_level(level: int) -> None:
    """Switch every logger created through get_logger to the given level."""
    for name in list(logging.root.manager.loggerDict):
        if not name.startswith("ssd_"):
            continue
        logger = logging.getLogger(name)
        logger.setLevel(level)
        for handler in logger.handlers:
            handler.setLevel(level)
