"""Logging configuration for the autocoder package."""

import logging
import sys
from typing import Optional

LOGGER_NAME = "agentic_autocoder"


def configure_logging(verbose: bool = False, log_file: Optional[str] = None) -> logging.Logger:
    """
    Install handlers on the package logger.

    Stream handler on stderr (INFO, or DEBUG when verbose) and an optional
    file handler that always records DEBUG. Safe to call more than once.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    if not logger.handlers:
        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(logging.Formatter("%(asctime)s | %(levelname)-8s | %(message)s", "%H:%M:%S"))
        logger.addHandler(sh)

        if log_file:
            fh = logging.FileHandler(log_file, encoding="utf-8")
            fh.setLevel(logging.DEBUG)
            fh.setFormatter(logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(module)s:%(lineno)d | %(message)s"
            ))
            logger.addHandler(fh)

    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
            handler.setLevel(logging.DEBUG if verbose else logging.INFO)

    return logger
