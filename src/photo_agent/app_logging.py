"""Logging configuration helpers."""

import logging
import sys


def configure_logging(level: str = "INFO") -> None:
    """Configure application logging with a single stderr handler.

    stdout carries protocol frames, so nothing may log there.
    """
    logger = logging.getLogger("photo_agent")
    logger.setLevel(level.upper())
    if logger.handlers:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(levelname)s: %(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
