"""Log utilities."""

import logging
import os

from rich.logging import RichHandler

LOG_LEVEL_ENV = "TIER_GUARD_LOG_LEVEL"


def get_logger(name: str) -> logging.Logger:
    """Retrieve logger with the provided name."""
    logger = logging.getLogger(name)
    logger.setLevel(os.environ.get(LOG_LEVEL_ENV, "INFO").upper())
    logger.handlers = [RichHandler()]
    logger.propagate = False
    return logger
