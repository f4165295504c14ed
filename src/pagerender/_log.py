"""loguru setup for command-line use."""
from __future__ import annotations

import sys

from loguru import logger

LOG_FORMAT = "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <7}</level> | {name}:{function} - {message}"


def configure_logging(level: str = "WARNING") -> None:
    """Send pagerender logs at ``level`` and above to stderr."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT, colorize=None)
    logger.enable("pagerender")
