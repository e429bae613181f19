"""Logging setup shared by the daemon and the CLI."""

import logging
import sys
from typing import Optional

_HANDLER_FLAG = "_dyncluster_stream_handler"


def setup_logging(level="INFO", format_string: Optional[str] = None) -> logging.Logger:
    """
    Send daemon logs to stdout with a consistent format.

    Args:
        level: Logging level name or number (DEBUG, INFO, ...)
        format_string: Custom format string (default provided)

    Calling this more than once only updates the existing handler.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    if format_string is None:
        format_string = "[%(asctime)s] [DYNCLUSTER] %(levelname)s - %(message)s"
    formatter = logging.Formatter(format_string, datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    existing = None
    for handler in root_logger.handlers:
        if getattr(handler, _HANDLER_FLAG, False):
            existing = handler
            break

    if existing is None:
        handler = logging.StreamHandler(sys.stdout)
        setattr(handler, _HANDLER_FLAG, True)
        root_logger.addHandler(handler)
        existing = handler
    existing.setFormatter(formatter)
    existing.setLevel(level)
    root_logger.setLevel(level)

    logger = logging.getLogger("dyncluster")
    logger.debug("logging initialized (level=%s)", logging.getLevelName(level))
    return logger
