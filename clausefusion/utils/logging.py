"""
Logging setup helpers.
"""

import logging
import sys
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logger(
    name: str,
    level: int = logging.INFO,
    fmt: Optional[str] = None,
) -> logging.Logger:
    """
    Create or fetch a named logger with a single stream handler.

    Repeated calls with the same name reuse the existing handler. Records
    are not propagated to ancestor loggers, so they are emitted once.

    Args:
        name: Logger name (e.g. "clausefusion.engine")
        level: Logging level
        fmt: Optional format string

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not any(getattr(h, "_clausefusion", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(fmt or DEFAULT_FORMAT))
        handler._clausefusion = True
        logger.addHandler(handler)
    logger.propagate = False

    return logger
