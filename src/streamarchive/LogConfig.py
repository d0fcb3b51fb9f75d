"""Logging setup for the streamarchive CLI.

Library modules only create module loggers; handlers are installed by
`configure_logging`, which the CLI calls once at startup.
"""

from __future__ import annotations

import logging
import os

from rich.console import Console
from rich.logging import RichHandler

_LEVEL_MAP = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


def configure_logging(level: str | int | None = None, console: Console | None = None) -> logging.Logger:
    """Configure the `streamarchive` logger with a rich handler.

    Order of precedence for level:
    1. Explicit `level` argument if given
    2. Environment variable `STREAMARCHIVE_LOG_LEVEL`
    3. Fallback to `INFO`
    """
    if level is None:
        level = os.environ.get("STREAMARCHIVE_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = _LEVEL_MAP.get(level.upper(), logging.INFO)

    logger = logging.getLogger("streamarchive")
    logger.setLevel(level)
    # Replace a handler from an earlier call instead of stacking them
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)
    logger.addHandler(RichHandler(console=console, show_path=False, markup=False))
    logger.propagate = False
    return logger
