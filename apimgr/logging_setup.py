"""Logging configuration for the apimgr command line.

Log records always go to stderr: stdout carries shell code that callers
``eval``, so nothing else may be written there.
"""

import logging
import os

from rich.console import Console
from rich.logging import RichHandler

_LOGGER_NAME = "apimgr"
_handler: RichHandler | None = None


def init_logging(verbose: bool = False) -> logging.Logger:
    """
    Attach a stderr RichHandler to the ``apimgr`` logger.

    Level is WARNING, or DEBUG when ``verbose`` or APIMGR_DEBUG is set.
    Calling it again only adjusts the level.
    """
    global _handler
    debug = verbose or os.environ.get("APIMGR_DEBUG", "").lower() in ("1", "true", "yes")
    level = logging.DEBUG if debug else logging.WARNING

    logger = logging.getLogger(_LOGGER_NAME)
    if _handler is None:
        _handler = RichHandler(
            console=Console(stderr=True),
            show_time=False,
            show_path=debug,
            markup=False,
            rich_tracebacks=False,
        )
        _handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(_handler)
        logger.propagate = False
    logger.setLevel(level)
    _handler.setLevel(level)
    return logger
