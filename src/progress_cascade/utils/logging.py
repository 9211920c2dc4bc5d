"""Logging helpers.

The library only creates module loggers; handlers are the host
application's business.  Scripts and operator tooling can call
:func:`configure_logging` to get readable output quickly.
"""
from __future__ import annotations

import logging

LOGGER_NAME = "progress_cascade"
_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    """Attach a stream handler to the package logger (idempotent)."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    if not any(getattr(h, "_progress_cascade", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._progress_cascade = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger


__all__ = ["LOGGER_NAME", "configure_logging"]
