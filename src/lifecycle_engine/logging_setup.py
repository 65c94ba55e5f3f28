from __future__ import annotations
import logging

from lifecycle_engine.config import get_settings

_PACKAGE_LOGGER = "lifecycle_engine"


def configure_logging(level: str | int | None = None) -> logging.Logger:
    """Attach a single stream handler to the package logger.

    Safe to call repeatedly; a second call only adjusts the level.
    """
    logger = logging.getLogger(_PACKAGE_LOGGER)
    if level is None:
        level = get_settings().log_level
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger
