"""Logging bootstrap for host applications embedding the sync core."""

from __future__ import annotations

import logging

from ourdm_sync.core.settings import Settings, settings as default_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(config: Settings | None = None) -> logging.Logger:
    """Attach a stream handler to the package logger at the configured level.

    Calling this more than once does not stack handlers.
    """
    config = config or default_settings
    logger = logging.getLogger("ourdm_sync")
    logger.setLevel(config.log_level.upper())
    if not any(getattr(h, "_ourdm_handler", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._ourdm_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger
