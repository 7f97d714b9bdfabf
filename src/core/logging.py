"""Logging configuration shared by the API process."""
from __future__ import annotations

import logging
import logging.config

_configured = False


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger with a single console handler.

    Safe to call more than once; only the first call installs handlers,
    later calls just adjust the level.
    """

    global _configured

    if _configured:
        logging.getLogger().setLevel(level.upper())
        return

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "root": {"handlers": ["console"], "level": level.upper()},
            "loggers": {
                "sqlalchemy.engine": {"level": "WARNING"},
            },
        }
    )
    _configured = True
