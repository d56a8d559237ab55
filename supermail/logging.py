"""
Logging setup for applications embedding SuperMail.

Modules only create ``logging.getLogger(__name__)`` loggers. Nothing is
configured on import; call ``configure_logging`` to attach a handler to the
``supermail`` logger tree.
"""

import json
import logging
from typing import Optional

from .config import LoggingSettings

PACKAGE_LOGGER = "supermail"
HANDLER_NAME = "supermail-console"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'time': self.formatTime(record),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry)


def resolve_level(level: Optional[str]) -> int:
    """Map a level name to its numeric value, falling back to INFO."""
    return getattr(logging, (level or "INFO").upper(), logging.INFO)


def configure_logging(settings: LoggingSettings) -> logging.Logger:
    """
    Configure the ``supermail`` logger from settings.

    Calling it again replaces the handler installed by the previous call
    instead of adding a second one. Other loggers are left alone.

    Returns:
        The package logger
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    numeric_level = resolve_level(settings.level)

    for handler in [h for h in logger.handlers if h.name == HANDLER_NAME]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.name = HANDLER_NAME
    handler.setFormatter(JsonFormatter() if settings.structured else logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(numeric_level)
    # Records are handled here; the root logger would print them twice
    logger.propagate = False

    logger.debug(f"SuperMail logging configured at {logging.getLevelName(numeric_level)}")
    return logger


__all__ = ["configure_logging", "resolve_level", "JsonFormatter"]
