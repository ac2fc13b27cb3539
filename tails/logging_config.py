"""Logging configuration for Tails.

Environment variables:
    TAILS_LOG_FORMAT -- ``json`` for one JSON object per line, ``text`` (default).
    TAILS_LOG_LEVEL  -- Python log level name (default: ``INFO``).
"""

import logging
import os
from typing import Optional

from pythonjsonlogger.json import JsonFormatter

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _is_json_mode() -> bool:
    return os.environ.get("TAILS_LOG_FORMAT", "text").lower() == "json"


def _get_log_level(name: Optional[str] = None) -> int:
    """Return the numeric log level for name, or TAILS_LOG_LEVEL (default INFO)."""
    name = (name or os.environ.get("TAILS_LOG_LEVEL", "INFO")).upper()
    numeric = getattr(logging, name, None)
    if not isinstance(numeric, int):
        return logging.INFO
    return numeric


def setup_logging(level: Optional[str] = None) -> None:
    """Configure the root logger.

    Args:
        level: Level name overriding TAILS_LOG_LEVEL.
    """
    numeric = _get_log_level(level)
    root = logging.getLogger()
    root.setLevel(numeric)

    # Replace existing handlers so repeated calls don't double-log.
    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.setLevel(numeric)
    if _is_json_mode():
        handler.setFormatter(JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        ))
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    root.addHandler(handler)
