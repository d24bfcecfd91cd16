"""Logging configuration for the inspector and the run store.

Everything logs through :mod:`structlog` on top of the standard library
``logging`` module so that third-party libraries (``httpx``) and our own
events end up in the same stream.
"""

from __future__ import annotations

import json
import logging
from functools import partial

import structlog

get_logger = structlog.get_logger

_configured = False


def configure_logging(level: int | str = logging.INFO, *, debug: bool = False) -> None:
    """Configure stdlib logging and structlog (idempotent)."""
    global _configured
    if debug:
        level = logging.DEBUG
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logging.basicConfig(level=level, format="%(message)s")
    logging.getLogger().setLevel(level)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    if _configured:
        return
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(
                serializer=partial(json.dumps, ensure_ascii=False)
            ),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _configured = True
