"""Structured logging setup shared by the runtime.

Service modules keep using ``logging.getLogger(__name__)``; components that
want key/value context (delivery providers, retry helper) use the structlog
logger exposed here::

    from humanagent.utils.log import get_logger

    logger = get_logger(component="email")
    logger.info("email-sent", message_id=msg_id)
"""

from __future__ import annotations

import logging
from typing import Any

import structlog

from humanagent.config import get_settings


def _configure() -> None:
    level = getattr(logging, get_settings().log_level.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )


# Attach the processor chain only once per process.
if not structlog.is_configured():
    _configure()

# Keep the logger global so every import shares the same base instance.
log = structlog.get_logger("humanagent")


def get_logger(**bindings: Any):  # noqa: D401 – factory helper
    """Return a bound logger with optional key/value bindings."""

    return log.bind(**bindings)


__all__ = ["log", "get_logger"]
