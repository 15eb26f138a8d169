"""Structured logging shared by every pipeline stage and the API.

Logs are JSON lines produced by structlog on top of the standard library
logger, so stage boundaries can be searched by ``service``, ``stage`` and
the channel/video/transcript identifiers bound to each event.
"""

import logging
import os
import sys

import structlog

_configured = False


def configure_logging(level: str | None = None) -> None:
    """Configure structlog and the root stdlib logger.

    Safe to call more than once; only the first call installs processors.

    Args:
        level: Log level name. Falls back to ``LOG_LEVEL`` then ``INFO``.
    """
    global _configured
    if _configured:
        return

    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name, logging.INFO),
    )
    _configured = True


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured structured logger.

    Args:
        name: Logger name, usually ``__name__`` of the calling module.

    Returns:
        A structlog logger emitting JSON events.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("transcript_fetched", video_id="abc123", segments=42)
    """
    configure_logging()
    return structlog.get_logger(name)
