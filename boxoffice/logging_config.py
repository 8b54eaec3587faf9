"""
Structured logging for the box office service.

JSON lines through structlog. Every line carries an ``event_type`` key. The
HTTP layer binds a ``request_id`` into context variables, so service logs
emitted while serving that request share it without passing it around.
"""

import logging
import uuid

import structlog

from .config import LOG_LEVEL


def configure_logging(level: str = LOG_LEVEL):
    """Route structlog through stdlib logging at ``level`` and render JSON."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.INFO))
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name=None):
    return structlog.get_logger(name)


def generate_request_id() -> str:
    """Request id for correlation: the one bound for the current HTTP request, else a new one."""
    bound = structlog.contextvars.get_contextvars().get("request_id")
    return bound or str(uuid.uuid4())


configure_logging()

logger = get_logger()
