"""
Logging Configuration
=====================

Configures stdlib logging and structlog so that both service loggers
(``logging.getLogger(__name__)``) and structured event loggers emit JSON
lines to stdout.
"""

import logging
import sys

import structlog

from app.core.config import settings


_configured = False


def configure_logging() -> None:
    """Configure logging once per process."""
    global _configured
    if _configured:
        return

    level = getattr(logging, str(settings.LOG_LEVEL or "INFO").upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
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
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str):
    """Return a structlog logger bound to ``name``."""
    configure_logging()
    return structlog.get_logger(name)
