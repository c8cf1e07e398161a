"""Structured logging setup for the IDE orchestration API."""

import logging
import sys

import structlog

from ..config import settings


def setup_logging() -> None:
    """Configure structlog on top of stdlib logging.

    Renders JSON lines in production (``LOG_FORMAT=json``) and a colored
    console view for local development (``LOG_FORMAT=console``).
    """
    log_config = settings.logging
    level = getattr(logging, log_config.log_level, logging.INFO)

    logging.basicConfig(level=level, format="%(message)s", stream=sys.stdout)

    if log_config.log_format == "console":
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Uvicorn access logs are replaced by RequestLoggingMiddleware
    if not log_config.enable_access_logs:
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
