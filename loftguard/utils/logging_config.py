"""Logging configuration for the security layer.

Configures structlog and the standard library loggers to:
- Render security events as key/value lines (or JSON in production)
- Keep SQLAlchemy engine and pool chatter out of the security log
- Suppress known harmless asyncpg warnings raised by timed-out store calls
"""
from __future__ import annotations

import logging as std_logging
import sys
import warnings

import structlog


class StoreNoiseFilter(std_logging.Filter):
    """Downgrade driver-level cancellation errors to DEBUG.

    Store calls run under a short timeout; when one expires the driver may log
    the cancelled query at ERROR. The security layer already logs the timeout
    as a fail-open event, so the driver line is only noise.
    """

    NOISE_PATTERNS = (
        "CancelledError",
        "QueryCanceledError",
        "canceling statement due to user request",
    )

    def filter(self, record: std_logging.LogRecord) -> bool:
        if record.levelno < std_logging.ERROR:
            return True

        msg = str(getattr(record, "msg", ""))
        if any(pattern in msg for pattern in self.NOISE_PATTERNS):
            record.levelno = std_logging.DEBUG
            record.levelname = "DEBUG"

        return True


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure logging for the API process.

    Should be called once, before the application is created.
    """
    log_level = getattr(std_logging, level.upper(), std_logging.INFO)

    std_logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    # Suppress verbose SQLAlchemy logging
    for sqla_logger_name in [
        "sqlalchemy",
        "sqlalchemy.engine",
        "sqlalchemy.pool",
        "sqlalchemy.engine.Engine",
    ]:
        sqla_logger = std_logging.getLogger(sqla_logger_name)
        sqla_logger.setLevel(std_logging.WARNING)
        sqla_logger.propagate = False

    std_logging.getLogger("asyncpg").addFilter(StoreNoiseFilter())

    # These occur when queries are cancelled via asyncio.wait_for timeouts
    warnings.filterwarnings(
        "ignore",
        message=r"coroutine 'Connection\._cancel' was never awaited",
        category=RuntimeWarning,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
