"""structlog configuration.

Diagnostics go to stderr so command output on stdout stays pipeable.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import structlog

LOG_LEVELS = {
    "TRACE": logging.DEBUG,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def get_log_level(level: str) -> int:
    """Get a numeric log level from its name, defaulting to INFO."""
    return LOG_LEVELS.get(level.strip().upper(), logging.INFO)


def configure_logging(level: str = "info", colors: Optional[bool] = None) -> None:
    """Configure structlog and stdlib logging.

    Args:
        level: Level name (trace, debug, info, warning, error).
        colors: Colorize output. Defaults to whether stderr is a terminal.
    """
    log_level = get_log_level(level)
    if colors is None:
        colors = sys.stderr.isatty()

    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )
    logging.getLogger().setLevel(log_level)
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer(colors=colors),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
