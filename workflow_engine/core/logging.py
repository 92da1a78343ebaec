"""Structured logging configuration for the workflow engine.

Log records always go to stderr. Stdout is reserved for display output such
as `gatecheck ls` tables and `config` subcommand results.
"""

import logging
import sys
from typing import Optional, TextIO

import structlog

LEVEL_DEBUG = "DEBUG"
LEVEL_INFO = "INFO"
LEVEL_ERROR = "ERROR"


def level_from_flags(verbose: bool = False, silent: bool = False) -> str:
    """Map the global --verbose/--silent switches onto a logging level."""
    if verbose:
        return LEVEL_DEBUG
    if silent:
        return LEVEL_ERROR
    return LEVEL_INFO


def configure_logging(
    level: str = LEVEL_INFO,
    json_output: bool = False,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Configure structured logging for the process.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Whether to output JSON formatted logs
        stream: Destination for log records (default: sys.stderr)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(stream or sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(console_handler)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(colors=False),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Bound structlog logger
    """
    return structlog.get_logger(name)
