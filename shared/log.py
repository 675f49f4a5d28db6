#!/usr/bin/env python3
"""
Jibri Queue Client Logging Configuration

Centralized logging setup for consistent formatting across the project.
The client is usually embedded in a larger application, so only console
output is configured here.

Usage:
    from shared.log import get_logger

    logger = get_logger(__name__)
    logger.debug("Joining queue...")
    logger.error("Join failed", extra={"queue_jid": "queue@auth.example.com"})
"""

from __future__ import annotations
import logging
import sys
from typing import TYPE_CHECKING, Optional, Any
import os

if TYPE_CHECKING:
    from shared.stanza import Stanza


LOG_LEVEL_ENV = "JIBRI_QUEUE_LOG_LEVEL"


# ========================================
#           LOGGING FORMATTERS
# ========================================

class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output"""

    # ANSI Color codes
    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
        'RESET': '\033[0m'       # Reset
    }

    def format(self, record: logging.LogRecord) -> str:
        # Add color to level name
        if record.levelname in self.COLORS:
            record.levelname = f"{self.COLORS[record.levelname]}{record.levelname}{self.COLORS['RESET']}"

        return super().format(record)


class GenericFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        # Prefix queue context if the caller passed it via extra=
        queue_context = []

        if hasattr(record, 'queue_id'):
            queue_context.append(f"queue#{record.queue_id}")
        if hasattr(record, 'queue_jid'):
            queue_context.append(f"jid={record.queue_jid}")
        if hasattr(record, 'action'):
            queue_context.append(f"action={record.action}")
        if hasattr(record, 'stanza_id'):
            queue_context.append(f"id={record.stanza_id}")
        if getattr(record, 'stanza_type', None):
            queue_context.append(f"type={record.stanza_type}")
        if getattr(record, 'stanza_from', None):
            queue_context.append(f"from={record.stanza_from}")

        if queue_context:
            context_str = f"[{' '.join(queue_context)}] "
            record.msg = f"{context_str}{record.msg}"

        return super().format(record)


# ========================================
#           LOGGING CONFIGURATION
# ========================================

_loggers_configured = set()

def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Get a configured logger for the given module.

    Args:
        name: Usually __name__ from the calling module
        level: Override log level ("DEBUG", "INFO", "WARNING", "ERROR")

    Returns:
        Configured logger instance

    Examples:
        logger = get_logger(__name__)
        logger.info("Connected")

        # With context
        logger.debug("Push received", extra={
            "queue_id": 3,
            "action": "info",
            "stanza_id": "a1b2",
        })
    """
    logger = logging.getLogger(name)

    # Only configure each logger once
    if name not in _loggers_configured:
        _configure_logger(logger, level)
        _loggers_configured.add(name)

    return logger


def _configure_logger(logger: logging.Logger, level: Optional[str] = None) -> None:
    """Configure a logger with appropriate handlers and formatters"""

    logger.setLevel(_get_log_level(level))

    # Clear existing handlers to avoid duplicates
    logger.handlers.clear()

    _add_console_handler(logger, colored=_is_development())

    # Prevent duplicate messages from parent loggers
    logger.propagate = False


def _get_log_level(level: Optional[str] = None) -> int:
    """Determine appropriate log level"""

    level = level or os.getenv(LOG_LEVEL_ENV)
    if level:
        return getattr(logging, level.upper(), logging.INFO)

    # Default based on environment
    return logging.DEBUG if _is_development() else logging.INFO


def _is_development() -> bool:
    """Detect if we're in development mode"""
    return (
        os.getenv('PYTHON_ENV', '').lower() in ['dev', 'development'] or
        'pytest' in sys.modules
    )


def _add_console_handler(logger: logging.Logger, colored: bool = True) -> None:
    """Add console handler with appropriate formatter"""

    fmt = '[%(levelname)-8s][%(asctime)s][%(name)-5s]: %(message)s'
    handler = logging.StreamHandler(sys.stderr)

    if colored and _supports_color():
        formatter = ColoredFormatter(
            fmt=fmt,
            datefmt='%H:%M:%S'
        )
    else:
        formatter = GenericFormatter(
            fmt=fmt,
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)


def _supports_color() -> bool:
    """Check if terminal supports color output"""

    # stderr must be a terminal
    if not (hasattr(sys.stderr, "isatty") and sys.stderr.isatty()):
        return False

    # TERM should not be dumb
    if os.getenv("TERM", "") == "dumb":
        return False

    if sys.platform == "win32":
        return os.getenv("ANSICON") is not None or os.getenv("WT_SESSION") is not None or os.getenv("TERM_PROGRAM") == "vscode"

    return True

# ========================================
#           CONVENIENCE FUNCTIONS
# ========================================

def set_level(level: str) -> None:
    """
    Change the level of every logger configured through get_logger.
    Used by the CLI after the settings file has been read.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    for name in _loggers_configured:
        logging.getLogger(name).setLevel(log_level)


def log_stanza(logger: logging.Logger, level: str, message: str,
               stanza: Optional["Stanza"] = None,
               **context: Any) -> None:
    """
    Log a stanza-related event with structured context.

    Args:
        logger: Logger instance
        level: Log level ("debug", "info", "warning", "error")
        message: Log message
        stanza: Stanza for automatic context extraction
        **context: Additional context fields

    Example:
        log_stanza(logger, "debug", "Ignoring push", stanza=iq, queue_id=2)
    """

    extra_context = {}

    if stanza is not None:
        extra_context.update({
            'stanza_id': stanza.id,
            'stanza_from': stanza.from_,
            'stanza_type': stanza.type,
        })

    extra_context.update(context)

    log_func = getattr(logger, level.lower())
    log_func(message, extra=extra_context)
