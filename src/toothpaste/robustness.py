"""
Logging and exception helpers for toothpaste.

Structured JSON logging with rotation, a context-aware log helper and a
decorator that turns unexpected failures into ToothpasteError.
"""

import functools
import json
import logging
import logging.handlers
from collections.abc import Callable
from typing import Any

from .errors import ErrorType, ToothpasteError

logger = logging.getLogger("toothpaste")
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


def _json_escape(text: str) -> str:
    return json.dumps(text)[1:-1]


class ContextFormatter(logging.Formatter):
    """Fills LOG_FORMAT so that every line is one valid JSON object."""

    def formatMessage(self, record):
        values = dict(record.__dict__)
        context = values.get("context", {})
        if not isinstance(context, str):
            context = json.dumps(context, default=str)
        values["context"] = _json_escape(context)
        values["message"] = _json_escape(record.message)
        return self._fmt % values


LOG_FORMAT = json.dumps(
    {
        "timestamp": "%(asctime)s",
        "level": "%(levelname)s",
        "component": "%(name)s",
        "message": "%(message)s",
        "context": "%(context)s",
    }
)


def setup_logging(log_level: str = "INFO", log_file: str | None = None) -> logging.Logger:
    """
    Set up structured logging for the toothpaste logger tree.

    Safe to call more than once; handlers installed by a previous call are
    replaced rather than duplicated.
    """
    root = logging.getLogger("toothpaste")
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for handler in list(root.handlers):
        if getattr(handler, "_toothpaste_managed", False) or isinstance(handler, logging.NullHandler):
            root.removeHandler(handler)

    formatter = ContextFormatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler._toothpaste_managed = True
    root.addHandler(console_handler)

    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=5
        )
        file_handler.setFormatter(formatter)
        file_handler._toothpaste_managed = True
        root.addHandler(file_handler)

    return root


def log_with_context(message: str, level: str = "info", context: dict[str, Any] = None):
    """
    Log with additional context.
    """
    extra = {"context": context or {}}
    getattr(logger, level)(message, extra=extra)


def handle_exception(error_type: ErrorType = ErrorType.GENERAL, context: dict[str, Any] = None):
    """
    Decorator to wrap unexpected exceptions in ToothpasteError.

    Errors from the toothpaste taxonomy pass through untouched so callers can
    still tell them apart.
    """

    def decorator(func: Callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except ToothpasteError as e:
                logger.error(f"{type(e).__name__}: {e}", extra={"context": {**e.context, **(context or {})}})
                raise
            except Exception as e:
                logger.error(f"Unhandled error: {e}", extra={"context": context or {}})
                raise ToothpasteError(str(e), error_type, context) from e

        return wrapper

    return decorator


def short_id(value: Any) -> str:
    """Truncated identifier for log lines."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()[:8]
    return str(value)[:8]
