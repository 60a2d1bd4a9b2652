"""
Robustness module for onionrelay.

This module provides the error taxonomy shared by every component, exception
conversion at library boundaries, and structured logging helpers.
"""

import functools
import json
import logging
import logging.handlers
from collections.abc import Callable
from enum import Enum
from typing import Any

logger = logging.getLogger("onionrelay")


class ContextFormatter(logging.Formatter):
    """Renders ``record.context`` as JSON into ``%(context_json)s``."""

    def format(self, record):
        # record.context stays a dict; every handler formats the same record
        record.context_json = json.dumps(getattr(record, "context", {}), default=str)
        return super().format(record)


def setup_logging(log_level: str = "INFO", log_file: str | None = None):
    """
    Set up structured logging, optionally with a rotating log file.
    """
    root = logging.getLogger("onionrelay")
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = ContextFormatter(
        json.dumps(
            {
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "component": "%(name)s",
                "message": "%(message)s",
                "context": "%(context_json)s",
            }
        )
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=5
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    return root


class ErrorType(Enum):
    NETWORK = "network"
    CRYPTO = "crypto"
    CONFIG = "config"
    DIRECTORY = "directory"
    GENERAL = "general"


class OnionRelayError(Exception):
    error_type = ErrorType.GENERAL

    def __init__(self, message: str, error_type: ErrorType | None = None, context: dict[str, Any] | None = None):
        super().__init__(message)
        if error_type is not None:
            self.error_type = error_type
        self.context = context or {}


class ConfigError(OnionRelayError):
    error_type = ErrorType.CONFIG


class KeyFormatError(OnionRelayError):
    """Key material could not be imported."""

    error_type = ErrorType.CRYPTO


class KeyUnavailableError(OnionRelayError):
    """A relay was asked to decrypt before its key pair exists."""

    error_type = ErrorType.CRYPTO


class DecryptionError(OnionRelayError):
    """Ciphertext and key do not match, or the ciphertext is corrupt."""

    error_type = ErrorType.CRYPTO


class LayerFormatError(DecryptionError):
    """A layer or terminal message is structurally invalid."""


class InsufficientNodesError(OnionRelayError):
    error_type = ErrorType.DIRECTORY


class DuplicateNodeError(OnionRelayError):
    error_type = ErrorType.DIRECTORY


class DirectoryError(OnionRelayError):
    error_type = ErrorType.DIRECTORY


class TransportError(OnionRelayError):
    error_type = ErrorType.NETWORK


class ForwardingError(TransportError):
    """The next hop (or the final recipient) could not be reached."""


def handle_exception(
    error_type: ErrorType | None = None,
    error_cls: type[OnionRelayError] = OnionRelayError,
    context: dict[str, Any] | None = None,
):
    """
    Decorator converting unexpected exceptions into ``error_cls``.

    OnionRelayError instances raised by the wrapped function pass through
    unchanged.
    """

    def decorator(func: Callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except OnionRelayError as e:
                logger.debug(
                    f"{func.__name__}: {e}", extra={"context": {**e.context, **(context or {})}}
                )
                raise
            except Exception as e:
                logger.debug(
                    f"{func.__name__} failed: {e}",
                    extra={"context": {"exc_type": type(e).__name__, **(context or {})}},
                )
                raise error_cls(f"{func.__name__} failed: {e}", error_type, context) from e

        return wrapper

    return decorator


def log_with_context(message: str, level: str = "info", context: dict[str, Any] | None = None):
    """
    Log with additional context.
    """
    extra = {"context": context or {}}
    getattr(logger, level)(message, extra=extra)
