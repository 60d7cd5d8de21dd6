"""
Core module for Anchorpipe.

This module contains the fundamental components of the platform including
configuration management, logging setup, and error handling.
"""

from .config import AnchorpipeConfig
from .errors import (
    AnchorpipeError,
    ErrorDetails,
    ErrorType,
    RetryHandler,
    RetryStrategy,
    create_system_error,
    is_retryable_error,
)
from .logging import get_logger, setup_logging

__all__ = [
    "AnchorpipeConfig",
    "AnchorpipeError",
    "setup_logging",
    "get_logger",
    "ErrorType",
    "RetryStrategy",
    "ErrorDetails",
    "RetryHandler",
    "is_retryable_error",
    "create_system_error",
]
