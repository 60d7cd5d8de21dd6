"""
General error handling and retry mechanisms for Anchorpipe.

This module provides error categorization, retry strategies, and error
response handling that can be used across the entire system, plus the
domain exceptions services raise and the API maps to HTTP responses.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from fastapi import HTTPException, status


class ErrorType(Enum):
    """Types of errors that can occur in the system."""

    VALIDATION_ERROR = "validation_error"  # Invalid input/data format
    PROCESSING_ERROR = "processing_error"  # Processing/persistence failure
    TIMEOUT_ERROR = "timeout_error"
    RESOURCE_ERROR = "resource_error"  # Resource unavailable or exhausted
    NETWORK_ERROR = "network_error"  # Broker, Redis or SIEM unreachable
    AUTHENTICATION_ERROR = "authentication_error"
    AUTHORIZATION_ERROR = "authorization_error"
    CONFIGURATION_ERROR = "configuration_error"
    UNKNOWN_ERROR = "unknown_error"


RETRYABLE_ERROR_TYPES = (
    ErrorType.PROCESSING_ERROR,
    ErrorType.TIMEOUT_ERROR,
    ErrorType.RESOURCE_ERROR,
    ErrorType.NETWORK_ERROR,
    ErrorType.UNKNOWN_ERROR,
)


class RetryStrategy(Enum):
    """Retry strategies for failed operations."""

    IMMEDIATE = "immediate"
    EXPONENTIAL_BACKOFF = "exponential_backoff"  # base, 2*base, 4*base...
    LINEAR_BACKOFF = "linear_backoff"  # base, 2*base, 3*base...
    CUSTOM = "custom"  # Explicit delay schedule


@dataclass
class ErrorDetails:
    """Detailed error information for failed operations."""

    error_type: ErrorType
    error_code: str
    error_message: str
    error_context: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    retry_count: int = 0
    max_retries: int = 3
    retry_after: Optional[datetime] = None
    retry_strategy: Optional[RetryStrategy] = None
    source: Optional[str] = None

    def can_retry(self) -> bool:
        """Check if this error can be retried."""
        return (
            self.retry_count < self.max_retries
            and self.error_type in RETRYABLE_ERROR_TYPES
        )

    def should_retry_now(self) -> bool:
        """Check if it's time to retry."""
        if not self.can_retry():
            return False
        if self.retry_after is None:
            return True
        return datetime.now(timezone.utc) >= self.retry_after

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for logs and dead-letter headers."""
        return {
            "error_type": self.error_type.value,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "error_context": self.error_context,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }


class RetryHandler:
    """
    General-purpose retry delay calculator.

    Delays are expressed in seconds. With RetryStrategy.CUSTOM the delay for
    attempt ``n`` is ``custom_delays[n]``, clamped to the last entry.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        custom_delays: Optional[Sequence[float]] = None,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.custom_delays = list(custom_delays) if custom_delays else None

    @classmethod
    def from_schedule_ms(cls, delays_ms: Sequence[int]) -> "RetryHandler":
        """Build a handler whose retry count and delays follow a ms schedule."""
        delays = [ms / 1000.0 for ms in delays_ms]
        return cls(max_retries=len(delays), custom_delays=delays)

    def calculate_retry_delay(
        self,
        retry_count: int,
        strategy: RetryStrategy,
        custom_delays: Optional[Sequence[float]] = None,
    ) -> float:
        """Calculate delay before the next retry."""
        if strategy == RetryStrategy.IMMEDIATE:
            return 0.0
        if strategy == RetryStrategy.EXPONENTIAL_BACKOFF:
            return float(self.base_delay * (2**retry_count))
        if strategy == RetryStrategy.LINEAR_BACKOFF:
            return float(self.base_delay * (retry_count + 1))

        delays = custom_delays if custom_delays is not None else self.custom_delays
        if not delays:
            return float(self.base_delay)
        return float(delays[min(retry_count, len(delays) - 1)])

    def prepare_for_retry(
        self, error_details: ErrorDetails, strategy: RetryStrategy
    ) -> ErrorDetails:
        """Return a copy of the error details scheduled for its next attempt."""
        if not error_details.can_retry():
            return error_details

        delay = self.calculate_retry_delay(error_details.retry_count, strategy)
        return ErrorDetails(
            error_type=error_details.error_type,
            error_code=error_details.error_code,
            error_message=error_details.error_message,
            error_context=error_details.error_context,
            timestamp=error_details.timestamp,
            retry_count=error_details.retry_count + 1,
            max_retries=error_details.max_retries,
            retry_after=datetime.now(timezone.utc) + timedelta(seconds=delay),
            retry_strategy=strategy,
            source=error_details.source,
        )


def is_retryable_error(error_type: ErrorType) -> bool:
    """Check if an error type is retryable."""
    return error_type in RETRYABLE_ERROR_TYPES


def create_system_error(
    error_type: ErrorType,
    error_code: str,
    error_message: str,
    error_context: Optional[Dict[str, Any]] = None,
    source: Optional[str] = None,
    max_retries: int = 3,
) -> ErrorDetails:
    """Create a system error with default settings."""
    return ErrorDetails(
        error_type=error_type,
        error_code=error_code,
        error_message=error_message,
        error_context=error_context or {},
        max_retries=max_retries,
        source=source,
    )


# Domain exceptions


class AnchorpipeError(Exception):
    """
    Base class for domain errors raised by Anchorpipe services.

    Each subclass carries the HTTP status the API layer responds with and
    the ErrorType used when the error is logged or reported.
    """

    status_code: int = 500
    error_type: ErrorType = ErrorType.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        error_context: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_context = error_context or {}
        self.headers = headers

    def to_http_exception(self) -> HTTPException:
        """Convert to a FastAPI HTTPException with the message as detail."""
        return HTTPException(
            status_code=self.status_code, detail=self.message, headers=self.headers
        )

    def to_error_details(self, source: Optional[str] = None) -> ErrorDetails:
        """Convert to ErrorDetails for logging and retry decisions."""
        return create_system_error(
            self.error_type,
            type(self).__name__,
            self.message,
            self.error_context,
            source=source,
        )


class AuthenticationError(AnchorpipeError):
    """Caller is not authenticated."""

    status_code = status.HTTP_401_UNAUTHORIZED
    error_type = ErrorType.AUTHENTICATION_ERROR


class AuthorizationError(AnchorpipeError):
    """Caller is authenticated but lacks the required ability."""

    status_code = status.HTTP_403_FORBIDDEN
    error_type = ErrorType.AUTHORIZATION_ERROR


class NotFoundError(AnchorpipeError):
    """Requested resource does not exist or is not visible to the caller."""

    status_code = status.HTTP_404_NOT_FOUND
    error_type = ErrorType.RESOURCE_ERROR


class ConflictError(AnchorpipeError):
    """Resource state conflicts with the request."""

    status_code = status.HTTP_409_CONFLICT
    error_type = ErrorType.VALIDATION_ERROR


class PayloadValidationError(AnchorpipeError):
    """Request payload failed validation."""

    status_code = status.HTTP_400_BAD_REQUEST
    error_type = ErrorType.VALIDATION_ERROR

    def __init__(
        self,
        message: str,
        details: Optional[List[Dict[str, str]]] = None,
        error_context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_context)
        self.details = details or []


class PayloadTooLargeError(AnchorpipeError):
    """Request payload exceeds the configured size limit."""

    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    error_type = ErrorType.VALIDATION_ERROR


class RateLimitExceededError(AnchorpipeError):
    """Client exceeded a rate limit or is locked out."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error_type = ErrorType.RESOURCE_ERROR


class ConfigurationError(AnchorpipeError):
    """Required configuration is missing or invalid."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type = ErrorType.CONFIGURATION_ERROR
