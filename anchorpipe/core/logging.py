"""
Structured logging for Anchorpipe.

All components log through structlog. Every event carries the service
metadata and, when one is bound, the correlation id of the HTTP request or
queue message being handled. Values under credential-like keys are masked
before rendering so secrets, session tokens and signatures never reach the
log sink.

Security relevant events (authentication, lockouts, rate limiting, access
denials, HMAC failures) go through :data:`security_logger` so they share one
schema and can be shipped to a SIEM alongside the audit log.
"""

import contextvars
import logging
import socket
import sys
import uuid
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional

import structlog

from .config import get_config

# Set per request by the API middleware and per message by the worker
correlation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "correlation_id", default=None
)

MASK = "***"

SENSITIVE_LOG_KEYS: FrozenSet[str] = frozenset(
    {
        "authorization",
        "cookie",
        "password",
        "secret",
        "secret_value",
        "session_token",
        "signature",
        "token",
        "x-fr-sig",
    }
)


def mask_sensitive_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Replace values of credential keys, one level into nested dicts."""
    for key, value in list(event_dict.items()):
        if key.lower() in SENSITIVE_LOG_KEYS:
            event_dict[key] = MASK
        elif isinstance(value, dict):
            event_dict[key] = {
                k: MASK if str(k).lower() in SENSITIVE_LOG_KEYS else v
                for k, v in value.items()
            }
    return event_dict


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    correlation_id = correlation_id_var.get()
    if correlation_id is not None:
        event_dict.setdefault("correlation_id", correlation_id)
    return event_dict


@lru_cache(maxsize=1)
def _hostname() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return "unknown"


def _add_service_metadata(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    from .. import __version__

    event_dict["service"] = "anchorpipe"
    event_dict["version"] = __version__
    event_dict["environment"] = get_config().environment.value
    event_dict["hostname"] = _hostname()
    return event_dict


def new_correlation_id() -> str:
    """Generate a correlation id and bind it to the current context."""
    correlation_id = uuid.uuid4().hex[:16]
    correlation_id_var.set(correlation_id)
    return correlation_id


def setup_logging(
    level: Optional[str] = None,
    log_file: Optional[Path] = None,
    json_output: Optional[bool] = None,
) -> None:
    """
    Configure structlog and the stdlib root logger.

    Production always renders JSON; elsewhere ``LOG_JSON_OUTPUT`` decides
    between JSON lines and the coloured console renderer.

    Args:
        level: Logging level name; defaults to ``LOG_LEVEL``
        log_file: Extra file sink; defaults to ``LOG_FILE`` when set
        json_output: Force JSON rendering on or off
    """
    config = get_config()
    log_level = getattr(logging, (level or config.logging.level).upper())
    if json_output is None:
        json_output = config.logging.json_output or config.is_production()
    if log_file is None and config.logging.log_file:
        log_file = Path(config.logging.log_file)

    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _add_correlation_id,
            _add_service_metadata,
            mask_sensitive_fields,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.setLevel(log_level)
    if not root.handlers:
        stream = logging.StreamHandler(sys.stdout)
        stream.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(stream)
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(file_handler)

    # Chatty third-party loggers
    for name in ("tortoise", "aiosqlite", "httpx"):
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def get_logger(name: str) -> Any:
    """Return a structlog logger, usually ``get_logger(__name__)``."""
    return structlog.get_logger(name)


class SecurityEventType(Enum):
    """Security events emitted by the API, services and worker."""

    AUTH_SUCCESS = "auth_success"
    AUTH_FAILURE = "auth_failure"
    AUTH_BLOCKED = "auth_blocked"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    ACCESS_DENIED = "access_denied"
    USER_CREATED = "user_created"
    USER_DELETED = "user_deleted"
    ROLE_CHANGED = "role_changed"
    LOGOUT = "logout"
    HMAC_AUTH_FAILURE = "hmac_auth_failure"
    HMAC_SECRET_CHANGED = "hmac_secret_changed"
    DATA_ACCESS = "data_access"
    SUSPICIOUS_PATTERN = "suspicious_pattern"


class SecuritySeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_SEVERITY_LEVELS: Dict[SecuritySeverity, str] = {
    SecuritySeverity.LOW: "info",
    SecuritySeverity.MEDIUM: "warning",
    SecuritySeverity.HIGH: "error",
    SecuritySeverity.CRITICAL: "critical",
}


class SecurityLogger:
    """
    Logger for security events with a fixed schema.

    Every event has an ``event_id``, ``event_type``, ``severity``, the actor
    and client fields, and a free-form ``details`` mapping. The severity
    picks the log level so sinks can alert on ``error`` and above.
    """

    def __init__(self, name: str = "anchorpipe.security") -> None:
        self.logger = structlog.get_logger(name)

    def log_security_event(
        self,
        event_type: SecurityEventType,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: SecuritySeverity = SecuritySeverity.MEDIUM,
    ) -> str:
        """Emit one security event and return its id."""
        event_id = str(uuid.uuid4())
        log = getattr(self.logger, _SEVERITY_LEVELS[severity])
        log(
            "Security event",
            event_id=event_id,
            event_type=event_type.value,
            occurred_at=datetime.now(timezone.utc).isoformat(),
            severity=severity.value,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details or {},
        )
        return event_id

    def log_auth_success(
        self,
        user_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        return self.log_security_event(
            SecurityEventType.AUTH_SUCCESS,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            severity=SecuritySeverity.LOW,
        )

    def log_auth_failure(
        self,
        email: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        reason: str = "Invalid credentials",
    ) -> str:
        return self.log_security_event(
            SecurityEventType.AUTH_FAILURE,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"email": email, "reason": reason},
        )

    def log_account_locked(
        self, ip_address: str, email: Optional[str], retry_after: int
    ) -> str:
        """Brute force lockout of an IP or IP and email pair."""
        return self.log_security_event(
            SecurityEventType.AUTH_BLOCKED,
            ip_address=ip_address,
            details={"email": email, "retry_after": retry_after},
            severity=SecuritySeverity.HIGH,
        )

    def log_rate_limit_exceeded(
        self,
        ip_address: Optional[str] = None,
        endpoint: str = "unknown",
        user_id: Optional[str] = None,
    ) -> str:
        return self.log_security_event(
            SecurityEventType.RATE_LIMIT_EXCEEDED,
            user_id=user_id,
            ip_address=ip_address,
            details={"endpoint": endpoint},
        )

    def log_access_denied(
        self,
        user_id: Optional[str],
        action: str,
        subject: str,
        repo_id: Optional[str] = None,
    ) -> str:
        return self.log_security_event(
            SecurityEventType.ACCESS_DENIED,
            user_id=user_id,
            details={"action": action, "subject": subject, "repo_id": repo_id},
        )

    def log_suspicious_pattern(
        self,
        pattern_type: str,
        severity: SecuritySeverity,
        description: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Alert raised by pattern detection over the audit log."""
        return self.log_security_event(
            SecurityEventType.SUSPICIOUS_PATTERN,
            details={
                "pattern_type": pattern_type,
                "description": description,
                **(details or {}),
            },
            severity=severity,
        )


security_logger = SecurityLogger()
