"""
Service layer for Anchorpipe.

This package contains the business logic behind the API routes and the
ingestion worker. Each service is a class with a module level instance.
"""

from .audit_service import (
    AuditAction,
    AuditService,
    AuditSubject,
    RequestContext,
    audit_service,
)
from .dsr_service import DSRService, dsr_service
from .hmac_auth import HmacAuthenticator, HmacAuthResult, hmac_authenticator
from .hmac_secret_service import HmacSecretService, hmac_secret_service
from .idempotency_service import (
    IdempotencyKeyData,
    IdempotencyService,
    idempotency_service,
)
from .rbac_service import RBACService, rbac_service
from .security_alerts import (
    AlertCheckResult,
    DetectedPattern,
    SecurityAlertService,
    security_alert_service,
)
from .telemetry import TelemetryService, telemetry_service
from .user_service import UserService, user_service

__all__ = [
    "AuditAction",
    "AuditService",
    "AuditSubject",
    "RequestContext",
    "audit_service",
    "DSRService",
    "dsr_service",
    "HmacAuthenticator",
    "HmacAuthResult",
    "hmac_authenticator",
    "HmacSecretService",
    "hmac_secret_service",
    "IdempotencyKeyData",
    "IdempotencyService",
    "idempotency_service",
    "RBACService",
    "rbac_service",
    "AlertCheckResult",
    "DetectedPattern",
    "SecurityAlertService",
    "security_alert_service",
    "TelemetryService",
    "telemetry_service",
    "UserService",
    "user_service",
]
