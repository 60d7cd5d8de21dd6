"""
Data models for Anchorpipe.
"""

from .tortoise_models import (
    AuditLog,
    DataSubjectRequest,
    DataSubjectRequestEvent,
    DSRStatus,
    DSRType,
    HmacSecret,
    IdempotencyKey,
    ProcessedMessage,
    Repo,
    RepoRole,
    RoleAuditLog,
    RoleChange,
    TelemetryEvent,
    TestCase,
    TestRun,
    TestStatus,
    User,
    UserRepoRole,
    UserSession,
    VerificationToken,
)

__all__ = [
    "AuditLog",
    "DataSubjectRequest",
    "DataSubjectRequestEvent",
    "DSRStatus",
    "DSRType",
    "HmacSecret",
    "IdempotencyKey",
    "ProcessedMessage",
    "Repo",
    "RepoRole",
    "RoleAuditLog",
    "RoleChange",
    "TelemetryEvent",
    "TestCase",
    "TestRun",
    "TestStatus",
    "User",
    "UserRepoRole",
    "UserSession",
    "VerificationToken",
]
