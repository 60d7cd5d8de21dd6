"""
User service for Anchorpipe.

This module contains the business logic behind registration, login with
brute force protection, email verification and profile lookup. Routes
handle rate limiting and cookies; everything else lives here.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union
from uuid import UUID

from tortoise.transactions import in_transaction

from ..auth.password import hash_password, verify_password
from ..auth.session import create_session_token
from ..config import get_config
from ..errors import (
    AuthenticationError,
    ConflictError,
    PayloadValidationError,
    RateLimitExceededError,
)
from ..logging import SecurityEventType, SecuritySeverity, get_logger, security_logger
from ..models import User, VerificationToken
from ..security.brute_force import BruteForceProtector, get_brute_force_protector
from .audit_service import (
    AuditAction,
    AuditService,
    AuditSubject,
    RequestContext,
    audit_service,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"
LOCKED_OUT = "Too many failed login attempts. Please try again later."


@dataclass
class IssuedVerification:
    """An email verification token and its expiry."""

    token: str
    expires_at: datetime

    @property
    def url(self) -> str:
        return f"{get_config().api.app_url}/verify-email?token={self.token}"


@dataclass
class RegistrationResult:
    user: User
    session_token: str
    verification: IssuedVerification


def generate_verification_token() -> str:
    """64 hex characters from 32 random bytes."""
    return secrets.token_hex(32)


def serialize_user(user: User) -> Dict[str, Any]:
    return {"id": str(user.id), "email": user.email, "name": user.name}


class UserService:
    """
    Service for account operations.

    Args:
        audit: Audit service
        brute_force: Failed login tracker
    """

    def __init__(
        self,
        audit: Optional[AuditService] = None,
        brute_force: Optional[BruteForceProtector] = None,
    ):
        self.audit = audit or audit_service
        self._brute_force = brute_force

    @property
    def brute_force(self) -> BruteForceProtector:
        if self._brute_force is not None:
            return self._brute_force
        return get_brute_force_protector()

    async def create_verification_token(self, email: str) -> IssuedVerification:
        """
        Issue a verification token for an email, replacing unexpired ones.

        Args:
            email: Address being verified

        Returns:
            The new token and its expiry
        """
        now = datetime.now(timezone.utc)
        ttl = timedelta(hours=get_config().security.verification_token_ttl_hours)
        token = generate_verification_token()

        async with in_transaction():
            await VerificationToken.filter(identifier=email, expires__gt=now).delete()
            await VerificationToken.create(
                identifier=email, token=token, expires=now + ttl
            )

        return IssuedVerification(token=token, expires_at=now + ttl)

    async def register(
        self,
        email: str,
        password: str,
        context: Optional[RequestContext] = None,
    ) -> RegistrationResult:
        """
        Create an account and sign the user in.

        Args:
            email: Normalized email address
            password: Password that already satisfies the strength policy
            context: Client details for session and audit records

        Returns:
            RegistrationResult with the user, session token and verification token

        Raises:
            ConflictError: If the email is already registered
        """
        context = context or RequestContext()

        existing = await User.get_or_none(email=email)
        if existing is not None:
            await self.audit.write_audit_log(
                AuditAction.LOGIN_FAILURE,
                AuditSubject.SECURITY,
                actor_id=existing.id,
                subject_id=str(existing.id),
                description="Registration blocked: email already exists.",
                metadata={"email": email},
                context=context,
            )
            raise ConflictError("User with this email already exists")

        user = await User.create(
            email=email,
            preferences={
                "passwordHash": hash_password(password),
                "emailVerified": False,
            },
        )
        verification = await self.create_verification_token(email)

        log_context: Dict[str, Any] = {
            "user_id": str(user.id),
            "expires_at": verification.expires_at.isoformat(),
        }
        if get_config().is_development():
            log_context["verification_url"] = verification.url
        logger.info("Email verification token generated", **log_context)

        token = await create_session_token(user, context.ip_address, context.user_agent)

        security_logger.log_security_event(
            SecurityEventType.USER_CREATED,
            user_id=str(user.id),
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            severity=SecuritySeverity.LOW,
        )
        await self.audit.write_audit_log(
            AuditAction.USER_CREATED,
            AuditSubject.USER,
            actor_id=user.id,
            subject_id=str(user.id),
            description="User account registered.",
            metadata={
                "email": email,
                "emailVerificationRequired": True,
                "expiresAt": verification.expires_at.isoformat(),
            },
            context=context,
        )
        return RegistrationResult(
            user=user, session_token=token, verification=verification
        )

    async def _login_failed(
        self, user: User, email: str, ip: str, description: str, context: RequestContext
    ) -> None:
        """Audit a failed password check, count it, and raise."""
        await self.audit.write_audit_log(
            AuditAction.LOGIN_FAILURE,
            AuditSubject.USER,
            actor_id=user.id,
            subject_id=str(user.id),
            description=description,
            metadata={"email": email},
            context=context,
        )
        security_logger.log_auth_failure(
            email=email,
            ip_address=ip,
            user_agent=context.user_agent,
            reason=description,
        )

        status = self.brute_force.record_failed_attempt(ip, email)
        if status.locked:
            raise RateLimitExceededError(
                LOCKED_OUT, headers={"Retry-After": str(status.retry_after)}
            )
        raise AuthenticationError(INVALID_CREDENTIALS)

    async def login(
        self,
        email: str,
        password: str,
        context: Optional[RequestContext] = None,
    ) -> str:
        """
        Verify credentials and issue a session token.

        Failed attempts are tracked per (ip, email). A locked key is refused
        even when the password is correct.

        Returns:
            Encoded session JWT

        Raises:
            RateLimitExceededError: If the key is locked, with Retry-After
            AuthenticationError: If the credentials are invalid
        """
        context = context or RequestContext()
        ip = context.ip_address or "unknown"

        lock = self.brute_force.check_lock(ip, email)
        if lock.locked:
            raise RateLimitExceededError(
                LOCKED_OUT, headers={"Retry-After": str(lock.retry_after)}
            )

        user = await User.get_or_none(email=email)
        if user is None:
            await self.audit.write_audit_log(
                AuditAction.LOGIN_FAILURE,
                AuditSubject.SECURITY,
                description="Failed login - user not found.",
                metadata={"email": email},
                context=context,
            )
            raise AuthenticationError(INVALID_CREDENTIALS)

        password_hash = (user.preferences or {}).get("passwordHash")
        if not password_hash:
            await self._login_failed(
                user, email, ip, "Failed login - password not set.", context
            )
        elif not verify_password(password, password_hash):
            await self._login_failed(
                user, email, ip, "Failed login - invalid password.", context
            )

        self.brute_force.clear_failed_attempts(ip, email)
        user.last_login_at = datetime.now(timezone.utc)
        await user.save()

        token = await create_session_token(user, context.ip_address, context.user_agent)

        security_logger.log_auth_success(
            str(user.id), ip_address=context.ip_address, user_agent=context.user_agent
        )
        await self.audit.write_audit_log(
            AuditAction.LOGIN_SUCCESS,
            AuditSubject.USER,
            actor_id=user.id,
            subject_id=str(user.id),
            description="User logged in successfully.",
            metadata={"email": email},
            context=context,
        )
        return token

    async def verify_email(
        self, token: str, context: Optional[RequestContext] = None
    ) -> User:
        """
        Consume a verification token and mark the email verified.

        Raises:
            PayloadValidationError: If the token is unknown or expired
        """
        context = context or RequestContext()
        error = None
        user = None

        record = await VerificationToken.get_or_none(token=token)
        if record is None:
            error = "Invalid verification token"
        else:
            await record.delete()
            if record.expires < datetime.now(timezone.utc):
                error = "Verification token has expired"
            else:
                user = await User.get_or_none(email=record.identifier)
                if user is None:
                    error = "User not found"

        if user is None:
            logger.warning("Email verification failed", error=error)
            await self.audit.write_audit_log(
                AuditAction.LOGIN_FAILURE,
                AuditSubject.SECURITY,
                description="Email verification failed",
                metadata={"error": error},
                context=context,
            )
            raise PayloadValidationError(
                error or "Invalid or expired verification token"
            )

        preferences = dict(user.preferences or {})
        preferences["emailVerified"] = True
        preferences["emailVerifiedAt"] = datetime.now(timezone.utc).isoformat()
        user.preferences = preferences
        await user.save()

        await self.audit.write_audit_log(
            AuditAction.CONFIG_UPDATED,
            AuditSubject.USER,
            actor_id=user.id,
            subject_id=str(user.id),
            description="Email address verified",
            context=context,
        )
        logger.info("Email verification completed", user_id=str(user.id))
        return user

    async def get_user(self, user_id: Union[UUID, str]) -> Optional[User]:
        return await User.get_or_none(id=user_id)


# Global user service instance
user_service = UserService()
