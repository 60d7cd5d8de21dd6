"""
Dependency injection for Anchorpipe.

FastAPI dependencies for request context, sessions, authorization and rate
limiting. Routes receive domain objects; failures are raised as
AnchorpipeError subclasses and rendered by the application handlers.
"""

import json
from typing import Any, Awaitable, Callable, Dict, Optional, Type, TypeVar
from uuid import UUID

from fastapi import Depends, Request
from pydantic import BaseModel, ValidationError

from .auth.rbac import PermissionAction, PermissionSubject, require_permission
from .auth.session import read_session
from .config import get_config
from .errors import (
    AuthenticationError,
    AuthorizationError,
    PayloadValidationError,
    RateLimitExceededError,
)
from .ingestion.schema import validation_details
from .logging import get_logger, security_logger
from .models import User
from .security.rate_limit import get_rate_limiter
from .services import (
    AuditAction,
    AuditSubject,
    RequestContext,
    audit_service,
    rbac_service,
)
from .services.audit_service import extract_request_context

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

UNAUTHENTICATED = "Unauthorized: authentication required"
ADMIN_REQUIRED = "Forbidden: admin role required"


async def get_request_context(request: Request) -> RequestContext:
    """Client IP and user agent for audit entries."""
    return extract_request_context(request.headers)


def get_session_token(request: Request) -> Optional[str]:
    return request.cookies.get(get_config().security.session_cookie_name)


async def get_session(request: Request) -> Optional[Dict[str, Any]]:
    """Session claims from the cookie, or None."""
    return await read_session(get_session_token(request))


async def require_session(
    claims: Optional[Dict[str, Any]] = Depends(get_session),
) -> Dict[str, Any]:
    """
    Require a valid session.

    Raises:
        AuthenticationError: If there is no valid session
    """
    if claims is None:
        raise AuthenticationError(UNAUTHENTICATED)
    return claims


async def get_current_user(claims: Dict[str, Any] = Depends(require_session)) -> User:
    """
    Get the user behind the session.

    Raises:
        AuthenticationError: If the user no longer exists
    """
    user = await User.get_or_none(id=claims["sub"])
    if user is None:
        raise AuthenticationError(UNAUTHENTICATED)
    return user


async def authorize(
    user: User,
    action: PermissionAction,
    subject: PermissionSubject,
    repo_id: Any,
) -> None:
    """
    Check an ability on a repository.

    Raises:
        AuthorizationError: If the user lacks the ability
    """
    ability = await rbac_service.get_user_ability(user.id, repo_id)
    if ability.cannot(action, subject):
        security_logger.log_access_denied(
            str(user.id), action.value, subject.value, repo_id=str(repo_id)
        )
    require_permission(ability, action, subject)


def require_authz(
    action: PermissionAction, subject: PermissionSubject
) -> Callable[..., Awaitable[User]]:
    """
    Dependency factory checking an ability on the ``repo_id`` path parameter.

    Example:
        ``Depends(require_authz(PermissionAction.READ, PermissionSubject.ROLE))``
    """

    async def dependency(repo_id: UUID, user: User = Depends(get_current_user)) -> User:
        await authorize(user, action, subject, repo_id)
        return user

    return dependency


async def require_admin_any(user: User = Depends(get_current_user)) -> User:
    """
    Require the user to be admin of at least one repository.

    Raises:
        AuthorizationError: If the user administers no repository
    """
    if not await rbac_service.user_has_admin_role(user.id):
        security_logger.log_access_denied(str(user.id), "admin", "audit")
        raise AuthorizationError(ADMIN_REQUIRED)
    return user


async def enforce_rate_limit(
    request: Request, key: str, context: Optional[RequestContext] = None
) -> Dict[str, str]:
    """
    Count the request against a named limit.

    Violations are written to the audit log as security events.

    Returns:
        Rate limit headers to attach to the response

    Raises:
        RateLimitExceededError: With Retry-After when the limit is exceeded
    """

    async def on_violation(client_id: str, limit_key: str) -> None:
        await audit_service.write_audit_log(
            AuditAction.LOGIN_FAILURE,
            AuditSubject.SECURITY,
            description="Rate limit violation",
            metadata={"key": limit_key, "clientId": client_id},
            context=context,
        )

    result = await get_rate_limiter().check_request(key, request.headers, on_violation)
    if not result.allowed:
        raise RateLimitExceededError(
            "Too many requests. Please try again later.", headers=result.headers
        )
    return result.headers


async def parse_body(request: Request, model: Type[M], allow_empty: bool = False) -> M:
    """
    Parse and validate a JSON body.

    Args:
        request: Incoming request
        model: Pydantic model to validate against
        allow_empty: Treat an empty body as ``{}``

    Raises:
        PayloadValidationError: If the body is not JSON or fails validation
    """
    raw = await request.body()
    if not raw.strip() and allow_empty:
        data: Any = {}
    else:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise PayloadValidationError("Invalid JSON payload")

    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise PayloadValidationError("Invalid request", details=validation_details(e))
