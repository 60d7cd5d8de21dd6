"""
Authentication endpoints: register, login, logout, me and email
verification. Sessions are carried in the ``ap_session`` cookie.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse

from ...core.auth.session import (
    clear_session_cookie,
    revoke_session,
    set_session_cookie,
)
from ...core.config import get_config
from ...core.dependencies import (
    enforce_rate_limit,
    get_request_context,
    get_session,
    get_session_token,
    parse_body,
)
from ...core.logging import (
    SecurityEventType,
    SecuritySeverity,
    get_logger,
    security_logger,
)
from ...core.models import User
from ...core.services import RequestContext, user_service
from ...core.services.user_service import serialize_user
from ..models import LoginRequest, RegisterRequest, VerifyEmailRequest

router = APIRouter(prefix="/auth", tags=["authentication"])
logger = get_logger("api.auth")


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(
    request: Request,
    response: Response,
    context: RequestContext = Depends(get_request_context),
) -> Dict[str, Any]:
    """
    Register an account and start a session.

    In development the verification token and URL are returned so the flow
    can be completed without email delivery.
    """
    headers = await enforce_rate_limit(request, "auth:register", context)
    body = await parse_body(request, RegisterRequest)

    result = await user_service.register(body.email, body.password, context)

    set_session_cookie(response, result.session_token)
    response.headers.update(headers)

    content: Dict[str, Any] = {
        "ok": True,
        "message": "Registration successful. Please verify your email address.",
    }
    if get_config().is_development():
        content["verificationToken"] = result.verification.token
        content["verificationUrl"] = result.verification.url
        content["expiresAt"] = result.verification.expires_at.isoformat()
    return content


@router.post("/login")
async def login(
    request: Request,
    response: Response,
    context: RequestContext = Depends(get_request_context),
) -> Dict[str, Any]:
    """Verify credentials; failed attempts count towards a lockout."""
    headers = await enforce_rate_limit(request, "auth:login", context)
    body = await parse_body(request, LoginRequest)

    token = await user_service.login(body.email, body.password, context)

    set_session_cookie(response, token)
    response.headers.update(headers)
    return {"ok": True}


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    claims: Optional[Dict[str, Any]] = Depends(get_session),
    context: RequestContext = Depends(get_request_context),
) -> Dict[str, Any]:
    await revoke_session(get_session_token(request))
    clear_session_cookie(response)
    if claims is not None:
        security_logger.log_security_event(
            SecurityEventType.LOGOUT,
            user_id=claims["sub"],
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            severity=SecuritySeverity.LOW,
        )
    return {"ok": True}


@router.get("/me", response_model=None)
async def me(
    claims: Optional[Dict[str, Any]] = Depends(get_session),
) -> Any:
    """Current user, or 401 ``{authenticated: false}``."""
    user = await User.get_or_none(id=claims["sub"]) if claims else None
    if user is None:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED, content={"authenticated": False}
        )
    return {"authenticated": True, "user": serialize_user(user)}


@router.post("/verify-email")
async def verify_email(
    request: Request,
    context: RequestContext = Depends(get_request_context),
) -> Dict[str, Any]:
    """Consume a single-use verification token."""
    body = await parse_body(request, VerifyEmailRequest)
    user = await user_service.verify_email(body.token, context)
    return {
        "ok": True,
        "message": "Email verified successfully",
        "user": serialize_user(user),
    }
