"""
Session management for Anchorpipe.

Sessions are HS256 JWTs signed with AUTH_SECRET and carried in an
HTTP-only cookie. Every issued token has a UserSession row keyed by its
``jti``; deleting the row revokes the token before it expires.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Response
from fastapi_users.jwt import decode_jwt, generate_jwt

from ..config import get_config
from ..logging import get_logger
from ..models import User, UserSession

logger = get_logger(__name__)


async def create_session_token(
    user: User,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> str:
    """
    Issue a session JWT for the user and persist its session row.

    Args:
        user: Authenticated user
        ip_address: Client IP recorded on the session
        user_agent: Client user agent recorded on the session

    Returns:
        Encoded JWT
    """
    security = get_config().security
    jti = uuid.uuid4().hex
    expires_at = datetime.now(timezone.utc) + timedelta(
        seconds=security.session_ttl_seconds
    )

    await UserSession.create(
        id=jti,
        user=user,
        expires_at=expires_at,
        ip_address=(ip_address or "")[:45] or None,
        user_agent=(user_agent or "")[:512] or None,
    )

    token: str = generate_jwt(
        {
            "sub": str(user.id),
            "email": user.email,
            "jti": jti,
            "aud": security.jwt_audience,
        },
        security.auth_secret,
        lifetime_seconds=security.session_ttl_seconds,
        algorithm=security.jwt_algorithm,
    )
    logger.debug("Session issued", user_id=str(user.id), jti=jti[:8])
    return token


def decode_session_token(token: str) -> Optional[Dict[str, Any]]:
    """Verify signature, audience and expiry; return claims or None."""
    security = get_config().security
    try:
        claims: Dict[str, Any] = decode_jwt(
            token,
            security.auth_secret,
            audience=[security.jwt_audience],
            algorithms=[security.jwt_algorithm],
        )
    except jwt.PyJWTError as e:
        logger.debug("Session token rejected", error=type(e).__name__)
        return None

    if not claims.get("sub") or not claims.get("jti"):
        return None
    return claims


async def read_session(token: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Resolve a session token to its claims.

    Returns None for a missing, invalid or expired token, and for a token
    whose session row was revoked.
    """
    if not token:
        return None

    claims = decode_session_token(token)
    if claims is None:
        return None

    session = await UserSession.get_or_none(id=claims["jti"])
    if session is None:
        logger.info("Revoked session presented", jti=claims["jti"][:8])
        return None
    if session.expires_at <= datetime.now(timezone.utc):
        await session.delete()
        return None
    return claims


async def revoke_session(token: Optional[str]) -> bool:
    """Delete the session row behind a token. Returns True if one was removed."""
    if not token:
        return False
    claims = decode_session_token(token)
    if claims is None:
        return False
    deleted = await UserSession.filter(id=claims["jti"]).delete()
    return bool(deleted)


async def revoke_user_sessions(user_id: Any) -> int:
    """Revoke every session of a user."""
    return int(await UserSession.filter(user_id=user_id).delete())


def set_session_cookie(response: Response, token: str) -> None:
    """Attach the session cookie to a response."""
    config = get_config()
    response.set_cookie(
        key=config.security.session_cookie_name,
        value=token,
        max_age=config.security.session_ttl_seconds,
        httponly=True,
        samesite="lax",
        secure=config.is_production(),
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    """Expire the session cookie on the client."""
    config = get_config()
    response.delete_cookie(
        key=config.security.session_cookie_name,
        path="/",
        httponly=True,
        samesite="lax",
        secure=config.is_production(),
    )
