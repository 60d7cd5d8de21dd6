"""
HMAC secret administration. Every operation requires the caller to be
admin of the secret's repository.
"""

from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request

from ...core.auth.rbac import PermissionAction, PermissionSubject
from ...core.dependencies import (
    authorize,
    get_current_user,
    get_request_context,
    parse_body,
)
from ...core.errors import NotFoundError, PayloadValidationError
from ...core.logging import SecurityEventType, SecuritySeverity, security_logger
from ...core.models import User
from ...core.services import (
    AuditAction,
    AuditSubject,
    RequestContext,
    audit_service,
    hmac_secret_service,
)
from ..models import CreateSecretRequest, RevokeSecretRequest, RotateSecretRequest

router = APIRouter(prefix="/admin/hmac-secrets", tags=["admin", "hmac"])

SECRET_NOTICE = "Store this secret securely - it will not be shown again."


def _log_secret_change(
    user: User, repo_id: str, operation: str, secret_id: str
) -> None:
    security_logger.log_security_event(
        SecurityEventType.HMAC_SECRET_CHANGED,
        user_id=str(user.id),
        details={"repo_id": repo_id, "operation": operation, "secret_id": secret_id},
        severity=SecuritySeverity.MEDIUM,
    )


async def require_repo_admin(user: User, repo_id: str) -> None:
    await authorize(user, PermissionAction.ADMIN, PermissionSubject.CONFIG, repo_id)


@router.get("")
async def list_secrets(
    repo_id: Optional[str] = Query(None, alias="repoId"),
    user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    if not repo_id:
        raise PayloadValidationError("repoId query parameter is required")
    try:
        UUID(repo_id)
    except ValueError:
        raise PayloadValidationError("repoId must be a valid UUID")

    await require_repo_admin(user, repo_id)
    return {"secrets": await hmac_secret_service.list_hmac_secrets(repo_id)}


@router.post("")
async def create_secret(
    request: Request,
    user: User = Depends(get_current_user),
    context: RequestContext = Depends(get_request_context),
) -> Dict[str, Any]:
    """Create a secret; the plaintext is returned only in this response."""
    body = await parse_body(request, CreateSecretRequest)
    await require_repo_admin(user, body.repo_id)

    created = await hmac_secret_service.create_hmac_secret(
        body.repo_id, body.name, created_by=user.id, expires_at=body.expires_at
    )
    await audit_service.write_audit_log(
        AuditAction.HMAC_SECRET_CREATED,
        AuditSubject.SECURITY,
        actor_id=user.id,
        subject_id=body.repo_id,
        description=f"HMAC secret created: {body.name}",
        metadata={"secretId": created.id, "repoId": body.repo_id, "name": body.name},
        context=context,
    )
    _log_secret_change(user, body.repo_id, "created", created.id)
    message = f"Secret created successfully. {SECRET_NOTICE}"
    return {**created.to_dict(), "message": message}


@router.put("")
async def rotate_secret(
    request: Request,
    user: User = Depends(get_current_user),
    context: RequestContext = Depends(get_request_context),
) -> Dict[str, Any]:
    """Replace a secret with a new one and revoke the old one."""
    body = await parse_body(request, RotateSecretRequest)
    await require_repo_admin(user, body.repo_id)

    created = await hmac_secret_service.rotate_hmac_secret(
        body.old_secret_id,
        body.repo_id,
        body.name,
        created_by=user.id,
        expires_at=body.expires_at,
    )
    await audit_service.write_audit_log(
        AuditAction.HMAC_SECRET_ROTATED,
        AuditSubject.SECURITY,
        actor_id=user.id,
        subject_id=body.repo_id,
        description=f"HMAC secret rotated: {body.name}",
        metadata={
            "newSecretId": created.id,
            "oldSecretId": body.old_secret_id,
            "repoId": body.repo_id,
            "name": body.name,
        },
        context=context,
    )
    _log_secret_change(user, body.repo_id, "rotated", created.id)
    message = f"Secret rotated successfully. {SECRET_NOTICE}"
    return {**created.to_dict(), "message": message}


@router.delete("")
async def revoke_secret(
    request: Request,
    user: User = Depends(get_current_user),
    context: RequestContext = Depends(get_request_context),
) -> Dict[str, Any]:
    body = await parse_body(request, RevokeSecretRequest)
    secret = await hmac_secret_service.get_hmac_secret_by_id(body.secret_id)
    if secret is None:
        raise NotFoundError("Secret not found")

    repo_id = secret["repoId"]
    await require_repo_admin(user, repo_id)
    await hmac_secret_service.revoke_hmac_secret(body.secret_id)

    await audit_service.write_audit_log(
        AuditAction.HMAC_SECRET_REVOKED,
        AuditSubject.SECURITY,
        actor_id=user.id,
        subject_id=repo_id,
        description=f"HMAC secret revoked: {secret['name']}",
        metadata={
            "secretId": body.secret_id,
            "repoId": repo_id,
            "name": secret["name"],
        },
        context=context,
    )
    _log_secret_change(user, repo_id, "revoked", body.secret_id)
    return {"message": "Secret revoked successfully"}
