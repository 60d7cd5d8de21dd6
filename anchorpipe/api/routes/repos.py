"""
Repository and role management endpoints.
"""

from typing import Any, Dict
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status

from ...core.auth.rbac import PermissionAction, PermissionSubject
from ...core.dependencies import (
    get_current_user,
    get_request_context,
    parse_body,
    require_authz,
)
from ...core.models import RepoRole, User
from ...core.services import RequestContext, rbac_service
from ..models import AssignRoleRequest, CreateRepoRequest, RemoveRoleRequest

router = APIRouter(prefix="/repos", tags=["repositories"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_repo(
    request: Request, user: User = Depends(get_current_user)
) -> Dict[str, Any]:
    """Create a repository; the caller becomes its admin."""
    body = await parse_body(request, CreateRepoRequest)
    repo = await rbac_service.create_repo(
        user.id,
        name=body.name,
        owner=body.owner,
        default_branch=body.default_branch,
        visibility=body.visibility,
    )
    return {
        "id": str(repo.id),
        "name": repo.name,
        "owner": repo.owner,
        "defaultBranch": repo.default_branch,
        "visibility": repo.visibility,
        "role": RepoRole.ADMIN.value,
    }


@router.get("")
async def list_repos(user: User = Depends(get_current_user)) -> Dict[str, Any]:
    return {"repos": await rbac_service.list_user_repos(user.id)}


@router.get("/{repo_id}/roles")
async def list_repo_roles(
    repo_id: UUID,
    user: User = Depends(require_authz(PermissionAction.READ, PermissionSubject.ROLE)),
) -> Dict[str, Any]:
    return {"users": await rbac_service.get_repo_users(repo_id)}


@router.post("/{repo_id}/roles")
async def assign_repo_role(
    repo_id: UUID,
    request: Request,
    user: User = Depends(require_authz(PermissionAction.ADMIN, PermissionSubject.ROLE)),
    context: RequestContext = Depends(get_request_context),
) -> Dict[str, Any]:
    body = await parse_body(request, AssignRoleRequest)
    await rbac_service.assign_role(user.id, body.user_id, repo_id, body.role, context)
    return {
        "message": "Role assigned successfully",
        "userId": body.user_id,
        "role": body.role.value,
    }


@router.delete("/{repo_id}/roles")
async def remove_repo_role(
    repo_id: UUID,
    request: Request,
    user: User = Depends(require_authz(PermissionAction.ADMIN, PermissionSubject.ROLE)),
    context: RequestContext = Depends(get_request_context),
) -> Dict[str, Any]:
    body = await parse_body(request, RemoveRoleRequest)
    await rbac_service.remove_role(user.id, body.user_id, repo_id, context)
    return {"message": "Role removed successfully", "userId": body.user_id}


@router.get("/{repo_id}/roles/audit")
async def list_role_audit_logs(
    repo_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    user: User = Depends(require_authz(PermissionAction.READ, PermissionSubject.ROLE)),
) -> Dict[str, Any]:
    return {"logs": await rbac_service.get_role_audit_logs(repo_id, limit=limit)}
