"""
RBAC service for Anchorpipe.

This module contains the business logic for repository role management:
role lookups, ability resolution, assignments with a role audit trail,
default roles, and repository creation.
"""

from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from tortoise.transactions import in_transaction

from ..auth.rbac import (
    Ability,
    PermissionAction,
    PermissionSubject,
    create_ability_for_role,
)
from ..errors import AuthorizationError, NotFoundError
from ..logging import SecurityEventType, SecuritySeverity, get_logger, security_logger
from ..models import Repo, RepoRole, RoleAuditLog, RoleChange, User, UserRepoRole
from .audit_service import (
    AuditAction,
    AuditService,
    AuditSubject,
    RequestContext,
    audit_service,
)

logger = get_logger(__name__)

Id = Union[UUID, str]


def _user_summary(user: Optional[User]) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    return {
        "id": str(user.id),
        "email": user.email,
        "name": user.name,
        "githubLogin": user.github_login,
    }


class RBACService:
    """
    Service for repository role operations.

    Args:
        audit: Audit service used to record role changes
    """

    def __init__(self, audit: Optional[AuditService] = None):
        self.audit = audit or audit_service

    async def get_user_repo_role(
        self, user_id: Optional[Id], repo_id: Optional[Id]
    ) -> Optional[RepoRole]:
        """
        Get a user's role on a repository.

        Args:
            user_id: User identifier
            repo_id: Repository identifier

        Returns:
            The role, or None when the user has none or an id is missing
        """
        if not user_id or not repo_id:
            return None
        assignment = await UserRepoRole.get_or_none(user_id=user_id, repo_id=repo_id)
        return RepoRole(assignment.role) if assignment else None

    async def get_user_ability(
        self, user_id: Optional[Id], repo_id: Optional[Id]
    ) -> Ability:
        """Resolve the ability set for a user on a repository."""
        role = await self.get_user_repo_role(user_id, repo_id)
        return create_ability_for_role(role)

    async def user_has_admin_role(self, user_id: Optional[Id]) -> bool:
        """Check whether the user is admin of at least one repository."""
        if not user_id:
            return False
        return await UserRepoRole.filter(user_id=user_id, role=RepoRole.ADMIN).exists()

    async def _require_role_admin(self, actor_id: Id, repo_id: Id, verb: str) -> None:
        ability = await self.get_user_ability(actor_id, repo_id)
        if not ability.can(PermissionAction.ADMIN, PermissionSubject.ROLE):
            security_logger.log_access_denied(
                str(actor_id), "admin", "role", repo_id=str(repo_id)
            )
            raise AuthorizationError(f"Forbidden: only admins can {verb} roles")

    async def assign_role(
        self,
        actor_id: Id,
        user_id: Id,
        repo_id: Id,
        role: Union[RepoRole, str],
        context: Optional[RequestContext] = None,
    ) -> Optional[RepoRole]:
        """
        Assign or update a user's role on a repository.

        Args:
            actor_id: User performing the change; must hold ``admin role``
            user_id: Target user
            repo_id: Repository
            role: Role to grant
            context: Client details for the audit entry

        Returns:
            The previous role, or None if the user had none

        Raises:
            AuthorizationError: If the actor is not a repository admin
            NotFoundError: If the target user does not exist
        """
        await self._require_role_admin(actor_id, repo_id, "assign")
        new_role = RepoRole(role)

        if not await User.exists(id=user_id):
            raise NotFoundError("User not found")

        async with in_transaction():
            existing = await UserRepoRole.get_or_none(user_id=user_id, repo_id=repo_id)
            old_role = RepoRole(existing.role) if existing else None
            if existing:
                existing.role = new_role
                existing.assigned_by_id = actor_id
                await existing.save()
            else:
                await UserRepoRole.create(
                    user_id=user_id,
                    repo_id=repo_id,
                    role=new_role,
                    assigned_by_id=actor_id,
                )

            await RoleAuditLog.create(
                actor_id=actor_id,
                target_user_id=user_id,
                repo_id=repo_id,
                action=RoleChange.UPDATED if old_role else RoleChange.ASSIGNED,
                old_role=old_role.value if old_role else None,
                new_role=new_role.value,
            )

        security_logger.log_security_event(
            SecurityEventType.ROLE_CHANGED,
            user_id=str(actor_id),
            details={
                "target_user_id": str(user_id),
                "repo_id": str(repo_id),
                "old_role": old_role.value if old_role else None,
                "new_role": new_role.value,
            },
            severity=SecuritySeverity.LOW,
        )
        await self.audit.write_audit_log(
            AuditAction.ROLE_ASSIGNED,
            AuditSubject.REPO,
            actor_id=actor_id,
            subject_id=str(repo_id),
            description=f"Role {new_role.value} assigned.",
            metadata={
                "targetUserId": str(user_id),
                "oldRole": old_role.value if old_role else None,
                "newRole": new_role.value,
            },
            context=context,
        )
        return old_role

    async def remove_role(
        self,
        actor_id: Id,
        user_id: Id,
        repo_id: Id,
        context: Optional[RequestContext] = None,
    ) -> Optional[RepoRole]:
        """
        Remove a user's role from a repository.

        Removing a role the user does not hold is a no-op.

        Returns:
            The removed role, or None

        Raises:
            AuthorizationError: If the actor is not a repository admin
        """
        await self._require_role_admin(actor_id, repo_id, "remove")

        existing = await UserRepoRole.get_or_none(user_id=user_id, repo_id=repo_id)
        if existing is None:
            return None
        old_role = RepoRole(existing.role)

        async with in_transaction():
            await existing.delete()
            await RoleAuditLog.create(
                actor_id=actor_id,
                target_user_id=user_id,
                repo_id=repo_id,
                action=RoleChange.REMOVED,
                old_role=old_role.value,
                new_role=None,
            )

        await self.audit.write_audit_log(
            AuditAction.ROLE_REMOVED,
            AuditSubject.REPO,
            actor_id=actor_id,
            subject_id=str(repo_id),
            description=f"Role {old_role.value} removed.",
            metadata={"targetUserId": str(user_id), "oldRole": old_role.value},
            context=context,
        )
        return old_role

    async def get_repo_users(self, repo_id: Id) -> List[Dict[str, Any]]:
        """List role holders of a repository, newest assignment first."""
        assignments = (
            await UserRepoRole.filter(repo_id=repo_id)
            .prefetch_related("user")
            .order_by("-created_at")
        )
        return [
            {
                "id": str(a.id),
                "userId": str(a.user_id),
                "repoId": str(a.repo_id),
                "role": RepoRole(a.role).value,
                "assignedBy": str(a.assigned_by_id) if a.assigned_by_id else None,
                "createdAt": a.created_at.isoformat(),
                "updatedAt": a.updated_at.isoformat(),
                "user": _user_summary(a.user),
            }
            for a in assignments
        ]

    async def get_role_audit_logs(
        self, repo_id: Id, limit: int = 50
    ) -> List[Dict[str, Any]]:
        """List role changes of a repository, newest first."""
        logs = (
            await RoleAuditLog.filter(repo_id=repo_id)
            .prefetch_related("actor", "target_user")
            .order_by("-created_at")
            .limit(limit)
        )
        return [
            {
                "id": str(log.id),
                "repoId": str(log.repo_id),
                "action": RoleChange(log.action).value,
                "oldRole": log.old_role,
                "newRole": log.new_role,
                "metadata": log.metadata,
                "createdAt": log.created_at.isoformat(),
                "actor": _user_summary(log.actor),
                "targetUser": _user_summary(log.target_user),
            }
            for log in logs
        ]

    async def assign_default_role(
        self, user_id: Id, repo_id: Id, default_role: RepoRole = RepoRole.MEMBER
    ) -> bool:
        """
        Give a user the default role on a repository if they have none.

        Returns:
            True if a role was assigned
        """
        if await UserRepoRole.exists(user_id=user_id, repo_id=repo_id):
            return False

        async with in_transaction():
            await UserRepoRole.create(
                user_id=user_id,
                repo_id=repo_id,
                role=default_role,
                assigned_by_id=user_id,
            )
            await RoleAuditLog.create(
                actor_id=user_id,
                target_user_id=user_id,
                repo_id=repo_id,
                action=RoleChange.ASSIGNED,
                old_role=None,
                new_role=default_role.value,
                metadata={"source": "default", "reason": "Default role assignment"},
            )
        return True

    async def assign_default_role_on_repo_create(
        self, repo_id: Id, creator_id: Id
    ) -> None:
        """Make the repository creator its admin."""
        await UserRepoRole.create(
            user_id=creator_id,
            repo_id=repo_id,
            role=RepoRole.ADMIN,
            assigned_by_id=creator_id,
        )
        await RoleAuditLog.create(
            actor_id=creator_id,
            target_user_id=creator_id,
            repo_id=repo_id,
            action=RoleChange.ASSIGNED,
            old_role=None,
            new_role=RepoRole.ADMIN.value,
            metadata={
                "source": "repo_creation",
                "reason": "Repository creator gets admin role",
            },
        )

    async def create_repo(
        self,
        creator_id: Id,
        name: str,
        owner: str,
        default_branch: str = "main",
        visibility: str = "private",
    ) -> Repo:
        """Create a repository and make the creator its admin."""
        async with in_transaction():
            repo = await Repo.create(
                name=name,
                owner=owner,
                default_branch=default_branch,
                visibility=visibility,
            )
            await self.assign_default_role_on_repo_create(repo.id, creator_id)

        logger.info(
            "Repository created", repo_id=str(repo.id), creator_id=str(creator_id)
        )
        return repo

    async def list_user_repos(self, user_id: Id) -> List[Dict[str, Any]]:
        """List repositories the user holds a role on, with that role."""
        assignments = (
            await UserRepoRole.filter(user_id=user_id)
            .prefetch_related("repo")
            .order_by("-created_at")
        )
        return [
            {
                "id": str(a.repo.id),
                "name": a.repo.name,
                "owner": a.repo.owner,
                "defaultBranch": a.repo.default_branch,
                "visibility": a.repo.visibility,
                "role": RepoRole(a.role).value,
                "createdAt": a.repo.created_at.isoformat(),
            }
            for a in assignments
        ]


# Global RBAC service instance
rbac_service = RBACService()
