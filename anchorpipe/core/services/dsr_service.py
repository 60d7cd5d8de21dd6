"""
Data subject request service for Anchorpipe.

Implements GDPR/CCPA export and deletion workflows. Exports are compiled
synchronously and kept on the request for download; deletions redact the
user's personal data in a single transaction.
"""

import csv
import io
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from tortoise.transactions import in_transaction

from ..config import DSRConfig, get_config
from ..errors import ConflictError, NotFoundError
from ..logging import SecurityEventType, SecuritySeverity, get_logger, security_logger
from ..models import (
    DataSubjectRequest,
    DataSubjectRequestEvent,
    DSRStatus,
    DSRType,
    RepoRole,
    RoleAuditLog,
    RoleChange,
    User,
    UserRepoRole,
    UserSession,
    VerificationToken,
)
from .audit_service import (
    AuditAction,
    AuditService,
    AuditSubject,
    RequestContext,
    audit_service,
)
from .telemetry import TelemetryService, telemetry_service

logger = get_logger(__name__)

Id = Union[UUID, str]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_event(event: DataSubjectRequestEvent) -> Dict[str, Any]:
    return {
        "id": str(event.id),
        "status": DSRStatus(event.status).value,
        "message": event.message,
        "createdAt": _iso(event.created_at),
    }


def serialize_request(
    request: DataSubjectRequest, events: Optional[List[DataSubjectRequestEvent]] = None
) -> Dict[str, Any]:
    """Shape a request and its events (newest first) for API output."""
    events = events or []
    return {
        "id": str(request.id),
        "type": DSRType(request.request_type).value,
        "status": DSRStatus(request.status).value,
        "requestedAt": _iso(request.requested_at),
        "dueAt": _iso(request.due_at),
        "processedAt": _iso(request.processed_at),
        "metadata": request.metadata,
        "exportAvailable": request.export_payload is not None,
        "events": [
            serialize_event(e)
            for e in sorted(events, key=lambda e: e.created_at, reverse=True)
        ],
    }


class DSRService:
    """
    Service for data subject requests.

    Args:
        audit: Audit service used to record requests and downloads
        telemetry: Telemetry service used to queue confirmation events
    """

    def __init__(
        self,
        audit: Optional[AuditService] = None,
        telemetry: Optional[TelemetryService] = None,
    ):
        self.audit = audit or audit_service
        self.telemetry = telemetry or telemetry_service

    @property
    def config(self) -> DSRConfig:
        return get_config().dsr

    def _due_at(self, now: datetime) -> datetime:
        return now + timedelta(days=self.config.sla_days)

    async def _record_event(
        self, request: DataSubjectRequest, status: DSRStatus, message: str
    ) -> DataSubjectRequestEvent:
        return await DataSubjectRequestEvent.create(
            request=request, status=status, message=message
        )

    async def _queue_confirmation(
        self, user_id: Id, request: DataSubjectRequest, status: DSRStatus
    ) -> None:
        await self.telemetry.record_event(
            "dsr.email_queued",
            {
                "userId": str(user_id),
                "requestId": str(request.id),
                "type": DSRType(request.request_type).value,
                "status": status.value,
            },
        )

    async def build_export_payload(self, user: User) -> Dict[str, Any]:
        """
        Compile everything stored about a user.

        Args:
            user: User to export

        Returns:
            JSON-serializable export document
        """
        limit = self.config.export_role_log_limit
        preferences = dict(user.preferences or {})
        preferences.pop("passwordHash", None)

        roles = await UserRepoRole.filter(user_id=user.id).prefetch_related("repo")
        as_actor = (
            await RoleAuditLog.filter(actor_id=user.id)
            .order_by("-created_at")
            .limit(limit)
        )
        as_target = (
            await RoleAuditLog.filter(target_user_id=user.id)
            .order_by("-created_at")
            .limit(limit)
        )

        def role_log(entry: RoleAuditLog, acting_as: str) -> Dict[str, Any]:
            return {
                "actingAs": acting_as,
                "repoId": str(entry.repo_id),
                "action": RoleChange(entry.action).value,
                "oldRole": entry.old_role,
                "newRole": entry.new_role,
                "createdAt": _iso(entry.created_at),
            }

        return {
            "generatedAt": datetime.now(timezone.utc).isoformat(),
            "user": {
                "id": str(user.id),
                "email": user.email,
                "name": user.name,
                "githubLogin": user.github_login,
                "createdAt": _iso(user.created_at),
                "updatedAt": _iso(user.updated_at),
                "telemetryOptIn": user.telemetry_opt_in,
                "preferences": preferences,
            },
            "repoRoles": [
                {
                    "repoId": str(role.repo_id),
                    "role": RepoRole(role.role).value,
                    "assignedBy": (
                        str(role.assigned_by_id) if role.assigned_by_id else None
                    ),
                    "createdAt": _iso(role.created_at),
                    "repo": {
                        "id": str(role.repo.id),
                        "name": role.repo.name,
                        "owner": role.repo.owner,
                    },
                }
                for role in roles
            ],
            "roleAuditLogs": [role_log(e, "actor") for e in as_actor]
            + [role_log(e, "target") for e in as_target],
        }

    async def request_data_export(
        self, user_id: Id, context: Optional[RequestContext] = None
    ) -> Dict[str, Any]:
        """
        Create a completed export request for the user.

        Raises:
            NotFoundError: If the user does not exist
        """
        user = await User.get_or_none(id=user_id)
        if user is None:
            raise NotFoundError("User not found")

        now = datetime.now(timezone.utc)
        payload = await self.build_export_payload(user)

        async with in_transaction():
            request = await DataSubjectRequest.create(
                user=user,
                request_type=DSRType.EXPORT,
                status=DSRStatus.COMPLETED,
                due_at=self._due_at(now),
                processed_at=now,
                export_payload=payload,
            )
            await self._record_event(
                request, DSRStatus.PENDING, "Export request received"
            )
            await self._record_event(request, DSRStatus.COMPLETED, "Export generated")
            await self._record_event(
                request, DSRStatus.COMPLETED, "Confirmation email queued"
            )

        await self._queue_confirmation(user.id, request, DSRStatus.COMPLETED)
        security_logger.log_security_event(
            SecurityEventType.DATA_ACCESS,
            user_id=str(user.id),
            details={"request_id": str(request.id), "type": "export"},
            severity=SecuritySeverity.LOW,
        )
        await self.audit.write_audit_log(
            AuditAction.DSR_EXPORT_REQUEST,
            AuditSubject.DSR,
            actor_id=user.id,
            subject_id=str(request.id),
            description="Data export requested.",
            context=context,
        )

        events = await DataSubjectRequestEvent.filter(request_id=request.id)
        return serialize_request(request, events)

    async def request_data_deletion(
        self,
        user_id: Id,
        reason: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Dict[str, Any]:
        """
        Redact the user's personal data.

        The redaction runs in one transaction. If it fails the request is
        marked ``failed`` with an event and the error is re-raised.

        Raises:
            NotFoundError: If the user does not exist
        """
        user = await User.get_or_none(id=user_id)
        if user is None:
            raise NotFoundError("User not found")

        now = datetime.now(timezone.utc)
        base_metadata: Dict[str, Any] = {"requestedReason": reason} if reason else {}
        request = await DataSubjectRequest.create(
            user=user,
            request_type=DSRType.DELETION,
            status=DSRStatus.PROCESSING,
            due_at=self._due_at(now),
            metadata=base_metadata or None,
        )
        await self._record_event(
            request, DSRStatus.PENDING, "Deletion request received"
        )

        redaction = {
            "emailRedacted": user.email is not None,
            "githubLoginRedacted": user.github_login is not None,
            "nameRedacted": user.name is not None,
            "hadPreferences": bool(user.preferences),
        }

        try:
            async with in_transaction():
                sessions_removed = await UserSession.filter(user_id=user.id).delete()
                roles_removed = await UserRepoRole.filter(user_id=user.id).delete()
                if user.email:
                    await VerificationToken.filter(identifier=user.email).delete()

                user.email = None
                user.github_login = None
                user.name = None
                user.preferences = {"redacted": True}
                user.telemetry_opt_in = False
                await user.save()

                request.status = DSRStatus.COMPLETED
                request.processed_at = now
                request.metadata = {
                    **base_metadata,
                    "redaction": redaction,
                    "rolesRemoved": roles_removed,
                    "sessionsRevoked": sessions_removed,
                    "processedAt": now.isoformat(),
                }
                await request.save()
        except Exception as e:
            logger.error(
                "DSR deletion failed", request_id=str(request.id), error=str(e)
            )
            request.status = DSRStatus.FAILED
            await request.save(update_fields=["status"])
            await self._record_event(
                request, DSRStatus.FAILED, "Deletion failed; no data was changed."
            )
            raise

        await self._record_event(
            request, DSRStatus.COMPLETED, "Personal data redacted; deletion completed."
        )
        await self._queue_confirmation(user.id, request, DSRStatus.COMPLETED)
        security_logger.log_security_event(
            SecurityEventType.USER_DELETED,
            user_id=str(user.id),
            details={"request_id": str(request.id), "roles_removed": roles_removed},
            severity=SecuritySeverity.MEDIUM,
        )
        await self.audit.write_audit_log(
            AuditAction.DSR_DELETION_REQUEST,
            AuditSubject.DSR,
            actor_id=user.id,
            subject_id=str(request.id),
            description="Data deletion completed.",
            metadata={"rolesRemoved": roles_removed, "reasonProvided": bool(reason)},
            context=context,
        )

        events = await DataSubjectRequestEvent.filter(request_id=request.id)
        return serialize_request(request, events)

    async def get_export_payload(
        self, user_id: Id, request_id: Id, context: Optional[RequestContext] = None
    ) -> Dict[str, Any]:
        """
        Return the stored export document for a user's request.

        Raises:
            NotFoundError: If the request is missing or belongs to another user
            ConflictError: If the request is not a completed export
        """
        request = await DataSubjectRequest.get_or_none(id=request_id, user_id=user_id)
        if request is None:
            raise NotFoundError("Request not found")
        if (
            request.request_type != DSRType.EXPORT
            or request.status != DSRStatus.COMPLETED
            or request.export_payload is None
        ):
            raise ConflictError("Export not available")

        await self.audit.write_audit_log(
            AuditAction.DSR_EXPORT_DOWNLOAD,
            AuditSubject.DSR,
            actor_id=user_id,
            subject_id=str(request.id),
            description="Data export downloaded.",
            context=context,
        )
        payload: Dict[str, Any] = request.export_payload
        return payload

    async def list_data_subject_requests(self, user_id: Id) -> List[Dict[str, Any]]:
        """List the user's requests newest first, each with its events."""
        requests = (
            await DataSubjectRequest.filter(user_id=user_id)
            .prefetch_related("events")
            .order_by("-requested_at")
        )
        return [serialize_request(r, list(r.events)) for r in requests]


def export_payload_to_csv(payload: Dict[str, Any]) -> str:
    """Flatten an export document into a Section/Field/Value CSV."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    user = payload.get("user", {})

    writer.writerow(["Section", "Field", "Value"])
    writer.writerow(["User", "ID", user.get("id")])
    writer.writerow(["User", "Email", user.get("email") or ""])
    writer.writerow(["User", "GitHub Login", user.get("githubLogin") or ""])
    writer.writerow(["User", "Name", user.get("name") or ""])
    writer.writerow(["User", "Telemetry Opt-In", user.get("telemetryOptIn")])
    writer.writerow(["User", "Created At", user.get("createdAt") or ""])

    roles = payload.get("repoRoles", [])
    if roles:
        writer.writerow([])
        writer.writerow(
            [
                "Repository Roles",
                "Repository ID",
                "Repository Name",
                "Repository Owner",
                "Role",
                "Assigned By",
                "Created At",
            ]
        )
        for role in roles:
            repo = role.get("repo") or {}
            writer.writerow(
                [
                    "Repository Role",
                    role.get("repoId"),
                    repo.get("name") or "",
                    repo.get("owner") or "",
                    role.get("role"),
                    role.get("assignedBy") or "",
                    role.get("createdAt") or "",
                ]
            )

    logs = payload.get("roleAuditLogs", [])
    if logs:
        writer.writerow([])
        writer.writerow(
            [
                "Role Audit Logs",
                "Acting As",
                "Repository ID",
                "Action",
                "Old Role",
                "New Role",
                "Created At",
            ]
        )
        for log in logs:
            writer.writerow(
                [
                    "Role Audit Log",
                    log.get("actingAs"),
                    log.get("repoId"),
                    log.get("action"),
                    log.get("oldRole") or "",
                    log.get("newRole") or "",
                    log.get("createdAt") or "",
                ]
            )

    return buffer.getvalue()


# Global DSR service instance
dsr_service = DSRService()
