"""
Audit log service for Anchorpipe.

Writes append-only audit records for security relevant actions and lists
them for administrators. Writing never raises to the caller: a failed
audit write is logged and the calling operation continues.
"""

import csv
import io
import json
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
    Union,
)
from uuid import UUID

from tortoise.exceptions import BaseORMException
from tortoise.expressions import Q

from ..logging import get_logger
from ..models import AuditLog
from ..security.rate_limit import get_client_ip

logger = get_logger(__name__)

MAX_METADATA_LENGTH = 4000
MAX_DESCRIPTION_LENGTH = 512
MAX_IP_LENGTH = 45
MAX_USER_AGENT_LENGTH = 512
DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 200


class AuditAction(str, Enum):
    """Audit action vocabulary."""

    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    USER_CREATED = "user_created"
    ROLE_ASSIGNED = "role_assigned"
    ROLE_REMOVED = "role_removed"
    DSR_EXPORT_REQUEST = "dsr_export_request"
    DSR_EXPORT_DOWNLOAD = "dsr_export_download"
    DSR_DELETION_REQUEST = "dsr_deletion_request"
    CONFIG_UPDATED = "config_updated"
    TOKEN_CREATED = "token_created"
    TOKEN_REVOKED = "token_revoked"
    HMAC_AUTH_SUCCESS = "hmac_auth_success"
    HMAC_AUTH_FAILURE = "hmac_auth_failure"
    HMAC_SECRET_CREATED = "hmac_secret_created"
    HMAC_SECRET_REVOKED = "hmac_secret_revoked"
    HMAC_SECRET_ROTATED = "hmac_secret_rotated"
    OTHER = "other"


class AuditSubject(str, Enum):
    """Audit subject vocabulary."""

    USER = "user"
    REPO = "repo"
    DSR = "dsr"
    CONFIGURATION = "configuration"
    SECURITY = "security"
    SESSION = "session"
    TOKEN = "token"
    SYSTEM = "system"


class RequestContext(NamedTuple):
    """Client details recorded with audit entries."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def extract_request_context(headers: Mapping[str, str]) -> RequestContext:
    """Get (ip, user_agent) using the same client IP rules as rate limiting."""
    ip = get_client_ip(headers)
    return RequestContext(
        ip_address=None if ip == "unknown" else ip,
        user_agent=headers.get("user-agent"),
    )


def sanitize_metadata(
    metadata: Optional[Mapping[str, Any]],
) -> Optional[Dict[str, Any]]:
    """Round-trip metadata through JSON and cap its serialized size."""
    if not metadata:
        return None
    try:
        serialized = json.dumps(metadata, default=str)
    except (TypeError, ValueError) as e:
        logger.warning("Failed to sanitize audit metadata", error=str(e))
        return {"truncated": True, "note": "Serialization failed"}

    if len(serialized) > MAX_METADATA_LENGTH:
        return {"truncated": True, "note": "Metadata exceeded storage limit"}
    cleaned: Dict[str, Any] = json.loads(serialized)
    return cleaned


def clamp_text(value: Optional[str], max_length: int) -> Optional[str]:
    if not value:
        return None
    return value[:max_length]


def serialize_audit_log(log: AuditLog) -> Dict[str, Any]:
    """Shape an audit log (with its actor prefetched) for API output."""
    actor = log.actor
    return {
        "id": str(log.id),
        "action": log.action,
        "subject": log.subject,
        "subjectId": log.subject_id,
        "description": log.description,
        "metadata": log.metadata,
        "ipAddress": log.ip_address,
        "userAgent": log.user_agent,
        "createdAt": log.created_at.isoformat(),
        "actor": (
            {
                "id": str(actor.id),
                "email": actor.email,
                "githubLogin": actor.github_login,
                "name": actor.name,
            }
            if actor
            else None
        ),
    }


class AuditService:
    """Write and query the audit log."""

    async def write_audit_log(
        self,
        action: Union[AuditAction, str],
        subject: Union[AuditSubject, str],
        actor_id: Optional[Union[UUID, str]] = None,
        subject_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> Optional[AuditLog]:
        """
        Record an audit entry.

        Args:
            action: What happened
            subject: What kind of object it happened to
            actor_id: User performing the action, if any
            subject_id: Identifier of the affected object
            description: Human readable summary
            metadata: Extra JSON details, capped in size
            context: Client IP and user agent

        Returns:
            The stored entry, or None when the write failed
        """
        context = context or RequestContext()
        try:
            return await AuditLog.create(
                actor_id=actor_id,
                action=getattr(action, "value", action),
                subject=getattr(subject, "value", subject),
                subject_id=subject_id,
                description=clamp_text(description, MAX_DESCRIPTION_LENGTH) or "",
                metadata=sanitize_metadata(metadata),
                ip_address=clamp_text(context.ip_address, MAX_IP_LENGTH),
                user_agent=clamp_text(context.user_agent, MAX_USER_AGENT_LENGTH),
            )
        except (BaseORMException, ValueError) as e:
            logger.error(
                "Failed to write audit log",
                action=getattr(action, "value", action),
                error=str(e),
            )
            return None

    async def list_audit_logs(
        self,
        limit: Optional[int] = None,
        subject: Optional[str] = None,
        actor_id: Optional[str] = None,
        cursor: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """
        List audit entries newest first.

        Args:
            limit: Page size, clamped to 1..200 (default 50)
            subject: Only entries for this subject
            actor_id: Only entries by this actor
            cursor: Id of the last entry of the previous page

        Returns:
            Tuple of (entries, next cursor or None)
        """
        take = clamp_limit(limit)
        query = AuditLog.all().prefetch_related("actor")
        if subject:
            query = query.filter(subject=subject)
        if actor_id:
            query = query.filter(actor_id=actor_id)
        if cursor:
            anchor = await AuditLog.get_or_none(id=cursor)
            if anchor is not None:
                query = query.filter(
                    Q(created_at__lt=anchor.created_at)
                    | Q(created_at=anchor.created_at, id__lt=anchor.id)
                )

        logs = await query.order_by("-created_at", "-id").limit(take)
        next_cursor = str(logs[-1].id) if len(logs) == take else None
        return [serialize_audit_log(log) for log in logs], next_cursor


def clamp_limit(
    limit: Optional[int],
    default: int = DEFAULT_LIST_LIMIT,
    maximum: int = MAX_LIST_LIMIT,
) -> int:
    """Clamp a page size into 1..maximum."""
    if not limit:
        return default
    return min(max(int(limit), 1), maximum)


CSV_COLUMNS = (
    "id",
    "createdAt",
    "action",
    "subject",
    "subjectId",
    "actorId",
    "actorEmail",
    "description",
    "ipAddress",
    "userAgent",
)


def audit_logs_to_csv(entries: Sequence[Mapping[str, Any]]) -> str:
    """Render serialized audit entries as CSV with a header row."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for entry in entries:
        actor = entry.get("actor") or {}
        writer.writerow(
            [
                entry.get("id"),
                entry.get("createdAt"),
                entry.get("action"),
                entry.get("subject"),
                entry.get("subjectId") or "",
                actor.get("id", ""),
                actor.get("email") or "",
                entry.get("description") or "",
                entry.get("ipAddress") or "",
                entry.get("userAgent") or "",
            ]
        )
    return buffer.getvalue()


# Global audit service instance
audit_service = AuditService()
