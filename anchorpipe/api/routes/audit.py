"""
Audit Trail API Endpoints.

Listing and CSV export of the audit log for repository administrators.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from ...core.dependencies import get_request_context, require_admin_any
from ...core.logging import SecurityEventType, SecuritySeverity, security_logger
from ...core.models import User
from ...core.services import RequestContext, audit_service
from ...core.services.audit_service import MAX_LIST_LIMIT, audit_logs_to_csv

router = APIRouter(prefix="/audit-logs", tags=["audit"])

MAX_EXPORT_ROWS = 10000


@router.get("")
async def list_audit_logs(
    limit: Optional[int] = Query(None, description="Page size, 1..200"),
    subject: Optional[str] = Query(None, description="Filter by subject"),
    actor_id: Optional[str] = Query(
        None, alias="actorId", description="Filter by actor"
    ),
    cursor: Optional[str] = Query(None, description="Id of the last entry seen"),
    user: User = Depends(require_admin_any),
) -> Dict[str, Any]:
    """Audit entries newest first with cursor pagination."""
    data, next_cursor = await audit_service.list_audit_logs(
        limit=limit, subject=subject, actor_id=actor_id, cursor=cursor
    )
    return {"data": data, "nextCursor": next_cursor}


@router.get("/export")
async def export_audit_logs(
    subject: Optional[str] = Query(None),
    actor_id: Optional[str] = Query(None, alias="actorId"),
    user: User = Depends(require_admin_any),
    context: RequestContext = Depends(get_request_context),
) -> Response:
    """Download matching audit entries as CSV."""
    entries: List[Dict[str, Any]] = []
    cursor: Optional[str] = None
    while len(entries) < MAX_EXPORT_ROWS:
        page, cursor = await audit_service.list_audit_logs(
            limit=MAX_LIST_LIMIT, subject=subject, actor_id=actor_id, cursor=cursor
        )
        entries.extend(page)
        if cursor is None:
            break

    security_logger.log_security_event(
        SecurityEventType.DATA_ACCESS,
        user_id=str(user.id),
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        details={"resource": "audit_logs", "rows": len(entries)},
        severity=SecuritySeverity.LOW,
    )

    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return Response(
        content=audit_logs_to_csv(entries[:MAX_EXPORT_ROWS]),
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="audit-logs-{stamp}.csv"'
        },
    )
