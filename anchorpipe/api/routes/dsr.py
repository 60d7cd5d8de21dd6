"""
Data subject request endpoints (GDPR/CCPA export and deletion).
"""

import json
from typing import Any, Dict, List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response

from ...core.auth.session import clear_session_cookie
from ...core.dependencies import get_current_user, get_request_context, parse_body
from ...core.models import User
from ...core.services import RequestContext, dsr_service
from ...core.services.dsr_service import export_payload_to_csv
from ..models import DeletionRequest

router = APIRouter(prefix="/dsr", tags=["dsr"])


def _summary(request: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "requestId": request["id"],
        "status": request["status"],
        "requestedAt": request["requestedAt"],
        "processedAt": request["processedAt"],
        "dueAt": request["dueAt"],
    }


@router.get("")
async def list_requests(user: User = Depends(get_current_user)) -> List[Dict[str, Any]]:
    return await dsr_service.list_data_subject_requests(user.id)


@router.post("/export")
async def request_export(
    user: User = Depends(get_current_user),
    context: RequestContext = Depends(get_request_context),
) -> Dict[str, Any]:
    request = await dsr_service.request_data_export(user.id, context)
    return _summary(request)


@router.post("/deletion")
async def request_deletion(
    request: Request,
    response: Response,
    user: User = Depends(get_current_user),
    context: RequestContext = Depends(get_request_context),
) -> Dict[str, Any]:
    """Redact the caller's personal data and end the session."""
    body = await parse_body(request, DeletionRequest, allow_empty=True)
    result = await dsr_service.request_data_deletion(user.id, body.reason, context)
    clear_session_cookie(response)
    return {**_summary(result), "metadata": result["metadata"]}


@router.get("/export/{request_id}")
async def download_export(
    request_id: UUID,
    format: str = Query("json", pattern="^(json|csv)$"),
    user: User = Depends(get_current_user),
    context: RequestContext = Depends(get_request_context),
) -> Response:
    """Download a completed export as a JSON (default) or CSV attachment."""
    payload = await dsr_service.get_export_payload(user.id, request_id, context)
    if format == "csv":
        return Response(
            content=export_payload_to_csv(payload),
            media_type="text/csv",
            headers={
                "Content-Disposition": (
                    f'attachment; filename="anchorpipe-export-{request_id}.csv"'
                )
            },
        )
    return Response(
        content=json.dumps(payload, indent=2, default=str),
        media_type="application/json",
        headers={
            "Content-Disposition": (
                f'attachment; filename="anchorpipe-export-{request_id}.json"'
            )
        },
    )
