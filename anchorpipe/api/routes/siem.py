"""
SIEM forwarding administration.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from ...core.dependencies import require_admin_any
from ...core.models import User
from ...core.siem import get_siem_forwarder

router = APIRouter(prefix="/admin/siem", tags=["admin", "siem"])


@router.post("/forward")
async def forward_audit_logs(
    batch_size: Optional[int] = Query(None, alias="batchSize", ge=1, le=1000),
    user: User = Depends(require_admin_any),
) -> Dict[str, Any]:
    """Forward the next batch of audit logs to the configured SIEM."""
    result = await get_siem_forwarder().forward_audit_logs(batch_size)
    return {
        "success": True,
        "processed": result["success"],
        "failed": result["failed"],
        "errors": result["errors"],
    }


@router.get("/test")
async def test_siem_connection(
    user: User = Depends(require_admin_any),
) -> Dict[str, Any]:
    return await get_siem_forwarder().test_connection()
