"""
Security alert administration.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from ...core.dependencies import require_admin_any
from ...core.logging import get_logger
from ...core.models import User
from ...core.services import security_alert_service

router = APIRouter(prefix="/admin/security-alerts", tags=["admin", "security"])
logger = get_logger("api.security_alerts")


@router.post("/check")
async def check_security_alerts(
    user: User = Depends(require_admin_any),
) -> Dict[str, Any]:
    """Run suspicious pattern detection over the audit log now."""
    logger.info("Security pattern detection triggered", user_id=str(user.id))
    result = await security_alert_service.check_and_alert()
    logger.info(
        "Security pattern detection complete",
        patterns_detected=len(result.patterns),
        alerts_sent=result.alerts_sent,
    )
    return {"message": "Security pattern detection completed", **result.to_dict()}
