"""
Scheduled maintenance endpoints, called by an external scheduler with
``Authorization: Bearer <CRON_SECRET>``.
"""

import hmac
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ...core.config import get_config
from ...core.logging import get_logger
from ...core.security.hmac import extract_bearer_token
from ...core.services import idempotency_service

router = APIRouter(prefix="/cron", tags=["cron"])
logger = get_logger("api.cron")


@router.get("/cleanup-idempotency")
async def cleanup_idempotency(request: Request) -> JSONResponse:
    """Delete expired idempotency keys."""
    cron_secret = get_config().security.cron_secret
    if not cron_secret:
        logger.error("CRON_SECRET not configured")
        return JSONResponse(
            status_code=500, content={"success": False, "error": "CRON_SECRET missing"}
        )

    token = extract_bearer_token(request.headers) or ""
    if not hmac.compare_digest(token.encode("utf-8"), cron_secret.encode("utf-8")):
        logger.warning("Unauthorized cron request", path=request.url.path)
        return JSONResponse(
            status_code=401, content={"success": False, "error": "Unauthorized"}
        )

    deleted = await idempotency_service.cleanup_expired()
    logger.info("Cleaned up expired idempotency keys", deleted_count=deleted)
    return JSONResponse(
        content={
            "success": True,
            "deletedCount": deleted,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    )
