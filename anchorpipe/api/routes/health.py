"""
Health, version and metrics endpoints for the Anchorpipe API.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from confluent_kafka import KafkaException
from fastapi import APIRouter, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from tortoise.exceptions import BaseORMException

from ... import __version__
from ...core.config import get_config
from ...core.database import check_database
from ...core.logging import get_logger
from ...core.messaging import check_broker
from ...core.redis import redis_manager
from ..models import HealthResponse

router = APIRouter(tags=["health"])
logger = get_logger("api.health")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _database_status() -> str:
    try:
        await check_database()
    except (BaseORMException, OSError) as e:
        logger.error("Database health check failed", error=str(e))
        return "unhealthy"
    return "healthy"


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Basic health check.

    Reports the database, Redis and queue configuration. Redis is optional:
    when it is not configured the in-memory rate limit store is used.
    """
    components: Dict[str, Any] = {"database": await _database_status()}

    if redis_manager.is_configured:
        healthy = await redis_manager.check_health()
        components["redis"] = "healthy" if healthy else "degraded"
    else:
        components["redis"] = "not_configured"

    kafka_configured = bool(get_config().kafka.bootstrap_servers)
    components["queue"] = "configured" if kafka_configured else "not_configured"

    overall = "healthy"
    if components["database"] != "healthy":
        overall = "unhealthy"
    elif components["redis"] == "degraded":
        overall = "degraded"

    return HealthResponse(status=overall, version=__version__, components=components)


@router.get("/health/live")
async def liveness_check() -> Dict[str, Any]:
    return {"status": "alive", "timestamp": _now(), "service": "Anchorpipe API"}


@router.get("/health/db", response_model=None)
async def database_health() -> Any:
    """Run ``SELECT 1`` against the database; 503 when it fails."""
    if await _database_status() == "healthy":
        return {"status": "healthy", "database": "connected", "timestamp": _now()}
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "unhealthy", "database": "error", "timestamp": _now()},
    )


@router.get("/health/mq", response_model=None)
async def queue_health() -> Any:
    """Fetch broker metadata; 503 when the broker cannot be reached."""
    try:
        result = await check_broker()
    except KafkaException as e:
        logger.error("Kafka health check failed", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"ok": False, "error": str(e), "timestamp": _now()},
        )
    return {**result, "timestamp": _now()}


@router.get("/version")
async def version_info() -> Dict[str, Any]:
    return {
        "service": "Anchorpipe API",
        "version": __version__,
        "environment": get_config().environment.value,
    }


@router.get("/metrics")
async def prometheus_metrics() -> Response:
    """Prometheus exposition of the process metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
