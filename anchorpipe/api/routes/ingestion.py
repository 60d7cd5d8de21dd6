"""
Test report ingestion endpoint.

CI systems POST normalized reports signed with a repository HMAC secret.
Accepted reports are published to Kafka for the ingestion worker.
"""

import json
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ...core.config import get_config
from ...core.dependencies import enforce_rate_limit, get_request_context
from ...core.errors import (
    AuthenticationError,
    AuthorizationError,
    PayloadTooLargeError,
    PayloadValidationError,
)
from ...core.ingestion import IngestionPayload, ingestion_service, validation_details
from ...core.logging import get_logger
from ...core.metrics import metrics
from ...core.services import RequestContext, hmac_authenticator

router = APIRouter(tags=["ingestion"])
logger = get_logger("api.ingestion")


def _too_large(max_bytes: int) -> PayloadTooLargeError:
    return PayloadTooLargeError(f"Payload too large. Maximum size is {max_bytes} bytes")


@router.post("/ingestion")
async def submit_test_report(
    request: Request,
    context: RequestContext = Depends(get_request_context),
) -> JSONResponse:
    """
    Accept a signed test report.

    The body is authenticated before it is parsed, so the signature covers
    the exact bytes received.
    """
    rate_headers = await enforce_rate_limit(request, "ingestion:submit", context)
    max_bytes = get_config().ingestion.max_body_bytes

    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        metrics.record_ingestion_request("rejected")
        raise _too_large(max_bytes)

    body = await request.body()
    if not body:
        metrics.record_ingestion_request("rejected")
        raise PayloadValidationError("Request body is required")
    if len(body) > max_bytes:
        metrics.record_ingestion_request("rejected")
        raise _too_large(max_bytes)

    auth = await hmac_authenticator.authenticate(request.headers, body, context)
    if not auth.success:
        metrics.record_ingestion_request("unauthorized")
        raise AuthenticationError(auth.error or "Authentication failed")

    try:
        data: Any = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        metrics.record_ingestion_request("invalid")
        raise PayloadValidationError("Invalid JSON payload")

    try:
        payload = IngestionPayload.model_validate(data)
    except ValidationError as e:
        metrics.record_ingestion_request("invalid")
        raise PayloadValidationError("Invalid payload", details=validation_details(e))

    if payload.repo_id != auth.repo_id:
        logger.warning(
            "Ingestion repository mismatch",
            payload_repo_id=payload.repo_id,
            authenticated_repo_id=auth.repo_id,
        )
        metrics.record_ingestion_request("forbidden")
        raise AuthorizationError("Repository ID mismatch")

    result = await ingestion_service.process_ingestion(payload, auth.repo_id, context)
    if not result.success:
        content: Dict[str, Any] = {"detail": "Failed to process ingestion"}
        return JSONResponse(status_code=500, content=content, headers=rate_headers)

    return JSONResponse(content=result.to_response(), headers=rate_headers)
