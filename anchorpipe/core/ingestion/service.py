"""
Ingestion service.

Turns an authenticated, validated test report into a queued
``test.run.received`` message. Duplicate submissions are detected with
idempotency keys; telemetry, queue and audit failures never fail ingestion.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from confluent_kafka import KafkaException

from ..logging import get_logger
from ..messaging.kafka import (
    TEST_RUN_RECEIVED,
    IngestionPublisher,
    QueueMessage,
    ingestion_publisher,
)
from ..metrics import metrics
from ..services.audit_service import (
    AuditAction,
    AuditService,
    AuditSubject,
    RequestContext,
    audit_service,
)
from ..services.idempotency_service import (
    IdempotencyKeyData,
    IdempotencyService,
    idempotency_service,
)
from ..services.telemetry import TelemetryService, telemetry_service
from .schema import IngestionPayload

logger = get_logger(__name__)

INGESTION_RECEIVED = "ingestion.received"


@dataclass
class IngestionResult:
    """Outcome of processing a test report."""

    success: bool
    run_id: str
    message: str
    summary: Optional[Dict[str, int]] = None
    error: Optional[str] = None
    duplicate: bool = False

    def to_response(self) -> Dict[str, Any]:
        return {"runId": self.run_id, "message": self.message, "summary": self.summary}


def _summary(test_count: int) -> Dict[str, int]:
    return {"tests_parsed": test_count, "flaky_candidates": 0}


def build_queue_message(payload: IngestionPayload, repo_id: str) -> QueueMessage:
    """Build the queue message for a report, tests included."""
    return QueueMessage(
        type=TEST_RUN_RECEIVED,
        payload={
            "repoId": repo_id,
            "commitSha": payload.commit_sha,
            "runId": payload.run_id,
            "framework": payload.framework.value,
            "testCount": len(payload.tests),
            "branch": payload.branch,
            "pullRequest": payload.pull_request,
            "environment": payload.environment,
            "metadata": payload.metadata,
            "tests": [
                t.model_dump(mode="json", by_alias=True, exclude_none=True)
                for t in payload.tests
            ],
        },
    )


class IngestionService:
    """
    Process ingestion submissions.

    Args:
        audit: Audit service
        telemetry: Telemetry recorder for ingestion.received events
        idempotency: Duplicate submission guard
        publisher: Queue publisher
    """

    def __init__(
        self,
        audit: Optional[AuditService] = None,
        telemetry: Optional[TelemetryService] = None,
        idempotency: Optional[IdempotencyService] = None,
        publisher: Optional[IngestionPublisher] = None,
    ):
        self.audit = audit or audit_service
        self.telemetry = telemetry or telemetry_service
        self.idempotency = idempotency or idempotency_service
        self.publisher = publisher or ingestion_publisher

    async def _publish(self, message: QueueMessage, repo_id: str) -> bool:
        try:
            return await self.publisher.publish(message, key=repo_id)
        except (KafkaException, BufferError) as e:
            logger.warning(
                "Failed to publish to queue, but continuing",
                repo_id=repo_id,
                message_id=message.id,
                error=str(e),
            )
            return False

    async def process_ingestion(
        self,
        payload: IngestionPayload,
        repo_id: str,
        context: Optional[RequestContext] = None,
    ) -> IngestionResult:
        """
        Process a validated report for an authenticated repository.

        Args:
            payload: Validated report
            repo_id: Repository authenticated by HMAC
            context: Client details for audit entries

        Returns:
            IngestionResult; ``success`` is False only for unexpected failures
        """
        context = context or RequestContext()
        test_count = len(payload.tests)
        key_data = IdempotencyKeyData(
            repo_id=repo_id,
            commit_sha=payload.commit_sha,
            framework=payload.framework.value,
            run_id=payload.run_id,
            explicit_key=payload.idempotency_key,
        )
        base_metadata = {
            "repoId": repo_id,
            "commitSha": payload.commit_sha,
            "runId": payload.run_id,
            "framework": payload.framework.value,
        }

        try:
            check = await self.idempotency.check(key_data)
            if check.is_duplicate:
                logger.info("Duplicate ingestion detected", key=key_data.key)
                await self.audit.write_audit_log(
                    AuditAction.OTHER,
                    AuditSubject.SYSTEM,
                    subject_id=repo_id,
                    description=f"Duplicate ingestion detected: {payload.run_id}",
                    metadata={**base_metadata, "idempotencyKey": key_data.key},
                    context=context,
                )
                metrics.record_ingestion_request("duplicate")
                return IngestionResult(
                    success=True,
                    run_id=payload.run_id,
                    message="Test report received (duplicate)",
                    summary=_summary(test_count),
                    duplicate=True,
                )

            await self.telemetry.record_event(
                INGESTION_RECEIVED,
                {
                    "commitSha": payload.commit_sha,
                    "runId": payload.run_id,
                    "framework": payload.framework.value,
                    "testCount": test_count,
                    "branch": payload.branch,
                    "pullRequest": payload.pull_request,
                    "environment": payload.environment,
                    "metadata": payload.metadata,
                },
                repo_id=repo_id,
            )

            message = build_queue_message(payload, repo_id)
            published = await self._publish(message, repo_id)

            result = IngestionResult(
                success=True,
                run_id=payload.run_id,
                message="Test report received",
                summary=_summary(test_count),
            )
            await self.idempotency.record(key_data, result.to_response())

            await self.audit.write_audit_log(
                AuditAction.OTHER,
                AuditSubject.SYSTEM,
                subject_id=repo_id,
                description=f"Test report ingested: {payload.run_id}",
                metadata={
                    **base_metadata,
                    "testCount": test_count,
                    "branch": payload.branch,
                    "messageId": message.id,
                    "published": published,
                },
                context=context,
            )
            logger.info(
                "Successfully processed ingestion",
                test_count=test_count,
                **base_metadata,
            )
            metrics.record_ingestion_request("accepted")
            return result

        except Exception as e:
            logger.error(
                "Failed to process ingestion",
                error=str(e),
                exc_info=True,
                **base_metadata,
            )
            await self.audit.write_audit_log(
                AuditAction.OTHER,
                AuditSubject.SYSTEM,
                subject_id=repo_id,
                description=f"Ingestion failed: {payload.run_id}",
                metadata={**base_metadata, "error": str(e)},
                context=context,
            )
            metrics.record_ingestion_request("error")
            return IngestionResult(
                success=False,
                run_id=payload.run_id,
                message="Ingestion failed",
                error=str(e),
            )


# Global ingestion service instance
ingestion_service = IngestionService()
