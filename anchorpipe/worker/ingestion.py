"""
Ingestion worker.

Consumes ``test.run.received`` messages from Kafka, redacts them, upserts
test cases and inserts test runs. Offsets are committed only after the
rows are persisted or the message has been produced to the dead-letter
topic, so delivery is at-least-once and ProcessedMessage rows make the
writes idempotent per message id.
"""

import asyncio
import hashlib
import json
import signal
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from confluent_kafka import KafkaException, Message
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from tortoise.transactions import in_transaction

from ..core.config import IngestionConfig, KafkaConfig, get_config
from ..core.database import close_tortoise, init_tortoise
from ..core.errors import (
    ErrorDetails,
    ErrorType,
    RetryHandler,
    RetryStrategy,
    create_system_error,
)
from ..core.ingestion import Framework, TestResult, redact_payload
from ..core.ingestion.schema import COMMIT_SHA_PATTERN
from ..core.logging import correlation_id_var, get_logger, setup_logging
from ..core.messaging import (
    MESSAGE_ID_HEADER,
    TEST_RUN_RECEIVED,
    KafkaConsumerClient,
    KafkaProducerClient,
    MessageDecodeError,
    QueueMessage,
    header_value,
)
from ..core.metrics import metrics
from ..core.models import ProcessedMessage, TestCase, TestRun

logger = get_logger(__name__)

# Dead-letter reasons
REASON_INVALID_MESSAGE = "invalid_message"
REASON_INVALID_PAYLOAD = "invalid_payload"
REASON_EXPIRED = "expired"
REASON_RETRIES_EXHAUSTED = "max_retries_exceeded"

MAX_HEADER_ERROR_LENGTH = 500

# TestCase.path and TestCase.name column size
MAX_TEST_FIELD_LENGTH = 500


class QueuedTestRun(BaseModel):
    """Payload of a ``test.run.received`` message."""

    model_config = ConfigDict(populate_by_name=True)

    repo_id: str = Field(..., alias="repoId")
    commit_sha: str = Field(..., alias="commitSha")
    run_id: str = Field(..., alias="runId", min_length=1, max_length=255)
    framework: Framework
    test_count: Optional[int] = Field(None, alias="testCount")
    branch: Optional[str] = None
    pull_request: Optional[str] = Field(None, alias="pullRequest")
    environment: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    tests: List[TestResult] = Field(default_factory=list)

    @field_validator("repo_id")
    @classmethod
    def validate_repo_id(cls, v: str) -> str:
        try:
            UUID(v)
        except ValueError:
            raise ValueError("repoId must be a valid UUID")
        return v

    @field_validator("commit_sha")
    @classmethod
    def validate_commit_sha(cls, v: str) -> str:
        if not COMMIT_SHA_PATTERN.match(v):
            raise ValueError("commitSha must be a valid 40-character hex string")
        return v


def environment_hash(environment: Optional[Dict[str, Any]]) -> Optional[str]:
    """SHA-256 of the canonical JSON form of an environment, or None."""
    if not environment:
        return None
    canonical = json.dumps(
        environment, sort_keys=True, separators=(",", ":"), default=str
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _clamp(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]


def redact_run(run: QueuedTestRun) -> Tuple[QueuedTestRun, int]:
    """
    Scrub secrets from a validated run.

    Replacement markers can be longer than the text they replace, so the
    result is not validated again; test paths and names are clamped to their
    column size instead.

    Returns:
        Redacted copy of the run and the number of redactions
    """
    redacted, count = redact_payload(run.model_dump(mode="json", by_alias=True))
    tests = [
        test.model_copy(
            update={
                "path": _clamp(scrubbed["path"], MAX_TEST_FIELD_LENGTH),
                "name": _clamp(scrubbed["name"], MAX_TEST_FIELD_LENGTH),
                "failure_details": scrubbed.get("failureDetails"),
                "metadata": scrubbed.get("metadata"),
            }
        )
        for test, scrubbed in zip(run.tests, redacted["tests"])
    ]
    updated = run.model_copy(
        update={
            "environment": redacted.get("environment"),
            "metadata": redacted.get("metadata"),
            "tests": tests,
        }
    )
    return updated, count


def parse_started_at(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class IngestionWorker:
    """
    Kafka consumer that persists queued test runs.

    Args:
        kafka_config: Broker settings; defaults to KAFKA_*
        ingestion_config: Topics, retry schedule and TTL; defaults to INGESTION_*
        consumer: Consumer client, injectable for tests
        producer: Producer used for the dead-letter topic
    """

    def __init__(
        self,
        kafka_config: Optional[KafkaConfig] = None,
        ingestion_config: Optional[IngestionConfig] = None,
        consumer: Optional[KafkaConsumerClient] = None,
        producer: Optional[KafkaProducerClient] = None,
    ):
        config = get_config()
        self.kafka_config = kafka_config or config.kafka
        self.config = ingestion_config or config.ingestion

        self.consumer = consumer or KafkaConsumerClient(
            self.kafka_config, [self.config.topic]
        )
        self.producer = producer or KafkaProducerClient(self.kafka_config)
        self.retry_handler = RetryHandler.from_schedule_ms(self.config.retry_delays_ms)

        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def is_expired(self, message: QueueMessage) -> bool:
        created_at = message.created_at
        if created_at is None:
            return False
        age = datetime.now(timezone.utc) - created_at
        return age > timedelta(seconds=self.config.message_ttl_seconds)

    async def persist_run(self, message_id: str, run: QueuedTestRun) -> int:
        """
        Redact a validated run and write its rows in one transaction.

        Returns:
            Number of test runs inserted
        """
        run, redactions = redact_run(run)
        env_hash = environment_hash(run.environment)

        async with in_transaction():
            for test in run.tests:
                test_case, _ = await TestCase.get_or_create(
                    repo_id=run.repo_id,
                    path=test.path,
                    name=test.name,
                    framework=run.framework.value,
                    defaults={"tags": []},
                )
                await TestRun.create(
                    repo_id=run.repo_id,
                    test_case=test_case,
                    commit_sha=run.commit_sha,
                    status=test.status,
                    duration_ms=test.duration_ms,
                    started_at=parse_started_at(test.started_at),
                    failure_details=test.failure_details,
                    environment_hash=env_hash,
                )
            await ProcessedMessage.create(message_id=message_id)

        logger.info(
            "Test run persisted",
            message_id=message_id,
            repo_id=run.repo_id,
            run_id=run.run_id,
            tests=len(run.tests),
            redactions=redactions,
        )
        return len(run.tests)

    async def persist_with_retry(
        self, message_id: str, run: QueuedTestRun
    ) -> Optional[ErrorDetails]:
        """
        Persist a payload, retrying on the configured delay schedule.

        Returns:
            None on success, or the final error once retries are exhausted
        """
        error: Optional[ErrorDetails] = None
        while True:
            try:
                await self.persist_run(message_id, run)
                return None
            except Exception as e:
                if error is None:
                    error = create_system_error(
                        ErrorType.PROCESSING_ERROR,
                        type(e).__name__,
                        str(e),
                        {"message_id": message_id},
                        source="ingestion_worker",
                        max_retries=self.retry_handler.max_retries,
                    )
                else:
                    error.error_code = type(e).__name__
                    error.error_message = str(e)

                if not error.can_retry():
                    return error

                delay = self.retry_handler.calculate_retry_delay(
                    error.retry_count, RetryStrategy.CUSTOM
                )
                logger.warning(
                    "Persisting test run failed, retrying",
                    message_id=message_id,
                    attempt=error.retry_count + 1,
                    delay_seconds=delay,
                    error=str(e),
                )
                error = self.retry_handler.prepare_for_retry(
                    error, RetryStrategy.CUSTOM
                )
                await asyncio.sleep(delay)

    async def dead_letter(
        self,
        message: Message,
        reason: str,
        error_message: str,
        error_type: ErrorType,
        attempts: int,
    ) -> bool:
        """
        Produce the original bytes to the dead-letter topic and commit.

        Returns:
            False if the produce failed; the offset is then rewound for redelivery
        """
        headers = [
            ("x-error", error_message[:MAX_HEADER_ERROR_LENGTH].encode("utf-8")),
            ("x-error-type", error_type.value.encode("utf-8")),
            ("x-attempts", str(attempts).encode("utf-8")),
            (
                "x-original-topic",
                (message.topic() or self.config.topic).encode("utf-8"),
            ),
            ("x-reason", reason.encode("utf-8")),
        ]
        message_id = header_value(message, MESSAGE_ID_HEADER)
        if message_id:
            headers.append((MESSAGE_ID_HEADER, message_id.encode("utf-8")))

        raw_key = message.key()
        key = raw_key.decode("utf-8", errors="replace") if raw_key else None

        try:
            await self.producer.send(
                self.config.dead_letter_topic,
                message.value() or b"",
                key=key,
                headers=headers,
            )
        except (KafkaException, BufferError) as e:
            logger.error(
                "Failed to dead-letter message, leaving it uncommitted",
                message_id=message_id,
                reason=reason,
                error=str(e),
            )
            await self.rewind(message)
            return False

        metrics.record_message_dead_lettered(reason)
        await self.consumer.commit(message)
        logger.warning(
            "Message dead-lettered",
            message_id=message_id,
            reason=reason,
            attempts=attempts,
            error=error_message,
        )
        return True

    async def handle_message(self, message: Message) -> None:
        """Process one consumed message end to end."""
        try:
            queued = QueueMessage.from_bytes(
                message.value(), header_value(message, MESSAGE_ID_HEADER)
            )
        except MessageDecodeError as e:
            await self.dead_letter(
                message, REASON_INVALID_MESSAGE, str(e), ErrorType.VALIDATION_ERROR, 0
            )
            return

        correlation_id_var.set(queued.id)

        if self.is_expired(queued):
            await self.dead_letter(
                message,
                REASON_EXPIRED,
                f"Message older than {self.config.message_ttl_seconds} seconds",
                ErrorType.TIMEOUT_ERROR,
                0,
            )
            return

        if queued.type != TEST_RUN_RECEIVED:
            logger.info("Ignoring message type", message_id=queued.id, type=queued.type)
            await self.consumer.commit(message)
            return

        try:
            run = QueuedTestRun.model_validate(queued.payload)
        except ValidationError as e:
            await self.dead_letter(
                message, REASON_INVALID_PAYLOAD, str(e), ErrorType.VALIDATION_ERROR, 0
            )
            return

        if await ProcessedMessage.exists(message_id=queued.id):
            logger.info("Message already processed, skipping", message_id=queued.id)
            await self.consumer.commit(message)
            return

        error = await self.persist_with_retry(queued.id, run)
        if error is None:
            await self.consumer.commit(message)
            metrics.record_message_ingested()
            return

        metrics.record_message_failed()
        await self.dead_letter(
            message,
            REASON_RETRIES_EXHAUSTED,
            error.error_message,
            error.error_type,
            error.retry_count + 1,
        )

    async def start(self) -> None:
        await self.producer.start()
        await self.producer.ensure_topics(
            [self.config.topic, self.config.dead_letter_topic]
        )
        await self.consumer.start()

    async def run(self) -> None:
        """Consume until stop() is called."""
        await self.start()
        self._running = True
        logger.info(
            "Ingestion worker started",
            topic=self.config.topic,
            dead_letter_topic=self.config.dead_letter_topic,
        )
        try:
            while self._running:
                message: Optional[Message] = None
                try:
                    message = await self.consumer.poll(
                        self.kafka_config.poll_timeout_seconds
                    )
                    if message is None:
                        continue
                    await self.handle_message(message)
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error(
                        "Error in ingestion consumer loop",
                        error_type=type(e).__name__,
                        error_message=str(e),
                    )
                    if message is not None:
                        await self.rewind(message)
                    await asyncio.sleep(1)
        finally:
            await self.shutdown()

    async def rewind(self, message: Message) -> None:
        """Seek back to an uncommitted message so it is polled again."""
        try:
            await self.consumer.seek(message)
        except KafkaException as e:
            logger.error(
                "Failed to rewind consumer, message may be skipped",
                topic=message.topic(),
                partition=message.partition(),
                offset=message.offset(),
                error=str(e),
            )

    def stop(self) -> None:
        """Ask the consume loop to exit after the current message."""
        if self._running:
            logger.info("Ingestion worker stopping")
        self._running = False

    async def shutdown(self) -> None:
        await self.consumer.close()
        await self.producer.close()
        self._running = False
        logger.info("Ingestion worker stopped")

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.stop)


async def run_worker() -> None:
    config = get_config()
    if not config.kafka.bootstrap_servers:
        logger.error("KAFKA_BOOTSTRAP_SERVERS is required to run the ingestion worker")
        raise SystemExit(1)

    await init_tortoise()
    worker = IngestionWorker()
    worker.install_signal_handlers()
    try:
        await worker.run()
    finally:
        await close_tortoise()


def main() -> None:
    """Entry point for ``anchorpipe-ingestion-worker``."""
    setup_logging()
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
