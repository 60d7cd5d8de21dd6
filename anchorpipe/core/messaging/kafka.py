"""
Kafka messaging for test run ingestion.

The HTTP ingestion path publishes ``test.run.received`` messages and the
ingestion worker consumes them. confluent_kafka clients are blocking, so
every call runs in a thread pool through ``run_in_executor``.
"""

import asyncio
import json
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from confluent_kafka import (
    Consumer,
    KafkaError,
    KafkaException,
    Message,
    Producer,
    TopicPartition,
)
from confluent_kafka.admin import AdminClient, NewTopic

from ..config import KafkaConfig, get_config
from ..logging import get_logger

logger = get_logger(__name__)

TEST_RUN_RECEIVED = "test.run.received"
MESSAGE_ID_HEADER = "message-id"

Headers = List[Tuple[str, bytes]]


class MessageDecodeError(ValueError):
    """Raised when a consumed message is not a valid ingestion message."""


@dataclass
class QueueMessage:
    """Envelope of a message on the ingestion topic."""

    type: str
    payload: Dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), default=str).encode("utf-8")

    @property
    def created_at(self) -> Optional[datetime]:
        """Parsed timestamp, or None when it is not ISO 8601."""
        try:
            parsed = datetime.fromisoformat(self.timestamp.replace("Z", "+00:00"))
        except (AttributeError, ValueError):
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    @classmethod
    def from_bytes(
        cls, raw: Optional[bytes], fallback_id: Optional[str] = None
    ) -> "QueueMessage":
        """
        Decode a message value.

        Args:
            raw: Message bytes
            fallback_id: Id used when the body has none, e.g. from a header

        Raises:
            MessageDecodeError: If the value is not JSON or lacks type/payload
        """
        if not raw:
            raise MessageDecodeError("Empty message")
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MessageDecodeError(f"Invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise MessageDecodeError("Message must be a JSON object")
        if not isinstance(data.get("type"), str):
            raise MessageDecodeError("Message type is missing")
        if not isinstance(data.get("payload"), dict):
            raise MessageDecodeError("Message payload is missing")

        message_id = data.get("id") or fallback_id
        if not message_id:
            raise MessageDecodeError("Message id is missing")

        return cls(
            type=data["type"],
            payload=data["payload"],
            id=str(message_id),
            timestamp=str(data.get("timestamp") or ""),
        )


def header_value(message: Message, name: str) -> Optional[str]:
    """Read a string header from a consumed message."""
    for key, value in message.headers() or []:
        if key == name and value is not None:
            if isinstance(value, bytes):
                return value.decode("utf-8", errors="replace")
            return str(value)
    return None


class KafkaProducerClient:
    """
    Producer that waits for delivery reports.

    Args:
        config: Kafka configuration
        executor: Thread pool for blocking client calls
    """

    def __init__(
        self,
        config: KafkaConfig,
        executor: Optional[ThreadPoolExecutor] = None,
        delivery_timeout: float = 10.0,
    ):
        self.config = config
        self.delivery_timeout = delivery_timeout
        self._executor = executor or ThreadPoolExecutor(max_workers=2)
        self._producer: Optional[Producer] = None

    async def start(self) -> Producer:
        """Create the underlying producer, or return the existing one."""
        if self._producer is not None:
            return self._producer
        producer_config = {
            "bootstrap.servers": self.config.bootstrap_servers,
            "acks": self.config.acks,
            "retries": self.config.retries,
            "linger.ms": self.config.linger_ms,
        }
        loop = asyncio.get_running_loop()
        producer = await loop.run_in_executor(
            self._executor, lambda: Producer(producer_config)
        )
        self._producer = producer
        return producer

    async def ensure_topics(self, topics: Sequence[str]) -> None:
        """Create topics that do not exist yet."""
        admin = AdminClient({"bootstrap.servers": self.config.bootstrap_servers})
        new_topics = [
            NewTopic(
                topic,
                num_partitions=self.config.num_partitions,
                replication_factor=self.config.replication_factor,
            )
            for topic in topics
        ]

        def create_topics() -> None:
            for topic, future in admin.create_topics(new_topics).items():
                try:
                    future.result()
                    logger.info("Kafka topic created", topic=topic)
                except KafkaException as e:
                    if "already exists" not in str(e):
                        raise

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, create_topics)

    async def send(
        self,
        topic: str,
        value: bytes,
        key: Optional[str] = None,
        headers: Optional[Headers] = None,
    ) -> None:
        """
        Produce a message and wait until the broker acknowledges it.

        Raises:
            KafkaException: If delivery fails or times out, or the local
                queue is full
        """
        producer = await self.start()

        errors: List[KafkaError] = []

        def on_delivery(err: Optional[KafkaError], msg: Message) -> None:
            if err is not None:
                errors.append(err)

        def produce() -> int:
            try:
                producer.produce(
                    topic,
                    value=value,
                    key=key.encode("utf-8") if key else None,
                    headers=headers or [],
                    on_delivery=on_delivery,
                )
            except BufferError as e:
                raise KafkaException(
                    KafkaError(KafkaError._QUEUE_FULL, str(e))
                ) from e
            return int(producer.flush(self.delivery_timeout))

        loop = asyncio.get_running_loop()
        pending = await loop.run_in_executor(self._executor, produce)

        if errors:
            logger.error("Message delivery failed", topic=topic, error=str(errors[0]))
            raise KafkaException(errors[0])
        if pending:
            raise KafkaException(
                KafkaError(KafkaError._MSG_TIMED_OUT, "Delivery report not received")
            )
        logger.debug("Message delivered", topic=topic, key=key)

    async def close(self) -> None:
        """Flush outstanding messages."""
        if self._producer is not None:
            producer = self._producer
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                self._executor, lambda: producer.flush(self.delivery_timeout)
            )
            self._producer = None


class KafkaConsumerClient:
    """
    Consumer with manual offset commits.

    Args:
        config: Kafka configuration
        topics: Topics to subscribe to
        executor: Thread pool for blocking client calls
    """

    def __init__(
        self,
        config: KafkaConfig,
        topics: Sequence[str],
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.config = config
        self.topics = list(topics)
        self._executor = executor or ThreadPoolExecutor(max_workers=1)
        self._consumer: Optional[Consumer] = None

    async def start(self) -> None:
        """Create the consumer and subscribe."""
        consumer_config = {
            "bootstrap.servers": self.config.bootstrap_servers,
            "group.id": self.config.consumer_group,
            "auto.offset.reset": self.config.auto_offset_reset,
            "enable.auto.commit": False,
            "session.timeout.ms": self.config.session_timeout_ms,
            "heartbeat.interval.ms": self.config.heartbeat_interval_ms,
        }
        loop = asyncio.get_running_loop()
        self._consumer = await loop.run_in_executor(
            self._executor, lambda: Consumer(consumer_config)
        )
        self._consumer.subscribe(self.topics)
        logger.info("Kafka consumer subscribed", topics=self.topics)

    async def poll(self, timeout: float) -> Optional[Message]:
        """Poll one message; broker errors are logged and yield None."""
        if self._consumer is None:
            return None
        consumer = self._consumer
        loop = asyncio.get_running_loop()
        message = await loop.run_in_executor(
            self._executor, lambda: consumer.poll(timeout=timeout)
        )
        if message is None:
            return None

        error = message.error()
        if error is not None:
            if error.code() != KafkaError._PARTITION_EOF:
                logger.error(
                    "Kafka consumer error",
                    error_code=error.code(),
                    error_message=str(error),
                )
            return None
        return message

    async def commit(self, message: Message) -> None:
        """Synchronously commit the offset after this message."""
        consumer = self._consumer
        if consumer is None:
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            self._executor,
            lambda: consumer.commit(message=message, asynchronous=False),
        )

    async def seek(self, message: Message) -> None:
        """Rewind the partition so this message is polled again."""
        consumer = self._consumer
        if consumer is None:
            return
        partition = TopicPartition(
            message.topic(), message.partition(), message.offset()
        )
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, lambda: consumer.seek(partition))

    async def close(self) -> None:
        if self._consumer is not None:
            consumer = self._consumer
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(self._executor, consumer.close)
            self._consumer = None


class IngestionPublisher:
    """
    Publishes received test runs to the ingestion topic.

    Publishing is skipped with a warning when no broker is configured.
    """

    def __init__(
        self,
        config: Optional[KafkaConfig] = None,
        topic: Optional[str] = None,
        producer: Optional[KafkaProducerClient] = None,
    ):
        self._config = config
        self._topic = topic
        self._producer = producer

    @property
    def config(self) -> KafkaConfig:
        return self._config or get_config().kafka

    @property
    def topic(self) -> str:
        return self._topic or get_config().ingestion.topic

    @property
    def is_configured(self) -> bool:
        return bool(self.config.bootstrap_servers)

    async def publish(self, message: QueueMessage, key: Optional[str] = None) -> bool:
        """
        Publish a message.

        Returns:
            True if the broker acknowledged it, False if publishing is disabled

        Raises:
            KafkaException: If the broker rejected the message
        """
        if not self.is_configured:
            logger.warning(
                "KAFKA_BOOTSTRAP_SERVERS not configured, skipping queue publish"
            )
            return False

        if self._producer is None:
            self._producer = KafkaProducerClient(self.config)

        await self._producer.send(
            self.topic,
            message.to_bytes(),
            key=key,
            headers=[(MESSAGE_ID_HEADER, message.id.encode("utf-8"))],
        )
        logger.info(
            "Published ingestion event to queue",
            message_id=message.id,
            topic=self.topic,
        )
        return True

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.close()


async def check_broker(
    config: Optional[KafkaConfig] = None, timeout: float = 5.0
) -> Dict[str, Any]:
    """
    Fetch cluster metadata from the broker.

    Returns:
        ``{"ok": True, "brokers": n, "topics": n}``, or
        ``{"ok": False, "reason": "not_configured"}``

    Raises:
        KafkaException: If the broker cannot be reached
    """
    config = config or get_config().kafka
    if not config.bootstrap_servers:
        return {"ok": False, "reason": "not_configured"}

    admin = AdminClient({"bootstrap.servers": config.bootstrap_servers})
    loop = asyncio.get_running_loop()
    metadata = await loop.run_in_executor(
        None, lambda: admin.list_topics(timeout=timeout)
    )
    return {
        "ok": True,
        "brokers": len(metadata.brokers),
        "topics": len(metadata.topics),
    }


# Global publisher instance
ingestion_publisher = IngestionPublisher()
