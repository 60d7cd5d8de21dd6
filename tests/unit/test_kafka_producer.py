"""
Unit tests for the Kafka producer client.

The confluent_kafka Producer is replaced with a Mock; no broker is needed.
"""

from unittest.mock import Mock

import pytest
from confluent_kafka import KafkaError, KafkaException

from anchorpipe.core.config import KafkaConfig
from anchorpipe.core.messaging import KafkaProducerClient


@pytest.fixture
def kafka_producer() -> Mock:
    producer = Mock()
    producer.flush.return_value = 0
    return producer


@pytest.fixture
def client(kafka_producer: Mock) -> KafkaProducerClient:
    client = KafkaProducerClient(KafkaConfig(bootstrap_servers="localhost:9092"))
    client._producer = kafka_producer
    return client


@pytest.mark.unit
@pytest.mark.asyncio
class TestKafkaProducerClient:
    async def test_send(
        self, client: KafkaProducerClient, kafka_producer: Mock
    ) -> None:
        await client.send("test.ingestion", b"{}", key="repo-1", headers=[("a", b"1")])

        args, kwargs = kafka_producer.produce.call_args
        assert args == ("test.ingestion",)
        assert kwargs["value"] == b"{}"
        assert kwargs["key"] == b"repo-1"
        assert kwargs["headers"] == [("a", b"1")]
        kafka_producer.flush.assert_called_once_with(client.delivery_timeout)

    async def test_start_reuses_producer(
        self, client: KafkaProducerClient, kafka_producer: Mock
    ) -> None:
        assert await client.start() is kafka_producer

    async def test_queue_full_raises_kafka_exception(
        self, client: KafkaProducerClient, kafka_producer: Mock
    ) -> None:
        kafka_producer.produce.side_effect = BufferError("Local: Queue full")

        with pytest.raises(KafkaException) as exc_info:
            await client.send("test.ingestion", b"{}")

        assert exc_info.value.args[0].code() == KafkaError._QUEUE_FULL
        kafka_producer.flush.assert_not_called()

    async def test_undelivered_message_raises(
        self, client: KafkaProducerClient, kafka_producer: Mock
    ) -> None:
        kafka_producer.flush.return_value = 1

        with pytest.raises(KafkaException):
            await client.send("test.ingestion", b"{}")
