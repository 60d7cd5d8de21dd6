"""
Message queue clients for Anchorpipe.
"""

from .kafka import (
    MESSAGE_ID_HEADER,
    TEST_RUN_RECEIVED,
    IngestionPublisher,
    KafkaConsumerClient,
    KafkaProducerClient,
    MessageDecodeError,
    QueueMessage,
    check_broker,
    header_value,
    ingestion_publisher,
)

__all__ = [
    "MESSAGE_ID_HEADER",
    "TEST_RUN_RECEIVED",
    "IngestionPublisher",
    "KafkaConsumerClient",
    "KafkaProducerClient",
    "MessageDecodeError",
    "QueueMessage",
    "check_broker",
    "header_value",
    "ingestion_publisher",
]
