"""
Test report ingestion: payload models, redaction and submission processing.
"""

from .redaction import Redactor, redact_payload
from .schema import Framework, IngestionPayload, TestResult, validation_details
from .service import IngestionResult, IngestionService, ingestion_service

__all__ = [
    "Redactor",
    "redact_payload",
    "Framework",
    "IngestionPayload",
    "TestResult",
    "validation_details",
    "IngestionResult",
    "IngestionService",
    "ingestion_service",
]
