"""
Ingestion payload models.

CI systems submit normalized test reports. Top level fields are snake_case;
per-test fields use the camelCase names emitted by the reporters.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..models import TestStatus

COMMIT_SHA_PATTERN = re.compile(r"^[0-9a-fA-F]{40}$")
MAX_TESTS = 10000


class Framework(str, Enum):
    """Test frameworks accepted by the ingestion endpoint."""

    JUNIT = "junit"
    JEST = "jest"
    PYTEST = "pytest"
    PLAYWRIGHT = "playwright"
    MOCHA = "mocha"
    VITEST = "vitest"
    UNKNOWN = "unknown"


class TestResult(BaseModel):
    """One executed test in a report."""

    __test__ = False

    model_config = ConfigDict(populate_by_name=True)

    path: str = Field(..., min_length=1, max_length=500, description="Test file path")
    name: str = Field(..., min_length=1, max_length=500, description="Test name")
    status: TestStatus = Field(..., description="pass, fail or skip")
    duration_ms: Optional[int] = Field(None, alias="durationMs", gt=0)
    started_at: Optional[str] = Field(None, alias="startedAt")
    failure_details: Optional[str] = Field(
        None, alias="failureDetails", max_length=10000
    )
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("started_at")
    @classmethod
    def validate_started_at(cls, v: Optional[str]) -> Optional[str]:
        """Require an ISO 8601 datetime with a time part."""
        if v is None:
            return v
        try:
            datetime.fromisoformat(v.replace("Z", "+00:00"))
        except ValueError:
            raise ValueError("startedAt must be a valid ISO 8601 datetime string")
        if "T" not in v:
            raise ValueError("startedAt must be a valid ISO 8601 datetime string")
        return v


class IngestionPayload(BaseModel):
    """Test report submitted to POST /api/ingestion."""

    repo_id: str = Field(..., description="Repository UUID")
    commit_sha: str = Field(..., description="40 character commit SHA")
    run_id: str = Field(
        ..., min_length=1, max_length=255, description="CI run identifier"
    )
    framework: Framework
    tests: List[TestResult] = Field(..., min_length=1, max_length=MAX_TESTS)

    branch: Optional[str] = Field(None, max_length=255)
    pull_request: Optional[str] = Field(None, max_length=255)
    environment: Optional[Dict[str, str]] = None
    metadata: Optional[Dict[str, Any]] = None
    idempotency_key: Optional[str] = Field(None, max_length=255)

    @field_validator("repo_id")
    @classmethod
    def validate_repo_id(cls, v: str) -> str:
        try:
            UUID(v)
        except ValueError:
            raise ValueError("repo_id must be a valid UUID")
        return v

    @field_validator("commit_sha")
    @classmethod
    def validate_commit_sha(cls, v: str) -> str:
        if not COMMIT_SHA_PATTERN.match(v):
            raise ValueError("commit_sha must be a valid 40-character hex string")
        return v


def validation_details(error: ValidationError) -> List[Dict[str, str]]:
    """Flatten pydantic errors into ``[{path, message}]``."""
    return [
        {
            "path": ".".join(str(part) for part in issue["loc"]),
            "message": issue["msg"],
        }
        for issue in error.errors()
    ]
