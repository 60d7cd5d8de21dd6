"""
Request and response models for the Anchorpipe API.

Request bodies use the camelCase names the web client sends; fields are
snake_case in Python with aliases.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from ..core.auth.password import password_policy_errors
from ..core.models import RepoRole

MAX_EMAIL_LENGTH = 255


def _normalize_email(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip().lower()
        if len(value) > MAX_EMAIL_LENGTH:
            raise ValueError(f"Email must be at most {MAX_EMAIL_LENGTH} characters")
    return value


def _require_uuid(value: str, name: str) -> str:
    try:
        UUID(value)
    except ValueError:
        raise ValueError(f"{name} must be a valid UUID")
    return value


class RegisterRequest(BaseModel):
    """Body of POST /api/auth/register."""

    email: EmailStr
    password: str

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: Any) -> Any:
        return _normalize_email(v)

    @field_validator("password")
    @classmethod
    def validate_password_strength(cls, v: str) -> str:
        errors = password_policy_errors(v)
        if errors:
            raise ValueError(errors[0])
        return v


class LoginRequest(BaseModel):
    """Body of POST /api/auth/login."""

    email: EmailStr
    password: str = Field(..., min_length=1)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: Any) -> Any:
        return _normalize_email(v)


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1)


class CreateRepoRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=255)
    owner: str = Field(..., min_length=1, max_length=255)
    default_branch: str = Field(
        "main", alias="defaultBranch", min_length=1, max_length=255
    )
    visibility: str = Field("private", pattern="^(private|public)$")


class AssignRoleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    role: RepoRole

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, v: str) -> str:
        return _require_uuid(v, "userId")


class RemoveRoleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, v: str) -> str:
        return _require_uuid(v, "userId")


class DeletionRequest(BaseModel):
    """Body of POST /api/dsr/deletion; the reason is optional."""

    reason: Optional[str] = Field(None, max_length=500)

    @field_validator("reason", mode="before")
    @classmethod
    def strip_reason(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip() or None
        return v


class CreateSecretRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    repo_id: str = Field(..., alias="repoId")
    name: str = Field(..., min_length=1, max_length=255)
    expires_at: Optional[datetime] = Field(None, alias="expiresAt")

    @field_validator("repo_id")
    @classmethod
    def validate_repo_id(cls, v: str) -> str:
        return _require_uuid(v, "repoId")

    @field_validator("expires_at")
    @classmethod
    def validate_expires_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class RotateSecretRequest(CreateSecretRequest):
    old_secret_id: str = Field(..., alias="oldSecretId")

    @field_validator("old_secret_id")
    @classmethod
    def validate_old_secret_id(cls, v: str) -> str:
        return _require_uuid(v, "oldSecretId")


class RevokeSecretRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    secret_id: str = Field(..., alias="secretId")

    @field_validator("secret_id")
    @classmethod
    def validate_secret_id(cls, v: str) -> str:
        return _require_uuid(v, "secretId")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="healthy, degraded or unhealthy")
    service: str = Field("Anchorpipe API")
    version: str = Field("0.1.0")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    components: Optional[Dict[str, Any]] = None
