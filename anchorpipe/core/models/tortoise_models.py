"""
Tortoise ORM models for Anchorpipe.

Users, repositories and their roles, test cases and runs, audit and DSR
records, HMAC secrets, and the bookkeeping tables used by ingestion.
"""

from enum import Enum
from uuid import uuid4

from tortoise import fields
from tortoise.models import Model


class RepoRole(str, Enum):
    """Repository scoped roles."""

    ADMIN = "admin"
    MEMBER = "member"
    READ_ONLY = "read_only"


class TestStatus(str, Enum):
    """Outcome of a single test execution."""

    __test__ = False

    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"


class DSRType(str, Enum):
    """Data subject request types."""

    EXPORT = "export"
    DELETION = "deletion"


class DSRStatus(str, Enum):
    """Data subject request lifecycle."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RoleChange(str, Enum):
    """Kinds of role audit entries."""

    ASSIGNED = "assigned"
    UPDATED = "updated"
    REMOVED = "removed"


class User(Model):
    """Platform user. Credentials live in ``preferences["passwordHash"]``."""

    id = fields.UUIDField(primary_key=True, default=uuid4)

    email = fields.CharField(max_length=255, unique=True, null=True)
    name = fields.CharField(max_length=255, null=True)
    github_login = fields.CharField(max_length=255, null=True)
    preferences = fields.JSONField(default=dict)
    telemetry_opt_in = fields.BooleanField(default=False)
    last_login_at = fields.DatetimeField(null=True)

    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    repo_roles: fields.ReverseRelation["UserRepoRole"]
    sessions: fields.ReverseRelation["UserSession"]
    data_subject_requests: fields.ReverseRelation["DataSubjectRequest"]

    class Meta:
        """Meta class for User model."""

        table = "users"

    def __str__(self) -> str:
        """Return string representation of User."""
        return f"User({self.id})"


class Repo(Model):
    """Repository registered with the platform."""

    id = fields.UUIDField(primary_key=True, default=uuid4)

    name = fields.CharField(max_length=255, db_index=True)
    owner = fields.CharField(max_length=255, db_index=True)
    default_branch = fields.CharField(max_length=255, default="main")
    visibility = fields.CharField(max_length=20, default="private")

    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        """Meta class for Repo model."""

        table = "repos"
        unique_together = (("owner", "name"),)

    def __str__(self) -> str:
        """Return string representation of Repo."""
        return f"Repo({self.owner}/{self.name})"


class TestCase(Model):
    """A test identified by repo, path, name and framework."""

    __test__ = False

    id = fields.UUIDField(primary_key=True, default=uuid4)

    repo: fields.ForeignKeyRelation[Repo] = fields.ForeignKeyField(
        "models.Repo", related_name="test_cases", db_index=True
    )
    path = fields.CharField(max_length=500)
    name = fields.CharField(max_length=500)
    framework = fields.CharField(max_length=32)
    tags = fields.JSONField(default=list)

    created_at = fields.DatetimeField(auto_now_add=True)

    runs: fields.ReverseRelation["TestRun"]

    class Meta:
        """Meta class for TestCase model."""

        table = "test_cases"
        unique_together = (("repo", "path", "name", "framework"),)


class TestRun(Model):
    """One execution of a test case at a commit."""

    __test__ = False

    id = fields.UUIDField(primary_key=True, default=uuid4)

    repo: fields.ForeignKeyRelation[Repo] = fields.ForeignKeyField(
        "models.Repo", related_name="test_runs", db_index=True
    )
    test_case: fields.ForeignKeyRelation[TestCase] = fields.ForeignKeyField(
        "models.TestCase", related_name="runs", db_index=True
    )
    commit_sha = fields.CharField(max_length=40, db_index=True)
    status = fields.CharEnumField(TestStatus, max_length=8)
    duration_ms = fields.IntField(null=True)
    started_at = fields.DatetimeField()
    failure_details = fields.TextField(null=True)
    environment_hash = fields.CharField(max_length=64, null=True)

    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        """Meta class for TestRun model."""

        table = "test_runs"


class AuditLog(Model):
    """Append-only record of security relevant actions."""

    id = fields.UUIDField(primary_key=True, default=uuid4)

    actor: fields.ForeignKeyNullableRelation[User] = fields.ForeignKeyField(
        "models.User",
        related_name="audit_logs",
        null=True,
        on_delete=fields.SET_NULL,
    )
    action = fields.CharField(max_length=64, db_index=True)
    subject = fields.CharField(max_length=32, db_index=True)
    subject_id = fields.CharField(max_length=255, null=True)
    description = fields.CharField(max_length=512)
    metadata = fields.JSONField(null=True)
    ip_address = fields.CharField(max_length=45, null=True)
    user_agent = fields.CharField(max_length=512, null=True)

    created_at = fields.DatetimeField(auto_now_add=True, db_index=True)

    class Meta:
        """Meta class for AuditLog model."""

        table = "audit_logs"
        ordering = ["-created_at"]


class DataSubjectRequest(Model):
    """GDPR/CCPA export or deletion request."""

    id = fields.UUIDField(primary_key=True, default=uuid4)

    user: fields.ForeignKeyRelation[User] = fields.ForeignKeyField(
        "models.User", related_name="data_subject_requests", db_index=True
    )
    request_type = fields.CharEnumField(DSRType, max_length=16)
    status = fields.CharEnumField(DSRStatus, max_length=16, default=DSRStatus.PENDING)
    requested_at = fields.DatetimeField(auto_now_add=True)
    processed_at = fields.DatetimeField(null=True)
    due_at = fields.DatetimeField(null=True)
    export_payload = fields.JSONField(null=True)
    metadata = fields.JSONField(null=True)

    events: fields.ReverseRelation["DataSubjectRequestEvent"]

    class Meta:
        """Meta class for DataSubjectRequest model."""

        table = "data_subject_requests"


class DataSubjectRequestEvent(Model):
    """Status history entry for a data subject request."""

    id = fields.UUIDField(primary_key=True, default=uuid4)

    request: fields.ForeignKeyRelation[DataSubjectRequest] = fields.ForeignKeyField(
        "models.DataSubjectRequest", related_name="events", on_delete=fields.CASCADE
    )
    status = fields.CharEnumField(DSRStatus, max_length=16)
    message = fields.TextField(null=True)

    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        """Meta class for DataSubjectRequestEvent model."""

        table = "data_subject_request_events"
        ordering = ["created_at"]


class UserRepoRole(Model):
    """Role a user holds on a repository; one per (user, repo)."""

    id = fields.UUIDField(primary_key=True, default=uuid4)

    user: fields.ForeignKeyRelation[User] = fields.ForeignKeyField(
        "models.User", related_name="repo_roles", on_delete=fields.CASCADE
    )
    repo: fields.ForeignKeyRelation[Repo] = fields.ForeignKeyField(
        "models.Repo", related_name="user_roles", on_delete=fields.CASCADE
    )
    role = fields.CharEnumField(RepoRole, max_length=16)
    assigned_by: fields.ForeignKeyNullableRelation[User] = fields.ForeignKeyField(
        "models.User",
        related_name="roles_assigned",
        null=True,
        on_delete=fields.SET_NULL,
    )

    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        """Meta class for UserRepoRole model."""

        table = "user_repo_roles"
        unique_together = (("user", "repo"),)


class RoleAuditLog(Model):
    """History of role assignments on a repository."""

    id = fields.UUIDField(primary_key=True, default=uuid4)

    actor: fields.ForeignKeyNullableRelation[User] = fields.ForeignKeyField(
        "models.User",
        related_name="role_changes_made",
        null=True,
        on_delete=fields.SET_NULL,
    )
    target_user: fields.ForeignKeyNullableRelation[User] = fields.ForeignKeyField(
        "models.User",
        related_name="role_changes_received",
        null=True,
        on_delete=fields.SET_NULL,
    )
    repo: fields.ForeignKeyRelation[Repo] = fields.ForeignKeyField(
        "models.Repo", related_name="role_audit_logs", on_delete=fields.CASCADE
    )
    action = fields.CharEnumField(RoleChange, max_length=16)
    old_role = fields.CharField(max_length=16, null=True)
    new_role = fields.CharField(max_length=16, null=True)
    metadata = fields.JSONField(null=True)

    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        """Meta class for RoleAuditLog model."""

        table = "role_audit_logs"
        ordering = ["-created_at"]


class HmacSecret(Model):
    """Per-repo ingestion secret. The plaintext is only kept encrypted."""

    id = fields.UUIDField(primary_key=True, default=uuid4)

    repo: fields.ForeignKeyRelation[Repo] = fields.ForeignKeyField(
        "models.Repo", related_name="hmac_secrets", on_delete=fields.CASCADE
    )
    name = fields.CharField(max_length=255)
    secret_hash = fields.CharField(max_length=64)
    secret_value = fields.TextField()
    active = fields.BooleanField(default=True)
    created_by: fields.ForeignKeyNullableRelation[User] = fields.ForeignKeyField(
        "models.User",
        related_name="hmac_secrets_created",
        null=True,
        on_delete=fields.SET_NULL,
    )
    last_used_at = fields.DatetimeField(null=True)
    revoked_at = fields.DatetimeField(null=True)
    expires_at = fields.DatetimeField(null=True)
    rotated_from = fields.UUIDField(null=True)

    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        """Meta class for HmacSecret model."""

        table = "hmac_secrets"


class TelemetryEvent(Model):
    """Product telemetry event."""

    id = fields.UUIDField(primary_key=True, default=uuid4)

    repo: fields.ForeignKeyNullableRelation[Repo] = fields.ForeignKeyField(
        "models.Repo",
        related_name="telemetry_events",
        null=True,
        on_delete=fields.SET_NULL,
    )
    event_type = fields.CharField(max_length=100, db_index=True)
    event_data = fields.JSONField(default=dict)
    event_timestamp = fields.DatetimeField(auto_now_add=True)

    class Meta:
        """Meta class for TelemetryEvent model."""

        table = "telemetry_events"


class IdempotencyKey(Model):
    """Ingestion duplicate guard, valid until ``expires_at``."""

    id = fields.UUIDField(primary_key=True, default=uuid4)

    key = fields.CharField(max_length=512, unique=True)
    repo_id = fields.UUIDField(db_index=True)
    commit_sha = fields.CharField(max_length=40)
    run_id = fields.CharField(max_length=255)
    framework = fields.CharField(max_length=32)
    response = fields.JSONField(null=True)
    expires_at = fields.DatetimeField(db_index=True)

    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        """Meta class for IdempotencyKey model."""

        table = "idempotency_keys"


class ProcessedMessage(Model):
    """Queue message ids the worker has already persisted."""

    message_id = fields.CharField(max_length=255, primary_key=True)
    processed_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        """Meta class for ProcessedMessage model."""

        table = "processed_messages"


class VerificationToken(Model):
    """Single-use email verification token."""

    id = fields.UUIDField(primary_key=True, default=uuid4)

    identifier = fields.CharField(max_length=255, db_index=True)
    token = fields.CharField(max_length=128, unique=True)
    expires = fields.DatetimeField()

    class Meta:
        """Meta class for VerificationToken model."""

        table = "verification_tokens"


class UserSession(Model):
    """Server side record of an issued session JWT, keyed by its jti."""

    id = fields.CharField(max_length=64, primary_key=True)

    user: fields.ForeignKeyRelation[User] = fields.ForeignKeyField(
        "models.User", related_name="sessions", on_delete=fields.CASCADE
    )
    expires_at = fields.DatetimeField()
    ip_address = fields.CharField(max_length=45, null=True)
    user_agent = fields.CharField(max_length=512, null=True)

    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        """Meta class for UserSession model."""

        table = "user_sessions"
