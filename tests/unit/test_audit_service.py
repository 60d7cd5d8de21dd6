"""
Unit tests for the audit log service.
"""

import csv
import io
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from tortoise.exceptions import OperationalError

from anchorpipe.core.models import AuditLog, User
from anchorpipe.core.services.audit_service import (
    CSV_COLUMNS,
    AuditAction,
    AuditService,
    AuditSubject,
    RequestContext,
    audit_logs_to_csv,
    clamp_limit,
    extract_request_context,
    sanitize_metadata,
)


@pytest.fixture
def service() -> AuditService:
    return AuditService()


@pytest.mark.unit
class TestAuditHelpers:
    """Test pure helpers."""

    @pytest.mark.parametrize(
        "limit,expected", [(None, 50), (0, 50), (10, 10), (500, 200), (-3, 1)]
    )
    def test_clamp_limit(self, limit: int, expected: int) -> None:
        assert clamp_limit(limit) == expected

    def test_sanitize_metadata(self) -> None:
        assert sanitize_metadata(None) is None
        assert sanitize_metadata({}) is None
        assert sanitize_metadata({"at": datetime(2026, 1, 1)}) == {
            "at": "2026-01-01 00:00:00"
        }

    def test_oversized_metadata(self) -> None:
        assert sanitize_metadata({"blob": "x" * 5000}) == {
            "truncated": True,
            "note": "Metadata exceeded storage limit",
        }

    def test_extract_request_context(self) -> None:
        context = extract_request_context(
            {"x-forwarded-for": "203.0.113.9", "user-agent": "pytest"}
        )
        assert context == RequestContext("203.0.113.9", "pytest")

        assert extract_request_context({}) == RequestContext(None, None)

    def test_csv_export(self) -> None:
        entries = [
            {
                "id": "1",
                "createdAt": "2026-10-19T10:00:00+00:00",
                "action": "login_success",
                "subject": "user",
                "subjectId": "u1",
                "description": "User logged in, again",
                "ipAddress": "1.2.3.4",
                "userAgent": None,
                "actor": {"id": "u1", "email": "a@example.com"},
            },
            {"id": "2", "action": "other", "subject": "system", "actor": None},
        ]

        rows = list(csv.reader(io.StringIO(audit_logs_to_csv(entries))))

        assert rows[0] == list(CSV_COLUMNS)
        assert rows[1][5:8] == ["u1", "a@example.com", "User logged in, again"]
        assert rows[2][5] == ""
        assert len(rows) == 3


@pytest.mark.unit
@pytest.mark.asyncio
class TestWriteAuditLog:
    """Test audit writes."""

    async def test_write(self, service: AuditService, user: User) -> None:
        log = await service.write_audit_log(
            AuditAction.LOGIN_SUCCESS,
            AuditSubject.USER,
            actor_id=user.id,
            subject_id=str(user.id),
            description="User logged in successfully.",
            metadata={"email": user.email},
            context=RequestContext("1.2.3.4", "Mozilla/5.0"),
        )

        assert log is not None
        stored = await AuditLog.get(id=log.id)
        assert stored.action == "login_success"
        assert stored.subject == "user"
        assert stored.actor_id == user.id
        assert stored.metadata == {"email": "user@example.com"}
        assert stored.ip_address == "1.2.3.4"
        assert stored.user_agent == "Mozilla/5.0"

    async def test_string_action_and_missing_description(
        self, service: AuditService, db: None
    ) -> None:
        log = await service.write_audit_log("other", "system")

        assert log is not None
        assert log.description == ""
        assert log.actor_id is None

    async def test_failure_returns_none(self, service: AuditService) -> None:
        """Test that a failed write is reported as None instead of raising."""
        with patch.object(
            AuditLog, "create", AsyncMock(side_effect=OperationalError("locked"))
        ):
            log = await service.write_audit_log(AuditAction.OTHER, AuditSubject.SYSTEM)

        assert log is None


@pytest.mark.unit
@pytest.mark.asyncio
class TestListAuditLogs:
    """Test listing and cursor pagination."""

    @pytest.fixture
    async def logs(self, user: User) -> list:
        base = datetime(2026, 10, 1, tzinfo=timezone.utc)
        created = []
        for index, subject in enumerate(["user", "repo", "user"]):
            created.append(
                await AuditLog.create(
                    actor=user if index != 1 else None,
                    action="other",
                    subject=subject,
                    description=f"entry {index}",
                    created_at=base + timedelta(minutes=index),
                )
            )
        return created

    async def test_newest_first(self, service: AuditService, logs: list) -> None:
        data, next_cursor = await service.list_audit_logs()

        assert [entry["description"] for entry in data] == [
            "entry 2",
            "entry 1",
            "entry 0",
        ]
        assert next_cursor is None
        assert data[0]["actor"]["email"] == "user@example.com"
        assert data[1]["actor"] is None

    async def test_cursor_pagination(self, service: AuditService, logs: list) -> None:
        first, cursor = await service.list_audit_logs(limit=2)

        assert [entry["description"] for entry in first] == ["entry 2", "entry 1"]
        assert cursor == str(logs[1].id)

        second, cursor = await service.list_audit_logs(limit=2, cursor=cursor)

        assert [entry["description"] for entry in second] == ["entry 0"]
        assert cursor is None

    async def test_filters(self, service: AuditService, logs: list, user: User) -> None:
        by_subject, _ = await service.list_audit_logs(subject="repo")
        assert [entry["description"] for entry in by_subject] == ["entry 1"]

        by_actor, _ = await service.list_audit_logs(actor_id=str(user.id))
        assert len(by_actor) == 2
