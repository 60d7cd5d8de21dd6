"""
Unit tests for SIEM entry conversion and CEF/LEEF formatting.
"""

import json
from datetime import datetime, timezone

import pytest

from anchorpipe.core.models import AuditLog, User
from anchorpipe.core.siem.adapter import (
    SiemForwardResult,
    SiemLogEntry,
    convert_audit_log_to_siem_entry,
    escape_cef,
    format_as_cef,
    format_as_leef,
    format_entry,
    severity_for_action,
    truncate_error,
)


@pytest.fixture
def entry() -> SiemLogEntry:
    return SiemLogEntry(
        id="log-1",
        timestamp="2024-05-01T00:00:00+00:00",
        action="login_failure",
        subject="security",
        subject_id="repo=1",
        actor_id="u-1",
        actor_email="dev@example.com",
        description="Failed login",
        metadata={"reason": "bad"},
        ip_address="10.0.0.1",
        severity="error",
    )


@pytest.mark.unit
class TestSiemLogEntry:
    """Test the SIEM entry model."""

    @pytest.mark.parametrize(
        "action,expected",
        [
            ("login_failure", "error"),
            ("hmac_secret_revoked", "error"),
            ("dsr_deletion_request", "error"),
            ("config_updated", "warning"),
            ("token_created", "warning"),
            ("login_success", "info"),
        ],
    )
    def test_severity_for_action(self, action: str, expected: str) -> None:
        assert severity_for_action(action) == expected

    def test_to_dict_drops_unset_fields(self) -> None:
        minimal = SiemLogEntry(
            id="1", timestamp="2024-05-01T00:00:00Z", action="a", subject="user"
        )
        assert minimal.to_dict() == {
            "id": "1",
            "timestamp": "2024-05-01T00:00:00Z",
            "action": "a",
            "subject": "user",
            "severity": "info",
        }

    def test_to_json_uses_camel_case(self, entry: SiemLogEntry) -> None:
        data = json.loads(entry.to_json())
        assert data["actorEmail"] == "dev@example.com"
        assert data["ipAddress"] == "10.0.0.1"

    def test_epoch_seconds(self) -> None:
        zulu = SiemLogEntry(
            id="1", timestamp="2024-05-01T00:00:00Z", action="a", subject="user"
        )
        assert zulu.epoch_seconds == 1714521600


@pytest.mark.unit
class TestFormatters:
    """Test CEF and LEEF rendering."""

    def test_cef(self, entry: SiemLogEntry) -> None:
        assert format_as_cef(entry) == (
            "CEF:0|Anchorpipe|Anchorpipe|1.0|login_failure|Failed login|8|"
            "suid=u-1 suser=dev@example.com src=10.0.0.1 dhost=repo\\=1 "
            'cs1={"reason": "bad"}'
        )

    def test_cef_without_extensions(self) -> None:
        bare = SiemLogEntry(
            id="1", timestamp="t", action="login_success", subject="user"
        )
        assert format_as_cef(bare) == (
            "CEF:0|Anchorpipe|Anchorpipe|1.0|login_success|login_success|3|"
        )

    def test_escape_cef(self) -> None:
        assert escape_cef("a=b\\c\nd\re") == "a\\=b\\\\c\\nd\\re"

    def test_leef(self, entry: SiemLogEntry) -> None:
        assert format_as_leef(entry) == (
            "LEEF:2.0|Anchorpipe|Anchorpipe|1.0|login_failure|Failed login|"
            "sev=2\tusrName=u-1\tusrEmail=dev@example.com\tsrc=10.0.0.1"
            '\tdst=repo=1\tcustomData={"reason": "bad"}'
        )

    def test_format_entry(self, entry: SiemLogEntry) -> None:
        assert format_entry(entry, "cef").startswith("CEF:0|")
        assert format_entry(entry, "leef").startswith("LEEF:2.0|")
        assert json.loads(format_entry(entry, "json"))["id"] == "log-1"

    def test_truncate_error(self) -> None:
        assert truncate_error("short") == "short"
        truncated = truncate_error("x" * 250)
        assert len(truncated) == 203
        assert truncated.endswith("...")


@pytest.mark.unit
class TestForwardResult:
    def test_all_failed(self, entry: SiemLogEntry) -> None:
        result = SiemForwardResult.all_failed([entry], "timeout")
        assert result.to_dict() == {
            "success": 0,
            "failed": 1,
            "errors": [{"logId": "log-1", "error": "timeout"}],
        }


@pytest.mark.unit
@pytest.mark.asyncio
class TestConvertAuditLog:
    """Test audit log conversion."""

    async def test_convert_with_actor(self, user: User) -> None:
        created = await AuditLog.create(
            actor=user,
            action="hmac_secret_revoked",
            subject="security",
            subject_id="secret-1",
            description="Revoked HMAC secret",
            metadata={"repoId": "r-1"},
            ip_address="192.0.2.4",
            created_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
        )
        log = await AuditLog.get(id=created.id).prefetch_related("actor")

        converted = convert_audit_log_to_siem_entry(log)

        assert converted.id == str(created.id)
        assert converted.actor_id == str(user.id)
        assert converted.actor_email == "user@example.com"
        assert converted.severity == "error"
        assert converted.metadata == {"repoId": "r-1"}
        assert converted.epoch_seconds == 1714521600

    async def test_convert_system_event(self, db: None) -> None:
        created = await AuditLog.create(
            action="login_success", subject="user", subject_id="", description=""
        )
        log = await AuditLog.get(id=created.id).prefetch_related("actor")

        converted = convert_audit_log_to_siem_entry(log)

        assert converted.actor_id is None
        assert converted.actor_email is None
        assert converted.subject_id is None
        assert converted.description is None
        assert converted.severity == "info"
