"""
SIEM entry model, formatters and adapter base class.

Audit log rows are converted to SiemLogEntry objects and rendered as JSON,
CEF (ArcSight Common Event Format) or LEEF (QRadar Log Event Extended
Format) depending on the destination.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

from ..models import AuditLog

VENDOR = "Anchorpipe"
PRODUCT = "Anchorpipe"
PRODUCT_VERSION = "1.0"
MAX_ERROR_LENGTH = 200

CEF_SEVERITY = {"critical": 10, "error": 8, "warning": 5, "info": 3}
LEEF_SEVERITY = {"critical": 1, "error": 2, "warning": 3, "info": 4}


@dataclass
class SiemLogEntry:
    """An audit log entry in the shape sent to SIEM systems."""

    id: str
    timestamp: str
    action: str
    subject: str
    subject_id: Optional[str] = None
    actor_id: Optional[str] = None
    actor_email: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    severity: str = "info"

    def to_dict(self) -> Dict[str, Any]:
        """camelCase representation without unset fields."""
        data = {
            "id": self.id,
            "timestamp": self.timestamp,
            "action": self.action,
            "subject": self.subject,
            "subjectId": self.subject_id,
            "actorId": self.actor_id,
            "actorEmail": self.actor_email,
            "description": self.description,
            "metadata": self.metadata,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "severity": self.severity,
        }
        return {k: v for k, v in data.items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @property
    def epoch_seconds(self) -> int:
        parsed = datetime.fromisoformat(self.timestamp.replace("Z", "+00:00"))
        return int(parsed.timestamp())


class ForwardOutcome(NamedTuple):
    """Result of forwarding one entry."""

    success: bool
    error: Optional[str] = None


@dataclass
class SiemForwardResult:
    """Counts and per-entry errors of a batch forward."""

    success: int = 0
    failed: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def add_failure(self, log_id: str, error: str) -> None:
        self.failed += 1
        self.errors.append({"logId": log_id, "error": error})

    @classmethod
    def all_failed(
        cls, entries: Sequence[SiemLogEntry], error: str
    ) -> "SiemForwardResult":
        result = cls()
        for entry in entries:
            result.add_failure(entry.id, error)
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "failed": self.failed, "errors": self.errors}


def severity_for_action(action: str) -> str:
    """Map an audit action to a SIEM severity."""
    if "failure" in action or "revoked" in action or "deletion" in action:
        return "error"
    if "config" in action or "token" in action:
        return "warning"
    return "info"


def convert_audit_log_to_siem_entry(log: AuditLog) -> SiemLogEntry:
    """
    Convert an audit log row.

    The ``actor`` relation must be fetched beforehand for actorEmail to be set.
    """
    actor = log.actor if log.actor_id else None
    created_at = log.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return SiemLogEntry(
        id=str(log.id),
        timestamp=created_at.isoformat(),
        action=log.action,
        subject=log.subject,
        subject_id=log.subject_id or None,
        actor_id=str(log.actor_id) if log.actor_id else None,
        actor_email=getattr(actor, "email", None) or None,
        description=log.description or None,
        metadata=log.metadata,
        ip_address=log.ip_address or None,
        user_agent=log.user_agent or None,
        severity=severity_for_action(log.action),
    )


def escape_cef(value: str) -> str:
    """Escape backslash, equals sign and line breaks in a CEF extension value."""
    return (
        value.replace("\\", "\\\\")
        .replace("=", "\\=")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )


def format_as_cef(entry: SiemLogEntry) -> str:
    """Render an entry as a CEF:0 line."""
    name = entry.description or entry.action
    severity = CEF_SEVERITY.get(entry.severity, 3)

    extensions = []
    if entry.actor_id:
        extensions.append(f"suid={escape_cef(entry.actor_id)}")
    if entry.actor_email:
        extensions.append(f"suser={escape_cef(entry.actor_email)}")
    if entry.ip_address:
        extensions.append(f"src={entry.ip_address}")
    if entry.subject_id:
        extensions.append(f"dhost={escape_cef(entry.subject_id)}")
    if entry.metadata:
        extensions.append(f"cs1={escape_cef(json.dumps(entry.metadata, default=str))}")

    return (
        f"CEF:0|{VENDOR}|{PRODUCT}|{PRODUCT_VERSION}|{entry.action}|{name}|{severity}|"
        + " ".join(extensions)
    )


def format_as_leef(entry: SiemLogEntry) -> str:
    """Render an entry as a LEEF:2.0 line with tab separated attributes."""
    name = entry.description or entry.action

    attributes = [f"sev={LEEF_SEVERITY.get(entry.severity, 4)}"]
    if entry.actor_id:
        attributes.append(f"usrName={entry.actor_id}")
    if entry.actor_email:
        attributes.append(f"usrEmail={entry.actor_email}")
    if entry.ip_address:
        attributes.append(f"src={entry.ip_address}")
    if entry.subject_id:
        attributes.append(f"dst={entry.subject_id}")
    if entry.metadata:
        attributes.append(f"customData={json.dumps(entry.metadata, default=str)}")

    return (
        f"LEEF:2.0|{VENDOR}|{PRODUCT}|{PRODUCT_VERSION}|{entry.action}|{name}|"
        + "\t".join(attributes)
    )


def format_entry(entry: SiemLogEntry, fmt: str) -> str:
    if fmt == "cef":
        return format_as_cef(entry)
    if fmt == "leef":
        return format_as_leef(entry)
    return entry.to_json()


def truncate_error(text: str, limit: int = MAX_ERROR_LENGTH) -> str:
    """Cap remote error text."""
    return text[:limit] + "..." if len(text) > limit else text


def connection_test_entry(description: str = "SIEM connection test") -> SiemLogEntry:
    return SiemLogEntry(
        id="test",
        timestamp=datetime.now(timezone.utc).isoformat(),
        action="test",
        subject="system",
        description=description,
        severity="info",
    )


class BaseSiemAdapter(ABC):
    """
    Destination for SIEM entries.

    Subclasses implement ``forward_log``; batches default to forwarding
    entries one at a time.
    """

    name = "base"

    @abstractmethod
    async def forward_log(self, entry: SiemLogEntry) -> ForwardOutcome:
        """Forward one entry."""

    async def forward_batch(self, entries: Sequence[SiemLogEntry]) -> SiemForwardResult:
        """Forward entries one by one and collect per-entry errors."""
        result = SiemForwardResult()
        for entry in entries:
            outcome = await self.forward_log(entry)
            if outcome.success:
                result.success += 1
            else:
                result.add_failure(entry.id, outcome.error or "Unknown error")
        return result

    async def test_connection(self) -> ForwardOutcome:
        """Send a synthetic entry."""
        return await self.forward_log(connection_test_entry())

    async def close(self) -> None:
        """Release network resources."""
