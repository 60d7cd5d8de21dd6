"""
Suspicious pattern detection over the audit log.

Each detector counts one kind of audit entry inside a trailing window and
groups it by the attribute an attacker would repeat: client IP for failed
logins, repository for HMAC failures and role changes, actor for token
revocations. A group that reaches its ``ALERT_*`` threshold becomes a
:class:`DetectedPattern`, which is emitted as a security event and, when
configured, posted to a webhook.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx

from ..config import SecurityAlertConfig, get_config
from ..logging import SecuritySeverity, get_logger, security_logger
from ..models import AuditLog
from ..security.hmac import compute_hmac
from .audit_service import AuditAction

logger = get_logger(__name__)

WEBHOOK_SIGNATURE_HEADER = "X-Webhook-Signature"
MAX_WEBHOOK_ERROR_LENGTH = 200

CHANNEL_SIEM = "siem"
CHANNEL_WEBHOOK = "webhook"
CHANNEL_ALL = "all"


class SuspiciousPatternType(str, Enum):
    MULTIPLE_FAILED_LOGINS = "multiple_failed_logins"
    MULTIPLE_FAILED_HMAC_AUTH = "multiple_failed_hmac_auth"
    RAPID_ROLE_CHANGES = "rapid_role_changes"
    TOKEN_ABUSE = "token_abuse"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DetectedPattern:
    """One group of audit entries that crossed its threshold."""

    type: SuspiciousPatternType
    severity: SecuritySeverity
    description: str
    count: int
    window_ms: int
    metadata: Dict[str, Any] = field(default_factory=dict)
    detected_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "count": self.count,
            "timeWindow": self.window_ms,
            "detectedAt": self.detected_at.isoformat(),
            "metadata": self.metadata,
        }


@dataclass
class AlertCheckResult:
    patterns: List[DetectedPattern] = field(default_factory=list)
    alerts_sent: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patternsDetected": len(self.patterns),
            "alertsSent": self.alerts_sent,
            "errors": self.errors,
            "patterns": [
                {"type": p.type.value, "severity": p.severity.value, "count": p.count}
                for p in self.patterns
            ],
        }


def _group(
    logs: Sequence[AuditLog], key: Callable[[AuditLog], Optional[str]]
) -> Dict[str, List[AuditLog]]:
    """Group newest-first logs by key, skipping logs without one."""
    groups: Dict[str, List[AuditLog]] = {}
    for log in logs:
        value = key(log)
        if value:
            groups.setdefault(value, []).append(log)
    return groups


def _actor(log: AuditLog) -> Optional[str]:
    actor_id = getattr(log, "actor_id", None)
    return str(actor_id) if actor_id else None


class SecurityAlertService:
    """
    Detects suspicious audit patterns and delivers alerts.

    Args:
        config: Thresholds and channels; defaults to ALERT_*
        transport: httpx transport for the webhook, injectable for tests
        clock: Returns the current aware datetime
    """

    def __init__(
        self,
        config: Optional[SecurityAlertConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config
        self.transport = transport
        self.clock = clock

    @property
    def config(self) -> SecurityAlertConfig:
        return self._config or get_config().alerts

    async def _recent(
        self, actions: Sequence[AuditAction], window_ms: int
    ) -> List[AuditLog]:
        since = self.clock() - timedelta(milliseconds=window_ms)
        return await AuditLog.filter(
            action__in=[action.value for action in actions], created_at__gte=since
        ).order_by("-created_at")

    async def detect_failed_logins(self) -> List[DetectedPattern]:
        """Failed logins per client IP; high severity past the brute force mark."""
        config = self.config
        window = config.failed_login_window_ms
        logs = await self._recent([AuditAction.LOGIN_FAILURE], window)

        patterns = []
        for ip, group in _group(logs, lambda log: log.ip_address).items():
            if len(group) < config.failed_login_threshold:
                continue
            patterns.append(
                DetectedPattern(
                    type=SuspiciousPatternType.MULTIPLE_FAILED_LOGINS,
                    severity=(
                        SecuritySeverity.HIGH
                        if len(group) >= config.brute_force_threshold
                        else SecuritySeverity.MEDIUM
                    ),
                    description=f"Multiple failed login attempts from IP {ip}",
                    count=len(group),
                    window_ms=window,
                    metadata={
                        "ipAddress": ip,
                        "failureCount": len(group),
                        "firstAttempt": group[-1].created_at.isoformat(),
                        "lastAttempt": group[0].created_at.isoformat(),
                    },
                )
            )
        return patterns

    async def detect_failed_hmac_auth(self) -> List[DetectedPattern]:
        config = self.config
        window = config.hmac_failure_window_ms
        logs = await self._recent([AuditAction.HMAC_AUTH_FAILURE], window)

        patterns = []
        for repo_id, group in _group(logs, lambda log: log.subject_id).items():
            if len(group) < config.hmac_failure_threshold:
                continue
            patterns.append(
                DetectedPattern(
                    type=SuspiciousPatternType.MULTIPLE_FAILED_HMAC_AUTH,
                    severity=SecuritySeverity.HIGH,
                    description=(
                        "Multiple failed HMAC authentication attempts for "
                        f"repository {repo_id}"
                    ),
                    count=len(group),
                    window_ms=window,
                    metadata={
                        "repoId": repo_id,
                        "failureCount": len(group),
                        "firstAttempt": group[-1].created_at.isoformat(),
                        "lastAttempt": group[0].created_at.isoformat(),
                    },
                )
            )
        return patterns

    async def detect_rapid_role_changes(self) -> List[DetectedPattern]:
        config = self.config
        window = config.role_change_window_ms
        logs = await self._recent(
            [AuditAction.ROLE_ASSIGNED, AuditAction.ROLE_REMOVED], window
        )

        patterns = []
        for repo_id, group in _group(logs, lambda log: log.subject_id).items():
            if len(group) < config.role_change_threshold:
                continue
            patterns.append(
                DetectedPattern(
                    type=SuspiciousPatternType.RAPID_ROLE_CHANGES,
                    severity=SecuritySeverity.MEDIUM,
                    description=f"Rapid role changes detected for repository {repo_id}",
                    count=len(group),
                    window_ms=window,
                    metadata={
                        "repoId": repo_id,
                        "changeCount": len(group),
                        "changes": [
                            {
                                "action": log.action,
                                "actorId": _actor(log),
                                "timestamp": log.created_at.isoformat(),
                            }
                            for log in group
                        ],
                    },
                )
            )
        return patterns

    async def detect_token_abuse(self) -> List[DetectedPattern]:
        """Token and HMAC secret revocations per actor."""
        config = self.config
        window = config.token_revocation_window_ms
        logs = await self._recent(
            [AuditAction.TOKEN_REVOKED, AuditAction.HMAC_SECRET_REVOKED], window
        )

        patterns = []
        for actor_id, group in _group(logs, _actor).items():
            if len(group) < config.token_revocation_threshold:
                continue
            patterns.append(
                DetectedPattern(
                    type=SuspiciousPatternType.TOKEN_ABUSE,
                    severity=SecuritySeverity.MEDIUM,
                    description=(
                        f"Unusual number of token revocations by user {actor_id}"
                    ),
                    count=len(group),
                    window_ms=window,
                    metadata={"actorId": actor_id, "revocationCount": len(group)},
                )
            )
        return patterns

    async def detect_all(self) -> List[DetectedPattern]:
        patterns: List[DetectedPattern] = []
        patterns.extend(await self.detect_failed_logins())
        patterns.extend(await self.detect_failed_hmac_auth())
        patterns.extend(await self.detect_rapid_role_changes())
        patterns.extend(await self.detect_token_abuse())
        return patterns

    async def send_webhook(self, pattern: DetectedPattern, url: str) -> Optional[str]:
        """
        POST one alert as JSON.

        Returns:
            None on a 2xx response, otherwise the error text
        """
        body = json.dumps(
            {
                "type": "security_alert",
                "pattern": pattern.to_dict(),
                "timestamp": self.clock().isoformat(),
            },
            separators=(",", ":"),
        )
        headers = {"Content-Type": "application/json"}
        secret = self.config.webhook_secret
        if secret:
            headers[WEBHOOK_SIGNATURE_HEADER] = f"sha256={compute_hmac(secret, body)}"

        try:
            async with httpx.AsyncClient(
                timeout=self.config.webhook_timeout_ms / 1000, transport=self.transport
            ) as client:
                response = await client.post(url, content=body, headers=headers)
        except httpx.HTTPError as e:
            return str(e) or type(e).__name__

        if response.is_error:
            text = response.text[:MAX_WEBHOOK_ERROR_LENGTH]
            return f"Webhook returned {response.status_code}: {text}"
        return None

    async def send_alert(self, pattern: DetectedPattern) -> List[str]:
        """
        Deliver one pattern on every configured channel.

        Returns:
            Delivery errors; empty when every channel succeeded
        """
        channels = set(self.config.channel_list)
        if CHANNEL_ALL in channels:
            channels = {CHANNEL_SIEM, CHANNEL_WEBHOOK}

        errors: List[str] = []
        if CHANNEL_SIEM in channels:
            security_logger.log_suspicious_pattern(
                pattern.type.value,
                pattern.severity,
                pattern.description,
                details={"count": pattern.count, "metadata": pattern.metadata},
            )

        if CHANNEL_WEBHOOK in channels:
            url = self.config.webhook_url
            if not url:
                logger.warning("Webhook alerts enabled but no URL configured")
            else:
                error = await self.send_webhook(pattern, url)
                if error is not None:
                    errors.append(f"Webhook alert failed: {error}")
        return errors

    async def check_and_alert(self) -> AlertCheckResult:
        """Run every detector and alert on each pattern found."""
        result = AlertCheckResult()
        if not self.config.enabled:
            return result

        result.patterns = await self.detect_all()
        if not result.patterns:
            return result

        logger.info(
            "Suspicious patterns detected",
            count=len(result.patterns),
            patterns=[p.type.value for p in result.patterns],
        )
        for pattern in result.patterns:
            errors = await self.send_alert(pattern)
            if errors:
                result.errors.extend(errors)
            else:
                result.alerts_sent += 1
        return result


security_alert_service = SecurityAlertService()
