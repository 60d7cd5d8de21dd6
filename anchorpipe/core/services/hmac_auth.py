"""
HMAC authentication of ingestion requests.

Clients send ``Authorization: Bearer <repoId>`` and ``X-FR-Sig`` holding the
hex HMAC-SHA256 of the raw body. Every outcome is audited.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

from ..errors import ConfigurationError
from ..logging import SecurityEventType, SecuritySeverity, get_logger, security_logger
from ..security.crypto import (
    DecryptionError,
    decrypt_string,
    get_encryption_key,
    parse_encrypted,
)
from ..security.hmac import extract_bearer_token, extract_hmac_signature, verify_hmac
from .audit_service import (
    AuditAction,
    AuditService,
    AuditSubject,
    RequestContext,
    audit_service,
)
from .hmac_secret_service import HmacSecretService, hmac_secret_service

logger = get_logger(__name__)


@dataclass
class HmacAuthResult:
    """Outcome of HMAC authentication."""

    success: bool
    repo_id: Optional[str] = None
    secret_id: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[str] = None


FAILURE_MESSAGES = {
    "missing_token": "Missing Authorization header with Bearer token",
    "missing_signature": "Missing X-FR-Sig header",
    "no_secrets": "No active HMAC secrets found for repository",
    "invalid_signature": "Invalid HMAC signature",
}

_FAILURE_DESCRIPTIONS = {
    "missing_token": "missing Bearer token",
    "missing_signature": "missing X-FR-Sig header",
    "no_secrets": "no active secrets found",
    "invalid_signature": "invalid signature",
}


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


class HmacAuthenticator:
    """
    Verify HMAC signed requests against a repository's active secrets.

    Args:
        secrets: Secret lookup service
        audit: Audit service recording each attempt
    """

    def __init__(
        self,
        secrets: Optional[HmacSecretService] = None,
        audit: Optional[AuditService] = None,
    ):
        self.secrets = secrets or hmac_secret_service
        self.audit = audit or audit_service

    async def _fail(
        self,
        reason: str,
        context: RequestContext,
        repo_id: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> HmacAuthResult:
        metadata: Dict[str, Any] = {"reason": reason}
        if repo_id:
            metadata["repoId"] = repo_id
        metadata.update(extra or {})

        await self.audit.write_audit_log(
            AuditAction.HMAC_AUTH_FAILURE,
            AuditSubject.SECURITY,
            subject_id=repo_id,
            description=f"HMAC authentication failed: {_FAILURE_DESCRIPTIONS[reason]}",
            metadata=metadata,
            context=context,
        )
        security_logger.log_security_event(
            SecurityEventType.HMAC_AUTH_FAILURE,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            details=metadata,
            severity=SecuritySeverity.MEDIUM,
        )
        return HmacAuthResult(
            success=False,
            repo_id=repo_id,
            error=FAILURE_MESSAGES[reason],
            reason=reason,
        )

    async def authenticate(
        self,
        headers: Mapping[str, str],
        body: Union[str, bytes],
        context: Optional[RequestContext] = None,
    ) -> HmacAuthResult:
        """
        Authenticate a request body.

        Args:
            headers: Request headers (case-insensitive mapping)
            body: Raw request body exactly as signed
            context: Client details for audit entries

        Returns:
            HmacAuthResult; ``reason`` is one of missing_token, missing_signature,
            no_secrets or invalid_signature on failure
        """
        context = context or RequestContext()

        repo_id = extract_bearer_token(headers)
        if not repo_id:
            return await self._fail("missing_token", context)

        signature = extract_hmac_signature(headers)
        if not signature:
            return await self._fail("missing_signature", context, repo_id)

        if not _is_uuid(repo_id):
            return await self._fail("no_secrets", context, repo_id)

        candidates = await self.secrets.find_active_secrets_for_repo(repo_id)
        try:
            key = get_encryption_key() if candidates else None
        except ConfigurationError as e:
            logger.error("HMAC secrets cannot be decrypted", error=e.message)
            key = None

        plaintexts = []
        for candidate in candidates if key else []:
            try:
                plaintexts.append(
                    (
                        candidate,
                        decrypt_string(parse_encrypted(candidate.secret_value), key),
                    )
                )
            except DecryptionError:
                logger.warning(
                    "Skipping undecryptable HMAC secret", secret_id=str(candidate.id)
                )

        if not plaintexts:
            return await self._fail("no_secrets", context, repo_id)

        for candidate, plaintext in plaintexts:
            if verify_hmac(plaintext, body, signature):
                await self.secrets.update_last_used(candidate.id)
                await self.audit.write_audit_log(
                    AuditAction.HMAC_AUTH_SUCCESS,
                    AuditSubject.SECURITY,
                    subject_id=repo_id,
                    description="HMAC authentication successful",
                    metadata={"repoId": repo_id, "secretId": str(candidate.id)},
                    context=context,
                )
                return HmacAuthResult(
                    success=True, repo_id=repo_id, secret_id=str(candidate.id)
                )

        return await self._fail(
            "invalid_signature", context, repo_id, {"secretsTried": len(plaintexts)}
        )


# Global authenticator instance
hmac_authenticator = HmacAuthenticator()
