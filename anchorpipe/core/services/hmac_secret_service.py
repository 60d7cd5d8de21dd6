"""
HMAC secret management for repository ingestion.

Secrets are stored twice: as a SHA-256 hash for lookup and as an AES-GCM
envelope so the server can verify signatures. The plaintext is returned
to the caller only when a secret is created or rotated.
"""

import base64
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from tortoise.expressions import Q
from tortoise.transactions import in_transaction

from ..errors import NotFoundError
from ..logging import get_logger
from ..models import HmacSecret
from ..security.crypto import encrypt_string, get_encryption_key, serialize_encrypted
from ..security.hmac import hash_secret

logger = get_logger(__name__)

Id = Union[UUID, str]


@dataclass
class CreatedSecret:
    """A newly issued secret, including its one-time plaintext."""

    id: str
    name: str
    secret: str
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "secret": self.secret,
            "createdAt": self.created_at.isoformat(),
        }


def generate_hmac_secret() -> str:
    """Generate 32 random bytes, base64-encoded."""
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


def serialize_secret_metadata(secret: HmacSecret) -> Dict[str, Any]:
    """Admin view of a secret; never includes the secret value."""

    def iso(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    return {
        "id": str(secret.id),
        "repoId": str(secret.repo_id),
        "name": secret.name,
        "active": secret.active,
        "revoked": secret.revoked_at is not None,
        "lastUsedAt": iso(secret.last_used_at),
        "createdAt": iso(secret.created_at),
        "revokedAt": iso(secret.revoked_at),
        "expiresAt": iso(secret.expires_at),
        "rotatedFrom": str(secret.rotated_from) if secret.rotated_from else None,
    }


class HmacSecretService:
    """Create, rotate, revoke and look up repository HMAC secrets."""

    async def create_hmac_secret(
        self,
        repo_id: Id,
        name: str,
        secret: Optional[str] = None,
        created_by: Optional[Id] = None,
        expires_at: Optional[datetime] = None,
        rotated_from: Optional[Id] = None,
    ) -> CreatedSecret:
        """
        Store a new secret for a repository.

        Args:
            repo_id: Repository the secret authenticates
            name: Human readable label
            secret: Plaintext to store; generated when omitted
            created_by: Admin creating the secret
            expires_at: Optional expiry
            rotated_from: Secret this one replaces

        Returns:
            CreatedSecret carrying the plaintext

        Raises:
            ConfigurationError: If ENCRYPTION_KEY_BASE64 is missing or invalid
        """
        plaintext = secret or generate_hmac_secret()
        envelope = serialize_encrypted(encrypt_string(plaintext, get_encryption_key()))

        record = await HmacSecret.create(
            repo_id=repo_id,
            name=name,
            secret_hash=hash_secret(plaintext),
            secret_value=envelope,
            active=True,
            created_by_id=created_by,
            expires_at=expires_at,
            rotated_from=rotated_from,
        )
        logger.info(
            "HMAC secret created", secret_id=str(record.id), repo_id=str(repo_id)
        )
        return CreatedSecret(
            id=str(record.id),
            name=record.name,
            secret=plaintext,
            created_at=record.created_at,
        )

    async def rotate_hmac_secret(
        self,
        old_secret_id: Id,
        repo_id: Id,
        name: str,
        created_by: Optional[Id] = None,
        expires_at: Optional[datetime] = None,
    ) -> CreatedSecret:
        """
        Replace a secret with a new one and revoke the old one.

        Raises:
            NotFoundError: If the old secret does not belong to the repository
        """
        old = await HmacSecret.get_or_none(id=old_secret_id, repo_id=repo_id)
        if old is None:
            raise NotFoundError("Secret not found")

        async with in_transaction():
            created = await self.create_hmac_secret(
                repo_id,
                name,
                created_by=created_by,
                expires_at=expires_at,
                rotated_from=old.id,
            )
            await self.revoke_hmac_secret(old.id)
        return created

    async def revoke_hmac_secret(self, secret_id: Id) -> None:
        """Deactivate a secret."""
        updated = await HmacSecret.filter(id=secret_id).update(
            active=False, revoked_at=datetime.now(timezone.utc)
        )
        if not updated:
            raise NotFoundError("Secret not found")
        logger.info("HMAC secret revoked", secret_id=str(secret_id))

    async def find_active_secrets_for_repo(self, repo_id: Id) -> List[HmacSecret]:
        """Active, unexpired secrets of a repository, newest first."""
        now = datetime.now(timezone.utc)
        return (
            await HmacSecret.filter(
                repo_id=repo_id, active=True, revoked_at__isnull=True
            )
            .filter(Q(expires_at__isnull=True) | Q(expires_at__gt=now))
            .order_by("-created_at")
        )

    async def update_last_used(self, secret_id: Id) -> None:
        await HmacSecret.filter(id=secret_id).update(
            last_used_at=datetime.now(timezone.utc)
        )

    async def list_hmac_secrets(self, repo_id: Id) -> List[Dict[str, Any]]:
        """Metadata of every secret of a repository, newest first."""
        records = await HmacSecret.filter(repo_id=repo_id).order_by("-created_at")
        return [serialize_secret_metadata(r) for r in records]

    async def get_hmac_secret_by_id(self, secret_id: Id) -> Optional[Dict[str, Any]]:
        record = await HmacSecret.get_or_none(id=secret_id)
        return serialize_secret_metadata(record) if record else None


# Global HMAC secret service instance
hmac_secret_service = HmacSecretService()
