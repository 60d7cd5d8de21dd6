"""
Idempotency keys for test report ingestion.

A key identifies one ingestion attempt. While it is unexpired, resubmitting
the same report is reported as a duplicate instead of being published
again. Expired keys are removed when looked up and by the cleanup cron.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from tortoise.exceptions import BaseORMException, IntegrityError

from ..config import get_config
from ..logging import get_logger
from ..models import IdempotencyKey

logger = get_logger(__name__)


@dataclass
class IdempotencyKeyData:
    """Attributes that identify an ingestion attempt."""

    repo_id: str
    commit_sha: str
    framework: str
    run_id: Optional[str] = None
    explicit_key: Optional[str] = None

    @property
    def key(self) -> str:
        """Client supplied key, or ``repoId:commitSha:runId:framework``."""
        if self.explicit_key and self.explicit_key.strip():
            return f"{self.repo_id}:{self.explicit_key.strip()}"
        run_part = (self.run_id or "").strip() or "no-run-id"
        return f"{self.repo_id}:{self.commit_sha}:{run_part}:{self.framework}"


@dataclass
class IdempotencyCheckResult:
    is_duplicate: bool
    existing_response: Optional[Dict[str, Any]] = None


class IdempotencyService:
    """Check, record and expire ingestion idempotency keys."""

    async def check(self, data: IdempotencyKeyData) -> IdempotencyCheckResult:
        """
        Look up a key.

        Lookup failures are logged and treated as "not a duplicate" so that
        ingestion is never blocked by this check.
        """
        try:
            existing = await IdempotencyKey.get_or_none(key=data.key)
            if existing is None:
                return IdempotencyCheckResult(is_duplicate=False)

            if existing.expires_at < datetime.now(timezone.utc):
                await existing.delete()
                return IdempotencyCheckResult(is_duplicate=False)

            return IdempotencyCheckResult(
                is_duplicate=True, existing_response=existing.response
            )
        except BaseORMException as e:
            logger.error("Idempotency check failed", key=data.key, error=str(e))
            return IdempotencyCheckResult(is_duplicate=False)

    async def record(
        self,
        data: IdempotencyKeyData,
        response: Optional[Dict[str, Any]] = None,
        ttl_hours: Optional[int] = None,
    ) -> None:
        """Store a key; a concurrent insert of the same key is ignored."""
        if ttl_hours is None:
            ttl_hours = get_config().ingestion.idempotency_ttl_hours
        try:
            await IdempotencyKey.create(
                key=data.key,
                repo_id=data.repo_id,
                commit_sha=data.commit_sha,
                run_id=data.run_id.strip() if data.run_id else "",
                framework=data.framework,
                response=response,
                expires_at=datetime.now(timezone.utc) + timedelta(hours=ttl_hours),
            )
        except IntegrityError:
            logger.warning("Duplicate idempotency key insert ignored", key=data.key)
        except BaseORMException as e:
            logger.error("Idempotency record failed", key=data.key, error=str(e))

    async def delete(self, data: IdempotencyKeyData) -> None:
        await IdempotencyKey.filter(key=data.key).delete()

    async def cleanup_expired(self) -> int:
        """Delete expired keys and return how many were removed."""
        deleted = await IdempotencyKey.filter(
            expires_at__lt=datetime.now(timezone.utc)
        ).delete()
        logger.info("Expired idempotency keys cleaned", deleted_count=deleted)
        return int(deleted)


# Global idempotency service instance
idempotency_service = IdempotencyService()
