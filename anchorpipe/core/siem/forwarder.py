"""
Audit log forwarding to a SIEM.

The forwarder reads audit logs after its last position, oldest first,
converts them to SIEM entries and hands them to the configured adapter.
Failed entries are retried after a fixed delay.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from tortoise.expressions import Q

from ..config import SIEMConfig, get_config
from ..errors import ConfigurationError
from ..logging import get_logger
from ..metrics import metrics
from ..models import AuditLog
from .adapter import (
    BaseSiemAdapter,
    SiemForwardResult,
    SiemLogEntry,
    convert_audit_log_to_siem_entry,
)
from .adapters import create_siem_adapter

logger = get_logger(__name__)

Position = Tuple[datetime, UUID]


class SiemForwarder:
    """
    Forwards unprocessed audit logs in batches.

    Args:
        config: SIEM configuration; defaults to the global config
        adapter: Adapter to use instead of building one from the config
    """

    def __init__(
        self,
        config: Optional[SIEMConfig] = None,
        adapter: Optional[BaseSiemAdapter] = None,
    ):
        self.config = config or get_config().siem
        self.adapter = adapter
        if adapter is None and self.config.enabled:
            try:
                self.adapter = create_siem_adapter(self.config)
            except ConfigurationError as e:
                logger.warning("SIEM adapter could not be created", error=e.message)
        self.position: Optional[Position] = None

    @property
    def enabled(self) -> bool:
        return self.config.enabled and self.adapter is not None

    async def fetch_pending_logs(self, limit: int) -> List[AuditLog]:
        """Audit logs after the current position, oldest first."""
        query = AuditLog.all()
        if self.position is not None:
            created_at, log_id = self.position
            query = AuditLog.filter(
                Q(created_at__gt=created_at) | Q(created_at=created_at, id__gt=log_id)
            )
        return (
            await query.order_by("created_at", "id")
            .limit(limit)
            .prefetch_related("actor")
        )

    async def forward_with_retry(
        self, entries: Sequence[SiemLogEntry]
    ) -> SiemForwardResult:
        """
        Forward entries, retrying only the ones that failed.

        An adapter exception retries the whole pending set; after the last
        attempt every pending entry is reported failed.

        Raises:
            ConfigurationError: If no adapter is configured
        """
        adapter = self.adapter
        if adapter is None:
            raise ConfigurationError("SIEM adapter not configured")
        result = SiemForwardResult()
        pending = list(entries)
        attempts = max(1, self.config.retry_attempts)

        for attempt in range(1, attempts + 1):
            last_attempt = attempt == attempts
            try:
                batch = await adapter.forward_batch(pending)
            except Exception as e:
                logger.warning(
                    "SIEM batch forward raised", attempt=attempt, error=str(e)
                )
                if last_attempt:
                    failed = SiemForwardResult.all_failed(
                        pending, str(e) or type(e).__name__
                    )
                    result.failed += failed.failed
                    result.errors.extend(failed.errors)
                    break
                await asyncio.sleep(self.config.retry_delay / 1000)
                continue

            result.success += batch.success
            if batch.failed == 0:
                break
            if last_attempt:
                result.failed += batch.failed
                result.errors.extend(batch.errors)
                break

            failed_ids = {error["logId"] for error in batch.errors}
            pending = [entry for entry in pending if entry.id in failed_ids]
            logger.info(
                "Retrying failed SIEM entries", attempt=attempt, pending=len(pending)
            )
            await asyncio.sleep(self.config.retry_delay / 1000)

        return result

    async def forward_audit_logs(
        self, batch_size: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Forward the next batch of audit logs.

        Returns:
            ``{success, failed, errors}`` counts for this run
        """
        if not self.enabled:
            return SiemForwardResult().to_dict()

        logs = await self.fetch_pending_logs(batch_size or self.config.batch_size)
        if not logs:
            return SiemForwardResult().to_dict()

        entries = [convert_audit_log_to_siem_entry(log) for log in logs]
        result = await self.forward_with_retry(entries)

        failed_ids = {error["logId"] for error in result.errors}
        forwarded = 0
        for log in logs:
            if str(log.id) in failed_ids:
                break
            forwarded += 1
        if forwarded:
            last = logs[forwarded - 1]
            self.position = (last.created_at, last.id)

        metrics.record_siem_forward(result.success, result.failed)
        logger.info(
            "SIEM forwarding completed",
            adapter=self.adapter.name if self.adapter else None,
            success=result.success,
            failed=result.failed,
        )
        return result.to_dict()

    async def test_connection(self) -> Dict[str, Any]:
        if self.adapter is None:
            return {"success": False, "error": "SIEM adapter not initialized"}
        outcome = await self.adapter.test_connection()
        return {"success": outcome.success, "error": outcome.error}

    async def close(self) -> None:
        if self.adapter is not None:
            await self.adapter.close()


_forwarder: Optional[SiemForwarder] = None


def get_siem_forwarder() -> SiemForwarder:
    """Get the process-wide forwarder, creating it from config on first use."""
    global _forwarder
    if _forwarder is None:
        _forwarder = SiemForwarder()
    return _forwarder


async def reset_siem_forwarder() -> None:
    global _forwarder
    if _forwarder is not None:
        await _forwarder.close()
    _forwarder = None
