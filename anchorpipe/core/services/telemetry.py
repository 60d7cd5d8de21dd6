"""
Telemetry recording for Anchorpipe.

Operational events (ingestion received, DSR confirmations) are persisted
as TelemetryEvent rows. Product analytics events are only emitted to the
log when TELEMETRY_ENABLED is set, and never carry personal data.
"""

from typing import Any, Dict, Optional, Union
from uuid import UUID

from tortoise.exceptions import BaseORMException

from ..config import get_config
from ..logging import get_logger
from ..models import TelemetryEvent

logger = get_logger(__name__)


class TelemetryService:
    """Persist operational events and emit opt-in product events."""

    async def record_event(
        self,
        event_type: str,
        event_data: Optional[Dict[str, Any]] = None,
        repo_id: Optional[Union[UUID, str]] = None,
    ) -> Optional[TelemetryEvent]:
        """
        Store a telemetry event.

        Failures are logged and reported as None; callers are never blocked.
        """
        try:
            return await TelemetryEvent.create(
                event_type=event_type, event_data=event_data or {}, repo_id=repo_id
            )
        except (BaseORMException, ValueError) as e:
            logger.warning(
                "Failed to record telemetry event", event_type=event_type, error=str(e)
            )
            return None

    def track(
        self, event_type: str, properties: Optional[Dict[str, Any]] = None
    ) -> None:
        """Emit a product analytics event when telemetry is enabled."""
        if not get_config().telemetry.enabled:
            return
        logger.info(
            "Telemetry event",
            event_type="telemetry",
            telemetry_event=event_type,
            properties=properties or {},
        )


# Global telemetry service instance
telemetry_service = TelemetryService()
