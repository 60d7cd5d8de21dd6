"""
Brute force protection for login.

Failed attempts are tracked per (ip, email). Reaching the configured
number of failures inside the window locks the key for the lock duration,
even if the correct password is supplied afterwards.
"""

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, NamedTuple, Optional

from ..config import BruteForceConfig, get_config
from ..logging import get_logger, security_logger

logger = get_logger(__name__)


class LockStatus(NamedTuple):
    """Whether a key is locked and for how many more seconds."""

    locked: bool
    retry_after: Optional[int] = None


@dataclass
class AttemptEntry:
    count: int
    last_attempt_ms: float
    locked_until_ms: Optional[float] = None


def brute_force_key(ip: str, email: Optional[str] = None) -> str:
    """Build the tracking key for an IP and optional email."""
    return f"bf:{ip}:{email}" if email else f"bf:{ip}"


class BruteForceProtector:
    """In-memory failed login tracker."""

    def __init__(
        self,
        config: Optional[BruteForceConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or get_config().brute_force
        self.clock = clock
        self._entries: Dict[str, AttemptEntry] = {}

    def _now_ms(self) -> float:
        return self.clock() * 1000

    def check_lock(self, ip: str, email: Optional[str] = None) -> LockStatus:
        """Check whether the key is locked; resets entries whose window expired."""
        key = brute_force_key(ip, email)
        entry = self._entries.get(key)
        if entry is None:
            return LockStatus(False)

        now = self._now_ms()
        if entry.locked_until_ms and entry.locked_until_ms > now:
            return LockStatus(True, math.ceil((entry.locked_until_ms - now) / 1000))

        if entry.last_attempt_ms + self.config.window_ms < now:
            del self._entries[key]

        return LockStatus(False)

    def record_failed_attempt(self, ip: str, email: Optional[str] = None) -> LockStatus:
        """Record a failure; returns a locked status when this attempt locks."""
        key = brute_force_key(ip, email)
        now = self._now_ms()
        entry = self._entries.get(key)

        if entry is None or entry.last_attempt_ms + self.config.window_ms < now:
            self._entries[key] = AttemptEntry(count=1, last_attempt_ms=now)
            entry = self._entries[key]
            if self.config.max_attempts > 1:
                return LockStatus(False)
        else:
            entry.count += 1
            entry.last_attempt_ms = now

        if entry.count >= self.config.max_attempts:
            entry.locked_until_ms = now + self.config.lock_duration_ms
            retry_after = math.ceil(self.config.lock_duration_ms / 1000)
            security_logger.log_account_locked(ip, email, retry_after)
            return LockStatus(True, retry_after)

        return LockStatus(False)

    def clear_failed_attempts(self, ip: str, email: Optional[str] = None) -> None:
        """Forget failures for the key, e.g. after a successful login."""
        self._entries.pop(brute_force_key(ip, email), None)

    def cleanup_expired_entries(self) -> int:
        """Remove entries whose lock and window have both expired."""
        now = self._now_ms()
        expired = [
            key
            for key, entry in self._entries.items()
            if (not entry.locked_until_ms or entry.locked_until_ms < now)
            and entry.last_attempt_ms + self.config.window_ms < now
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


async def run_periodic_cleanup(
    protector: BruteForceProtector, interval_seconds: float
) -> None:
    """Call cleanup_expired_entries every interval until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        removed = protector.cleanup_expired_entries()
        if removed:
            logger.debug("Expired brute force entries removed", removed=removed)


_protector: Optional[BruteForceProtector] = None


def get_brute_force_protector() -> BruteForceProtector:
    """Get the process-wide brute force tracker."""
    global _protector
    if _protector is None:
        _protector = BruteForceProtector()
    return _protector


def reset_brute_force_protector() -> None:
    global _protector
    _protector = None
