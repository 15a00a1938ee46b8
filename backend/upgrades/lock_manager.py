"""
Per-container upgrade locks.

Prevents two upgrades of the same container from running at once (for
example a manual upgrade racing a scheduled batch). Locks older than the
TTL are considered stale and can be taken over; an upgrade that crashed
without releasing must not block the container forever.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator

from upgrades.errors import UpgradeInProgressError
from upgrades.types import Clock
from utils.keys import make_composite_key

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL = 600.0  # 10 minutes


class UpgradeLockManager:
    """Check-and-set registry of containers currently being upgraded."""

    def __init__(self, ttl_seconds: float = DEFAULT_LOCK_TTL, clock: Clock = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._locks: Dict[str, float] = {}  # composite key -> acquired at
        self._lock = threading.Lock()

    def acquire(self, instance_url: str, endpoint_id: str, container_id: str) -> bool:
        """Atomically take the lock; False if another live upgrade holds it."""
        key = make_composite_key(instance_url, endpoint_id, container_id)
        now = self.clock()
        with self._lock:
            acquired_at = self._locks.get(key)
            if acquired_at is not None:
                if now - acquired_at < self.ttl_seconds:
                    return False
                logger.warning(f"Taking over stale upgrade lock for {key} (held {now - acquired_at:.0f}s)")
            self._locks[key] = now
        return True

    def release(self, instance_url: str, endpoint_id: str, container_id: str) -> None:
        key = make_composite_key(instance_url, endpoint_id, container_id)
        with self._lock:
            self._locks.pop(key, None)

    def is_locked(self, instance_url: str, endpoint_id: str, container_id: str) -> bool:
        key = make_composite_key(instance_url, endpoint_id, container_id)
        with self._lock:
            acquired_at = self._locks.get(key)
            return acquired_at is not None and self.clock() - acquired_at < self.ttl_seconds

    @contextmanager
    def hold(self, instance_url: str, endpoint_id: str, container_id: str) -> Iterator[None]:
        """
        Hold the lock for the duration of a with-block.

        Raises:
            UpgradeInProgressError: Lock held by another upgrade
        """
        if not self.acquire(instance_url, endpoint_id, container_id):
            logger.warning(f"Container {container_id[:12]} is already being upgraded, rejecting concurrent upgrade")
            raise UpgradeInProgressError(
                f"Container {container_id[:12]} is already being upgraded. Please wait for it to finish."
            )
        try:
            yield
        finally:
            self.release(instance_url, endpoint_id, container_id)
