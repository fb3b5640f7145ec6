"""
Per-asset notification cooldown.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from athwatch.database.models import utcnow
from athwatch.database.store import KeyValueStore

logger = logging.getLogger(__name__)


class NotificationFrequencyControl:
    """Allows at most one notification per asset per interval.

    The marker lives in the store with a TTL equal to the interval, so the
    gate holds across processes and restarts.
    """

    def __init__(
        self,
        store: KeyValueStore,
        min_interval_minutes: float = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.interval = timedelta(minutes=min_interval_minutes)
        self.clock = clock

    @staticmethod
    def _key(asset_id: str) -> str:
        return f"crypto:{asset_id}:last_notification"

    def last_notification(self, asset_id: str) -> Optional[datetime]:
        """Time of the last permitted notification, if the marker is live."""
        value = self.store.get(self._key(asset_id))
        return datetime.fromisoformat(value) if value else None

    def should_notify(self, asset_id: str) -> bool:
        """Check the gate without claiming it."""
        last_sent = self.last_notification(asset_id)
        return last_sent is None or self._is_stale(last_sent)

    def acquire(self, asset_id: str) -> bool:
        """
        Claim the gate for an asset.

        Writes a fresh marker only if none is live, so of two overlapping runs
        only one wins.

        Returns:
            True if the caller may notify

        Raises:
            StoreError: If the marker could not be read or written
        """
        key = self._key(asset_id)
        now = self.clock()
        ttl = self.interval.total_seconds()

        if self.store.set(key, now.isoformat(), ttl=ttl, nx=True):
            return True

        last_sent = self.last_notification(asset_id)
        if last_sent is not None and not self._is_stale(last_sent):
            logger.info(f"Skipping notification for {asset_id} due to frequency limits")
            return False

        self.store.set(key, now.isoformat(), ttl=ttl)
        return True

    def record_notification(self, asset_id: str) -> None:
        """Write a fresh marker unconditionally."""
        self.store.set(
            self._key(asset_id),
            self.clock().isoformat(),
            ttl=self.interval.total_seconds(),
        )

    def _is_stale(self, last_sent: datetime) -> bool:
        return self.clock() - last_sent >= self.interval
