"""
Reconciles feed observations against stored snapshots.
"""

import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from athwatch.data.coingecko import AssetObservation
from athwatch.database.models import AssetSnapshot, utcnow
from athwatch.database.repository import SnapshotRepository
from athwatch.database.store import StoreError
from .events import ATHEvent, ATHKind

# Re-export for convenience
__all__ = ["ATHDetector", "ATHEvent", "ATHKind"]

logger = logging.getLogger(__name__)


class ATHDetector:
    """Classifies and commits ATH events, one asset at a time."""

    def __init__(
        self,
        snapshots: SnapshotRepository,
        max_missed_ath_ratio: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize detector.

        Args:
            snapshots: Snapshot repository
            max_missed_ath_ratio: Largest plausible feed_ath / current_price
                for accepting a missed ATH
            clock: Source of the detection timestamp
        """
        self.snapshots = snapshots
        self.max_missed_ath_ratio = max_missed_ath_ratio
        self.clock = clock

    def reconcile(self, observations: Iterable[AssetObservation]) -> list[ATHEvent]:
        """
        Reconcile observations with stored snapshots.

        Each asset is handled independently; a store failure on one asset is
        logged and does not stop the others. An event is only returned once
        its snapshot write has been committed.

        Args:
            observations: Fresh feed observations

        Returns:
            Events detected in this cycle (possibly empty)
        """
        events = []
        for observation in observations:
            try:
                event = self.reconcile_one(observation)
            except StoreError as e:
                logger.error(f"Snapshot update failed for {observation.id}: {e}")
                continue
            if event is not None:
                events.append(event)
        return events

    def reconcile_one(self, observation: AssetObservation) -> Optional[ATHEvent]:
        """
        Reconcile a single observation.

        Raises:
            StoreError: If the snapshot could not be read or written
        """
        now = self.clock()
        stored = self.snapshots.get(observation.id)

        if stored is None:
            return self._first_observation(observation, now)

        previous_ath = stored.ath

        if observation.current_price > previous_ath:
            # The system witnessed the cross itself, so the ATH date is now
            self.snapshots.save(
                self._snapshot(observation, ath=observation.current_price, ath_date=now)
            )
            logger.info(
                f"REAL-TIME ATH for {observation.symbol}: "
                f"{observation.current_price} (previous {previous_ath})"
            )
            return self._event(
                observation, previous_ath, observation.current_price,
                ATHKind.REAL_TIME, now, now,
            )

        if observation.feed_ath > previous_ath:
            if self._is_plausible_missed_ath(observation):
                ath_date = observation.feed_ath_date or now
                self.snapshots.save(
                    self._snapshot(observation, ath=observation.feed_ath, ath_date=ath_date)
                )
                logger.info(
                    f"MISSED ATH for {observation.symbol}: feed ATH "
                    f"{observation.feed_ath} > stored {previous_ath}"
                )
                return self._event(
                    observation, previous_ath, observation.feed_ath,
                    ATHKind.MISSED, now, ath_date,
                )
            logger.warning(
                f"Ignoring implausible feed ATH for {observation.symbol}: "
                f"ath={observation.feed_ath}, price={observation.current_price}"
            )

        # Routine refresh never disturbs the recorded ATH
        self.snapshots.save(
            self._snapshot(observation, ath=stored.ath, ath_date=stored.ath_date)
        )
        return None

    def _first_observation(
        self, observation: AssetObservation, now: datetime
    ) -> Optional[ATHEvent]:
        if observation.current_price > observation.feed_ath:
            ath, ath_date = observation.current_price, now
        else:
            ath, ath_date = observation.feed_ath, observation.feed_ath_date or now

        self.snapshots.save(self._snapshot(observation, ath=ath, ath_date=ath_date))

        if observation.current_price >= observation.feed_ath:
            logger.info(f"First observation of {observation.symbol} at its ATH {ath}")
            return self._event(
                observation, 0.0, ath, ATHKind.FIRST_OBSERVATION, now, ath_date
            )
        return None

    def _is_plausible_missed_ath(self, observation: AssetObservation) -> bool:
        """Reject feed ATHs far above the current price as corrupt."""
        if observation.current_price <= 0:
            return False
        ratio = observation.feed_ath / observation.current_price
        return ratio <= self.max_missed_ath_ratio

    def _snapshot(
        self, observation: AssetObservation, ath: float, ath_date: datetime
    ) -> AssetSnapshot:
        return AssetSnapshot(
            id=observation.id,
            symbol=observation.symbol,
            name=observation.name,
            current_price=observation.current_price,
            ath=ath,
            ath_date=ath_date,
            market_cap_rank=observation.market_cap_rank,
            total_volume=observation.total_volume,
            last_updated=observation.last_updated or self.clock(),
        )

    def _event(
        self,
        observation: AssetObservation,
        previous_ath: float,
        new_ath: float,
        kind: ATHKind,
        detected_at: datetime,
        ath_date: datetime,
    ) -> ATHEvent:
        return ATHEvent(
            asset_id=observation.id,
            symbol=observation.symbol,
            name=observation.name,
            previous_ath=previous_ath,
            new_ath=new_ath,
            kind=kind,
            detected_at=detected_at,
            ath_date=ath_date,
        )
