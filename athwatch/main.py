"""
ATH detection pipeline and one-shot entry point.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional

from dotenv import load_dotenv

load_dotenv()

from athwatch.config import AppConfig
from athwatch.data.circuit_breaker import CircuitBreaker
from athwatch.data.coingecko import AssetObservation, CoinGeckoClient
from athwatch.data.errors import CircuitOpenError, UpstreamError
from athwatch.data.rate_limiter import MinIntervalThrottle
from athwatch.database.connection import Database
from athwatch.database.models import utcnow
from athwatch.database.repository import (
    CronStatusRepository,
    NotificationLogRepository,
    SnapshotRepository,
    SubscriptionRepository,
    UserRepository,
)
from athwatch.database.store import KeyValueStore, StoreError
from athwatch.detection.detector import ATHDetector, ATHEvent
from athwatch.notifications.dispatcher import (
    DispatchResult,
    NotificationDispatcher,
    RecipientResolver,
)
from athwatch.notifications.frequency import NotificationFrequencyControl
from athwatch.notifiers.base import Notifier
from athwatch.notifiers.email import EmailNotifier
from athwatch.notifiers.queue import EmailQueue, QueuedNotifier

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class PipelineResult:
    """Summary of one pipeline invocation."""

    success: bool
    duration_ms: int
    ath_count: int
    timestamp: str
    events_detected: int = 0
    circuit_open: bool = False
    feed_errors: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """JSON body returned to the scheduler."""
        return {
            "success": self.success,
            "duration_ms": self.duration_ms,
            "athCount": self.ath_count,
            "timestamp": self.timestamp,
            "eventsDetected": self.events_detected,
            "circuitOpen": self.circuit_open,
            "feedErrors": self.feed_errors,
            "errors": self.errors,
        }


class ATHPipeline:
    """One bounded fetch → detect → gate → dispatch cycle per run()."""

    def __init__(
        self,
        feed: CoinGeckoClient,
        detector: ATHDetector,
        frequency: NotificationFrequencyControl,
        dispatcher: NotificationDispatcher,
        cron_status: CronStatusRepository,
        pages: Iterable[int] = (1, 2),
        timer: Callable[[], float] = time.monotonic,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize pipeline.

        Args:
            feed: Price feed client
            detector: ATH detector
            frequency: Per-asset cooldown gate
            dispatcher: Notification dispatcher
            cron_status: Liveness recorder
            pages: Feed pages fetched each run
            timer: Monotonic timer for durations
            clock: Wall clock for timestamps
        """
        self.feed = feed
        self.detector = detector
        self.frequency = frequency
        self.dispatcher = dispatcher
        self.cron_status = cron_status
        self.pages = list(pages)
        self.timer = timer
        self.clock = clock

    def run(self) -> PipelineResult:
        """Run one detection cycle."""
        started = self.timer()
        started_at = self.clock()
        self._record_start(started_at)

        errors: list[str] = []
        ath_count = 0
        try:
            observations, feed_errors, circuit_open = self.fetch_observations()
            events = self.detector.reconcile(observations)
            logger.info(
                f"Processed {len(observations)} assets, detected {len(events)} ATH events"
            )

            for event in events:
                dispatch_result = self.process_event(event, errors)
                if dispatch_result is None:
                    continue
                errors.extend(dispatch_result.errors)
                if not dispatch_result.duplicate and dispatch_result.attempted > 0:
                    ath_count += 1
        finally:
            # Partial progress is recorded even when the run crashes
            duration_ms = int((self.timer() - started) * 1000)
            self._record_finish(duration_ms, ath_count)

        logger.info(f"ATH detection completed in {duration_ms}ms, {ath_count} notified")

        return PipelineResult(
            success=True,
            duration_ms=duration_ms,
            ath_count=ath_count,
            timestamp=self.clock().isoformat(),
            events_detected=len(events),
            circuit_open=circuit_open,
            feed_errors=feed_errors,
            errors=errors,
        )

    def fetch_observations(self) -> tuple[list[AssetObservation], list[str], bool]:
        """
        Fetch all configured pages.

        A failed page is abandoned and the next one tried. An open circuit
        ends fetching for this run.

        Returns:
            (observations, feed error messages, whether the circuit was open)
        """
        observations: list[AssetObservation] = []
        feed_errors: list[str] = []

        for page in self.pages:
            try:
                observations.extend(self.feed.fetch_ranked(page))
            except CircuitOpenError as e:
                logger.warning(f"Skipping price feed page {page} and later: {e}")
                return observations, feed_errors, True
            except UpstreamError as e:
                feed_errors.append(f"page {page}: {e}")

        return observations, feed_errors, False

    def process_event(
        self, event: ATHEvent, errors: list[str]
    ) -> Optional[DispatchResult]:
        """
        Gate and dispatch one event.

        Returns:
            DispatchResult, or None if the event was suppressed or failed
        """
        try:
            if not self.frequency.acquire(event.asset_id):
                return None
        except StoreError as e:
            message = f"Cooldown check failed for {event.symbol}: {e}"
            logger.error(message)
            errors.append(message)
            return None

        logger.info(
            f"{event.kind.value} ATH for {event.symbol}: {event.new_ath} "
            f"(previous {event.previous_ath}, +{event.percentage_increase:.2f}%)"
        )
        return self.dispatcher.dispatch(event)

    def _record_start(self, started_at: datetime) -> None:
        try:
            self.cron_status.record_start(started_at)
        except StoreError as e:
            logger.error(f"Failed to record run start: {e}")

    def _record_finish(self, duration_ms: int, ath_count: int) -> None:
        try:
            self.cron_status.record_finish(duration_ms, ath_count)
        except StoreError as e:
            logger.error(f"Failed to record run result: {e}")


def open_store(config: AppConfig) -> KeyValueStore:
    """Open and initialize the configured store."""
    db = Database(config.database.path, timeout=config.database.timeout_seconds)
    db.initialize()
    return KeyValueStore(db)


def build_notifier(config: AppConfig, store: KeyValueStore) -> Notifier:
    """Create the delivery channel for the configured mode."""
    if config.notifications.delivery == "queue":
        queue = EmailQueue(
            store,
            max_attempts=config.notifications.queue.max_attempts,
            batch_size=config.notifications.queue.batch_size,
        )
        return QueuedNotifier(queue)
    return build_email_notifier(config)


def build_email_notifier(config: AppConfig) -> EmailNotifier:
    """Create the SMTP notifier."""
    email = config.notifications.email
    return EmailNotifier(
        smtp_host=email.smtp_host,
        smtp_port=email.smtp_port,
        smtp_user=email.smtp_user,
        smtp_password=email.smtp_password,
        from_address=email.from_address,
        use_tls=email.use_tls,
        timeout=email.timeout_seconds,
    )


def build_feed(config: AppConfig, store: KeyValueStore) -> CoinGeckoClient:
    """Create the price feed client."""
    feed = config.price_feed
    return CoinGeckoClient(
        store=store,
        api_keys=feed.api_keys,
        api_key_header=feed.api_key_header,
        base_url=feed.base_url,
        vs_currency=feed.vs_currency,
        per_page=feed.per_page,
        timeout=feed.timeout_seconds,
        cache_ttl=feed.cache_ttl_seconds,
        throttle=MinIntervalThrottle(feed.min_request_interval_seconds),
        breaker=CircuitBreaker(
            failure_threshold=feed.failure_threshold,
            cooldown_seconds=feed.circuit_cooldown_seconds,
        ),
    )


def build_pipeline(
    config: AppConfig,
    store: KeyValueStore,
    notifier: Optional[Notifier] = None,
    feed: Optional[CoinGeckoClient] = None,
) -> ATHPipeline:
    """Wire the pipeline from configuration."""
    recipients = RecipientResolver(UserRepository(store), SubscriptionRepository(store))
    dispatcher = NotificationDispatcher(
        notifier=notifier or build_notifier(config, store),
        recipients=recipients,
        logs=NotificationLogRepository(store),
        batch_size=config.notifications.batch_size,
    )
    return ATHPipeline(
        feed=feed or build_feed(config, store),
        detector=ATHDetector(
            SnapshotRepository(store),
            max_missed_ath_ratio=config.detection.max_missed_ath_ratio,
        ),
        frequency=NotificationFrequencyControl(
            store, min_interval_minutes=config.notifications.cooldown_minutes
        ),
        dispatcher=dispatcher,
        cron_status=CronStatusRepository(store),
        pages=config.price_feed.pages,
    )


def main():
    """Run one detection cycle (for cron)."""
    import argparse

    parser = argparse.ArgumentParser(description="ATH Watch detection run")
    parser.add_argument(
        "--config", default="config.yaml", help="Path to config file"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    args = parser.parse_args()

    # Load config
    from athwatch.config import load_config

    config = load_config(args.config)

    # Setup logging
    log_level = logging.DEBUG if args.debug else config.advanced.log_level
    logging.basicConfig(level=log_level, format=LOG_FORMAT)

    store = open_store(config)
    try:
        result = build_pipeline(config, store).run()
        print(json.dumps(result.to_dict(), indent=2))
    finally:
        store.db.close()


if __name__ == "__main__":
    main()
