"""
Store-backed email queue with retry.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable

from athwatch.database.store import KeyValueStore, StoreError
from .base import NotificationMessage, NotificationResult, Notifier

logger = logging.getLogger(__name__)


@dataclass
class QueueProcessResult:
    """Outcome of one queue drain."""

    processed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    remaining: int = 0


class EmailQueue:
    """Pending notifications in a sorted set scored by scheduled time."""

    QUEUE_KEY = "email:queue"
    PROCESSING_KEY = "email:processing"
    FAILED_PREFIX = "email:failed:"

    def __init__(
        self,
        store: KeyValueStore,
        max_attempts: int = 3,
        batch_size: int = 10,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self.clock = clock

    def enqueue(self, message: NotificationMessage, delay: float = 0) -> str:
        """
        Add a message to the queue.

        Returns:
            Queue entry ID

        Raises:
            StoreError: If the entry could not be written
        """
        entry_id = f"email_{uuid.uuid4().hex[:12]}"
        scheduled_for = self.clock() + delay
        entry = {
            "id": entry_id,
            "message": message.to_dict(),
            "attempts": 0,
            "scheduled_for": scheduled_for,
        }
        self.store.zadd(self.QUEUE_KEY, {json.dumps(entry): scheduled_for})
        logger.debug(f"Queued {entry_id} for {message.recipient_email}")
        return entry_id

    def process(self, notifier: Notifier) -> QueueProcessResult:
        """
        Send due messages through notifier.

        Failed sends are rescheduled with exponential backoff
        (2 ** attempts minutes) until max_attempts, then parked for review.
        """
        result = QueueProcessResult()
        due = self.store.zrangebyscore(
            self.QUEUE_KEY, max_score=self.clock(), count=self.batch_size
        )

        for raw in due:
            # Only the worker that removes the entry gets to send it
            if not self.store.zrem(self.QUEUE_KEY, raw):
                continue
            entry = json.loads(raw)
            result.processed += 1
            self.store.sadd(self.PROCESSING_KEY, entry["id"])

            try:
                send_result = notifier.send(NotificationMessage.from_dict(entry["message"]))
            except Exception as e:
                send_result = NotificationResult(
                    success=False, channel="queue", error=str(e)
                )

            if send_result.success:
                result.sent += 1
            else:
                self._handle_failure(entry, send_result.error or "Unknown error", result)

            self.store.srem(self.PROCESSING_KEY, entry["id"])

        result.remaining = self.store.zcard(self.QUEUE_KEY)
        return result

    def _handle_failure(
        self, entry: dict, error: str, result: QueueProcessResult
    ) -> None:
        entry["attempts"] += 1
        recipient = entry["message"]["recipient_email"]

        if entry["attempts"] < self.max_attempts:
            retry_delay = (2 ** entry["attempts"]) * 60
            entry["scheduled_for"] = self.clock() + retry_delay
            self.store.zadd(self.QUEUE_KEY, {json.dumps(entry): entry["scheduled_for"]})
            result.retried += 1
            logger.warning(
                f"Retrying email to {recipient} in {retry_delay}s "
                f"(attempt {entry['attempts']}/{self.max_attempts}): {error}"
            )
            return

        result.failed += 1
        logger.error(
            f"Giving up on email to {recipient} after {self.max_attempts} attempts: {error}"
        )
        self.store.hset(
            f"{self.FAILED_PREFIX}{entry['id']}",
            {
                "id": entry["id"],
                "message": json.dumps(entry["message"]),
                "attempts": entry["attempts"],
                "failed_at": self.clock(),
                "last_error": error,
            },
        )

    def status(self) -> dict:
        """Queue sizes."""
        return {
            "pending": self.store.zcard(self.QUEUE_KEY),
            "processing": self.store.scard(self.PROCESSING_KEY),
            "failed": len(self.store.keys(f"{self.FAILED_PREFIX}*")),
        }


class QueuedNotifier(Notifier):
    """Defers delivery by enqueueing messages on an EmailQueue."""

    def __init__(self, queue: EmailQueue):
        self.queue = queue

    def send(self, message: NotificationMessage) -> NotificationResult:
        """Enqueue a message; success means it was accepted by the queue."""
        try:
            self.queue.enqueue(message)
        except StoreError as e:
            return NotificationResult(
                success=False, channel="queue", error=f"Enqueue failed: {e}"
            )
        return NotificationResult(success=True, channel="queue")
