"""
Recipient resolution and notification fan-out.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from athwatch.database.models import NotificationLog, User, utcnow
from athwatch.database.repository import (
    NotificationLogRepository,
    SubscriptionRepository,
    UserRepository,
)
from athwatch.database.store import StoreError
from athwatch.detection.events import ATHEvent
from athwatch.notifiers.base import NotificationMessage, Notifier

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    """Outcome of fanning out one ATH event."""

    event_id: str
    recipient_count: int = 0  # successful sends only
    attempted: int = 0
    errors: list[str] = field(default_factory=list)
    duplicate: bool = False

    @property
    def success(self) -> bool:
        return not self.errors


class RecipientResolver:
    """Finds users entitled to ATH notifications."""

    def __init__(
        self,
        users: UserRepository,
        subscriptions: SubscriptionRepository,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.users = users
        self.subscriptions = subscriptions
        self.clock = clock

    def is_eligible(self, user: User) -> bool:
        """Opted in, active, not an admin, and holding a live subscription."""
        if user.is_admin or not user.is_active or not user.notifications_enabled:
            return False
        subscription = self.subscriptions.get_for_user(user.id)
        if subscription is None or subscription.status != "active":
            return False
        return subscription.end_date > self.clock()

    def eligible_recipients(self) -> list[User]:
        """All users eligible for notifications."""
        users = self.users.list_all()
        eligible = [user for user in users if self.is_eligible(user)]
        logger.debug(f"{len(eligible)} eligible recipients out of {len(users)} users")
        return eligible


class NotificationDispatcher:
    """Delivers an ATH event to every eligible recipient."""

    def __init__(
        self,
        notifier: Notifier,
        recipients: RecipientResolver,
        logs: NotificationLogRepository,
        batch_size: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize dispatcher.

        Args:
            notifier: Delivery channel
            recipients: Recipient resolver
            logs: Notification log repository
            batch_size: Recipients handled per batch
            clock: Time source for log timestamps
        """
        self.notifier = notifier
        self.recipients = recipients
        self.logs = logs
        self.batch_size = batch_size
        self.clock = clock

    def dispatch(self, event: ATHEvent) -> DispatchResult:
        """
        Notify all eligible recipients of an event.

        Per-recipient failures are collected and never abort the batch. One
        log entry is written per event, and only if at least one send was
        attempted.

        Args:
            event: Detected ATH event

        Returns:
            DispatchResult with success count and collected errors
        """
        result = DispatchResult(event_id=event.event_id)

        try:
            existing = self.logs.get(event.event_id)
            if existing is not None:
                logger.info(f"Event {event.event_id} for {event.symbol} already dispatched")
                result.recipient_count = existing.recipient_count
                result.duplicate = True
                return result
            recipients = self.recipients.eligible_recipients()
        except StoreError as e:
            logger.error(f"Could not resolve recipients for {event.symbol}: {e}")
            result.errors.append(f"Recipient resolution failed: {e}")
            return result

        if not recipients:
            logger.info(f"No eligible users for ATH notification: {event.symbol}")
            return result

        sent_at = self.clock()
        notified_ids = []

        for start in range(0, len(recipients), self.batch_size):
            for user in recipients[start:start + self.batch_size]:
                result.attempted += 1
                message = self._build_message(event, user)
                try:
                    send_result = self.notifier.send(message)
                except Exception as e:
                    error = f"Failed to notify {user.email}: {e}"
                    logger.error(error)
                    result.errors.append(error)
                    continue

                if send_result.success:
                    notified_ids.append(user.id)
                else:
                    error = f"Failed to notify {user.email}: {send_result.error}"
                    logger.error(error)
                    result.errors.append(error)

        result.recipient_count = len(notified_ids)
        self._write_log(event, sent_at, notified_ids, result)

        logger.info(
            f"ATH notification for {event.symbol} sent to "
            f"{result.recipient_count}/{result.attempted} users"
        )
        return result

    def _build_message(self, event: ATHEvent, user: User) -> NotificationMessage:
        return NotificationMessage(
            recipient_id=user.id,
            recipient_email=user.email,
            recipient_name=user.name,
            asset_id=event.asset_id,
            asset_name=event.name,
            symbol=event.symbol,
            new_ath=event.new_ath,
            previous_ath=event.previous_ath,
            percentage_increase=event.percentage_increase,
            detected_at=event.detected_at,
            kind=event.kind.value,
        )

    def _write_log(
        self,
        event: ATHEvent,
        sent_at: datetime,
        notified_ids: list[str],
        result: DispatchResult,
    ) -> None:
        log = NotificationLog(
            id=event.event_id,
            asset_id=event.asset_id,
            symbol=event.symbol,
            previous_ath=event.previous_ath,
            new_ath=event.new_ath,
            kind=event.kind.value,
            sent_at=sent_at,
            recipient_count=result.recipient_count,
        )
        try:
            if not self.logs.create_if_absent(log):
                logger.warning(f"Notification log for {event.event_id} already exists")
                return
            for user_id in notified_ids:
                self.logs.add_user_entry(user_id, log.id, sent_at)
        except StoreError as e:
            error = f"Failed to write notification log for {event.symbol}: {e}"
            logger.error(error)
            result.errors.append(error)
