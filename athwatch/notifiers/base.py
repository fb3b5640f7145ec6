"""
Base notifier classes.
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Optional


@dataclass
class NotificationMessage:
    """One ATH notification addressed to one recipient."""

    recipient_id: str
    recipient_email: str
    recipient_name: str
    asset_id: str
    asset_name: str
    symbol: str
    new_ath: float
    previous_ath: float
    percentage_increase: float
    detected_at: datetime
    kind: str

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["detected_at"] = self.detected_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NotificationMessage":
        data = dict(data)
        data["detected_at"] = datetime.fromisoformat(data["detected_at"])
        return cls(**data)


@dataclass
class NotificationResult:
    """Result of a notification attempt."""

    success: bool
    channel: str
    error: Optional[str] = None


class Notifier(ABC):
    """Abstract base class for notifiers."""

    @abstractmethod
    def send(self, message: NotificationMessage) -> NotificationResult:
        """
        Send a single notification.

        Args:
            message: Message to send

        Returns:
            NotificationResult indicating success or failure
        """
        pass

    def send_batch(
        self, messages: list[NotificationMessage]
    ) -> list[NotificationResult]:
        """
        Send multiple notifications.

        Args:
            messages: List of messages to send

        Returns:
            List of NotificationResult for each message
        """
        return [self.send(message) for message in messages]
