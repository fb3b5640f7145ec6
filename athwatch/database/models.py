"""
Data models for ATH Watch.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass
class AssetSnapshot:
    """Last stored state of a tracked asset."""

    id: str
    symbol: str
    name: str
    current_price: float
    ath: float  # highest price this system has recorded
    ath_date: datetime
    market_cap_rank: Optional[int] = None
    total_volume: float = 0.0
    last_updated: Optional[datetime] = None


@dataclass
class User:
    """Account with notification settings."""

    email: str
    name: str = ""
    role: str = "user"  # "user", "admin"
    is_active: bool = True
    notifications_enabled: bool = True
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class Subscription:
    """A user's paid subscription."""

    user_id: str
    status: str  # "pending", "active", "expired", "cancelled"
    end_date: datetime
    id: Optional[str] = None
    start_date: Optional[datetime] = None


@dataclass
class NotificationLog:
    """Record of one notification batch for an ATH event."""

    id: str  # originating event id
    asset_id: str
    symbol: str
    previous_ath: float
    new_ath: float
    kind: str
    sent_at: datetime
    recipient_count: int = 0
