"""
Repository classes for records kept in the key-value store.
"""

import uuid
from datetime import datetime, timedelta
from typing import Optional

from .models import AssetSnapshot, NotificationLog, Subscription, User, utcnow
from .store import KeyValueStore


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value in ("1", "true", "True")


def _bool(value: bool) -> str:
    return "1" if value else "0"


class SnapshotRepository:
    """Stored snapshots of tracked assets."""

    TRACKED_KEY = "crypto:tracked"

    def __init__(self, store: KeyValueStore):
        self.store = store

    def get(self, asset_id: str) -> Optional[AssetSnapshot]:
        """Get snapshot by asset ID."""
        data = self.store.hgetall(f"crypto:{asset_id}")
        if not data:
            return None
        return self._hash_to_snapshot(data)

    def save(self, snapshot: AssetSnapshot) -> None:
        """Create or overwrite a snapshot."""
        self.store.hset(
            f"crypto:{snapshot.id}",
            {
                "id": snapshot.id,
                "symbol": snapshot.symbol,
                "name": snapshot.name,
                "current_price": repr(snapshot.current_price),
                "ath": repr(snapshot.ath),
                "ath_date": snapshot.ath_date.isoformat(),
                "market_cap_rank": snapshot.market_cap_rank,
                "total_volume": repr(snapshot.total_volume),
                "last_updated": (
                    snapshot.last_updated.isoformat() if snapshot.last_updated else None
                ),
            },
        )
        self.store.sadd(self.TRACKED_KEY, snapshot.id)

    def list_ids(self) -> list[str]:
        """List IDs of all tracked assets."""
        return sorted(self.store.smembers(self.TRACKED_KEY))

    def list_all(self) -> list[AssetSnapshot]:
        """List all tracked snapshots."""
        snapshots = []
        for asset_id in self.list_ids():
            snapshot = self.get(asset_id)
            if snapshot:
                snapshots.append(snapshot)
        return snapshots

    def _hash_to_snapshot(self, data: dict[str, str]) -> AssetSnapshot:
        """Convert stored hash to AssetSnapshot."""
        rank = data.get("market_cap_rank")
        return AssetSnapshot(
            id=data["id"],
            symbol=data.get("symbol", ""),
            name=data.get("name", ""),
            current_price=float(data.get("current_price", "0")),
            ath=float(data.get("ath", "0")),
            ath_date=_parse_datetime(data.get("ath_date")) or utcnow(),
            market_cap_rank=int(rank) if rank else None,
            total_volume=float(data.get("total_volume", "0")),
            last_updated=_parse_datetime(data.get("last_updated")),
        )


class UserRepository:
    """CRUD operations for users."""

    ALL_KEY = "users:all"

    def __init__(self, store: KeyValueStore):
        self.store = store

    def create(self, user: User) -> User:
        """Create a new user."""
        if user.id is None:
            user.id = _new_id()
        if user.created_at is None:
            user.created_at = utcnow()
        self._write(user)
        self.store.set(f"user:email:{user.email.lower()}", user.id)
        self.store.sadd(self.ALL_KEY, user.id)
        return user

    def get_by_id(self, user_id: str) -> Optional[User]:
        """Get user by ID."""
        data = self.store.hgetall(f"user:{user_id}")
        if not data:
            return None
        return self._hash_to_user(data)

    def get_by_email(self, email: str) -> Optional[User]:
        """Get user by email address."""
        user_id = self.store.get(f"user:email:{email.lower()}")
        if user_id is None:
            return None
        return self.get_by_id(user_id)

    def update(self, user: User) -> None:
        """Update user details."""
        self._write(user)

    def list_all(self) -> list[User]:
        """List all users."""
        users = []
        for user_id in sorted(self.store.smembers(self.ALL_KEY)):
            user = self.get_by_id(user_id)
            if user:
                users.append(user)
        return users

    def _write(self, user: User) -> None:
        self.store.hset(
            f"user:{user.id}",
            {
                "id": user.id,
                "email": user.email,
                "name": user.name,
                "role": user.role,
                "is_active": _bool(user.is_active),
                "notifications_enabled": _bool(user.notifications_enabled),
                "created_at": user.created_at.isoformat() if user.created_at else None,
            },
        )

    def _hash_to_user(self, data: dict[str, str]) -> User:
        """Convert stored hash to User."""
        return User(
            id=data["id"],
            email=data.get("email", ""),
            name=data.get("name", ""),
            role=data.get("role", "user"),
            is_active=_parse_bool(data.get("is_active"), default=True),
            notifications_enabled=_parse_bool(data.get("notifications_enabled")),
            created_at=_parse_datetime(data.get("created_at")),
        )


class SubscriptionRepository:
    """CRUD operations for subscriptions, partitioned by status."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    def create(self, subscription: Subscription) -> Subscription:
        """Create a new subscription."""
        if subscription.id is None:
            subscription.id = _new_id()
        if subscription.start_date is None:
            subscription.start_date = utcnow()
        self._write(subscription)
        self.store.sadd(f"subscriptions:{subscription.status}", subscription.id)
        if subscription.status == "active":
            self.store.set(f"user:subscription:{subscription.user_id}", subscription.id)
        return subscription

    def get_by_id(self, subscription_id: str) -> Optional[Subscription]:
        """Get subscription by ID."""
        data = self.store.hgetall(f"subscription:{subscription_id}")
        if not data:
            return None
        return self._hash_to_subscription(data)

    def get_for_user(self, user_id: str) -> Optional[Subscription]:
        """Get the user's current active subscription, if any."""
        subscription_id = self.store.get(f"user:subscription:{user_id}")
        if subscription_id is None:
            return None
        return self.get_by_id(subscription_id)

    def list_by_status(self, status: str) -> list[Subscription]:
        """List subscriptions with the given status."""
        subscriptions = []
        for subscription_id in sorted(self.store.smembers(f"subscriptions:{status}")):
            subscription = self.get_by_id(subscription_id)
            if subscription:
                subscriptions.append(subscription)
        return subscriptions

    def update_status(self, subscription: Subscription, status: str) -> Subscription:
        """Move a subscription to a new status."""
        old_status = subscription.status
        subscription.status = status
        self._write(subscription)

        if old_status != status:
            self.store.srem(f"subscriptions:{old_status}", subscription.id)
            self.store.sadd(f"subscriptions:{status}", subscription.id)

        if status == "active":
            self.store.set(f"user:subscription:{subscription.user_id}", subscription.id)
        elif self.store.get(f"user:subscription:{subscription.user_id}") == subscription.id:
            self.store.delete(f"user:subscription:{subscription.user_id}")
        return subscription

    def _write(self, subscription: Subscription) -> None:
        self.store.hset(
            f"subscription:{subscription.id}",
            {
                "id": subscription.id,
                "user_id": subscription.user_id,
                "status": subscription.status,
                "end_date": subscription.end_date.isoformat(),
                "start_date": (
                    subscription.start_date.isoformat()
                    if subscription.start_date
                    else None
                ),
            },
        )

    def _hash_to_subscription(self, data: dict[str, str]) -> Subscription:
        """Convert stored hash to Subscription."""
        return Subscription(
            id=data["id"],
            user_id=data["user_id"],
            status=data["status"],
            end_date=datetime.fromisoformat(data["end_date"]),
            start_date=_parse_datetime(data.get("start_date")),
        )


class NotificationLogRepository:
    """Notification batch logs, indexed by time."""

    INDEX_KEY = "notifications"
    IDS_KEY = "notifications:ids"

    def __init__(self, store: KeyValueStore):
        self.store = store

    def get(self, log_id: str) -> Optional[NotificationLog]:
        """Get a log entry by its event ID."""
        data = self.store.hgetall(f"notification:{log_id}")
        if not data:
            return None
        return self._hash_to_log(data)

    def exists(self, log_id: str) -> bool:
        """Check whether a log entry exists for an event ID."""
        return self.store.sismember(self.IDS_KEY, log_id)

    def create_if_absent(self, log: NotificationLog) -> bool:
        """
        Write a log entry unless one already exists for the same event.

        Returns:
            True if the entry was written
        """
        # Claiming the ID is a single committed insert, so concurrent writers
        # for the same event cannot both win.
        if not self.store.sadd(self.IDS_KEY, log.id):
            return False
        self.store.hset(
            f"notification:{log.id}",
            {
                "id": log.id,
                "asset_id": log.asset_id,
                "symbol": log.symbol,
                "previous_ath": repr(log.previous_ath),
                "new_ath": repr(log.new_ath),
                "kind": log.kind,
                "sent_at": log.sent_at.isoformat(),
                "recipient_count": log.recipient_count,
            },
        )
        self.store.zadd(self.INDEX_KEY, {log.id: log.sent_at.timestamp()})
        return True

    def add_user_entry(self, user_id: str, log_id: str, sent_at: datetime) -> None:
        """Record that a user was notified for a log entry."""
        self.store.zadd(f"user:{user_id}:notifications", {log_id: sent_at.timestamp()})

    def user_history(self, user_id: str, limit: int = 50) -> list[NotificationLog]:
        """Get a user's most recent notifications, newest first."""
        log_ids = self.store.zrange(
            f"user:{user_id}:notifications", 0, limit - 1, desc=True
        )
        return self._load(log_ids)

    def list_since(self, cutoff: datetime) -> list[NotificationLog]:
        """Get log entries sent at or after cutoff, newest first."""
        log_ids = self.store.zrangebyscore(
            self.INDEX_KEY, min_score=cutoff.timestamp(), desc=True
        )
        return self._load(log_ids)

    def recent(self, hours: int = 24) -> list[NotificationLog]:
        """Get log entries from the last N hours."""
        return self.list_since(utcnow() - timedelta(hours=hours))

    def stats(self, days: int = 7) -> dict:
        """Aggregate notification statistics over the last N days."""
        logs = self.list_since(utcnow() - timedelta(days=days))
        total_notifications = len(logs)
        total_recipients = sum(log.recipient_count for log in logs)
        average = total_recipients / total_notifications if total_notifications else 0
        return {
            "total_notifications": total_notifications,
            "total_recipients": total_recipients,
            "average_recipients_per_notification": round(average, 2),
            "unique_assets": len({log.asset_id for log in logs}),
        }

    def delete_before(self, cutoff: datetime) -> int:
        """Delete log entries sent before cutoff. Returns count removed."""
        log_ids = self.store.zrangebyscore(
            self.INDEX_KEY, max_score=cutoff.timestamp()
        )
        for log_id in log_ids:
            self.store.delete(f"notification:{log_id}")
            self.store.srem(self.IDS_KEY, log_id)
            self.store.zrem(self.INDEX_KEY, log_id)
        for key in self.store.keys("user:*:notifications"):
            self.store.zremrangebyscore(key, float("-inf"), cutoff.timestamp())
        return len(log_ids)

    def _load(self, log_ids: list[str]) -> list[NotificationLog]:
        logs = []
        for log_id in log_ids:
            log = self.get(log_id)
            if log:
                logs.append(log)
        return logs

    def _hash_to_log(self, data: dict[str, str]) -> NotificationLog:
        """Convert stored hash to NotificationLog."""
        return NotificationLog(
            id=data["id"],
            asset_id=data["asset_id"],
            symbol=data.get("symbol", ""),
            previous_ath=float(data["previous_ath"]),
            new_ath=float(data["new_ath"]),
            kind=data.get("kind", ""),
            sent_at=datetime.fromisoformat(data["sent_at"]),
            recipient_count=int(data.get("recipient_count", "0")),
        )


class CronStatusRepository:
    """Liveness values written by each pipeline run."""

    RUNS_KEY = "cron:runs"
    RUN_RETENTION_DAYS = 7

    def __init__(self, store: KeyValueStore):
        self.store = store

    def record_start(self, started_at: datetime) -> None:
        """Record that a run started."""
        stamp = started_at.isoformat()
        self.store.set("cron:last_run", stamp)
        self.store.zadd(self.RUNS_KEY, {stamp: started_at.timestamp()})
        cutoff = started_at - timedelta(days=self.RUN_RETENTION_DAYS)
        self.store.zremrangebyscore(self.RUNS_KEY, float("-inf"), cutoff.timestamp())

    def record_finish(self, duration_ms: int, ath_count: int) -> None:
        """Record the outcome of a completed run."""
        self.store.set("cron:last_duration", duration_ms)
        self.store.set("cron:last_ath_count", ath_count)

    def status(self) -> dict:
        """Current liveness values."""
        duration = self.store.get("cron:last_duration")
        ath_count = self.store.get("cron:last_ath_count")
        return {
            "last_run": self.store.get("cron:last_run"),
            "last_duration_ms": int(duration) if duration is not None else None,
            "last_ath_count": int(ath_count) if ath_count is not None else None,
            "runs_last_7_days": self.store.zcard(self.RUNS_KEY),
        }
