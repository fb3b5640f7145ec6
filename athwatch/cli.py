"""
CLI commands for ATH Watch.
"""

import argparse
import json
import logging
from datetime import timedelta
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from athwatch.config import AppConfig, load_config
from athwatch.database.models import Subscription, User, utcnow
from athwatch.database.repository import (
    CronStatusRepository,
    NotificationLogRepository,
    SubscriptionRepository,
    UserRepository,
)
from athwatch.database.store import KeyValueStore
from athwatch.healthcheck import run_healthcheck
from athwatch.main import LOG_FORMAT, build_email_notifier, build_pipeline, open_store
from athwatch.notifiers.queue import EmailQueue


def add_user(
    store: KeyValueStore,
    email: str,
    name: str = "",
    admin: bool = False,
    notifications_enabled: bool = True,
) -> User:
    """Add a new user."""
    repo = UserRepository(store)
    if repo.get_by_email(email):
        raise ValueError(f"User already exists: {email}")
    user = User(
        email=email,
        name=name,
        role="admin" if admin else "user",
        notifications_enabled=notifications_enabled,
    )
    return repo.create(user)


def add_subscription(store: KeyValueStore, user_id: str, days: int) -> Subscription:
    """Activate a subscription for a user, replacing any active one."""
    repo = SubscriptionRepository(store)
    current = repo.get_for_user(user_id)
    if current:
        repo.update_status(current, "expired")
    subscription = Subscription(
        user_id=user_id,
        status="active",
        end_date=utcnow() + timedelta(days=days),
    )
    return repo.create(subscription)


def cancel_subscription(store: KeyValueStore, user_id: str) -> Optional[Subscription]:
    """Cancel a user's active subscription."""
    repo = SubscriptionRepository(store)
    current = repo.get_for_user(user_id)
    if current is None:
        return None
    return repo.update_status(current, "cancelled")


def cleanup_notifications(store: KeyValueStore, days: int) -> int:
    """Delete notification logs older than N days."""
    cutoff = utcnow() - timedelta(days=days)
    return NotificationLogRepository(store).delete_before(cutoff)


def process_queue(store: KeyValueStore, config: AppConfig) -> dict:
    """Send due queued emails."""
    queue = EmailQueue(
        store,
        max_attempts=config.notifications.queue.max_attempts,
        batch_size=config.notifications.queue.batch_size,
    )
    result = queue.process(build_email_notifier(config))
    return {
        "processed": result.processed,
        "sent": result.sent,
        "retried": result.retried,
        "failed": result.failed,
        "remaining": result.remaining,
    }


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="ATH Watch CLI")
    parser.add_argument("--config", default="config.yaml", help="Path to config file")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # Detection
    subparsers.add_parser("run", help="Run one ATH detection cycle")

    # Server
    subparsers.add_parser("serve", help="Start the cron trigger server")

    # User commands
    user_parser = subparsers.add_parser("user", help="User management")
    user_subparsers = user_parser.add_subparsers(dest="action")

    add_user_parser = user_subparsers.add_parser("add", help="Add user")
    add_user_parser.add_argument("--email", required=True, help="User email")
    add_user_parser.add_argument("--name", default="", help="Display name")
    add_user_parser.add_argument("--admin", action="store_true", help="Admin account")
    add_user_parser.add_argument(
        "--disable-notifications", action="store_true", help="Opt out of ATH emails"
    )

    user_subparsers.add_parser("list", help="List users")

    # Subscription commands
    sub_parser = subparsers.add_parser("subscription", help="Subscription management")
    sub_subparsers = sub_parser.add_subparsers(dest="action")

    add_sub_parser = sub_subparsers.add_parser("add", help="Activate subscription")
    add_sub_parser.add_argument("--user", required=True, help="User ID")
    add_sub_parser.add_argument("--days", type=int, default=30, help="Duration in days")

    cancel_sub_parser = sub_subparsers.add_parser("cancel", help="Cancel subscription")
    cancel_sub_parser.add_argument("--user", required=True, help="User ID")

    # Queue commands
    queue_parser = subparsers.add_parser("queue", help="Email queue")
    queue_subparsers = queue_parser.add_subparsers(dest="action")
    queue_subparsers.add_parser("process", help="Send due emails")
    queue_subparsers.add_parser("status", help="Show queue sizes")

    # Notification commands
    notif_parser = subparsers.add_parser("notifications", help="Notification history")
    notif_subparsers = notif_parser.add_subparsers(dest="action")

    recent_parser = notif_subparsers.add_parser("recent", help="Recent ATH notifications")
    recent_parser.add_argument("--hours", type=int, default=24)

    stats_parser = notif_subparsers.add_parser("stats", help="Notification statistics")
    stats_parser.add_argument("--days", type=int, default=7)

    cleanup_parser = notif_subparsers.add_parser("cleanup", help="Delete old logs")
    cleanup_parser.add_argument("--days", type=int, default=None)

    # Status commands
    subparsers.add_parser("status", help="Show last run status")
    subparsers.add_parser("healthcheck", help="Post status to Discord")

    args = parser.parse_args()

    config = load_config(args.config)
    logging.basicConfig(level=config.advanced.log_level, format=LOG_FORMAT)

    store = open_store(config)

    # Handle commands
    if args.command == "run":
        result = build_pipeline(config, store).run()
        print(json.dumps(result.to_dict(), indent=2))

    elif args.command == "serve":
        from athwatch.app import create_app

        app = create_app(config, store=store)
        app.run(host=config.server.host, port=config.server.port)

    elif args.command == "user":
        if args.action == "add":
            user = add_user(
                store,
                email=args.email,
                name=args.name,
                admin=args.admin,
                notifications_enabled=not args.disable_notifications,
            )
            print(f"Created user with ID: {user.id}")
        elif args.action == "list":
            for user in UserRepository(store).list_all():
                print(
                    f"ID: {user.id}, Email: {user.email}, Role: {user.role}, "
                    f"Notifications: {'on' if user.notifications_enabled else 'off'}"
                )

    elif args.command == "subscription":
        if args.action == "add":
            subscription = add_subscription(store, args.user, args.days)
            print(
                f"Activated subscription {subscription.id} "
                f"until {subscription.end_date:%Y-%m-%d}"
            )
        elif args.action == "cancel":
            subscription = cancel_subscription(store, args.user)
            if subscription:
                print(f"Cancelled subscription {subscription.id}")
            else:
                print("No active subscription")

    elif args.command == "queue":
        if args.action == "process":
            print(json.dumps(process_queue(store, config)))
        elif args.action == "status":
            print(json.dumps(EmailQueue(store).status()))

    elif args.command == "notifications":
        repo = NotificationLogRepository(store)
        if args.action == "recent":
            for log in repo.recent(hours=args.hours):
                print(
                    f"{log.sent_at:%Y-%m-%d %H:%M} {log.symbol}: "
                    f"{log.previous_ath} -> {log.new_ath} ({log.kind}, "
                    f"{log.recipient_count} recipients)"
                )
        elif args.action == "stats":
            print(json.dumps(repo.stats(days=args.days), indent=2))
        elif args.action == "cleanup":
            days = args.days or config.advanced.notification_retention_days
            print(f"Deleted {cleanup_notifications(store, days)} notification logs")

    elif args.command == "status":
        print(json.dumps(CronStatusRepository(store).status(), indent=2))

    elif args.command == "healthcheck":
        run_healthcheck(store)

    store.db.close()


if __name__ == "__main__":
    main()
