"""
Health check - sends pipeline status to Discord.
"""

import os
from datetime import datetime, timezone

import requests

from athwatch.database.repository import (
    CronStatusRepository,
    NotificationLogRepository,
    SnapshotRepository,
)
from athwatch.database.store import KeyValueStore


def build_status_payload(store: KeyValueStore) -> dict:
    """Build the Discord embed describing pipeline liveness."""
    heartbeat = CronStatusRepository(store).status()
    stats = NotificationLogRepository(store).stats(days=1)
    tracked = len(SnapshotRepository(store).list_ids())

    last_run = heartbeat["last_run"] or "never"
    healthy = heartbeat["last_run"] is not None

    return {
        "embeds": [{
            "title": "ATH Watch Health Check",
            "description": (
                "Detection pipeline is running." if healthy
                else "Detection pipeline has never run."
            ),
            "color": 0x2ECC71 if healthy else 0xFF0000,
            "fields": [
                {"name": "Last run", "value": last_run, "inline": False},
                {
                    "name": "Last duration",
                    "value": f"{heartbeat['last_duration_ms'] or 0} ms",
                    "inline": True,
                },
                {"name": "Runs (7d)", "value": str(heartbeat["runs_last_7_days"]), "inline": True},
                {"name": "Tracked assets", "value": str(tracked), "inline": True},
                {
                    "name": "ATH notifications (24h)",
                    "value": (
                        f"{stats['total_notifications']} "
                        f"({stats['total_recipients']} emails)"
                    ),
                    "inline": False,
                },
            ],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }]
    }


def run_healthcheck(store: KeyValueStore) -> None:
    """Run health check and send status to Discord.

    Args:
        store: Key-value store (already initialized)
    """
    webhook_url = os.getenv("DISCORD_WEBHOOK_URL")
    if not webhook_url:
        print("DISCORD_WEBHOOK_URL not set")
        return

    payload = build_status_payload(store)
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    response = requests.post(webhook_url, json=payload, timeout=10)
    print(f"{now} - Health check sent (status: {response.status_code})")
