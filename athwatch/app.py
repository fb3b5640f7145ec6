"""
HTTP trigger for scheduled ATH detection runs.
"""

import hmac
import logging
import os
import time
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from flask import Flask, jsonify, request

from athwatch.config import AppConfig
from athwatch.database.models import utcnow
from athwatch.database.repository import CronStatusRepository
from athwatch.database.store import KeyValueStore, StoreError
from athwatch.main import ATHPipeline, build_pipeline, open_store

logger = logging.getLogger(__name__)


def _cron_secret(config: AppConfig) -> str:
    return (
        config.server.cron_secret
        or os.environ.get("CRON_SECRET_KEY", "")
        or os.environ.get("CRON_SECRET", "")
    )


def create_app(
    config: AppConfig,
    store: Optional[KeyValueStore] = None,
    pipeline: Optional[ATHPipeline] = None,
) -> Flask:
    """
    Create the trigger application.

    Args:
        config: Application configuration
        store: Store to use; opened from config when omitted
        pipeline: Pipeline to run; built from config when omitted
    """
    store = store or open_store(config)
    pipeline = pipeline or build_pipeline(config, store)
    cron_status = CronStatusRepository(store)

    app = Flask(__name__)

    @app.route("/api/cron/ath-detection", methods=["GET", "POST"])
    def ath_detection():
        secret = _cron_secret(config)
        if not secret:
            logger.error("Cron secret is not configured")
            return jsonify({"error": "Server configuration error"}), 500

        auth_header = request.headers.get("Authorization", "")
        if not hmac.compare_digest(auth_header.encode(), f"Bearer {secret}".encode()):
            logger.warning("Unauthorized cron access attempt")
            return jsonify({"error": "Unauthorized"}), 401

        started = time.monotonic()
        try:
            result = pipeline.run()
        except Exception as e:
            logger.exception("ATH detection run failed")
            return jsonify({
                "success": False,
                "error": str(e),
                "duration_ms": int((time.monotonic() - started) * 1000),
                "timestamp": utcnow().isoformat(),
            }), 500

        return jsonify(result.to_dict())

    @app.route("/api/health")
    def health():
        try:
            heartbeat = cron_status.status()
        except StoreError as e:
            return jsonify({"ok": False, "error": str(e)}), 503
        return jsonify({
            "ok": True,
            "heartbeat": heartbeat,
            "circuit_breaker": pipeline.feed.breaker.describe(),
        })

    return app
