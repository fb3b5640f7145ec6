"""
Configuration loading and validation.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""

    pass


@dataclass
class DatabaseConfig:
    """Database configuration."""

    path: str = "data/athwatch.db"
    timeout_seconds: float = 5.0


@dataclass
class PriceFeedConfig:
    """Price feed configuration."""

    base_url: str = "https://api.coingecko.com/api/v3"
    api_keys: list[str] = field(default_factory=list)
    api_key_header: str = "x-cg-demo-api-key"
    vs_currency: str = "usd"
    per_page: int = 100
    pages: list[int] = field(default_factory=lambda: [1, 2])
    min_request_interval_seconds: float = 1.2
    cache_ttl_seconds: float = 60
    timeout_seconds: float = 10
    failure_threshold: int = 3
    circuit_cooldown_seconds: float = 300


@dataclass
class DetectionConfig:
    """ATH detection configuration."""

    max_missed_ath_ratio: float = 10.0


@dataclass
class EmailNotificationConfig:
    """Email notification settings."""

    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_address: str = "ATH Watch <notifications@athwatch.local>"
    use_tls: bool = True
    timeout_seconds: float = 30


@dataclass
class QueueConfig:
    """Email queue settings."""

    max_attempts: int = 3
    batch_size: int = 10


@dataclass
class NotificationsConfig:
    """Notifications configuration."""

    cooldown_minutes: float = 5
    batch_size: int = 50
    delivery: str = "direct"  # "direct" or "queue"
    email: EmailNotificationConfig = field(default_factory=EmailNotificationConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)


@dataclass
class ServerConfig:
    """Trigger server configuration."""

    host: str = "127.0.0.1"
    port: int = 8000
    cron_secret: str = ""


@dataclass
class AdvancedConfig:
    """Advanced configuration."""

    log_level: str = "INFO"
    notification_retention_days: int = 90


@dataclass
class AppConfig:
    """Main application configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    price_feed: PriceFeedConfig = field(default_factory=PriceFeedConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)


def _substitute_env_vars(value: Any) -> Any:
    """Substitute environment variables in string values."""
    if isinstance(value, str):
        # Match ${VAR_NAME} pattern
        pattern = r"\$\{([^}]+)\}"
        matches = re.findall(pattern, value)
        for var_name in matches:
            env_value = os.environ.get(var_name, "")
            value = value.replace(f"${{{var_name}}}", env_value)
        return value
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _split_keys(value: Any) -> list[str]:
    """Accept API keys as a list or a comma-separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        return [key.strip() for key in value.split(",") if key.strip()]
    return [str(key).strip() for key in value if str(key).strip()]


def _validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values."""
    # Check database path is provided
    db_config = config_dict.get("database") or {}
    db_path = db_config.get("path", DatabaseConfig.path)
    if not db_path:
        raise ConfigValidationError("Database path is required")

    if db_path != ":memory:":
        parent = Path(db_path).parent
        if parent.exists() and not os.access(parent, os.W_OK):
            raise ConfigValidationError(f"Database path not writable: {parent}")

    # Price feed
    feed = config_dict.get("price_feed") or {}
    per_page = feed.get("per_page", PriceFeedConfig.per_page)
    if not 1 <= int(per_page) <= 250:
        raise ConfigValidationError("price_feed.per_page must be between 1 and 250")
    if "pages" in feed and not feed["pages"]:
        raise ConfigValidationError("price_feed.pages cannot be empty")
    for name in ("timeout_seconds", "failure_threshold", "circuit_cooldown_seconds"):
        if name in feed and float(feed[name]) <= 0:
            raise ConfigValidationError(f"price_feed.{name} must be positive")
    if float(feed.get("min_request_interval_seconds", 0)) < 0:
        raise ConfigValidationError(
            "price_feed.min_request_interval_seconds cannot be negative"
        )

    # Detection
    detection = config_dict.get("detection") or {}
    if float(detection.get("max_missed_ath_ratio", 10.0)) <= 1:
        raise ConfigValidationError("detection.max_missed_ath_ratio must be above 1")

    # Notifications
    notifications = config_dict.get("notifications") or {}
    if float(notifications.get("cooldown_minutes", 5)) <= 0:
        raise ConfigValidationError("notifications.cooldown_minutes must be positive")
    if int(notifications.get("batch_size", 50)) <= 0:
        raise ConfigValidationError("notifications.batch_size must be positive")
    delivery = notifications.get("delivery", "direct")
    if delivery not in ("direct", "queue"):
        raise ConfigValidationError(f"Unknown notifications.delivery: {delivery}")

    # Logging
    advanced = config_dict.get("advanced") or {}
    log_level = str(advanced.get("log_level", "INFO")).upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigValidationError(f"Unknown log level: {log_level}")


def build_config(config_dict: dict[str, Any]) -> AppConfig:
    """
    Build AppConfig from an already-loaded dictionary.

    Raises:
        ConfigValidationError: If configuration is invalid
    """
    config_dict = _substitute_env_vars(config_dict)
    _validate_config(config_dict)

    database = DatabaseConfig(**(config_dict.get("database") or {}))

    # Price feed
    feed_dict = dict(config_dict.get("price_feed") or {})
    feed_dict["api_keys"] = _split_keys(feed_dict.get("api_keys"))
    if "pages" in feed_dict:
        feed_dict["pages"] = [int(page) for page in feed_dict["pages"]]
    price_feed = PriceFeedConfig(**feed_dict)

    detection = DetectionConfig(**(config_dict.get("detection") or {}))

    # Notifications
    notif_dict = dict(config_dict.get("notifications") or {})
    email_dict = notif_dict.pop("email", None) or {}
    queue_dict = notif_dict.pop("queue", None) or {}
    notifications = NotificationsConfig(
        email=EmailNotificationConfig(**email_dict),
        queue=QueueConfig(**queue_dict),
        **notif_dict,
    )

    server = ServerConfig(**(config_dict.get("server") or {}))

    # Advanced
    advanced = AdvancedConfig(**(config_dict.get("advanced") or {}))
    advanced.log_level = advanced.log_level.upper()

    return AppConfig(
        database=database,
        price_feed=price_feed,
        detection=detection,
        notifications=notifications,
        server=server,
        advanced=advanced,
    )


def load_config(config_path: str) -> AppConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        AppConfig instance

    Raises:
        ConfigValidationError: If configuration is invalid
        FileNotFoundError: If config file doesn't exist
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path) as f:
        raw_config = yaml.safe_load(f) or {}

    return build_config(raw_config)
