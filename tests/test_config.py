"""
Configuration tests.
"""

import pytest
import yaml

from athwatch.config import AppConfig, ConfigValidationError, build_config, load_config


class TestLoadConfig:
    """Test YAML loading."""

    def test_missing_file(self, tmp_path):
        """Should raise FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "missing.yaml"))

    def test_empty_file_uses_defaults(self, tmp_path):
        """Should fall back to defaults for an empty file."""
        path = tmp_path / "config.yaml"
        path.write_text("")

        config = load_config(str(path))

        assert isinstance(config, AppConfig)
        assert config.price_feed.per_page == 100
        assert config.price_feed.pages == [1, 2]
        assert config.detection.max_missed_ath_ratio == 10.0
        assert config.notifications.cooldown_minutes == 5
        assert config.notifications.batch_size == 50

    def test_full_config(self, tmp_path, monkeypatch):
        """Should load nested sections and substitute environment variables."""
        monkeypatch.setenv("COINGECKO_API_KEYS", "key-a, key-b")
        monkeypatch.setenv("SMTP_USER", "bot@example.com")
        monkeypatch.setenv("CRON_SECRET_KEY", "s3cret")
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({
            "database": {"path": str(tmp_path / "athwatch.db")},
            "price_feed": {"api_keys": "${COINGECKO_API_KEYS}", "pages": [1]},
            "detection": {"max_missed_ath_ratio": 20},
            "notifications": {
                "cooldown_minutes": 10,
                "delivery": "queue",
                "email": {"smtp_user": "${SMTP_USER}", "smtp_port": 465},
                "queue": {"max_attempts": 5},
            },
            "server": {"cron_secret": "${CRON_SECRET_KEY}", "port": 9000},
            "advanced": {"log_level": "debug"},
        }))

        config = load_config(str(path))

        assert config.price_feed.api_keys == ["key-a", "key-b"]
        assert config.price_feed.pages == [1]
        assert config.detection.max_missed_ath_ratio == 20
        assert config.notifications.cooldown_minutes == 10
        assert config.notifications.delivery == "queue"
        assert config.notifications.email.smtp_user == "bot@example.com"
        assert config.notifications.email.smtp_port == 465
        assert config.notifications.queue.max_attempts == 5
        assert config.server.cron_secret == "s3cret"
        assert config.server.port == 9000
        assert config.advanced.log_level == "DEBUG"

    def test_unset_env_var_becomes_empty(self, monkeypatch):
        """Should substitute missing variables with an empty string."""
        monkeypatch.delenv("COINGECKO_API_KEYS", raising=False)

        config = build_config({"price_feed": {"api_keys": "${COINGECKO_API_KEYS}"}})

        assert config.price_feed.api_keys == []


class TestValidation:
    """Test configuration validation."""

    @pytest.mark.parametrize(
        "config_dict, message",
        [
            ({"database": {"path": ""}}, "Database path is required"),
            ({"price_feed": {"per_page": 500}}, "per_page"),
            ({"price_feed": {"pages": []}}, "pages cannot be empty"),
            ({"price_feed": {"failure_threshold": 0}}, "failure_threshold"),
            ({"price_feed": {"min_request_interval_seconds": -1}}, "cannot be negative"),
            ({"detection": {"max_missed_ath_ratio": 1}}, "max_missed_ath_ratio"),
            ({"notifications": {"cooldown_minutes": 0}}, "cooldown_minutes"),
            ({"notifications": {"batch_size": 0}}, "batch_size"),
            ({"notifications": {"delivery": "sms"}}, "Unknown notifications.delivery"),
            ({"advanced": {"log_level": "LOUD"}}, "Unknown log level"),
        ],
    )
    def test_invalid_values(self, config_dict, message):
        """Should reject invalid settings."""
        with pytest.raises(ConfigValidationError, match=message):
            build_config(config_dict)

    def test_memory_database_allowed(self):
        """Should accept an in-memory database path."""
        config = build_config({"database": {"path": ":memory:"}})

        assert config.database.path == ":memory:"
