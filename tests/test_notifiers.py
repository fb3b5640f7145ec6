"""
Notifier tests.
Tests for SMTP email delivery and the store-backed email queue.
"""

import json
import smtplib
from datetime import datetime, timezone
from unittest.mock import MagicMock, Mock, patch

import pytest

from athwatch.database.store import StoreError
from athwatch.notifiers.base import NotificationMessage, NotificationResult
from athwatch.notifiers.email import EmailNotifier, _format_price
from athwatch.notifiers.queue import EmailQueue, QueuedNotifier


@pytest.fixture
def sample_message():
    """Create sample notification message."""
    return NotificationMessage(
        recipient_id="u1",
        recipient_email="alice@example.com",
        recipient_name="Alice",
        asset_id="bitcoin",
        asset_name="Bitcoin",
        symbol="BTC",
        new_ath=73_000.0,
        previous_ath=69_000.0,
        percentage_increase=5.797,
        detected_at=datetime(2024, 3, 14, 12, 0, tzinfo=timezone.utc),
        kind="real_time",
    )


class TestNotificationResult:
    """Test NotificationResult model."""

    def test_success_result(self):
        """Should create success result."""
        result = NotificationResult(success=True, channel="email")
        assert result.success is True
        assert result.error is None

    def test_failure_result(self):
        """Should create failure result with error."""
        result = NotificationResult(
            success=False, channel="email", error="SMTP connection failed"
        )
        assert result.success is False
        assert result.error == "SMTP connection failed"


class TestNotificationMessage:
    """Test message serialization used by the queue."""

    def test_dict_conversion(self, sample_message):
        """Should survive conversion through JSON."""
        data = json.loads(json.dumps(sample_message.to_dict()))

        assert data["detected_at"] == "2024-03-14T12:00:00+00:00"
        assert NotificationMessage.from_dict(data) == sample_message


class TestEmailNotifier:
    """Test email SMTP notifications."""

    @pytest.fixture
    def notifier(self, sample_smtp_config):
        """Create email notifier."""
        return EmailNotifier(**sample_smtp_config)

    def test_send_email_success(self, notifier: EmailNotifier, sample_message):
        """Should send email successfully."""
        with patch("smtplib.SMTP") as mock_smtp:
            mock_server = MagicMock()
            mock_smtp.return_value.__enter__.return_value = mock_server

            result = notifier.send(sample_message)

        assert result.success is True
        assert result.channel == "email"
        mock_smtp.assert_called_once_with("smtp.gmail.com", 587, timeout=30.0)
        mock_server.starttls.assert_called_once()
        mock_server.login.assert_called_once_with("test@gmail.com", "test-app-password")
        mock_server.send_message.assert_called_once()

        email = mock_server.send_message.call_args.args[0]
        assert email["To"] == "alice@example.com"
        assert email["Subject"] == "🚀 BTC hit a new all-time high: $73,000.00"

    def test_skips_login_without_user(self, sample_smtp_config, sample_message):
        """Should not authenticate when no SMTP user is configured."""
        sample_smtp_config.update(smtp_user="", use_tls=False)
        notifier = EmailNotifier(**sample_smtp_config)

        with patch("smtplib.SMTP") as mock_smtp:
            mock_server = MagicMock()
            mock_smtp.return_value.__enter__.return_value = mock_server

            result = notifier.send(sample_message)

        assert result.success is True
        mock_server.starttls.assert_not_called()
        mock_server.login.assert_not_called()

    def test_send_email_auth_failure(self, notifier: EmailNotifier, sample_message):
        """Should handle authentication failure."""
        with patch("smtplib.SMTP") as mock_smtp:
            mock_server = MagicMock()
            mock_server.login.side_effect = smtplib.SMTPAuthenticationError(
                535, b"Authentication failed"
            )
            mock_smtp.return_value.__enter__.return_value = mock_server

            result = notifier.send(sample_message)

        assert result.success is False
        assert "Authentication failed" in result.error

    def test_send_email_connection_error(self, notifier: EmailNotifier, sample_message):
        """Should handle connection errors."""
        with patch("smtplib.SMTP") as mock_smtp:
            mock_smtp.side_effect = ConnectionRefusedError("Connection refused")

            result = notifier.send(sample_message)

        assert result.success is False
        assert result.error.startswith("SMTP error")

    def test_body_contents(self, notifier: EmailNotifier, sample_message):
        """Should include prices and increase in both bodies."""
        text = notifier._create_text_body(sample_message)
        html = notifier._create_body(sample_message)

        assert "Hi Alice," in text
        assert "Previous ATH: $69,000.00" in text
        assert "Increase: 5.80%" in text
        assert "Bitcoin (BTC)" in html
        assert "Detected live" in html

    def test_format_price(self):
        """Should keep precision for sub-dollar assets."""
        assert _format_price(1234.5) == "$1,234.50"
        assert _format_price(0.00001234) == "$0.00001234"
        assert _format_price(0.5) == "$0.5"


class TestEmailQueue:
    """Test deferred delivery with retries."""

    @pytest.fixture
    def queue(self, store, clock):
        return EmailQueue(store, max_attempts=3, batch_size=10, clock=clock.time)

    def test_enqueue_and_send(self, queue: EmailQueue, sample_message):
        """Should deliver due entries and empty the queue."""
        queue.enqueue(sample_message)
        notifier = Mock()
        notifier.send.return_value = NotificationResult(success=True, channel="email")

        result = queue.process(notifier)

        assert result.processed == 1
        assert result.sent == 1
        assert result.remaining == 0
        assert notifier.send.call_args.args[0] == sample_message
        assert queue.status() == {"pending": 0, "processing": 0, "failed": 0}

    def test_delayed_entry_not_due(self, queue: EmailQueue, sample_message, clock):
        """Should hold entries until their scheduled time."""
        queue.enqueue(sample_message, delay=60)
        notifier = Mock()
        notifier.send.return_value = NotificationResult(success=True, channel="email")

        assert queue.process(notifier).processed == 0

        clock.advance(seconds=60)
        assert queue.process(notifier).sent == 1

    def test_retry_with_backoff_then_park(self, queue: EmailQueue, sample_message, clock, store):
        """Should retry after 2 and 4 minutes, then park the entry."""
        queue.enqueue(sample_message)
        notifier = Mock()
        notifier.send.return_value = NotificationResult(
            success=False, channel="email", error="SMTP error: timeout"
        )

        first = queue.process(notifier)
        assert first.retried == 1
        assert first.remaining == 1

        clock.advance(seconds=119)
        assert queue.process(notifier).processed == 0
        clock.advance(seconds=1)
        assert queue.process(notifier).retried == 1

        clock.advance(seconds=240)
        final = queue.process(notifier)
        assert final.failed == 1
        assert final.remaining == 0

        assert queue.status()["failed"] == 1
        failed_key = store.keys("email:failed:*")[0]
        assert store.hget(failed_key, "attempts") == "3"
        assert store.hget(failed_key, "last_error") == "SMTP error: timeout"

    def test_notifier_exception_counts_as_failure(self, queue: EmailQueue, sample_message):
        """Should reschedule when the notifier raises."""
        queue.enqueue(sample_message)
        notifier = Mock()
        notifier.send.side_effect = OSError("network down")

        assert queue.process(notifier).retried == 1

    def test_batch_size_limits_drain(self, store, clock, sample_message):
        """Should process at most batch_size entries per call."""
        queue = EmailQueue(store, batch_size=2, clock=clock.time)
        for _ in range(3):
            queue.enqueue(sample_message)
        notifier = Mock()
        notifier.send.return_value = NotificationResult(success=True, channel="email")

        result = queue.process(notifier)

        assert result.sent == 2
        assert result.remaining == 1


class TestQueuedNotifier:
    """Test the queue-backed delivery channel."""

    def test_send_enqueues(self, store, clock, sample_message):
        """Should count an accepted enqueue as a successful send."""
        queue = EmailQueue(store, clock=clock.time)

        result = QueuedNotifier(queue).send(sample_message)

        assert result.success is True
        assert result.channel == "queue"
        assert queue.status()["pending"] == 1

    def test_store_failure(self, sample_message):
        """Should report enqueue failures as failed sends."""
        queue = Mock()
        queue.enqueue.side_effect = StoreError("database is locked")

        result = QueuedNotifier(queue).send(sample_message)

        assert result.success is False
        assert "database is locked" in result.error

    def test_send_batch(self, store, clock, sample_message):
        """Should enqueue every message in a batch."""
        queue = EmailQueue(store, clock=clock.time)

        results = QueuedNotifier(queue).send_batch([sample_message, sample_message])

        assert [r.success for r in results] == [True, True]
        assert queue.status()["pending"] == 2
