"""
Email SMTP notifier.
"""

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from athwatch.detection.events import ATHKind
from .base import NotificationMessage, NotificationResult, Notifier


def _format_price(value: float) -> str:
    if value >= 1:
        return f"${value:,.2f}"
    return f"${value:.8f}".rstrip("0").rstrip(".")


class EmailNotifier(Notifier):
    """Sends notifications via email SMTP."""

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        smtp_user: str,
        smtp_password: str,
        from_address: str,
        use_tls: bool = True,
        timeout: float = 30.0,
    ):
        """
        Initialize email notifier.

        Args:
            smtp_host: SMTP server hostname
            smtp_port: SMTP server port
            smtp_user: SMTP username, empty to skip login
            smtp_password: SMTP password
            from_address: Sender email address
            use_tls: Whether to upgrade the connection with STARTTLS
            timeout: Socket timeout in seconds
        """
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_address = from_address
        self.use_tls = use_tls
        self.timeout = timeout

    def send(self, message: NotificationMessage) -> NotificationResult:
        """Send notification via email."""
        try:
            email = self._create_message(message)

            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.smtp_user:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(email)

            return NotificationResult(success=True, channel="email")

        except smtplib.SMTPAuthenticationError as e:
            return NotificationResult(
                success=False,
                channel="email",
                error=f"Authentication failed: {str(e)}",
            )
        except (smtplib.SMTPException, OSError) as e:
            return NotificationResult(
                success=False,
                channel="email",
                error=f"SMTP error: {str(e)}",
            )

    def _create_message(self, message: NotificationMessage) -> MIMEMultipart:
        """Create email message."""
        email = MIMEMultipart("alternative")
        email["Subject"] = self._create_subject(message)
        email["From"] = self.from_address
        email["To"] = message.recipient_email

        # Plain text version
        email.attach(MIMEText(self._create_text_body(message), "plain"))

        # HTML version
        email.attach(MIMEText(self._create_body(message), "html"))

        return email

    def _create_subject(self, message: NotificationMessage) -> str:
        """Create email subject."""
        return (
            f"🚀 {message.symbol} hit a new all-time high: "
            f"{_format_price(message.new_ath)}"
        )

    def _describe_kind(self, message: NotificationMessage) -> str:
        if message.kind == ATHKind.MISSED.value:
            return "Reported by the market feed after our last check"
        if message.kind == ATHKind.FIRST_OBSERVATION.value:
            return "Trading at its all-time high"
        return "Detected live"

    def _create_text_body(self, message: NotificationMessage) -> str:
        """Create plain text email body."""
        greeting = f"Hi {message.recipient_name}," if message.recipient_name else "Hi,"
        return f"""
{greeting}

{message.asset_name} ({message.symbol}) just reached a new all-time high.

New ATH: {_format_price(message.new_ath)}
Previous ATH: {_format_price(message.previous_ath)}
Increase: {message.percentage_increase:.2f}%
{self._describe_kind(message)}

Time: {message.detected_at.strftime("%Y-%m-%d %H:%M:%S %Z")}
"""

    def _create_body(self, message: NotificationMessage) -> str:
        """Create HTML email body."""
        return f"""
<!DOCTYPE html>
<html>
<head>
    <style>
        body {{ font-family: Arial, sans-serif; margin: 0; padding: 20px; }}
        .ath-box {{
            border-left: 4px solid #2ECC71;
            padding: 15px;
            background-color: #f9f9f9;
            margin-bottom: 20px;
        }}
        .symbol {{ font-size: 24px; font-weight: bold; color: #2ECC71; }}
        .price {{ font-size: 18px; color: #333; }}
        .change {{ margin: 15px 0; color: #555; }}
        .meta {{ color: #888; font-size: 12px; }}
    </style>
</head>
<body>
    <div class="ath-box">
        <div class="symbol">{message.asset_name} ({message.symbol})</div>
        <div class="price">New ATH: {_format_price(message.new_ath)}</div>
        <div class="change">
            Previous ATH: {_format_price(message.previous_ath)}
            (+{message.percentage_increase:.2f}%)
        </div>
        <div class="meta">
            {self._describe_kind(message)}<br>
            Time: {message.detected_at.strftime("%Y-%m-%d %H:%M:%S %Z")}
        </div>
    </div>
</body>
</html>
"""
