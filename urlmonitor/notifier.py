"""Email and webhook notifications for downtime, recovery, and test messages."""

import html
import logging
import smtplib
import time
from datetime import UTC, datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import requests

from .config import MailConfig, WebhookConfig
from .models import CheckResult, EmailSettings, ErrorKind, MonitoredTarget
from .store import Store

logger = logging.getLogger(__name__)

# Port for SMTP over implicit TLS; other ports use plain SMTP with optional STARTTLS.
SMTPS_PORT = 465


class NotificationError(Exception):
    """Raised when a user-requested test notification cannot be delivered."""

    pass


def _format_time(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S UTC")


def build_downtime_message(target: MonitoredTarget, result: CheckResult) -> tuple[str, str, str]:
    """Build the downtime email.

    Returns:
        Tuple of (subject, plain_text_body, html_body)
    """
    subject = f"🚨 Website Down Alert: {target.label}"
    rows = [
        ("URL", target.url),
        ("Name", target.name or "N/A"),
        ("Error", result.error_message or "Unknown error"),
        ("Status Code", str(result.status_code) if result.status_code else "N/A"),
        ("Time", _format_time(result.checked_at)),
        ("Current Uptime", f"{target.uptime:.1f}%"),
    ]
    footer = (
        "This is an automated alert from your URL monitoring system. "
        "Please check the website and resolve any issues as soon as possible."
    )
    return subject, *_render("🚨 Website Down Alert", "#dc2626", "#fee2e2", rows, footer)


def build_recovery_message(target: MonitoredTarget, result: CheckResult) -> tuple[str, str, str]:
    """Build the recovery email.

    Returns:
        Tuple of (subject, plain_text_body, html_body)
    """
    subject = f"✅ Website Recovery: {target.label}"
    rows = [
        ("URL", target.url),
        ("Name", target.name or "N/A"),
        ("Response Time", f"{result.response_time_ms}ms"),
        ("Status Code", str(result.status_code) if result.status_code else "N/A"),
        ("Recovery Time", _format_time(result.checked_at)),
        ("Current Uptime", f"{target.uptime:.1f}%"),
    ]
    footer = "Your website is now back online and responding normally."
    return subject, *_render("✅ Website Recovery", "#16a34a", "#dcfce7", rows, footer)


def build_test_message(sent_at: datetime) -> tuple[str, str, str]:
    """Build the test email.

    Returns:
        Tuple of (subject, plain_text_body, html_body)
    """
    rows = [("Time", _format_time(sent_at))]
    footer = "Email configuration is working correctly!"
    return "Test Email from URL Monitor", *_render("📧 Test Email", "#2563eb", "#eff6ff", rows, footer)


def _render(title: str, color: str, background: str, rows: list[tuple[str, str]], footer: str) -> tuple[str, str]:
    """Render plain-text and HTML bodies from a title and label/value rows."""
    lines = [title, ""]
    lines.extend(f"{label}: {value}" for label, value in rows)
    lines.extend(["", footer])
    body_text = "\n".join(lines)

    html_rows = "\n".join(
        f'        <p style="margin: 0 0 12px 0;"><strong>{html.escape(label)}:</strong> {html.escape(value)}</p>'
        for label, value in rows
    )
    body_html = f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
</head>
<body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <div style="background-color: {background}; border-radius: 8px; padding: 20px; margin-bottom: 20px;">
        <h2 style="color: {color}; margin: 0 0 16px 0;">{html.escape(title)}</h2>
{html_rows}
    </div>
    <p style="color: #6b7280; font-size: 14px;">{html.escape(footer)}</p>
</body>
</html>"""
    return body_text, body_html


class Notifier:
    """Sends alerts using the email settings held in the store, plus optional webhooks.

    Alert outcomes are appended to the store's error log. Downtime and
    recovery failures are logged and swallowed; test sends raise.
    """

    def __init__(
        self,
        store: Store,
        mail: MailConfig | None = None,
        webhooks: list[WebhookConfig] | None = None,
        max_retries: int = 3,
        retry_delay: int = 2,
    ) -> None:
        """Initialize notifier.

        Args:
            store: Store holding email settings and receiving outcome log entries.
            mail: SMTP transport options.
            webhooks: Webhook endpoints notified alongside email.
            max_retries: Maximum number of retry attempts for failed webhooks.
            retry_delay: Base delay in seconds between retries (increases exponentially).
        """
        self._store = store
        self._mail = mail or MailConfig()
        self._webhooks = webhooks or []
        self._max_retries = max_retries
        self._retry_delay = retry_delay

    def _active_settings(self) -> EmailSettings | None:
        settings = self._store.get_email_settings()
        if settings is None or not settings.is_enabled:
            logger.debug("Email settings not found or disabled")
            return None
        return settings

    def send_downtime(self, target: MonitoredTarget, result: CheckResult) -> None:
        """Send downtime alerts for a target that just went offline."""
        self._send_webhooks("url_down", target, result)

        settings = self._active_settings()
        if settings is None:
            return

        subject, body_text, body_html = build_downtime_message(target, result)
        try:
            self._deliver(settings, subject, body_text, body_html)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send downtime alert for %s: %s", target.label, e)
            self._store.add_error_log(
                target_id=target.id,
                url=target.url,
                error_kind=ErrorKind.EMAIL_ALERT_FAILED,
                error_message=f"SMTP error when alerting for {target.label}: {e}",
            )
            return

        logger.info("Downtime alert sent for %s to %s", target.label, ", ".join(settings.recipients))
        self._store.add_error_log(
            target_id=target.id,
            url=target.url,
            error_kind=ErrorKind.EMAIL_ALERT_SUCCESS,
            error_message=f"Downtime alert sent for {target.label}",
        )

    def send_recovery(self, target: MonitoredTarget, result: CheckResult) -> None:
        """Send recovery alerts for a target that came back online."""
        self._send_webhooks("url_up", target, result)

        settings = self._active_settings()
        if settings is None:
            return

        subject, body_text, body_html = build_recovery_message(target, result)
        try:
            self._deliver(settings, subject, body_text, body_html)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send recovery alert for %s: %s", target.label, e)
            self._store.add_error_log(
                target_id=target.id,
                url=target.url,
                error_kind=ErrorKind.EMAIL_RECOVERY_FAILED,
                error_message=f"SMTP error when sending recovery alert for {target.label}: {e}",
            )
            return

        logger.info("Recovery alert sent for %s to %s", target.label, ", ".join(settings.recipients))
        self._store.add_error_log(
            target_id=target.id,
            url=target.url,
            error_kind=ErrorKind.EMAIL_RECOVERY_SUCCESS,
            error_message=f"Recovery alert sent for {target.label}",
        )

    def send_test(self) -> bool:
        """Send a test email using the stored settings.

        Returns:
            True if the email was sent, False if email is not configured or disabled.

        Raises:
            NotificationError: If the SMTP transport fails.
        """
        settings = self._active_settings()
        if settings is None:
            return False

        sent_at = datetime.now(UTC)
        subject, body_text, body_html = build_test_message(sent_at)
        try:
            self._deliver(settings, subject, body_text, body_html)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Test email failed: %s", e)
            self._store.add_error_log(
                target_id=None,
                url="",
                error_kind=ErrorKind.EMAIL_TEST_FAILED,
                error_message=f"SMTP error: {e}",
            )
            raise NotificationError(f"Failed to send test email: {e}") from e

        recipients = ", ".join(settings.recipients)
        logger.info("Test email sent successfully to %s", recipients)
        self._store.add_error_log(
            target_id=None,
            url="",
            error_kind=ErrorKind.EMAIL_TEST_SUCCESS,
            error_message=f"Test email sent successfully to {recipients}",
        )
        self._store.record_email_test(sent_at)
        return True

    def _deliver(self, settings: EmailSettings, subject: str, body_text: str, body_html: str) -> None:
        """Send one message over SMTP.

        Raises:
            smtplib.SMTPException, OSError: If the transport fails.
        """
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = settings.from_email
        msg["To"] = ", ".join(settings.recipients)

        msg.attach(MIMEText(body_text, "plain"))
        msg.attach(MIMEText(body_html, "html"))

        if settings.smtp_port == SMTPS_PORT:
            server = smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port, timeout=self._mail.timeout)
        else:
            server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=self._mail.timeout)

        try:
            if settings.smtp_port != SMTPS_PORT and self._mail.use_tls:
                server.starttls()

            password = self._mail.password_override or settings.password
            if settings.username and password:
                server.login(settings.username, password)

            server.sendmail(settings.from_email, settings.recipients, msg.as_string())
        finally:
            try:
                server.quit()
            except (smtplib.SMTPException, OSError):
                server.close()

    def _send_webhooks(self, event: str, target: MonitoredTarget, result: CheckResult) -> None:
        """Post the event to every enabled webhook subscribed to it."""
        is_failure = event == "url_down"
        for webhook in self._webhooks:
            if not webhook.enabled:
                continue
            if is_failure and not webhook.on_failure:
                continue
            if not is_failure and not webhook.on_recovery:
                continue
            self._send_webhook(webhook, self._build_payload(event, target, result))

    def _build_payload(self, event: str, target: MonitoredTarget, result: CheckResult) -> dict:
        """Build the webhook payload."""
        return {
            "event": event,
            "target": {
                "id": target.id,
                "name": target.name,
                "url": target.url,
                "uptime": round(target.uptime, 2),
            },
            "status": {
                "code": result.status_code,
                "online": result.is_online,
                "response_time_ms": result.response_time_ms,
                "error_kind": result.error_kind,
                "error": result.error_message,
                "timestamp": result.checked_at.isoformat(),
            },
        }

    def _send_webhook(self, webhook: WebhookConfig, payload: dict) -> None:
        """Send a webhook alert (with retries)."""
        retry_count = 0

        while retry_count <= self._max_retries:
            try:
                response = requests.post(webhook.url, json=payload, timeout=10)
                response.raise_for_status()

                logger.info("Webhook %s sent successfully to %s", payload["event"], webhook.url)
                return

            except requests.RequestException as e:
                retry_count += 1
                if retry_count <= self._max_retries:
                    delay = self._retry_delay * (2 ** (retry_count - 1))
                    logger.warning(
                        "Webhook failed for %s (attempt %d/%d, retrying in %ds): %s",
                        webhook.url,
                        retry_count,
                        self._max_retries + 1,
                        delay,
                        e,
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        "Webhook failed for %s after %d attempts: %s",
                        webhook.url,
                        retry_count,
                        e,
                    )
