"""Alert transports: SMTP email and Slack incoming webhook.

Unconfigured channels are skipped silently. Transport failures are logged
and swallowed so a broken mail relay never stops the monitor loop.
"""

import logging
from email.message import EmailMessage

import aiosmtplib
import httpx

from spotfleet.app.config import NotifyConfig
from spotfleet.app.metrics.collector import NOTIFICATIONS_TOTAL
from spotfleet.core.domain.fleet import AlertKind
from spotfleet.core.interfaces.notify import NotificationChannel
from spotfleet.core.logging_schema import LogEvent
from spotfleet.core.retryable import classify_error, with_retry

logger = logging.getLogger(__name__)


class EmailChannel(NotificationChannel):
    """SMTP with STARTTLS and login."""

    name = "email"

    def __init__(self, config: NotifyConfig) -> None:
        self._config = config

    @property
    def configured(self) -> bool:
        return bool(self._config.alert_email)

    @property
    def _smtp_ready(self) -> bool:
        return bool(self._config.smtp_host and self._config.smtp_user and self._config.smtp_pass)

    async def send(self, subject: str, body: str) -> None:
        if not self._smtp_ready:
            logger.info(
                "Email alert skipped: SMTP not fully configured",
                extra={"event": LogEvent.NOTIFY_SKIPPED, "subject": subject},
            )
            return

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self._config.smtp_from or self._config.smtp_user
        msg["To"] = self._config.alert_email
        msg.set_content(body)

        await aiosmtplib.send(
            msg,
            hostname=self._config.smtp_host,
            port=self._config.smtp_port,
            username=self._config.smtp_user,
            password=self._config.smtp_pass,
            start_tls=True,
            timeout=self._config.notify_timeout,
        )


class SlackChannel(NotificationChannel):
    """Slack incoming webhook."""

    name = "slack"

    def __init__(self, config: NotifyConfig, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self._config.slack_webhook)

    async def _post(self, text: str) -> None:
        if self._client is not None:
            response = await self._client.post(self._config.slack_webhook, json={"text": text})
            response.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=self._config.notify_timeout) as client:
            response = await client.post(self._config.slack_webhook, json={"text": text})
            response.raise_for_status()

    async def send(self, subject: str, body: str) -> None:
        await with_retry(lambda: self._post(f"{subject}: {body}"), max_retries=2)


class Notifier:
    """Fan-out to every configured channel."""

    def __init__(self, channels: list[NotificationChannel]) -> None:
        self._channels = channels

    @classmethod
    def from_config(cls, config: NotifyConfig) -> "Notifier":
        return cls([EmailChannel(config), SlackChannel(config)])

    @property
    def destinations(self) -> list[str]:
        return [c.name for c in self._channels if c.configured]

    async def send(self, kind: AlertKind, subject: str, body: str) -> int:
        """Send to all configured channels. Returns how many succeeded."""
        delivered = 0
        for channel in self._channels:
            if not channel.configured:
                continue
            try:
                await channel.send(subject, body)
            except Exception as exc:
                NOTIFICATIONS_TOTAL.labels(kind=kind.value, channel=channel.name, result="error").inc()
                logger.warning(
                    "Notification failed",
                    extra={
                        "event": LogEvent.NOTIFY_FAILED,
                        "kind": kind.value,
                        "channel": channel.name,
                        "error_class": classify_error(exc),
                        "error": str(exc),
                    },
                )
                continue
            delivered += 1
            NOTIFICATIONS_TOTAL.labels(kind=kind.value, channel=channel.name, result="sent").inc()
            logger.info(
                "Notification sent",
                extra={"event": LogEvent.NOTIFY_SENT, "kind": kind.value, "channel": channel.name},
            )
        return delivered
