"""Notification channels.

Every channel implements ``send(notification, subject, body, *, issue=None)``
and raises :class:`~metronome.core.exceptions.ChannelError` when delivery
fails. Channels never retry.

Classes:
    NotificationSender: Channel protocol
    EmailChannel: SMTP delivery through aiosmtplib
    SmsChannel: HTTP SMS gateway delivery through aiohttp
    WebhookChannel: JSON POST through aiohttp
    LogChannel: Structured log warning
"""

import asyncio
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable

import aiohttp
import aiosmtplib

from ..config.models import ChannelSettings, Notification, SmsSettings, SmtpSettings, WebhookSettings
from ..core.exceptions import ChannelError, ErrorCodes
from ..core.types import NotificationChannel
from ..logging import get_logger
from ..monitoring.models import Issue

SessionFactory = Callable[[], aiohttp.ClientSession]


@runtime_checkable
class NotificationSender(Protocol):
    """A notification channel."""

    channel: NotificationChannel

    async def send(
        self, notification: Notification, subject: str, body: str, *, issue: Optional[Issue] = None
    ) -> None:
        """Deliver one notification.

        Raises:
            ChannelError: If delivery fails
        """
        ...


def _delivery_error(channel: NotificationChannel, target: str, error: Any) -> ChannelError:
    return ChannelError(
        f"{channel.value} delivery to {target} failed: {error}",
        code=ErrorCodes.CHANNEL_DELIVERY_FAILED,
        context={"channel": channel.value, "target": target},
        cause=error if isinstance(error, BaseException) else None,
    )


class EmailChannel:
    """Sends plain-text e-mail through an SMTP relay."""

    channel = NotificationChannel.EMAIL

    def __init__(self, settings: SmtpSettings) -> None:
        self.settings = settings
        self.logger = get_logger("metronome.alerts.email")

    def build_message(self, notification: Notification, subject: str, body: str) -> MIMEMultipart:
        msg = MIMEMultipart()
        msg["From"] = self.settings.sender
        msg["To"] = notification.target
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain", "utf-8"))
        return msg

    async def send(
        self, notification: Notification, subject: str, body: str, *, issue: Optional[Issue] = None
    ) -> None:
        msg = self.build_message(notification, subject, body)
        smtp = aiosmtplib.SMTP(
            hostname=self.settings.host,
            port=self.settings.port,
            use_tls=self.settings.use_tls,
            start_tls=self.settings.start_tls,
            timeout=self.settings.timeout,
        )
        try:
            await smtp.connect()
            if self.settings.username:
                password = self.settings.password.get_secret_value() if self.settings.password else ""
                await smtp.login(self.settings.username, password)
            await smtp.send_message(msg)
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError) as e:
            raise _delivery_error(self.channel, notification.target, e) from e

        self.logger.info("Alert e-mail sent", target=notification.target, subject=subject)


class _HttpChannel:
    """Shared aiohttp POST handling."""

    channel: NotificationChannel

    def __init__(self, timeout: float, session_factory: Optional[SessionFactory] = None) -> None:
        self.timeout = timeout
        self._session_factory = session_factory or aiohttp.ClientSession

    async def _post(self, url: str, target: str, payload: Dict[str, Any], headers: Dict[str, str]) -> None:
        try:
            async with self._session_factory() as session:
                async with session.post(
                    url,
                    json=payload,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    if response.status >= 400:
                        error_text = await response.text()
                        raise _delivery_error(
                            self.channel, target, f"HTTP {response.status}: {error_text[:200]}"
                        )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise _delivery_error(self.channel, target, e) from e


class SmsChannel(_HttpChannel):
    """Sends SMS through an HTTP gateway.

    The gateway receives ``{"to", "from", "message"}`` as JSON with a
    bearer token when an API key is configured.
    """

    channel = NotificationChannel.SMS

    def __init__(self, settings: SmsSettings, *, session_factory: Optional[SessionFactory] = None) -> None:
        super().__init__(settings.timeout, session_factory)
        self.settings = settings
        self.logger = get_logger("metronome.alerts.sms")

    async def send(
        self, notification: Notification, subject: str, body: str, *, issue: Optional[Issue] = None
    ) -> None:
        headers: Dict[str, str] = {}
        if self.settings.api_key is not None:
            headers["Authorization"] = f"Bearer {self.settings.api_key.get_secret_value()}"
        payload = {"to": notification.target, "from": self.settings.sender, "message": body}
        await self._post(self.settings.gateway_url, notification.target, payload, headers)
        self.logger.info("Alert SMS sent", target=notification.target)


class WebhookChannel(_HttpChannel):
    """POSTs the alert as JSON to the notification target URL."""

    channel = NotificationChannel.WEBHOOK

    def __init__(
        self,
        settings: Optional[WebhookSettings] = None,
        *,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        settings = settings or WebhookSettings()
        super().__init__(settings.timeout, session_factory)
        self.settings = settings
        self.logger = get_logger("metronome.alerts.webhook")

    async def send(
        self, notification: Notification, subject: str, body: str, *, issue: Optional[Issue] = None
    ) -> None:
        payload: Dict[str, Any] = {"subject": subject, "body": body}
        if issue is not None:
            payload["issue"] = issue.to_dict()
        await self._post(notification.target, notification.target, payload, dict(self.settings.headers))
        self.logger.info("Alert webhook delivered", target=notification.target)


class LogChannel:
    """Writes the alert as a structured warning."""

    channel = NotificationChannel.LOG

    def __init__(self) -> None:
        self.logger = get_logger("metronome.alerts.log")

    async def send(
        self, notification: Notification, subject: str, body: str, *, issue: Optional[Issue] = None
    ) -> None:
        self.logger.warning(
            f"ALERT: {subject}",
            target=notification.target or None,
            body=body,
            database=issue.database_name if issue else None,
            affected_object=issue.affected_object if issue else None,
        )


def build_channels(settings: ChannelSettings) -> Dict[NotificationChannel, NotificationSender]:
    """Create the channels ``settings`` configures.

    Log and webhook channels are always available; e-mail and SMS need
    their settings.
    """
    channels: Dict[NotificationChannel, NotificationSender] = {
        NotificationChannel.LOG: LogChannel(),
        NotificationChannel.WEBHOOK: WebhookChannel(settings.webhook),
    }
    if settings.smtp is not None:
        channels[NotificationChannel.EMAIL] = EmailChannel(settings.smtp)
    if settings.sms is not None:
        channels[NotificationChannel.SMS] = SmsChannel(settings.sms)
    return channels
