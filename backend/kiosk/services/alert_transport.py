# Overview: Alert transports for the notification dispatcher (SMTP and log-only).

from __future__ import annotations

import logging
import smtplib
from contextlib import contextmanager
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText


CHANNEL_NOTIFICATION = "notification"
CHANNEL_ESCALATION = "escalation"


class AlertDeliveryError(RuntimeError):
    """Transport-level failure (connection refused, auth rejected, timeout)."""


@dataclass(frozen=True)
class AlertMessage:
    subject: str
    body: str
    severity: str = "warning"
    product_id: int | None = None
    metadata: dict = field(default_factory=dict)


class AlertTransport:
    """
    Capability used by the dispatcher: send(message) -> bool.

    False means the transport declined to deliver (e.g., nobody to send to).
    Infrastructure failures raise AlertDeliveryError instead so the reason
    ends up in the delivery log.
    """
    name = "abstract"

    def send(self, message: AlertMessage) -> bool:
        raise NotImplementedError


class LogAlertTransport(AlertTransport):
    """Development transport: writes the alert to the application log."""
    name = "log"

    def __init__(self, channel: str = CHANNEL_NOTIFICATION, logger: logging.Logger | None = None):
        self.channel = channel
        self.logger = logger or logging.getLogger("kiosk.alerts")

    def send(self, message: AlertMessage) -> bool:
        level = logging.ERROR if message.severity == "critical" else logging.WARNING
        self.logger.log(
            level,
            "[%s] %s\n%s",
            self.channel,
            message.subject,
            message.body,
            extra={"product_id": message.product_id, "severity": message.severity},
        )
        return True


class SmtpAlertTransport(AlertTransport):
    """Plain SMTP delivery to a fixed recipient list."""
    name = "smtp"

    def __init__(
        self,
        *,
        host: str,
        port: int,
        sender: str,
        recipients: list[str],
        username: str | None = None,
        password: str | None = None,
        use_ssl: bool = False,
        timeout: int = 10,
    ):
        self.host = host
        self.port = port
        self.sender = sender
        self.recipients = list(recipients)
        self.username = username
        self.password = password
        self.use_ssl = use_ssl
        self.timeout = timeout

    @contextmanager
    def _connection(self):
        server = None
        try:
            if self.use_ssl:
                server = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
            else:
                server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
                server.starttls()
            if self.username:
                server.login(self.username, self.password or "")
            yield server
        finally:
            if server is not None:
                try:
                    server.quit()
                except (smtplib.SMTPException, OSError) as exc:
                    logging.getLogger("kiosk.alerts").warning("Error closing SMTP connection: %s", exc)

    def _build_message(self, message: AlertMessage) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["From"] = self.sender
        msg["To"] = ", ".join(self.recipients)
        msg["Subject"] = message.subject
        msg.attach(MIMEText(message.body or "", "plain"))
        return msg

    def send(self, message: AlertMessage) -> bool:
        if not self.recipients:
            return False
        mime = self._build_message(message)
        try:
            with self._connection() as server:
                server.sendmail(self.sender, self.recipients, mime.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            raise AlertDeliveryError(f"SMTP delivery failed: {exc}") from exc
        return True


def build_transport(config, channel: str, logger: logging.Logger | None = None) -> AlertTransport:
    """
    Transport for a channel from app config.

    The escalation channel reads its own transport and recipient settings so
    it does not share a failure mode with ordinary alerts by accident.
    """
    if channel == CHANNEL_ESCALATION:
        kind = config.get("ESCALATION_TRANSPORT", "log")
        recipients = config.get("ESCALATION_RECIPIENTS") or []
    else:
        kind = config.get("NOTIFICATION_TRANSPORT", "log")
        recipients = config.get("NOTIFICATION_RECIPIENTS") or []

    if kind == "smtp":
        host = config.get("SMTP_HOST")
        if not host:
            raise ValueError("SMTP_HOST is required for the smtp transport")
        return SmtpAlertTransport(
            host=host,
            port=int(config.get("SMTP_PORT", 587)),
            sender=config.get("SMTP_FROM", "alerts@kiosk.local"),
            recipients=recipients,
            username=config.get("SMTP_USER"),
            password=config.get("SMTP_PASSWORD"),
            use_ssl=bool(config.get("SMTP_USE_SSL", False)),
            timeout=int(config.get("SMTP_TIMEOUT_SECONDS", 10)),
        )
    if kind == "log":
        return LogAlertTransport(channel=channel, logger=logger)
    raise ValueError(f"Unknown alert transport: {kind}")
