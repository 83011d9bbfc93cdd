"""Email transports used by the notification dispatcher."""
import asyncio
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
import structlog
from ..config import Settings, get_settings
from ..errors import HelpdeskError

log = structlog.get_logger()


class EmailDeliveryError(HelpdeskError):
    """The transport could not hand the message to the mail server."""

    kind = "EmailDeliveryFailed"


class EmailTransport(ABC):
    """Sends one plain-text email."""

    @abstractmethod
    async def send(self, to: str, subject: str, body: str) -> None:
        """
        Deliver a message.

        Raises:
            EmailDeliveryError: If the message could not be delivered
        """
        pass


class LogEmailTransport(EmailTransport):
    """Writes emails to the log instead of sending them."""

    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []

    async def send(self, to: str, subject: str, body: str) -> None:
        self.sent.append((to, subject, body))
        log.info("email.logged", to=to, subject=subject)


class SmtpEmailTransport(EmailTransport):
    """Sends emails through an SMTP relay."""

    def __init__(self, host: str, port: int = 25, sender: str = "support@helpdesk.local", timeout: float = 10.0):
        self.host = host
        self.port = port
        self.sender = sender
        self.timeout = timeout

    async def send(self, to: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        try:
            await asyncio.to_thread(self._send_blocking, message)
        except (smtplib.SMTPException, OSError) as e:
            log.warning("email.smtp_failed", to=to, host=self.host, error=str(e))
            raise EmailDeliveryError(f"SMTP delivery failed: {e}", to=to) from e
        log.info("email.sent", to=to, subject=subject)

    def _send_blocking(self, message: EmailMessage):
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            smtp.send_message(message)


def create_email_transport(settings: Settings | None = None) -> EmailTransport:
    settings = settings or get_settings()
    if settings.EMAIL_TRANSPORT == "smtp":
        return SmtpEmailTransport(settings.SMTP_HOST, settings.SMTP_PORT, settings.SMTP_SENDER)
    return LogEmailTransport()
