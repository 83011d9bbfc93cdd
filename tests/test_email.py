"""Tests for email transports."""
import smtplib
import pytest
from unittest.mock import patch
from helpdesk.config import Settings
from helpdesk.notifications.email import (
    create_email_transport,
    EmailDeliveryError,
    LogEmailTransport,
    SmtpEmailTransport,
)


@pytest.mark.asyncio
async def test_smtp_transport_sends_message():
    """Test the message is handed to the SMTP relay."""
    with patch("helpdesk.notifications.email.smtplib.SMTP") as mock_smtp_class:
        smtp = mock_smtp_class.return_value.__enter__.return_value
        transport = SmtpEmailTransport("mail.example.com", 2525, sender="desk@example.com")

        await transport.send("requester@example.com", "Status update: #T250100001", "Completed")

        mock_smtp_class.assert_called_once_with("mail.example.com", 2525, timeout=10.0)
        message = smtp.send_message.call_args[0][0]
        assert message["To"] == "requester@example.com"
        assert message["From"] == "desk@example.com"
        assert message["Subject"] == "Status update: #T250100001"


@pytest.mark.asyncio
async def test_smtp_failure_raises_delivery_error():
    with patch("helpdesk.notifications.email.smtplib.SMTP") as mock_smtp_class:
        mock_smtp_class.side_effect = smtplib.SMTPConnectError(421, "busy")
        transport = SmtpEmailTransport("mail.example.com")

        with pytest.raises(EmailDeliveryError) as exc_info:
            await transport.send("requester@example.com", "s", "b")

        assert exc_info.value.kind == "EmailDeliveryFailed"
        assert exc_info.value.details == {"to": "requester@example.com"}


def test_transport_selection():
    assert isinstance(create_email_transport(Settings(EMAIL_TRANSPORT="log")), LogEmailTransport)
    smtp = create_email_transport(Settings(EMAIL_TRANSPORT="smtp", SMTP_HOST="relay", SMTP_PORT=587))
    assert isinstance(smtp, SmtpEmailTransport)
    assert (smtp.host, smtp.port) == ("relay", 587)
