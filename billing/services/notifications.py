# billing/services/notifications.py
"""
Outbound email. Delivery failures are logged and reported as ``False``;
they never propagate into ledger operations.
"""

import logging
import smtplib
from email.message import EmailMessage
from typing import Optional, Protocol, Tuple

from billing.config import Settings, settings
from billing.errors import ExternalServiceError
from billing.models.clients import ClientOut
from billing.models.invoices import InvoiceOut

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    def send(self, to: str, subject: str, body: str) -> bool:
        ...


class LoggingEmailSender:
    """Default sender for environments without SMTP: writes the mail to the log."""

    def send(self, to: str, subject: str, body: str) -> bool:
        logger.info("Email to %s: %s", to, subject)
        logger.debug("Email body for %s:\n%s", to, body)
        return True


class SmtpEmailSender:
    def __init__(self, config: Settings = settings):
        if not config.smtp_host:
            raise ValueError("SMTP_HOST is not configured")
        self.config = config

    def send(self, to: str, subject: str, body: str) -> bool:
        message = EmailMessage()
        message["From"] = self.config.smtp_sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        try:
            with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=30) as smtp:
                smtp.starttls()
                if self.config.smtp_username:
                    smtp.login(self.config.smtp_username, self.config.smtp_password or "")
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise ExternalServiceError(f"SMTP delivery to {to} failed: {exc}") from exc
        return True


def default_sender(config: Settings = settings) -> EmailSender:
    if config.smtp_host:
        return SmtpEmailSender(config)
    return LoggingEmailSender()


def deliver(sender: Optional[EmailSender], to: Optional[str], subject: str, body: str) -> Tuple[bool, Optional[str]]:
    """Send one email, returning ``(success, error_message)``."""
    if sender is None:
        return False, "No email sender configured"
    if not to:
        return False, "Recipient has no email address"
    try:
        ok = sender.send(to, subject, body)
    except Exception as exc:
        logger.warning("Email to %s failed: %s", to, exc)
        return False, str(exc)
    if not ok:
        logger.warning("Email to %s was not accepted by the sender", to)
        return False, "Sender reported failure"
    return True, None


def invoice_email(invoice: InvoiceOut, client: ClientOut, company_name: str) -> Tuple[str, str]:
    subject = f"Invoice {invoice.invoice_number} from {company_name}"
    body = (
        f"Dear {client.name},\n\n"
        f"Please find invoice {invoice.invoice_number} ({invoice.title}).\n\n"
        f"Amount due: ${invoice.balance_due:.2f}\n"
        f"Due date: {invoice.due_date.isoformat()}\n\n"
        "Please contact us if you have any questions regarding this invoice.\n\n"
        "Thank you for your business!\n"
        f"{company_name}"
    )
    return subject, body
