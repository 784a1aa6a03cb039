# src/infrastructure/notifications/mailer.py

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
import logging
import smtplib
from typing import Sequence

from src.infrastructure import config

logger = logging.getLogger(__name__)


def format_amount(amount_cents: int, currency: str) -> str:
    return f"{amount_cents / 100:.2f} {currency}"


class Mailer(ABC):
    """
    Customer notifications. Subclasses only decide how a message leaves the
    process; subjects and bodies are built here.

    send_email returns False instead of raising, so callers can treat
    e-mail as best-effort.
    """

    @abstractmethod
    def send_email(self, to: str, subject: str, body: str) -> bool:
        raise NotImplementedError

    def send_order_confirmation(
        self,
        to: str,
        customer_name: str,
        order_id: str,
        amount_cents: int,
        currency: str,
        tickets: Sequence[dict],
    ) -> bool:
        lines = "\n".join(
            f"    {ticket['ticket_number']}  row {ticket['row']} seat {ticket['seat']}"
            + ("  (wheelchair place)" if ticket.get("wheelchair_access") else "")
            for ticket in tickets
        )
        body = f"""
Hello {customer_name},

Thank you for your order {order_id[:8]}. Your payment of {format_amount(amount_cents, currency)} was received.

Your tickets:
{lines}

Show the QR code of each ticket at the entrance.
"""
        return self.send_email(to, f"Order confirmation {order_id[:8]}", body.strip())

    def send_payment_queued(
        self,
        to: str,
        customer_name: str,
        order_id: str,
        amount_cents: int,
        currency: str,
    ) -> bool:
        body = f"""
Hello {customer_name},

Your seats for order {order_id[:8]} are reserved, but our payment provider could not be reached.
We will e-mail you a payment link for {format_amount(amount_cents, currency)} as soon as it is available.
"""
        return self.send_email(to, f"Your order {order_id[:8]} is reserved", body.strip())

    def send_payment_ready(
        self,
        to: str,
        customer_name: str,
        order_id: str,
        amount_cents: int,
        currency: str,
        payment_url: str,
    ) -> bool:
        body = f"""
Hello {customer_name},

Your payment link for order {order_id[:8]} is ready.
Please pay {format_amount(amount_cents, currency)} here:

    {payment_url}
"""
        return self.send_email(to, f"Complete the payment for order {order_id[:8]}", body.strip())

    def send_manual_payment_required(
        self,
        to: str,
        customer_name: str,
        order_id: str,
        amount_cents: int,
        currency: str,
    ) -> bool:
        body = f"""
Hello {customer_name},

We were unable to create a payment for order {order_id[:8]} ({format_amount(amount_cents, currency)}).
Please contact the box office so we can arrange the payment with you.
"""
        return self.send_email(to, f"Action needed for order {order_id[:8]}", body.strip())


class SmtpMailer(Mailer):

    def __init__(
        self,
        host: str,
        port: int,
        username: str | None,
        password: str | None,
        sender: str,
        use_tls: bool = True,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.use_tls = use_tls

    def send_email(self, to: str, subject: str, body: str) -> bool:
        msg = MIMEMultipart()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        try:
            with smtplib.SMTP(self.host, self.port, timeout=10) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.sendmail(self.sender, [to], msg.as_string())
            return True
        except (smtplib.SMTPException, OSError):
            logger.exception("Failed to send e-mail %r to %s", subject, to)
            return False


class ConsoleMailer(Mailer):
    """Logs messages instead of sending them and keeps them for inspection."""

    def __init__(self):
        self.sent_emails: list[dict] = []

    def send_email(self, to: str, subject: str, body: str) -> bool:
        self.sent_emails.append(
            {
                "to": to,
                "subject": subject,
                "body": body,
                "sent_at": datetime.now(timezone.utc),
            }
        )
        logger.info("E-mail to %s: %s\n%s", to, subject, body)
        return True


_console_mailer = ConsoleMailer()


def get_mailer() -> Mailer:
    if config.EMAIL_BACKEND == "smtp":
        return SmtpMailer(
            host=config.EMAIL_HOST,
            port=config.EMAIL_PORT,
            username=config.EMAIL_USER,
            password=config.EMAIL_PASSWORD,
            sender=config.EMAIL_FROM,
            use_tls=config.EMAIL_USE_TLS,
        )
    return _console_mailer
