import asyncio
import logging
import smtplib
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from app.core.config import Settings

logger = logging.getLogger(__name__)


class Notifier:
    """Sends plain-text email over SMTP, or logs the message when SMTP is not configured.

    Outside production the logged message carries the full body so it can be relayed by hand.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def enabled(self) -> bool:
        return self._settings.email_enabled

    def _send_email_sync(self, to_email: str, subject: str, body: str) -> None:
        """Send email via SMTP (blocking). Raises on SMTP failure."""
        s = self._settings
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{s.from_name} <{s.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(body, "plain", "utf-8"))
        with smtplib.SMTP(s.smtp_host, s.smtp_port) as server:
            server.starttls()
            server.login(s.smtp_user, s.smtp_password)
            server.sendmail(s.from_email, [to_email], msg.as_string())

    async def send(self, to_email: str, subject: str, body: str) -> None:
        if not self.enabled:
            if self._settings.is_production:
                logger.info("Email (simulated) to %s: %s", to_email, subject)
            else:
                logger.info("Email (simulated) to %s: %s\n%s", to_email, subject, body)
            return
        await asyncio.to_thread(self._send_email_sync, to_email, subject, body)
        logger.info("Email sent to %s", to_email)


def build_booking_confirmed_message(
    service_title: str, start_utc: datetime, recipient_name: str | None = None
) -> tuple[str, str]:
    """Subject and body for a confirmed booking."""
    when = start_utc.strftime("%A, %B %d, %Y at %I:%M %p UTC")
    subject = f"Booking confirmed: {service_title}"
    greeting = f"Hi {recipient_name}," if recipient_name else "Hi there,"
    body = f"{greeting}\n\nYour booking for {service_title} on {when} is confirmed.\n"
    return subject, body


def build_booking_canceled_message(
    service_title: str, start_utc: datetime, refunded_cents: int | None
) -> tuple[str, str]:
    when = start_utc.strftime("%A, %B %d, %Y at %I:%M %p UTC")
    subject = f"Booking canceled: {service_title}"
    body = f"Your booking for {service_title} on {when} has been canceled.\n"
    if refunded_cents:
        body += f"A refund of ${refunded_cents / 100:.2f} has been issued.\n"
    return subject, body


def build_verification_code_message(code: str, site_name: str, ttl_minutes: int = 10) -> tuple[str, str]:
    subject = f"Your {site_name} verification code"
    body = f"Your {site_name} verification code is: {code}. This code expires in {ttl_minutes} minutes.\n"
    return subject, body
