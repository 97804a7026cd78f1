# src/infrastructure/clients/email.py

import asyncio
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Callable

from starlette.concurrency import run_in_threadpool

from src.core.config import Settings
from src.domain.exceptions import InvalidInput, NotificationsDisabled, ProviderUnavailable
from src.infrastructure.clients.backend import EmailSettings

logger = logging.getLogger("mail")

# Retrying cannot change the answer to these.
PERMANENT_SMTP_ERRORS = (
    smtplib.SMTPAuthenticationError,
    smtplib.SMTPRecipientsRefused,
    smtplib.SMTPSenderRefused,
    smtplib.SMTPDataError,
    smtplib.SMTPNotSupportedError,
)


@dataclass(frozen=True)
class EmailAttachment:
    filename: str
    content: bytes
    mime_type: str = "application/octet-stream"
    # Set for inline parts referenced from the HTML as cid:<content_id>.
    content_id: str | None = None


def build_message(
    email_settings: EmailSettings,
    to: str,
    subject: str,
    html: str,
    attachments: list[EmailAttachment] | None = None,
    text: str | None = None,
) -> EmailMessage:
    if not to or "@" not in to:
        raise InvalidInput(f"Invalid recipient address: {to!r}")

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = formataddr((email_settings.from_name or "", email_settings.from_email))
    msg["To"] = to
    msg["Message-ID"] = make_msgid(domain=email_settings.from_email.split("@")[-1])

    msg.set_content(text or "Please view this message in an HTML capable mail client.")
    msg.add_alternative(html, subtype="html")

    html_part = msg.get_payload()[-1]
    for attachment in attachments or []:
        maintype, _, subtype = attachment.mime_type.partition("/")
        if attachment.content_id:
            # Inline images belong to the HTML alternative.
            html_part.add_related(
                attachment.content,
                maintype=maintype,
                subtype=subtype,
                cid=f"<{attachment.content_id}>",
                filename=attachment.filename,
            )
        else:
            msg.add_attachment(
                attachment.content,
                maintype=maintype,
                subtype=subtype,
                filename=attachment.filename,
            )
    return msg


def deliver_via_smtp(message: EmailMessage, email_settings: EmailSettings, timeout: float) -> None:
    smtp_class = smtplib.SMTP_SSL if email_settings.use_ssl else smtplib.SMTP
    with smtp_class(email_settings.smtp_host, email_settings.smtp_port, timeout=timeout) as smtp:
        if not email_settings.use_ssl:
            smtp.starttls()
        if email_settings.smtp_username:
            smtp.login(email_settings.smtp_username, email_settings.smtp_password or "")
        smtp.send_message(message)


class SmtpEmailSender:
    """
    Sends HTML mail with attachments over SMTP.
    The blocking SMTP conversation runs in the thread pool.
    """

    def __init__(
        self,
        settings: Settings,
        transport: Callable[[EmailMessage, EmailSettings, float], None] = deliver_via_smtp,
    ):
        self.settings = settings
        self.transport = transport

    def env_email_settings(self) -> EmailSettings | None:
        if not self.settings.smtp_host:
            return None
        return EmailSettings(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_username=self.settings.smtp_username or None,
            smtp_password=self.settings.smtp_password or None,
            from_email=self.settings.email_from or self.settings.smtp_username,
            from_name=self.settings.email_from_name,
            use_ssl=self.settings.smtp_use_ssl,
        )

    async def send(
        self,
        email_settings: EmailSettings | None,
        to: str,
        subject: str,
        html: str,
        attachments: list[EmailAttachment] | None = None,
    ) -> str:
        """Send one message and return its Message-ID."""
        if not self.settings.email_enabled:
            raise NotificationsDisabled("Email notifications are disabled")

        email_settings = email_settings or self.env_email_settings()
        if email_settings is None:
            raise ProviderUnavailable("No SMTP settings configured")

        message = build_message(email_settings, to, subject, html, attachments)

        attempts = self.settings.notification_max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                await run_in_threadpool(
                    self.transport,
                    message,
                    email_settings,
                    self.settings.notification_timeout_seconds,
                )
                logger.info("Email sent: to=%s subject=%s", to, subject)
                return message["Message-ID"]
            except PERMANENT_SMTP_ERRORS as exc:
                logger.exception("Email rejected by SMTP server: to=%s", to)
                raise ProviderUnavailable(f"SMTP server rejected the message: {exc}") from exc
            except (smtplib.SMTPException, OSError) as exc:
                if attempt == attempts:
                    logger.exception("Email FAILED after %s attempts: to=%s", attempts, to)
                    raise ProviderUnavailable(f"SMTP delivery failed: {exc}") from exc
                delay = 0.5 * 2 ** (attempt - 1)
                logger.warning(
                    "Email send failed (attempt %s/%s): %s. Retrying in %.1f seconds...",
                    attempt,
                    attempts,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)
        raise ProviderUnavailable("SMTP delivery failed")
