import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from src.core.config import Settings
from src.domain.exceptions import (
    AttachmentGenerationFailed,
    NibogPaymentsError,
    NotificationsDisabled,
)
from src.domain.state_machine import NotificationStage, NotificationStateMachine
from src.infrastructure.clients.backend import NibogBackendClient, TicketDetails
from src.infrastructure.clients.email import EmailAttachment, SmtpEmailSender
from src.infrastructure.clients.whatsapp import (
    TemplateParameter,
    ZaptraWhatsAppClient,
    format_phone_number,
    validate_parameters,
)
from src.infrastructure.tickets.pdf import TicketArtifact, build_ticket_artifact

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"
QR_CONTENT_ID = "ticket-qr"

_templates = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
)


class NotificationChannel(str, Enum):
    WHATSAPP = "WHATSAPP"
    EMAIL = "EMAIL"


class NotificationOutcome(str, Enum):
    SENT = "SENT"
    FAILED = "FAILED"
    SKIPPED_DISABLED = "SKIPPED_DISABLED"


@dataclass
class NotificationAttempt:
    channel: NotificationChannel
    stage: NotificationStage = NotificationStage.PREPARING
    outcome: NotificationOutcome | None = None
    payload: dict = field(default_factory=dict)
    message_id: str | None = None
    error: str | None = None
    error_type: str | None = None
    degraded: bool = False

    def advance(self, stage: NotificationStage) -> None:
        NotificationStateMachine.validate_transition(self.stage, stage)
        self.stage = stage

    def sent(self, message_id: str | None) -> "NotificationAttempt":
        self.advance(NotificationStage.SENT)
        self.outcome = NotificationOutcome.SENT
        self.message_id = message_id
        return self

    def failed(self, exc: Exception) -> "NotificationAttempt":
        self.advance(NotificationStage.FAILED)
        self.outcome = NotificationOutcome.FAILED
        self.error = str(exc)
        self.error_type = type(exc).__name__
        return self

    def skipped(self, exc: NotificationsDisabled) -> "NotificationAttempt":
        # A disabled channel never starts, so it keeps its PREPARING stage.
        self.outcome = NotificationOutcome.SKIPPED_DISABLED
        self.error = str(exc)
        self.error_type = type(exc).__name__
        return self

    def as_dict(self) -> dict:
        return {
            "channel": self.channel.value,
            "stage": self.stage.value,
            "outcome": self.outcome.value if self.outcome else None,
            "message_id": self.message_id,
            "error": self.error,
            "error_type": self.error_type,
            "degraded": self.degraded,
        }


@dataclass
class DispatchReport:
    booking_ref: str
    whatsapp: NotificationAttempt
    email: NotificationAttempt

    def as_dict(self) -> dict:
        return {
            "booking_ref": self.booking_ref,
            "whatsapp": self.whatsapp.as_dict(),
            "email": self.email.as_dict(),
        }


def whatsapp_parameters(details: TicketDetails) -> list[TemplateParameter]:
    """Positional parameters of the booking confirmation template."""
    total = f"{details.total_amount:g}" if details.total_amount is not None else None
    return [
        TemplateParameter("customer_name", details.parent_name, required=True),
        TemplateParameter("event_title", details.event_title),
        TemplateParameter("event_date", details.event_date),
        TemplateParameter("venue_name", details.venue_name),
        TemplateParameter("child_name", details.child_name),
        TemplateParameter("booking_ref", details.booking_ref, required=True),
        TemplateParameter("total_amount", total, required=True),
        TemplateParameter("payment_method", details.payment_method),
    ]


def render_confirmation_email(
    details: TicketDetails,
    artifact: TicketArtifact | None,
    ticket_error: str | None = None,
) -> str:
    template = _templates.get_template("email/booking_confirmation.html")
    return template.render(
        details=details,
        ticket_attached=artifact is not None,
        qr_cid=QR_CONTENT_ID if artifact and artifact.qr_images and artifact.qr_images[0] else None,
        ticket_error=ticket_error,
    )


class NotificationDispatcher:
    """
    Sends the booking confirmation over WhatsApp and email.

    Each channel runs PREPARING -> VALIDATING -> SENDING -> SENT | FAILED on
    its own; one channel failing never rolls back or blocks the other.
    """

    def __init__(
        self,
        settings: Settings,
        whatsapp: ZaptraWhatsAppClient,
        email_sender: SmtpEmailSender,
        backend: NibogBackendClient,
    ):
        self.settings = settings
        self.whatsapp = whatsapp
        self.email_sender = email_sender
        self.backend = backend

    async def dispatch(self, details: TicketDetails) -> DispatchReport:
        artifact = None
        ticket_error = None
        try:
            artifact = await asyncio.to_thread(build_ticket_artifact, details)
        except AttachmentGenerationFailed as exc:
            ticket_error = str(exc)

        whatsapp_attempt, email_attempt = await asyncio.gather(
            self.send_whatsapp(details),
            self.send_email(details, artifact, ticket_error),
        )
        report = DispatchReport(
            booking_ref=details.booking_ref,
            whatsapp=whatsapp_attempt,
            email=email_attempt,
        )
        logger.info(
            "Notifications for %s: whatsapp=%s email=%s",
            details.booking_ref,
            whatsapp_attempt.outcome.value,
            email_attempt.outcome.value,
        )
        return report

    async def send_whatsapp(self, details: TicketDetails) -> NotificationAttempt:
        attempt = NotificationAttempt(channel=NotificationChannel.WHATSAPP)
        params = whatsapp_parameters(details)
        attempt.payload = {param.name: param.value for param in params}

        if not self.settings.whatsapp_enabled:
            return attempt.skipped(NotificationsDisabled("WhatsApp notifications are disabled"))

        try:
            attempt.advance(NotificationStage.VALIDATING)
            attempt.payload["template_data"] = validate_parameters(
                params, self.settings.whatsapp_template_param_count
            )
            attempt.payload["phone"] = format_phone_number(details.parent_phone)

            attempt.advance(NotificationStage.SENDING)
            message_id = await self.whatsapp.send_template(details.parent_phone, params)
        except NotificationsDisabled as exc:
            return attempt.skipped(exc)
        except NibogPaymentsError as exc:
            logger.error("WhatsApp confirmation for %s failed: %s", details.booking_ref, exc)
            return attempt.failed(exc)
        return attempt.sent(message_id)

    async def send_email(
        self,
        details: TicketDetails,
        artifact: TicketArtifact | None,
        ticket_error: str | None = None,
    ) -> NotificationAttempt:
        attempt = NotificationAttempt(channel=NotificationChannel.EMAIL)
        attempt.payload = {"to": details.parent_email, "booking_ref": details.booking_ref}

        if not self.settings.email_enabled:
            return attempt.skipped(NotificationsDisabled("Email notifications are disabled"))

        # Missing ticket degrades the mail to text only.
        attempt.degraded = artifact is None or bool(artifact.degraded)
        attachments: list[EmailAttachment] = []
        if artifact is not None:
            attachments.append(
                EmailAttachment(
                    filename=f"NIBOG-Ticket-{details.booking_ref}.pdf",
                    content=artifact.pdf,
                    mime_type="application/pdf",
                )
            )
            if artifact.qr_images and artifact.qr_images[0]:
                attachments.append(
                    EmailAttachment(
                        filename="ticket-qr.png",
                        content=artifact.qr_images[0],
                        mime_type="image/png",
                        content_id=QR_CONTENT_ID,
                    )
                )

        try:
            attempt.advance(NotificationStage.VALIDATING)
            html = render_confirmation_email(details, artifact, ticket_error)
            email_settings = self.email_sender.env_email_settings()
            if email_settings is None:
                email_settings = await self.backend.get_email_settings()

            attempt.advance(NotificationStage.SENDING)
            message_id = await self.email_sender.send(
                email_settings,
                to=details.parent_email or "",
                subject=f"Booking Confirmed - {details.event_title or 'NIBOG'} ({details.booking_ref})",
                html=html,
                attachments=attachments,
            )
        except NotificationsDisabled as exc:
            return attempt.skipped(exc)
        except NibogPaymentsError as exc:
            logger.error("Email confirmation for %s failed: %s", details.booking_ref, exc)
            return attempt.failed(exc)
        return attempt.sent(message_id)
