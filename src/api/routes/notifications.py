import base64
import binascii
import logging

from fastapi import APIRouter, Depends, HTTPException, status

from src.api.deps import get_backend, get_dispatcher, get_email_sender
from src.api.errors import http_error
from src.api.schemas.schemas import (
    DispatchReportResponse,
    SendEmailRequest,
    SendEmailResponse,
)
from src.application.notification_service import NotificationDispatcher
from src.domain.exceptions import NibogPaymentsError
from src.infrastructure.clients.backend import NibogBackendClient
from src.infrastructure.clients.email import EmailAttachment, SmtpEmailSender

router = APIRouter(prefix="/notifications", tags=["notifications"])
logger = logging.getLogger(__name__)


@router.post("/bookings/{booking_ref}/send", response_model=DispatchReportResponse)
async def send_booking_confirmation(
    booking_ref: str,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    backend: NibogBackendClient = Depends(get_backend),
):
    try:
        details = await backend.get_ticket_details(booking_ref)
    except NibogPaymentsError as exc:
        raise http_error(exc) from exc

    if details is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No ticket found for booking {booking_ref}",
        )

    report = await dispatcher.dispatch(details)
    return report.as_dict()


@router.post("/email", response_model=SendEmailResponse)
async def send_email(
    request: SendEmailRequest,
    email_sender: SmtpEmailSender = Depends(get_email_sender),
    backend: NibogBackendClient = Depends(get_backend),
):
    attachments = []
    for item in request.attachments:
        try:
            content = base64.b64decode(item.content_base64, validate=True)
        except (binascii.Error, ValueError):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Attachment {item.filename} is not valid base64",
            )
        attachments.append(
            EmailAttachment(
                filename=item.filename,
                content=content,
                mime_type=item.mime_type,
                content_id=item.content_id,
            )
        )

    try:
        email_settings = request.settings
        if email_settings is None and email_sender.env_email_settings() is None:
            email_settings = await backend.get_email_settings()

        message_id = await email_sender.send(
            email_settings,
            to=request.to,
            subject=request.subject,
            html=request.html,
            attachments=attachments,
        )
    except NibogPaymentsError as exc:
        raise http_error(exc) from exc

    logger.info("Generic email sent to %s", request.to)
    return SendEmailResponse(success=True, message_id=message_id)
