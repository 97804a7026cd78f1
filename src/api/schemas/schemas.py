from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.infrastructure.clients.backend import EmailSettings


class _CamelModel(BaseModel):
    # The booking pages speak camelCase.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InitiatePaymentRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=20, pattern=r"^[A-Za-z0-9]+$")
    amount: Decimal = Field(gt=0, decimal_places=2)
    mobile_number: str | None = None
    booking: dict = Field(default_factory=dict)


class InitiatePaymentResponse(BaseModel):
    merchant_transaction_id: str
    status: str
    success: bool
    code: str | None = None
    redirect_url: str | None = None


class PaymentStatusRequest(_CamelModel):
    transaction_id: str
    attempt: int = Field(default=1, ge=1)


class PaymentStatusResponse(_CamelModel):
    transaction_id: str
    status: Literal["SUCCESS", "PENDING", "FAILED"]
    code: str | None = None
    message: str | None = None
    booking_created: bool = False
    booking_pending: bool = False
    booking_id: int | None = None
    booking_ref: str | None = None
    retry_after_seconds: float | None = None
    poll_exhausted: bool = False
    data: dict | None = None


class PaymentCallbackRequest(BaseModel):
    response: str = Field(min_length=1)


class PaymentCallbackResponse(BaseModel):
    success: bool
    merchant_transaction_id: str
    status: str
    duplicate: bool = False
    booking_ref: str | None = None


class EmailAttachmentIn(BaseModel):
    filename: str
    content_base64: str
    mime_type: str = "application/octet-stream"
    content_id: str | None = None


class SendEmailRequest(BaseModel):
    to: str = Field(min_length=3)
    subject: str
    html: str
    settings: EmailSettings | None = None
    attachments: list[EmailAttachmentIn] = Field(default_factory=list)


class SendEmailResponse(BaseModel):
    success: bool
    message_id: str | None = None


class NotificationAttemptResponse(BaseModel):
    channel: str
    stage: str
    outcome: str | None = None
    message_id: str | None = None
    error: str | None = None
    error_type: str | None = None
    degraded: bool = False


class DispatchReportResponse(BaseModel):
    booking_ref: str
    whatsapp: NotificationAttemptResponse
    email: NotificationAttemptResponse
