import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Header

from src.api.deps import (
    get_backend,
    get_callback_service,
    get_dispatcher,
    get_initiation_service,
    get_reconciliation_service,
)
from src.api.errors import http_error
from src.api.schemas.schemas import (
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    PaymentCallbackRequest,
    PaymentCallbackResponse,
    PaymentStatusRequest,
    PaymentStatusResponse,
)
from src.application.notification_service import NotificationDispatcher
from src.application.payment_service import PaymentInitiationService
from src.application.reconciliation_service import (
    CallbackService,
    ReconciliationService,
    notify_booking,
)
from src.domain.exceptions import NibogPaymentsError
from src.infrastructure.clients.backend import NibogBackendClient

router = APIRouter(prefix="/payments", tags=["payments"])
logger = logging.getLogger(__name__)


def _redirect_url(response: dict) -> str | None:
    data = response.get("data") if isinstance(response.get("data"), dict) else {}
    instrument = data.get("instrumentResponse") or {}
    return (instrument.get("redirectInfo") or {}).get("url")


@router.post("/phonepe-initiate", response_model=InitiatePaymentResponse)
async def initiate_payment(
    request: InitiatePaymentRequest,
    service: PaymentInitiationService = Depends(get_initiation_service),
):
    amount_paise = int((request.amount * 100).to_integral_value())
    try:
        transaction, response = await service.initiate(
            user_id=request.user_id,
            amount_paise=amount_paise,
            mobile_number=request.mobile_number,
            booking_payload=request.booking,
        )
    except NibogPaymentsError as exc:
        raise http_error(exc) from exc

    return InitiatePaymentResponse(
        merchant_transaction_id=transaction.merchant_transaction_id,
        status=transaction.status.value,
        success=bool(response.get("success")),
        code=response.get("code"),
        redirect_url=_redirect_url(response),
    )


@router.post("/phonepe-status", response_model=PaymentStatusResponse)
async def payment_status(
    request: PaymentStatusRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    try:
        confirmation = await service.confirm(request.transaction_id, request.attempt)
    except NibogPaymentsError as exc:
        raise http_error(exc) from exc

    data = confirmation.raw.get("data")
    return PaymentStatusResponse(
        transaction_id=confirmation.transaction_id,
        status=confirmation.status.value,
        code=confirmation.code,
        message=confirmation.message,
        booking_created=confirmation.booking_created,
        booking_pending=confirmation.booking_pending,
        booking_id=confirmation.booking_id,
        booking_ref=confirmation.booking_ref,
        retry_after_seconds=confirmation.retry_after_seconds,
        poll_exhausted=confirmation.poll_exhausted,
        data=data if isinstance(data, dict) else None,
    )


@router.post("/phonepe-callback", response_model=PaymentCallbackResponse)
async def payment_callback(
    request: PaymentCallbackRequest,
    background_tasks: BackgroundTasks,
    x_verify: str | None = Header(default=None, alias="X-VERIFY"),
    service: CallbackService = Depends(get_callback_service),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    backend: NibogBackendClient = Depends(get_backend),
):
    try:
        result = await service.handle(request.response, x_verify)
    except NibogPaymentsError as exc:
        raise http_error(exc) from exc

    if result.should_notify:
        logger.info("Scheduling confirmations for booking %s", result.booking_ref)
        background_tasks.add_task(notify_booking, dispatcher, backend, result.booking_ref)

    return PaymentCallbackResponse(
        success=True,
        merchant_transaction_id=result.merchant_transaction_id,
        status=result.status.value,
        duplicate=result.duplicate,
        booking_ref=result.booking_ref,
    )
