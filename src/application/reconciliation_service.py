import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from src.core.config import Settings
from src.domain.booking_reference import derive_booking_reference, validate_transaction_id
from src.domain.exceptions import (
    IdempotencyConflictError,
    InvalidInput,
    NibogPaymentsError,
    PaymentFailed,
    SchemaMismatch,
    TransientError,
    UnknownTransaction,
)
from src.domain.payment_status import ClassifiedStatus, StatusCheck
from src.domain.state_machine import TransactionStateMachine, TransactionStatus
from src.infrastructure.cache import ResponseCache
from src.infrastructure.clients.backend import NibogBackendClient, TicketDetails
from src.infrastructure.clients.phonepe import PhonePeClient
from src.infrastructure.repositories.transaction_repository import TransactionRepository
from src.application.booking_lookup import BookingMaterializationCheck
from src.application.notification_service import DispatchReport, NotificationDispatcher
from src.application.payment_service import PaymentStatusPoller

logger = logging.getLogger(__name__)

POLL_EXHAUSTED_CODE = "POLL_EXHAUSTED"


@dataclass
class PaymentConfirmation:
    transaction_id: str
    status: ClassifiedStatus
    code: str | None = None
    message: str | None = None
    booking_created: bool = False
    booking_pending: bool = False
    booking_id: int | None = None
    booking_ref: str | None = None
    retry_after_seconds: float | None = None
    poll_exhausted: bool = False
    raw: dict = field(default_factory=dict)


@dataclass
class CallbackResult:
    merchant_transaction_id: str
    status: TransactionStatus
    duplicate: bool = False
    booking_id: int | None = None
    booking_ref: str | None = None

    @property
    def should_notify(self) -> bool:
        return (
            not self.duplicate
            and self.status is TransactionStatus.SUCCESS
            and self.booking_ref is not None
        )


@dataclass(frozen=True)
class ClaimedTransaction:
    """Snapshot of a ledger row taken when a callback claimed it."""

    token: str
    merchant_transaction_id: str
    amount_paise: int
    booking_payload: str
    booking_id: int | None
    booking_ref: str | None


def booking_reference_for(check: StatusCheck) -> str:
    return derive_booking_reference(check.gateway_transaction_id or check.merchant_transaction_id)


class ReconciliationService:
    """
    Client-redirect path: confirm the payment, then look for the booking
    the callback writes. Never creates bookings; the only ledger write is
    settling a row the gateway reported as failed or that outlived the
    poll budget.
    """

    def __init__(
        self,
        settings: Settings,
        poller: PaymentStatusPoller,
        lookup: BookingMaterializationCheck,
        db: Session | None = None,
    ):
        self.settings = settings
        self.poller = poller
        self.lookup = lookup
        self.db = db

    def retry_after(self, attempt: int) -> float | None:
        if attempt >= self.settings.booking_poll_max_attempts:
            return None
        return self.settings.booking_poll_base_delay * 2 ** (max(attempt, 1) - 1)

    def _still_processing(self, transaction_id: str, attempt: int, **kwargs) -> PaymentConfirmation:
        retry_after = self.retry_after(attempt)
        return PaymentConfirmation(
            transaction_id=transaction_id,
            retry_after_seconds=retry_after,
            poll_exhausted=retry_after is None,
            **kwargs,
        )

    def _settle(
        self,
        transaction_id: str,
        new_status: TransactionStatus,
        provider_code: str | None,
    ) -> bool:
        TransactionStateMachine.validate_transition(TransactionStatus.PENDING, new_status)
        settled = TransactionRepository(self.db).settle_unclaimed(
            transaction_id, new_status, provider_code
        )
        self.db.commit()
        return settled

    async def settle_ledger(
        self,
        transaction_id: str,
        new_status: TransactionStatus,
        provider_code: str | None,
    ) -> bool:
        if self.db is None:
            return False
        settled = await run_in_threadpool(self._settle, transaction_id, new_status, provider_code)
        if settled:
            logger.info("Transaction %s -> %s (%s)", transaction_id, new_status.value, provider_code)
        return settled

    async def confirm(self, transaction_id: str, attempt: int = 1) -> PaymentConfirmation:
        transaction_id = validate_transaction_id(transaction_id)

        try:
            check = await self.poller.require_success(transaction_id)
        except PaymentFailed as exc:
            logger.info("Payment %s failed: %s", transaction_id, exc.code)
            failed = StatusCheck(transaction_id, ClassifiedStatus.FAILED, exc.raw)
            await self.settle_ledger(transaction_id, failed.transaction_status(), exc.code)
            return PaymentConfirmation(
                transaction_id=transaction_id,
                status=ClassifiedStatus.FAILED,
                code=exc.code,
                message=exc.message,
                raw=exc.raw,
            )
        except TransientError:
            return self._still_processing(
                transaction_id,
                attempt,
                status=ClassifiedStatus.PENDING,
                message="Payment status is not available yet. Please wait...",
            )

        if check.classified is ClassifiedStatus.PENDING:
            confirmation = self._still_processing(
                transaction_id,
                attempt,
                status=ClassifiedStatus.PENDING,
                code=check.code,
                message=check.message,
                raw=check.raw,
            )
            if confirmation.poll_exhausted:
                logger.warning(
                    "Payment %s still pending after %s polls; closing it as failed",
                    transaction_id,
                    attempt,
                )
                await self.settle_ledger(transaction_id, TransactionStatus.FAILED, POLL_EXHAUSTED_CODE)
            return confirmation

        booking_ref = booking_reference_for(check)
        try:
            found = await self.lookup.find_existing_booking(
                check.merchant_transaction_id,
                check.gateway_transaction_id,
            )
        except (TransientError, SchemaMismatch):
            logger.exception("Booking lookup failed for %s", transaction_id)
            found = None

        if found is not None and found.found:
            return PaymentConfirmation(
                transaction_id=transaction_id,
                status=ClassifiedStatus.SUCCESS,
                code=check.code,
                message="Booking created successfully by server",
                booking_created=True,
                booking_id=found.booking_id,
                booking_ref=found.booking_ref or booking_ref,
                raw=check.raw,
            )

        return self._still_processing(
            transaction_id,
            attempt,
            status=ClassifiedStatus.SUCCESS,
            code=check.code,
            message="Payment successful. Server is creating your booking...",
            booking_pending=True,
            booking_ref=booking_ref,
            raw=check.raw,
        )


class CallbackService:
    """
    Gateway server-to-server callback: the single writer of bookings.

    The ledger row is claimed with one committed conditional UPDATE before
    any backend call, so no database lock is held while awaiting. Every
    database step runs in the thread pool. A callback that finds the row
    terminal is acknowledged without side effects; one that finds it
    claimed by another callback is refused with a conflict.
    """

    def __init__(
        self,
        db: Session,
        settings: Settings,
        gateway: PhonePeClient,
        poller: PaymentStatusPoller,
        lookup: BookingMaterializationCheck,
        backend: NibogBackendClient,
        cache: ResponseCache,
    ):
        self.db = db
        self.settings = settings
        self.gateway = gateway
        self.poller = poller
        self.lookup = lookup
        self.backend = backend
        self.cache = cache
        self.transaction_repository = TransactionRepository(db)

    async def handle(self, response_b64: str, x_verify: str | None) -> CallbackResult:
        payload = self.gateway.verify_callback(response_b64, x_verify)
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        merchant_transaction_id = data.get("merchantTransactionId")
        if not merchant_transaction_id:
            raise InvalidInput("Callback payload has no merchantTransactionId")

        logger.info(
            "Callback received: txn=%s code=%s", merchant_transaction_id, payload.get("code")
        )

        # The callback body is only a hint; the status endpoint decides.
        check = await self.poller.check_status(merchant_transaction_id)
        new_status = check.transaction_status()
        if new_status is TransactionStatus.PENDING:
            return CallbackResult(merchant_transaction_id, TransactionStatus.PENDING)

        claimed = await run_in_threadpool(
            self._claim, merchant_transaction_id, str(uuid4()), new_status
        )
        if isinstance(claimed, CallbackResult):
            return claimed

        try:
            booking_id = booking_ref = None
            if new_status is TransactionStatus.SUCCESS:
                booking_id, booking_ref = await self._materialize_booking(claimed, check)
            result = await run_in_threadpool(
                self._finish, claimed, check, new_status, booking_id, booking_ref
            )
        except Exception:
            await run_in_threadpool(self._release, claimed)
            raise

        self.cache.invalidate(merchant_transaction_id)
        logger.info(
            "Transaction %s -> %s (booking=%s)",
            merchant_transaction_id,
            new_status.value,
            result.booking_ref,
        )
        return result

    # -----------------------------
    # Ledger steps (thread pool)
    # -----------------------------

    def _claim(
        self,
        merchant_transaction_id: str,
        token: str,
        gateway_status: TransactionStatus,
    ) -> ClaimedTransaction | CallbackResult:
        stale_before = datetime.now(timezone.utc) - timedelta(
            seconds=self.settings.callback_claim_ttl_seconds
        )
        won = self.transaction_repository.claim(merchant_transaction_id, token, stale_before)
        transaction = self.transaction_repository.get_by_merchant_transaction_id(
            merchant_transaction_id
        )
        if transaction is None:
            self.db.rollback()
            raise UnknownTransaction(f"No ledger row for {merchant_transaction_id}")

        if won:
            claimed = ClaimedTransaction(
                token=token,
                merchant_transaction_id=merchant_transaction_id,
                amount_paise=transaction.amount_paise,
                booking_payload=transaction.booking_payload,
                booking_id=transaction.booking_id,
                booking_ref=transaction.booking_ref,
            )
            self.db.commit()
            return claimed

        if not TransactionStateMachine.is_terminal(transaction.status):
            self.db.rollback()
            raise IdempotencyConflictError(
                f"Callback for {merchant_transaction_id} is already being processed"
            )

        if transaction.status is not gateway_status:
            logger.error(
                "Gateway reports %s for %s but the ledger row is already %s; needs manual reconciliation",
                gateway_status.value,
                merchant_transaction_id,
                transaction.status.value,
            )
        else:
            logger.info(
                "Duplicate callback for %s (already %s)",
                merchant_transaction_id,
                transaction.status.value,
            )
        duplicate = CallbackResult(
            merchant_transaction_id,
            transaction.status,
            duplicate=True,
            booking_id=transaction.booking_id,
            booking_ref=transaction.booking_ref,
        )
        self.db.commit()
        return duplicate

    def _record_booking(self, claimed: ClaimedTransaction, booking_id: int, booking_ref: str) -> None:
        # Checkpoint: a retried callback reuses this booking instead of creating another.
        recorded = self.transaction_repository.record_booking(
            claimed.merchant_transaction_id, claimed.token, booking_id, booking_ref
        )
        self.db.commit()
        if not recorded:
            raise IdempotencyConflictError(
                f"Claim on {claimed.merchant_transaction_id} was taken over"
            )

    def _finish(
        self,
        claimed: ClaimedTransaction,
        check: StatusCheck,
        new_status: TransactionStatus,
        booking_id: int | None,
        booking_ref: str | None,
    ) -> CallbackResult:
        transaction = self.transaction_repository.get_by_merchant_transaction_id(
            claimed.merchant_transaction_id, for_update=True
        )
        if transaction is None or transaction.claim_token != claimed.token:
            self.db.rollback()
            raise IdempotencyConflictError(
                f"Claim on {claimed.merchant_transaction_id} was taken over"
            )

        TransactionStateMachine.validate_transition(transaction.status, new_status)
        if booking_id is not None:
            self.transaction_repository.attach_booking(transaction, booking_id, booking_ref)
        self.transaction_repository.update_status(
            transaction,
            new_status,
            provider_code=check.code,
            gateway_transaction_id=check.gateway_transaction_id,
        )
        result = CallbackResult(
            claimed.merchant_transaction_id,
            new_status,
            booking_id=transaction.booking_id,
            booking_ref=transaction.booking_ref,
        )
        self.db.commit()
        return result

    def _release(self, claimed: ClaimedTransaction) -> None:
        self.db.rollback()
        self.transaction_repository.release_claim(claimed.merchant_transaction_id, claimed.token)
        self.db.commit()

    # -----------------------------
    # Backend writes
    # -----------------------------

    async def _materialize_booking(
        self,
        claimed: ClaimedTransaction,
        check: StatusCheck,
    ) -> tuple[int, str]:
        booking_ref = booking_reference_for(check)
        found = await self.lookup.find_existing_booking(
            claimed.merchant_transaction_id,
            check.gateway_transaction_id,
        )
        if found.found:
            return found.booking_id, found.booking_ref or booking_ref

        # A booking id on a claimed row means an earlier callback created the
        # booking but not the payment record.
        booking_id = claimed.booking_id
        if booking_id is None:
            booking = json.loads(claimed.booking_payload or "{}")
            booking.update({
                "booking_ref": booking_ref,
                "transaction_id": claimed.merchant_transaction_id,
                "payment_status": "Paid",
            })
            created = await self.backend.create_booking(booking)
            booking_id = created.booking_id
            await run_in_threadpool(self._record_booking, claimed, booking_id, booking_ref)
        else:
            booking_ref = claimed.booking_ref or booking_ref

        await self.backend.create_payment(
            booking_id=booking_id,
            merchant_transaction_id=claimed.merchant_transaction_id,
            gateway_transaction_id=check.gateway_transaction_id,
            amount=(check.amount_paise or claimed.amount_paise) / 100,
        )
        return booking_id, booking_ref


async def notify_booking(
    dispatcher: NotificationDispatcher,
    backend: NibogBackendClient,
    booking_ref: str,
) -> DispatchReport | None:
    """Load the ticket details of a booking and send both confirmations."""
    try:
        details: TicketDetails | None = await backend.get_ticket_details(booking_ref)
    except NibogPaymentsError:
        logger.exception("Ticket details unavailable for %s; notifications not sent", booking_ref)
        return None

    if details is None:
        logger.error("No ticket details for %s; notifications not sent", booking_ref)
        return None

    return await dispatcher.dispatch(details)
