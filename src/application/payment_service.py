import asyncio
import logging
import time

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from src.core.config import Settings
from src.domain.booking_reference import validate_transaction_id
from src.domain.exceptions import InvalidInput, PaymentFailed, TransientError
from src.domain.payment_status import ClassifiedStatus, StatusCheck
from src.infrastructure.cache import ResponseCache
from src.infrastructure.clients.phonepe import PhonePeClient
from src.infrastructure.db.models import PaymentTransaction
from src.infrastructure.repositories.transaction_repository import TransactionRepository

logger = logging.getLogger(__name__)

STATUS_TAG = "payment-status"


def generate_merchant_transaction_id(user_id: str, now_ms: int | None = None) -> str:
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return validate_transaction_id(f"NIBOG_{user_id}_{timestamp}")


class PaymentStatusPoller:
    """
    Confirms a transaction against the gateway.

    Transient failures are retried with exponential backoff up to
    ``payment_status_max_retries``. Terminal answers are cached for the
    cache TTL; pending answers never are, so a cached entry cannot hide
    the PENDING -> SUCCESS transition.
    """

    def __init__(self, settings: Settings, gateway: PhonePeClient, cache: ResponseCache):
        self.settings = settings
        self.gateway = gateway
        self.cache = cache

    async def check_status(self, transaction_id: str) -> StatusCheck:
        cache_key = f"status:{transaction_id}"
        cached = self.cache.get(cache_key, STATUS_TAG)
        if cached is not None:
            return cached

        attempts = max(1, self.settings.payment_status_max_retries)
        delay = self.settings.payment_status_retry_delay
        for attempt in range(1, attempts + 1):
            try:
                result = await self.gateway.check_status(transaction_id)
                break
            except TransientError:
                if attempt == attempts:
                    logger.exception(
                        "Gateway status unavailable after %s attempts (txn=%s)",
                        attempts,
                        transaction_id,
                    )
                    raise
                logger.warning(
                    "Gateway status check failed (attempt %s/%s). Retrying in %.1f seconds...",
                    attempt,
                    attempts,
                    delay,
                )
                await asyncio.sleep(delay)
                delay *= 2

        if result.classified is not ClassifiedStatus.PENDING:
            self.cache.set(cache_key, result, STATUS_TAG)
        return result

    async def require_success(self, transaction_id: str) -> StatusCheck:
        """Like check_status, but an explicit failure raises PaymentFailed."""
        result = await self.check_status(transaction_id)
        if result.classified is ClassifiedStatus.FAILED:
            raise PaymentFailed(transaction_id, result.code, result.message, raw=result.raw)
        return result


class PaymentInitiationService:

    def __init__(self, db: Session, settings: Settings, gateway: PhonePeClient):
        self.db = db
        self.settings = settings
        self.gateway = gateway
        self.transaction_repository = TransactionRepository(db)

    async def initiate(
        self,
        user_id: str,
        amount_paise: int,
        mobile_number: str | None,
        booking_payload: dict,
    ) -> tuple[PaymentTransaction, dict]:
        if amount_paise <= 0:
            raise InvalidInput("Amount must be positive")

        merchant_transaction_id = generate_merchant_transaction_id(user_id)
        transaction = await run_in_threadpool(
            self._record_pending,
            merchant_transaction_id,
            user_id,
            amount_paise,
            mobile_number,
            booking_payload,
        )

        response = await self.gateway.initiate(
            merchant_transaction_id=merchant_transaction_id,
            user_id=user_id,
            amount_paise=amount_paise,
            mobile_number=mobile_number,
        )
        return transaction, response

    def _record_pending(
        self,
        merchant_transaction_id: str,
        user_id: str,
        amount_paise: int,
        mobile_number: str | None,
        booking_payload: dict,
    ) -> PaymentTransaction:
        transaction = self.transaction_repository.create_pending(
            merchant_transaction_id=merchant_transaction_id,
            user_id=user_id,
            amount_paise=amount_paise,
            mobile_number=mobile_number,
            booking_payload=booking_payload,
        )
        # Committed before the gateway call: a late callback must find the row.
        self.db.commit()
        self.db.refresh(transaction)
        return transaction
