import asyncio
import logging

from src.domain.exceptions import InvalidInput, SchemaMismatch, TransientError
from src.domain.payment_status import BookingLookup
from src.infrastructure.clients.backend import NibogBackendClient

logger = logging.getLogger(__name__)


class BookingMaterializationCheck:
    """
    Observes whether the gateway callback has already written the booking.

    Read-only by construction: only the backend's payment listing is
    queried. The callback is the single writer of bookings, so a client
    poll and a server callback reporting the same success cannot both
    create one.
    """

    def __init__(self, backend: NibogBackendClient, max_retries: int = 2, retry_delay: float = 0.5):
        self.backend = backend
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    async def find_existing_booking(
        self,
        merchant_transaction_id: str | None,
        transaction_id: str | None,
    ) -> BookingLookup:
        if not merchant_transaction_id and not transaction_id:
            raise InvalidInput("A merchant or gateway transaction id is required")

        records = await self._list_payments()

        # Upstream stores the id under either field name.
        for record in records:
            if record.booking_id is not None and record.matches(merchant_transaction_id, transaction_id):
                logger.info(
                    "Booking %s already materialized for txn=%s",
                    record.booking_id,
                    merchant_transaction_id or transaction_id,
                )
                return BookingLookup.existing(record.booking_id, record.booking_ref)

        logger.info(
            "No booking yet for txn=%s / %s; callback still processing",
            merchant_transaction_id,
            transaction_id,
        )
        return BookingLookup.not_found_yet()

    async def _list_payments(self):
        attempts = self.max_retries + 1
        delay = self.retry_delay
        for attempt in range(1, attempts + 1):
            try:
                return await self.backend.list_payments()
            except (TransientError, SchemaMismatch):
                if attempt == attempts:
                    raise
                logger.warning(
                    "Payment listing failed (attempt %s/%s). Retrying in %.1f seconds...",
                    attempt,
                    attempts,
                    delay,
                )
                await asyncio.sleep(delay)
                delay *= 2
