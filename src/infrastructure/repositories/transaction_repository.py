# src/infrastructure/repositories/transaction_repository.py

import json
from datetime import datetime, timezone

from sqlalchemy.orm import Session
from sqlalchemy import or_, select, update

from src.infrastructure.db.models import PaymentTransaction
from src.domain.exceptions import IdempotencyConflictError
from src.domain.state_machine import TransactionStatus


class TransactionRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_merchant_transaction_id(
        self,
        merchant_transaction_id: str,
        for_update: bool = False,
    ) -> PaymentTransaction | None:

        stmt = select(PaymentTransaction).where(
            PaymentTransaction.merchant_transaction_id == merchant_transaction_id
        )
        if for_update:
            stmt = stmt.with_for_update()

        return self.db.execute(stmt).scalar_one_or_none()

    def create_pending(
        self,
        merchant_transaction_id: str,
        user_id: str,
        amount_paise: int,
        mobile_number: str | None,
        booking_payload: dict,
    ) -> PaymentTransaction:

        # Idempotency Check
        existing = self.get_by_merchant_transaction_id(merchant_transaction_id)

        if existing:
            raise IdempotencyConflictError(
                f"Transaction {merchant_transaction_id} already recorded"
            )

        transaction = PaymentTransaction(
            merchant_transaction_id=merchant_transaction_id,
            user_id=user_id,
            amount_paise=amount_paise,
            mobile_number=mobile_number,
            booking_payload=json.dumps(booking_payload, sort_keys=True),
            status=TransactionStatus.PENDING,
        )

        self.db.add(transaction)
        self.db.flush()
        return transaction

    # -----------------------------
    # Callback claim
    # -----------------------------

    def claim(
        self,
        merchant_transaction_id: str,
        token: str,
        stale_before: datetime,
    ) -> bool:
        """
        Mark a PENDING row as owned by one callback.

        A single conditional UPDATE, so two concurrent callers cannot both
        win. A claim older than ``stale_before`` is treated as abandoned.
        """
        result = self.db.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.merchant_transaction_id == merchant_transaction_id,
                PaymentTransaction.status == TransactionStatus.PENDING,
                or_(
                    PaymentTransaction.claim_token.is_(None),
                    PaymentTransaction.claimed_at < stale_before,
                ),
            )
            .values(claim_token=token, claimed_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def record_booking(
        self,
        merchant_transaction_id: str,
        token: str,
        booking_id: int,
        booking_ref: str,
    ) -> bool:
        result = self.db.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.merchant_transaction_id == merchant_transaction_id,
                PaymentTransaction.claim_token == token,
            )
            .values(booking_id=booking_id, booking_ref=booking_ref)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def release_claim(self, merchant_transaction_id: str, token: str) -> None:
        self.db.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.merchant_transaction_id == merchant_transaction_id,
                PaymentTransaction.claim_token == token,
            )
            .values(claim_token=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )

    def settle_unclaimed(
        self,
        merchant_transaction_id: str,
        new_status: TransactionStatus,
        provider_code: str | None = None,
    ) -> bool:
        """Move an unclaimed PENDING row straight to a terminal status."""
        result = self.db.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.merchant_transaction_id == merchant_transaction_id,
                PaymentTransaction.status == TransactionStatus.PENDING,
                PaymentTransaction.claim_token.is_(None),
            )
            .values(status=new_status, provider_code=provider_code)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def update_status(
        self,
        transaction: PaymentTransaction,
        new_status: TransactionStatus,
        provider_code: str | None = None,
        gateway_transaction_id: str | None = None,
    ) -> None:

        transaction.status = new_status
        transaction.claim_token = None
        transaction.claimed_at = None
        if provider_code:
            transaction.provider_code = provider_code
        if gateway_transaction_id:
            transaction.gateway_transaction_id = gateway_transaction_id

    def attach_booking(
        self,
        transaction: PaymentTransaction,
        booking_id: int,
        booking_ref: str,
    ) -> None:

        transaction.booking_id = booking_id
        transaction.booking_ref = booking_ref
