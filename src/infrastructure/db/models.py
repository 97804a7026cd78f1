# src/infrastructure/db/models.py

from sqlalchemy import (
    String,
    Integer,
    DateTime,
    Enum,
    Text,
    UniqueConstraint,
    CheckConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from uuid import uuid4

from src.infrastructure.db.session import Base
from src.domain.state_machine import TransactionStatus


class PaymentTransaction(Base):
    """
    Ledger of payment attempts started by this service.
    Domain controls transitions; a row is frozen once terminal.
    Bookings and payment records live in the external backend.
    """

    __tablename__ = "payment_transactions"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    merchant_transaction_id: Mapped[str] = mapped_column(
        String(38),
        nullable=False,
    )
    gateway_transaction_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    mobile_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    amount_paise: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus, name="transaction_status"),
        nullable=False,
        default=TransactionStatus.PENDING,
    )
    provider_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    booking_payload: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    booking_ref: Mapped[str | None] = mapped_column(String(32), nullable=True)
    booking_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Set while one callback is materializing the booking.
    claim_token: Mapped[str | None] = mapped_column(String(36), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "merchant_transaction_id",
            name="uq_payment_transactions_merchant_transaction_id",
        ),
        CheckConstraint(
            "amount_paise > 0",
            name="ck_amount_paise_positive",
        ),
    )
