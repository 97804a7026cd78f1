# src/domain/payment_status.py

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from src.domain.state_machine import TransactionStatus


class ClassifiedStatus(str, Enum):
    SUCCESS = "SUCCESS"
    PENDING = "PENDING"
    FAILED = "FAILED"


SUCCESS_CODE = "PAYMENT_SUCCESS"
COMPLETED_STATE = "COMPLETED"

FAILURE_CODES = frozenset({
    "PAYMENT_ERROR",
    "PAYMENT_DECLINED",
    "TIMED_OUT",
    "AUTHORIZATION_FAILED",
    "TRANSACTION_NOT_FOUND",
    "PAYMENT_CANCELLED",
})
CANCELLATION_CODES = frozenset({"PAYMENT_CANCELLED"})
FAILED_STATES = frozenset({"FAILED", "DECLINED"})

# Sandbox occasionally answers PAYMENT_PENDING after the tester picked
# "success" on the simulator page.
SANDBOX_SUCCESS_CODES = frozenset({"PAYMENT_PENDING"})


@dataclass(frozen=True)
class StatusCheck:
    transaction_id: str
    classified: ClassifiedStatus
    raw: dict = field(default_factory=dict)

    @property
    def code(self) -> str | None:
        return self.raw.get("code")

    @property
    def message(self) -> str | None:
        return self.raw.get("message")

    @property
    def data(self) -> dict:
        data = self.raw.get("data")
        return data if isinstance(data, dict) else {}

    @property
    def gateway_transaction_id(self) -> str | None:
        return self.data.get("transactionId")

    @property
    def merchant_transaction_id(self) -> str:
        return self.data.get("merchantTransactionId") or self.transaction_id

    @property
    def payment_state(self) -> str | None:
        return self.data.get("paymentState") or self.data.get("state")

    @property
    def amount_paise(self) -> int | None:
        amount = self.data.get("amount")
        return int(amount) if isinstance(amount, (int, float)) else None

    def transaction_status(self) -> TransactionStatus:
        if self.classified is ClassifiedStatus.SUCCESS:
            return TransactionStatus.SUCCESS
        if self.classified is ClassifiedStatus.FAILED:
            if self.code in CANCELLATION_CODES:
                return TransactionStatus.CANCELLED
            return TransactionStatus.FAILED
        return TransactionStatus.PENDING


def classify_status(raw: dict[str, Any], *, sandbox: bool) -> ClassifiedStatus:
    """
    Map a gateway status response onto SUCCESS / PENDING / FAILED.

    SUCCESS when the provider flag is set and either the success code is
    present, the nested payment state is COMPLETED, or (sandbox only) the
    code is one of the simulator quirk codes.
    """
    code = raw.get("code") or ""
    data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
    state = data.get("paymentState") or data.get("state")

    if raw.get("success"):
        if code == SUCCESS_CODE or state == COMPLETED_STATE:
            return ClassifiedStatus.SUCCESS
        if sandbox and _is_sandbox_success(code):
            return ClassifiedStatus.SUCCESS

    if code in FAILURE_CODES or state in FAILED_STATES:
        return ClassifiedStatus.FAILED

    return ClassifiedStatus.PENDING


def _is_sandbox_success(code: str) -> bool:
    return code in SANDBOX_SUCCESS_CODES or "SUCCESS" in code


@dataclass(frozen=True)
class BookingLookup:
    """
    Outcome of the materialization check.
    ``found`` False means the callback has not written the booking yet.
    """

    found: bool
    booking_id: int | None = None
    booking_ref: str | None = None

    @classmethod
    def existing(cls, booking_id: int, booking_ref: str | None = None) -> "BookingLookup":
        return cls(found=True, booking_id=booking_id, booking_ref=booking_ref)

    @classmethod
    def not_found_yet(cls) -> "BookingLookup":
        return cls(found=False)
