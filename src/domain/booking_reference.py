# src/domain/booking_reference.py

import hashlib
import re
from enum import Enum

from src.domain.exceptions import InvalidInput


MAX_TRANSACTION_ID_LENGTH = 38
_TRANSACTION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")
_REFERENCE_DIGITS = 9


class ReferenceDialect(str, Enum):
    # Bookings entered manually by an admin.
    MANUAL = "MAN"
    # Bookings paid online through the gateway.
    ONLINE = "PPT"


def validate_transaction_id(transaction_id: str) -> str:
    if not isinstance(transaction_id, str) or not transaction_id.strip():
        raise InvalidInput("Transaction id must be a non-empty string")

    transaction_id = transaction_id.strip()
    if len(transaction_id) > MAX_TRANSACTION_ID_LENGTH:
        raise InvalidInput(
            f"Transaction id longer than {MAX_TRANSACTION_ID_LENGTH} chars: {transaction_id}"
        )
    if not _TRANSACTION_ID_PATTERN.match(transaction_id):
        raise InvalidInput(f"Malformed transaction id: {transaction_id!r}")
    return transaction_id


def derive_booking_reference(transaction_id: str) -> str:
    """
    Derive the public booking reference of an online payment.

    Pure function of the transaction id, so the client status route and the
    gateway callback arrive at the same reference without coordinating.
    """
    transaction_id = validate_transaction_id(transaction_id)

    digest = hashlib.sha256(transaction_id.encode("utf-8")).hexdigest()
    number = int(digest[:16], 16) % (10 ** _REFERENCE_DIGITS)
    return f"{ReferenceDialect.ONLINE.value}{number:0{_REFERENCE_DIGITS}d}"


def detect_dialect(reference: str) -> ReferenceDialect | None:
    for dialect in ReferenceDialect:
        if reference.startswith(dialect.value):
            return dialect
    return None


def convert_reference_format(reference: str, target_dialect) -> str:
    """
    Rewrite the prefix of a reference into ``target_dialect``.

    Only called when a conversion is explicitly requested. References whose
    prefix is not a known dialect are returned unchanged.
    """
    if not isinstance(reference, str) or not reference.strip():
        raise InvalidInput("Booking reference must be a non-empty string")

    try:
        target = ReferenceDialect(
            target_dialect.value if isinstance(target_dialect, ReferenceDialect) else target_dialect
        )
    except ValueError:
        raise InvalidInput(f"Unknown booking reference dialect: {target_dialect!r}") from None

    reference = reference.strip()
    current = detect_dialect(reference)
    if current is None or current is target:
        return reference

    return target.value + reference[len(current.value):]
