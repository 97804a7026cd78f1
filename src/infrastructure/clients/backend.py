"""
Client for the NIBOG backend webhook API.

Every webhook answers with a JSON array of records. Responses are decoded
through pydantic models and anything else fails closed with SchemaMismatch.
"""

import logging
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from src.core.config import Settings
from src.domain.exceptions import RequestTimeout, SchemaMismatch, TransientError
from src.infrastructure.cache import ResponseCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

TICKETS_TAG = "tickets"
SETTINGS_TAG = "settings"


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore")


class PaymentRecord(_Record):
    payment_id: int | None = None
    booking_id: int | None = None
    booking_ref: str | None = None
    transaction_id: str | None = None
    phonepe_transaction_id: str | None = None
    payment_status: str | None = None
    amount: float | None = None

    def matches(self, *ids: str | None) -> bool:
        wanted = {value for value in ids if value}
        stored = {value for value in (self.transaction_id, self.phonepe_transaction_id) if value}
        return bool(wanted & stored)


class BookingCreated(_Record):
    booking_id: int
    booking_ref: str | None = None


class PaymentCreated(_Record):
    payment_id: int | None = None
    booking_id: int | None = None


class TicketGame(_Record):
    game_name: str | None = None
    slot_id: int | None = None
    start_time: str | None = None
    end_time: str | None = None
    price: float | None = None


class TicketRow(TicketGame):
    booking_id: int
    booking_ref: str
    parent_name: str | None = None
    parent_email: str | None = None
    parent_phone: str | None = None
    child_name: str | None = None
    event_title: str | None = None
    event_date: str | None = None
    venue_name: str | None = None
    total_amount: float | None = None
    payment_method: str | None = None
    payment_status: str | None = None


class TicketDetails(_Record):
    booking_id: int
    booking_ref: str
    parent_name: str | None = None
    parent_email: str | None = None
    parent_phone: str | None = None
    child_name: str | None = None
    event_title: str | None = None
    event_date: str | None = None
    venue_name: str | None = None
    total_amount: float | None = None
    payment_method: str | None = None
    payment_status: str | None = None
    games: list[TicketGame] = Field(default_factory=list)

    @classmethod
    def from_rows(cls, rows: list[TicketRow]) -> "TicketDetails":
        """Fold the one-row-per-game listing into a single booking."""
        first = rows[0]
        header = first.model_dump(exclude=set(TicketGame.model_fields))
        games = [
            TicketGame(**row.model_dump(include=set(TicketGame.model_fields)))
            for row in rows
            if row.game_name or row.slot_id is not None
        ]
        return cls(**header, games=games)


class EmailSettings(_Record):
    smtp_host: str
    smtp_port: int = 465
    smtp_username: str | None = None
    smtp_password: str | None = Field(default=None, repr=False)
    from_email: str
    from_name: str | None = None
    use_ssl: bool = True


def decode_records(payload: Any, model: type[T], what: str) -> list[T]:
    try:
        return TypeAdapter(list[model]).validate_python(payload)
    except ValidationError as exc:
        raise SchemaMismatch(f"Unexpected {what} response: {exc.errors()[:3]}") from exc


class NibogBackendClient:

    def __init__(self, settings: Settings, http: httpx.AsyncClient, cache: ResponseCache):
        self.settings = settings
        self.http = http
        self.cache = cache

    # -----------------------------
    # Reads
    # -----------------------------

    async def list_payments(self) -> list[PaymentRecord]:
        """
        Full payment listing. Never cached: it is the oracle that tells
        whether the callback has materialized a booking yet.
        """
        payload = await self._request("GET", "/payments/get-all")
        return decode_records(payload, PaymentRecord, "payment listing")

    async def get_ticket_details(self, booking_ref: str) -> TicketDetails | None:
        key = f"ticket:{booking_ref}"
        cached = self.cache.get(key, TICKETS_TAG)
        if cached is not None:
            return TicketDetails.model_validate(cached)

        payload = await self._request(
            "POST",
            "/tickect/booking_ref/details",
            json={"booking_ref_id": booking_ref},
        )
        rows = decode_records(payload, TicketRow, "ticket details")
        if not rows:
            return None

        details = TicketDetails.from_rows(rows)
        self.cache.set(key, details.model_dump(), TICKETS_TAG)
        return details

    async def get_email_settings(self) -> EmailSettings | None:
        cached = self.cache.get("email-settings", SETTINGS_TAG)
        if cached is not None:
            return EmailSettings.model_validate(cached)

        payload = await self._request("GET", "/emailsetting/get")
        records = decode_records(payload, EmailSettings, "email settings")
        if not records:
            return None

        self.cache.set("email-settings", records[0].model_dump(), SETTINGS_TAG)
        return records[0]

    # -----------------------------
    # Writes (callback path only)
    # -----------------------------

    async def create_booking(self, booking: dict) -> BookingCreated:
        payload = await self._request("POST", "/bookingsevents/create", json=booking)
        created = decode_records(payload, BookingCreated, "booking creation")
        if not created:
            raise SchemaMismatch("Booking creation returned no record")
        return created[0]

    async def create_payment(
        self,
        booking_id: int,
        merchant_transaction_id: str,
        gateway_transaction_id: str | None,
        amount: float,
        payment_status: str = "successful",
    ) -> PaymentCreated:
        payload = await self._request(
            "POST",
            "/payments/create",
            json={
                "booking_id": booking_id,
                "transaction_id": merchant_transaction_id,
                "phonepe_transaction_id": gateway_transaction_id,
                "amount": amount,
                "payment_method": "PhonePe",
                "payment_status": payment_status,
            },
        )
        created = decode_records(payload, PaymentCreated, "payment creation")
        return created[0] if created else PaymentCreated(booking_id=booking_id)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.settings.backend_api_base}{path}"
        try:
            response = await self.http.request(
                method,
                url,
                timeout=self.settings.http_timeout_seconds,
                **kwargs,
            )
        except httpx.TimeoutException as exc:
            raise RequestTimeout(f"Backend timed out on {path}") from exc
        except httpx.RequestError as exc:
            raise TransientError(f"Backend unreachable on {path}: {exc}") from exc

        if response.status_code >= 400:
            raise TransientError(f"Backend returned {response.status_code} on {path}")

        try:
            return response.json()
        except ValueError as exc:
            raise TransientError(f"Unparsable backend response on {path}") from exc
