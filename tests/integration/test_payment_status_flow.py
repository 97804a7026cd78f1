import base64
import json

from sqlalchemy import select

from src.domain.state_machine import TransactionStatus
from src.infrastructure.db.models import PaymentTransaction
from src.infrastructure.db.session import SessionLocal
from tests.fakes import PAY_PAGE_URL, failed_status, success_status


def _ledger_status(merchant_transaction_id) -> tuple[TransactionStatus, str | None]:
    with SessionLocal() as db:
        row = db.execute(
            select(PaymentTransaction).where(
                PaymentTransaction.merchant_transaction_id == merchant_transaction_id
            )
        ).scalar_one()
        return row.status, row.provider_code


def _initiate(client, user_id="42") -> str:
    response = client.post(
        "/api/payments/phonepe-initiate",
        json={"user_id": user_id, "amount": 799, "booking": {"event_id": 7}},
    )
    return response.json()["merchant_transaction_id"]


def _status(client, transaction_id, attempt=1):
    return client.post(
        "/api/payments/phonepe-status",
        json={"transactionId": transaction_id, "attempt": attempt},
    )


def test_initiate_records_pending_transaction(client, upstream, settings):
    response = client.post(
        "/api/payments/phonepe-initiate",
        json={
            "user_id": "42",
            "amount": 799,
            "mobile_number": "9876543210",
            "booking": {"parent_name": "Asha Rao", "event_id": 7},
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["merchant_transaction_id"].startswith("NIBOG_42_")
    assert body["status"] == "PENDING"
    assert body["redirect_url"] == PAY_PAGE_URL

    (pay_request,) = upstream.calls_to("/pg/v1/pay")
    assert pay_request.headers["X-VERIFY"].endswith("###1")
    encoded = json.loads(pay_request.content)["request"]
    payload = json.loads(base64.b64decode(encoded))
    assert payload["amount"] == 79900
    assert payload["merchantTransactionId"] == body["merchant_transaction_id"]
    assert payload["paymentInstrument"] == {"type": "PAY_PAGE"}
    assert payload["callbackUrl"] == "https://nibog.test/api/payments/phonepe-callback"

    with SessionLocal() as db:
        row = db.execute(
            select(PaymentTransaction).where(
                PaymentTransaction.merchant_transaction_id == body["merchant_transaction_id"]
            )
        ).scalar_one()
        assert row.status == TransactionStatus.PENDING
        assert row.amount_paise == 79900
        assert json.loads(row.booking_payload)["event_id"] == 7


def test_initiate_rejects_non_positive_amount(client, upstream):
    response = client.post(
        "/api/payments/phonepe-initiate",
        json={"user_id": "42", "amount": 0, "booking": {}},
    )

    assert response.status_code == 422
    assert upstream.calls_to("/pg/v1/pay") == []


def test_success_without_booking_then_booking_created(client, upstream):
    upstream.statuses["TXN_0001"] = success_status("TXN_0001")

    first = _status(client, "TXN_0001", attempt=1)

    assert first.status_code == 200
    body = first.json()
    assert body["status"] == "SUCCESS"
    assert body["code"] == "PAYMENT_SUCCESS"
    assert body["bookingCreated"] is False
    assert body["bookingPending"] is True
    assert body["retryAfterSeconds"] == 2.0
    assert body["pollExhausted"] is False

    # The callback writes the booking between two polls.
    upstream.payments.append({
        "payment_id": 1,
        "booking_id": 500,
        "transaction_id": "TXN_0001",
        "payment_status": "successful",
    })

    second = _status(client, "TXN_0001", attempt=2)

    assert second.status_code == 200
    body = second.json()
    assert body["bookingCreated"] is True
    assert body["bookingId"] == 500
    assert body["bookingPending"] is False

    # The client path only ever reads.
    assert upstream.created_bookings == []
    assert upstream.created_payments == []
    assert all(request.method == "GET" for request in upstream.calls_to("/payments/get-all"))


def test_booking_found_by_gateway_transaction_id(client, upstream):
    upstream.statuses["TXN_0002"] = success_status("TXN_0002", gateway_txn="T999")
    upstream.payments.append({"booking_id": 501, "phonepe_transaction_id": "T999"})

    body = _status(client, "TXN_0002").json()

    assert body["bookingCreated"] is True
    assert body["bookingId"] == 501


def test_pending_payment_is_not_cached(client, upstream):
    _status(client, "TXN_0003")
    upstream.statuses["TXN_0003"] = success_status("TXN_0003")

    body = _status(client, "TXN_0003", attempt=2).json()

    assert body["status"] == "SUCCESS"
    assert len(upstream.calls_to("/TXN_0003")) == 2


def test_failed_payment(client, upstream):
    upstream.statuses["TXN_0004"] = failed_status("TXN_0004")

    body = _status(client, "TXN_0004").json()

    assert body["status"] == "FAILED"
    assert body["code"] == "PAYMENT_ERROR"
    assert body["bookingCreated"] is False
    assert body["bookingPending"] is False
    assert upstream.calls_to("/payments/get-all") == []


def test_poll_exhausted_after_max_attempts(client, upstream, settings):
    upstream.statuses["TXN_0005"] = success_status("TXN_0005")

    body = _status(client, "TXN_0005", attempt=settings.booking_poll_max_attempts).json()

    assert body["bookingPending"] is True
    assert body["retryAfterSeconds"] is None
    assert body["pollExhausted"] is True


def test_gateway_failure_settles_ledger(client, upstream):
    failed = _initiate(client, user_id="42")
    cancelled = _initiate(client, user_id="43")
    upstream.statuses[failed] = failed_status(failed)
    upstream.statuses[cancelled] = failed_status(cancelled, code="PAYMENT_CANCELLED")

    assert _status(client, failed).json()["status"] == "FAILED"
    assert _status(client, cancelled).json()["status"] == "FAILED"

    assert _ledger_status(failed) == (TransactionStatus.FAILED, "PAYMENT_ERROR")
    assert _ledger_status(cancelled) == (TransactionStatus.CANCELLED, "PAYMENT_CANCELLED")


def test_pending_payment_is_closed_when_polls_run_out(client, upstream, settings):
    txn = _initiate(client)

    early = _status(client, txn, attempt=1).json()
    assert early["pollExhausted"] is False
    assert _ledger_status(txn) == (TransactionStatus.PENDING, None)

    last = _status(client, txn, attempt=settings.booking_poll_max_attempts).json()

    assert last["status"] == "PENDING"
    assert last["pollExhausted"] is True
    assert _ledger_status(txn) == (TransactionStatus.FAILED, "POLL_EXHAUSTED")


def test_paid_transaction_is_left_to_the_callback(client, upstream, settings):
    txn = _initiate(client)
    upstream.statuses[txn] = success_status(txn)

    body = _status(client, txn, attempt=settings.booking_poll_max_attempts).json()

    assert body["bookingPending"] is True
    assert body["pollExhausted"] is True
    assert _ledger_status(txn) == (TransactionStatus.PENDING, None)
    assert upstream.created_bookings == []


def test_malformed_transaction_id_is_rejected(client, upstream):
    assert _status(client, "bad id!").status_code == 400
    assert _status(client, "X" * 39).status_code == 400
    assert upstream.requests == []


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["environment"] == "sandbox"
