import asyncio

import pytest

from src.application.booking_lookup import BookingMaterializationCheck
from src.application.payment_service import PaymentStatusPoller
from src.application.reconciliation_service import ReconciliationService
from src.domain.exceptions import PaymentFailed, RequestTimeout, TransientError
from src.domain.payment_status import ClassifiedStatus, StatusCheck, classify_status
from src.infrastructure.cache import ResponseCache
from src.infrastructure.clients.backend import NibogBackendClient
from tests.fakes import failed_status, pending_status, success_status


class FakeGateway:
    def __init__(self, *answers):
        self.answers = list(answers)
        self.calls = 0

    async def check_status(self, transaction_id):
        self.calls += 1
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return StatusCheck(transaction_id, classify_status(answer, sandbox=True), answer)


def test_transient_errors_are_retried(settings):
    gateway = FakeGateway(TransientError("boom"), RequestTimeout("slow"), success_status("TXN_1"))
    poller = PaymentStatusPoller(settings, gateway, ResponseCache())

    result = asyncio.run(poller.check_status("TXN_1"))

    assert result.classified is ClassifiedStatus.SUCCESS
    assert gateway.calls == 3


def test_retries_are_bounded(settings):
    gateway = FakeGateway(*[TransientError("boom")] * 5)
    poller = PaymentStatusPoller(settings.model_copy(update={"payment_status_max_retries": 2}), gateway, ResponseCache())

    with pytest.raises(TransientError):
        asyncio.run(poller.check_status("TXN_1"))

    assert gateway.calls == 2


def test_terminal_answers_are_cached(settings):
    gateway = FakeGateway(success_status("TXN_1"))
    poller = PaymentStatusPoller(settings, gateway, ResponseCache())

    asyncio.run(poller.check_status("TXN_1"))
    asyncio.run(poller.check_status("TXN_1"))

    assert gateway.calls == 1


def test_pending_answers_are_not_cached(settings):
    gateway = FakeGateway(pending_status("TXN_1"), success_status("TXN_1"))
    poller = PaymentStatusPoller(settings, gateway, ResponseCache())

    first = asyncio.run(poller.check_status("TXN_1"))
    second = asyncio.run(poller.check_status("TXN_1"))

    assert first.classified is ClassifiedStatus.PENDING
    assert second.classified is ClassifiedStatus.SUCCESS


def test_require_success_raises_payment_failed(settings):
    poller = PaymentStatusPoller(settings, FakeGateway(failed_status("TXN_1")), ResponseCache())

    with pytest.raises(PaymentFailed) as excinfo:
        asyncio.run(poller.require_success("TXN_1"))

    assert excinfo.value.code == "PAYMENT_ERROR"
    assert excinfo.value.raw["success"] is False


def test_gateway_outage_reports_processing(settings, http_client):
    gateway = FakeGateway(*[TransientError("boom")] * 3)
    poller = PaymentStatusPoller(settings, gateway, ResponseCache())
    lookup = BookingMaterializationCheck(NibogBackendClient(settings, http_client, ResponseCache()))
    service = ReconciliationService(settings, poller, lookup)

    confirmation = asyncio.run(service.confirm("TXN_1", attempt=1))

    assert confirmation.status is ClassifiedStatus.PENDING
    assert confirmation.booking_created is False
    assert confirmation.retry_after_seconds == settings.booking_poll_base_delay


def test_retry_after_grows_exponentially(settings):
    service = ReconciliationService(settings.model_copy(update={"booking_poll_base_delay": 2.0, "booking_poll_max_attempts": 4}), None, None)

    assert [service.retry_after(attempt) for attempt in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, None]
