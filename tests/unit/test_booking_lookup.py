import asyncio

import httpx
import pytest

from src.application.booking_lookup import BookingMaterializationCheck
from src.domain.exceptions import InvalidInput, SchemaMismatch
from src.infrastructure.cache import ResponseCache
from src.infrastructure.clients.backend import NibogBackendClient


@pytest.fixture
def lookup(settings, http_client):
    backend = NibogBackendClient(settings, http_client, ResponseCache())
    return BookingMaterializationCheck(backend, max_retries=1, retry_delay=0)


def test_not_found_yet_is_a_result(lookup, upstream):
    result = asyncio.run(lookup.find_existing_booking("TXN_0001", None))

    assert result.found is False
    assert result.booking_id is None


def test_found_by_merchant_transaction_id(lookup, upstream):
    upstream.payments.append({"booking_id": 500, "transaction_id": "TXN_0001"})

    result = asyncio.run(lookup.find_existing_booking("TXN_0001", "T1"))

    assert result.found is True
    assert result.booking_id == 500


def test_found_by_gateway_transaction_id(lookup, upstream):
    upstream.payments.append({"booking_id": 501, "phonepe_transaction_id": "T1"})

    assert asyncio.run(lookup.find_existing_booking("TXN_0001", "T1")).booking_id == 501


def test_lookup_only_reads(lookup, upstream):
    asyncio.run(lookup.find_existing_booking("TXN_0001", None))

    assert [request.method for request in upstream.requests] == ["GET"]
    assert upstream.created_bookings == []


def test_requires_an_id(lookup):
    with pytest.raises(InvalidInput):
        asyncio.run(lookup.find_existing_booking(None, ""))


def test_unexpected_envelope_fails_closed(settings):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"error": "workflow failed"})

    backend = NibogBackendClient(
        settings,
        httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        ResponseCache(),
    )
    lookup = BookingMaterializationCheck(backend, max_retries=1, retry_delay=0)

    with pytest.raises(SchemaMismatch):
        asyncio.run(lookup.find_existing_booking("TXN_0001", None))

    assert len(calls) == 2
