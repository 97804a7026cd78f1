import asyncio
import base64
import hashlib
import json

import httpx
import pytest

from src.core.config import PHONEPE_API_BASES, PRODUCTION
from src.domain.exceptions import (
    ConfigurationError,
    InvalidInput,
    RequestTimeout,
    SignatureMismatch,
    TransientError,
)
from src.domain.payment_status import ClassifiedStatus
from src.infrastructure.clients.phonepe import PhonePeClient
from tests.fakes import success_status


def _sha(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def test_status_signature(settings, http_client):
    client = PhonePeClient(settings, http_client)

    expected = _sha("/pg/v1/status/PGTESTPAYUAT/TXN_1" + "test-salt-key") + "###1"

    assert client.status_signature("TXN_1") == expected


def test_pay_request_signature(settings, http_client):
    client = PhonePeClient(settings, http_client)

    encoded, x_verify = client.build_pay_request("NIBOG_42_1", "42", 79900, "9876543210")

    assert x_verify == _sha(encoded + "/pg/v1/pay" + "test-salt-key") + "###1"
    payload = json.loads(base64.b64decode(encoded))
    assert payload["merchantId"] == "PGTESTPAYUAT"
    assert payload["mobileNumber"] == "9876543210"
    assert payload["redirectUrl"] == "https://nibog.test/payment-callback?transactionId=NIBOG_42_1"


def test_pay_request_rejects_bad_input(settings, http_client):
    client = PhonePeClient(settings, http_client)

    with pytest.raises(InvalidInput):
        client.build_pay_request("NIBOG_42_1", "42", 0, None)
    with pytest.raises(InvalidInput):
        client.build_pay_request("N" * 39, "42", 100, None)


def test_mixed_configuration_refuses_to_build(settings, http_client):
    with pytest.raises(ConfigurationError):
        PhonePeClient(settings.model_copy(update={"phonepe_api_base": PHONEPE_API_BASES[PRODUCTION]}), http_client)


def test_verify_callback(settings, http_client, sign_callback):
    client = PhonePeClient(settings, http_client)
    encoded, x_verify = sign_callback({"code": "PAYMENT_SUCCESS", "data": {"merchantTransactionId": "TXN_1"}})

    assert client.verify_callback(encoded, x_verify)["data"]["merchantTransactionId"] == "TXN_1"

    with pytest.raises(SignatureMismatch):
        client.verify_callback(encoded, None)
    with pytest.raises(SignatureMismatch):
        client.verify_callback(encoded, x_verify.replace("###1", "###2"))


def test_check_status_sends_signed_headers(settings, upstream, http_client):
    upstream.statuses["TXN_1"] = success_status("TXN_1")
    client = PhonePeClient(settings, http_client)

    check = asyncio.run(client.check_status("TXN_1"))

    assert check.classified is ClassifiedStatus.SUCCESS
    (request,) = upstream.requests
    assert request.method == "GET"
    assert request.headers["X-MERCHANT-ID"] == "PGTESTPAYUAT"
    assert request.headers["X-VERIFY"] == client.status_signature("TXN_1")


@pytest.mark.parametrize(
    "handler, error",
    [
        (lambda request: httpx.Response(502, text="<html>Bad Gateway</html>"), TransientError),
        (lambda request: httpx.Response(500, json={"success": False}), TransientError),
        (lambda request: httpx.Response(200, json=["unexpected"]), TransientError),
    ],
)
def test_check_status_transient_failures(settings, handler, error):
    client = PhonePeClient(settings, httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    with pytest.raises(error):
        asyncio.run(client.check_status("TXN_1"))


def test_check_status_timeout(settings):
    def slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client = PhonePeClient(settings, httpx.AsyncClient(transport=httpx.MockTransport(slow)))

    with pytest.raises(RequestTimeout):
        asyncio.run(client.check_status("TXN_1"))
