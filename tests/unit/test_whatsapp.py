import asyncio

import httpx
import pytest

from src.application.notification_service import whatsapp_parameters
from src.domain.exceptions import (
    InvalidInput,
    NotificationsDisabled,
    ParameterCountMismatch,
    ProviderUnavailable,
    TemplateRejected,
)
from src.infrastructure.clients.backend import TicketDetails, TicketRow
from src.infrastructure.clients.whatsapp import (
    TemplateParameter,
    ZaptraWhatsAppClient,
    format_phone_number,
    validate_parameters,
)
from tests.fakes import ticket_rows


def _details(**overrides) -> TicketDetails:
    rows = [TicketRow(**{**row, **overrides}) for row in ticket_rows("PPT123456789")]
    return TicketDetails.from_rows(rows)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("9876543210", "+919876543210"),
        ("919876543210", "+919876543210"),
        ("+91 98765-43210", "+919876543210"),
        ("447911123456", "+447911123456"),
    ],
)
def test_format_phone_number(raw, expected):
    assert format_phone_number(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "12345", "phone"])
def test_format_phone_number_rejects(raw):
    with pytest.raises(InvalidInput):
        format_phone_number(raw)


def test_booking_confirmation_has_eight_parameters_in_order():
    params = whatsapp_parameters(_details())

    assert [param.name for param in params] == [
        "customer_name",
        "event_title",
        "event_date",
        "venue_name",
        "child_name",
        "booking_ref",
        "total_amount",
        "payment_method",
    ]
    assert validate_parameters(params, 8)[6] == "1598"


def test_count_mismatch_is_detected_locally(settings, upstream, http_client):
    client = ZaptraWhatsAppClient(settings, http_client)
    params = whatsapp_parameters(_details())[:7]

    with pytest.raises(ParameterCountMismatch) as excinfo:
        asyncio.run(client.send_template("9876543210", params))

    assert excinfo.value.expected == 8
    assert len(excinfo.value.supplied) == 7
    assert isinstance(excinfo.value, TemplateRejected)
    assert upstream.requests == []


def test_missing_optional_field_becomes_placeholder(settings, upstream, http_client):
    client = ZaptraWhatsAppClient(settings, http_client)
    params = whatsapp_parameters(_details(venue_name=None))

    message_id = asyncio.run(client.send_template("9876543210", params))

    assert message_id == "wamid.TEST1"
    (body,) = upstream.whatsapp_messages
    assert body["template_data"][3] == "N/A"
    assert body["template_name"] == "booking_confirmation_latest"
    assert body["token"] == "test-token"


def test_missing_required_field_is_rejected():
    params = [
        TemplateParameter("customer_name", " ", required=True),
        TemplateParameter("event_title", "Crawl"),
    ]

    with pytest.raises(InvalidInput):
        validate_parameters(params, 2)


def test_disabled_channel(settings, upstream, http_client):
    client = ZaptraWhatsAppClient(settings.model_copy(update={"whatsapp_enabled": False}), http_client)

    with pytest.raises(NotificationsDisabled):
        asyncio.run(client.send_template("9876543210", whatsapp_parameters(_details())))

    assert upstream.requests == []


def test_provider_rejection(settings, upstream, http_client):
    upstream.whatsapp_response = (400, {"status": "error", "message": "(#132000) Number of parameters does not match"})
    client = ZaptraWhatsAppClient(settings, http_client)

    with pytest.raises(TemplateRejected) as excinfo:
        asyncio.run(client.send_template("9876543210", whatsapp_parameters(_details())))

    assert "132000" in str(excinfo.value)
    assert excinfo.value.provider_response["status"] == "error"


def test_provider_outage_is_retried(settings, upstream, http_client):
    upstream.whatsapp_response = (503, {"status": "error"})
    client = ZaptraWhatsAppClient(settings.model_copy(update={"notification_max_retries": 1}), http_client)

    with pytest.raises(ProviderUnavailable):
        asyncio.run(client.send_template("9876543210", whatsapp_parameters(_details())))

    assert len(upstream.whatsapp_messages) == 2


def test_network_error_is_provider_unavailable(settings):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
    client = ZaptraWhatsAppClient(settings, http)

    with pytest.raises(ProviderUnavailable):
        asyncio.run(client.send_template("9876543210", whatsapp_parameters(_details())))
