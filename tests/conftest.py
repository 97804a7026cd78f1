# tests/conftest.py

import base64
import hashlib
import json
import os
import tempfile

# Settings are read once at import time, so the environment goes first.
_TEST_DB = os.path.join(tempfile.gettempdir(), "nibog_payments_test.db")
os.environ.update({
    "DATABASE_URL": f"sqlite:///{_TEST_DB}",
    "PHONEPE_ENVIRONMENT": "sandbox",
    "PHONEPE_MERCHANT_ID": "PGTESTPAYUAT",
    "PHONEPE_SALT_KEY": "test-salt-key",
    "PHONEPE_SALT_INDEX": "1",
    "PHONEPE_API_BASE": "https://api-preprod.phonepe.com/apis/pg-sandbox",
    "APP_URL": "https://nibog.test",
    "BACKEND_API_BASE": "https://backend.test/nibog",
    "ZAPTRA_API_URL": "https://demo.zaptra.in/api/wpbox",
    "ZAPTRA_API_TOKEN": "test-token",
    "WHATSAPP_NOTIFICATIONS_ENABLED": "true",
    "EMAIL_NOTIFICATIONS_ENABLED": "true",
    "SMTP_HOST": "smtp.nibog.test",
    "SMTP_USERNAME": "tickets@nibog.test",
    "EMAIL_FROM": "tickets@nibog.test",
    "PAYMENT_STATUS_RETRY_DELAY": "0",
    "NOTIFICATION_MAX_RETRIES": "0",
    "DB_CONNECT_MAX_RETRIES": "1",
})

import httpx
import pytest
from fastapi.testclient import TestClient

from src.api.deps import get_email_sender, get_http_client
from src.core.config import get_settings
from src.infrastructure.clients.email import SmtpEmailSender
from src.infrastructure.db.models import Base
from src.infrastructure.db.session import engine
from tests.fakes import FakeUpstream


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def http_client(upstream):
    return httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))


@pytest.fixture
def sent_emails():
    return []


@pytest.fixture
def sign_callback(settings):
    def _sign(payload: dict) -> tuple[str, str]:
        encoded = base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")
        digest = hashlib.sha256((encoded + settings.phonepe_salt_key).encode("utf-8")).hexdigest()
        return encoded, f"{digest}###{settings.phonepe_salt_index}"

    return _sign


@pytest.fixture
def client(settings, http_client, sent_emails):
    from src.main import app

    def _capture(message, email_settings, timeout):
        sent_emails.append(message)

    app.dependency_overrides[get_http_client] = lambda: http_client
    app.dependency_overrides[get_email_sender] = lambda: SmtpEmailSender(settings, transport=_capture)
    Base.metadata.drop_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)
