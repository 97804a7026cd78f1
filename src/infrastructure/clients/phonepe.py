"""
PhonePe payment gateway HTTP client.

Implements the standard PhonePe PG v1 redirect flow:
  1. Backend builds a base64 pay request signed with the salt key
  2. Browser is redirected to the gateway's pay page
  3. Gateway redirects the browser back and calls our callback URL
  4. Status is confirmed against the status endpoint
"""

import base64
import hashlib
import hmac
import json
import logging

import httpx

from src.core.config import Settings, ensure_valid_settings
from src.domain.booking_reference import validate_transaction_id
from src.domain.exceptions import InvalidInput, RequestTimeout, SignatureMismatch, TransientError
from src.domain.payment_status import StatusCheck, classify_status

logger = logging.getLogger(__name__)

PAY_PATH = "/pg/v1/pay"
STATUS_PATH = "/pg/v1/status"


def sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


class PhonePeClient:

    def __init__(self, settings: Settings, http: httpx.AsyncClient):
        # Refuse to exist with mixed sandbox/production credentials.
        ensure_valid_settings(settings)
        self.settings = settings
        self.http = http

    # -----------------------------
    # Signing
    # -----------------------------

    def _x_verify(self, data: str) -> str:
        return sha256_hex(data + self.settings.phonepe_salt_key) + "###" + self.settings.phonepe_salt_index

    def status_path(self, merchant_transaction_id: str) -> str:
        return f"{STATUS_PATH}/{self.settings.phonepe_merchant_id}/{merchant_transaction_id}"

    def status_signature(self, merchant_transaction_id: str) -> str:
        return self._x_verify(self.status_path(merchant_transaction_id))

    def verify_callback(self, response_b64: str, x_verify: str | None) -> dict:
        """Check the callback signature, then decode its payload."""
        expected = self._x_verify(response_b64)
        if not x_verify or not hmac.compare_digest(expected, x_verify):
            raise SignatureMismatch("Callback X-VERIFY header does not match payload")

        try:
            return json.loads(base64.b64decode(response_b64).decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as exc:
            raise InvalidInput(f"Callback payload is not base64 JSON: {exc}") from exc

    # -----------------------------
    # Pay
    # -----------------------------

    def build_pay_request(
        self,
        merchant_transaction_id: str,
        user_id: str,
        amount_paise: int,
        mobile_number: str | None,
    ) -> tuple[str, str]:
        """Return (base64 payload, X-VERIFY header) for the pay endpoint."""
        validate_transaction_id(merchant_transaction_id)
        if amount_paise <= 0:
            raise InvalidInput("Amount must be positive")

        app_url = self.settings.app_url
        payload = {
            "merchantId": self.settings.phonepe_merchant_id,
            "merchantTransactionId": merchant_transaction_id,
            "merchantUserId": user_id,
            "amount": amount_paise,
            "redirectUrl": f"{app_url}/payment-callback?transactionId={merchant_transaction_id}",
            "redirectMode": "REDIRECT",
            "callbackUrl": f"{app_url}/api/payments/phonepe-callback",
            "paymentInstrument": {"type": "PAY_PAGE"},
        }
        if mobile_number:
            payload["mobileNumber"] = mobile_number

        encoded = base64.b64encode(
            json.dumps(payload, separators=(",", ":")).encode("utf-8")
        ).decode("ascii")
        return encoded, self._x_verify(encoded + PAY_PATH)

    async def initiate(
        self,
        merchant_transaction_id: str,
        user_id: str,
        amount_paise: int,
        mobile_number: str | None,
    ) -> dict:
        encoded, x_verify = self.build_pay_request(
            merchant_transaction_id, user_id, amount_paise, mobile_number
        )
        url = f"{self.settings.phonepe_api_base}{PAY_PATH}"

        logger.info(
            "[PHONEPE] Initiating payment | txn=%s | amount=%s | env=%s",
            merchant_transaction_id,
            amount_paise,
            self.settings.phonepe_environment,
        )
        return await self._send(
            "POST",
            url,
            merchant_transaction_id,
            headers={"X-VERIFY": x_verify},
            json={"request": encoded},
        )

    # -----------------------------
    # Status
    # -----------------------------

    async def check_status(self, merchant_transaction_id: str) -> StatusCheck:
        """
        Query the status endpoint once and classify the answer.
        Read-only: never touches booking state.
        """
        validate_transaction_id(merchant_transaction_id)
        url = f"{self.settings.phonepe_api_base}{self.status_path(merchant_transaction_id)}"

        raw = await self._send(
            "GET",
            url,
            merchant_transaction_id,
            headers={
                "X-VERIFY": self.status_signature(merchant_transaction_id),
                "X-MERCHANT-ID": self.settings.phonepe_merchant_id,
            },
        )
        classified = classify_status(raw, sandbox=self.settings.is_sandbox)

        logger.info(
            "[PHONEPE] Status | txn=%s | code=%s | state=%s | classified=%s",
            merchant_transaction_id,
            raw.get("code"),
            (raw.get("data") or {}).get("paymentState") if isinstance(raw.get("data"), dict) else None,
            classified.value,
        )
        return StatusCheck(
            transaction_id=merchant_transaction_id,
            classified=classified,
            raw=raw,
        )

    async def _send(self, method: str, url: str, transaction_id: str, **kwargs) -> dict:
        try:
            response = await self.http.request(
                method,
                url,
                timeout=self.settings.http_timeout_seconds,
                **kwargs,
            )
        except httpx.TimeoutException as exc:
            raise RequestTimeout(f"Gateway timed out for {transaction_id}") from exc
        except httpx.RequestError as exc:
            raise TransientError(f"Gateway unreachable for {transaction_id}: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise TransientError(
                f"Unparsable gateway response ({response.status_code}) for {transaction_id}: "
                f"{response.text[:500]}"
            ) from exc

        if not isinstance(data, dict):
            raise TransientError(f"Unexpected gateway response shape for {transaction_id}")
        if response.status_code >= 500:
            raise TransientError(
                f"Gateway returned {response.status_code} for {transaction_id}"
            )
        return data
