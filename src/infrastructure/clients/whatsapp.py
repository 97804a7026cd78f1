"""
WhatsApp booking confirmations through the Zaptra template API.

The remote template declares a fixed number of positional parameters.
Sending any other count is rejected by the provider with an opaque numeric
error (#132000), so the shape is checked locally before the request.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Sequence

import httpx

from src.core.config import Settings
from src.domain.exceptions import (
    InvalidInput,
    NotificationsDisabled,
    ParameterCountMismatch,
    ProviderUnavailable,
    TemplateRejected,
)

logger = logging.getLogger(__name__)

DEFAULT_PLACEHOLDER = "N/A"
SEND_TEMPLATE_PATH = "/sendtemplatemessage"


@dataclass(frozen=True)
class TemplateParameter:
    name: str
    value: object
    required: bool = False


def format_phone_number(phone: str | None) -> str:
    if not phone:
        raise InvalidInput("Phone number is missing")

    digits = re.sub(r"\D", "", phone)
    if len(digits) == 12 and digits.startswith("91"):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+91{digits}"
    if len(digits) > 10:
        return f"+{digits}"

    raise InvalidInput(f"Invalid phone number: {phone}")


def _is_blank(value: object) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def validate_parameters(
    params: Sequence[TemplateParameter],
    expected_count: int,
) -> list[str]:
    """
    Return the positional ``template_data`` list.

    Count first: a wrong count is a configuration drift and is never
    patched up. Then content: blank required values are rejected, blank
    optional values become ``N/A``.
    """
    if len(params) != expected_count:
        names = [param.name for param in params]
        logger.error(
            "WhatsApp template parameter mismatch: expected %s, supplied %s %s",
            expected_count,
            len(names),
            names,
        )
        raise ParameterCountMismatch(expected=expected_count, supplied=names)

    missing = [param.name for param in params if param.required and _is_blank(param.value)]
    if missing:
        raise InvalidInput(f"Missing required template parameters: {', '.join(missing)}")

    return [
        DEFAULT_PLACEHOLDER if _is_blank(param.value) else str(param.value).strip()
        for param in params
    ]


class ZaptraWhatsAppClient:

    def __init__(self, settings: Settings, http: httpx.AsyncClient):
        self.settings = settings
        self.http = http

    async def send_template(
        self,
        phone: str,
        params: Sequence[TemplateParameter],
        template_name: str | None = None,
    ) -> str | None:
        """
        Send one template message and return the provider message id.
        Validation happens before any network traffic.
        """
        if not self.settings.whatsapp_enabled:
            raise NotificationsDisabled("WhatsApp notifications are disabled")

        template_data = validate_parameters(params, self.settings.whatsapp_template_param_count)
        formatted_phone = format_phone_number(phone)

        if not self.settings.zaptra_api_token:
            raise ProviderUnavailable("Zaptra API token not configured")

        body = {
            "token": self.settings.zaptra_api_token,
            "phone": formatted_phone,
            "template_name": template_name or self.settings.whatsapp_template_name,
            "template_language": self.settings.whatsapp_template_language,
            "template_data": template_data,
        }

        attempts = self.settings.notification_max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._post(body)
            except ProviderUnavailable:
                if attempt == attempts:
                    logger.exception(
                        "WhatsApp provider unavailable after %s attempts (phone=%s)",
                        attempts,
                        formatted_phone,
                    )
                    raise
                delay = 0.5 * 2 ** (attempt - 1)
                logger.warning(
                    "WhatsApp send failed (attempt %s/%s). Retrying in %.1f seconds...",
                    attempt,
                    attempts,
                    delay,
                )
                await asyncio.sleep(delay)
        return None

    async def _post(self, body: dict) -> str | None:
        url = f"{self.settings.zaptra_api_url}{SEND_TEMPLATE_PATH}"
        try:
            response = await self.http.post(
                url,
                json=body,
                timeout=self.settings.notification_timeout_seconds,
            )
        except httpx.RequestError as exc:
            raise ProviderUnavailable(f"Zaptra unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise ProviderUnavailable(f"Zaptra returned {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderUnavailable("Unparsable Zaptra response") from exc

        if response.is_success and isinstance(data, dict) and data.get("status") == "success":
            logger.info("WhatsApp message sent: id=%s phone=%s", data.get("message_id"), body["phone"])
            return data.get("message_id")

        message = data.get("message") if isinstance(data, dict) else None
        raise TemplateRejected(
            message or f"Zaptra returned status {response.status_code}",
            provider_response=data if isinstance(data, dict) else {"raw": data},
        )
