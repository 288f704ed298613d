"""WhatsApp service — delivers template messages through the AiSensy campaign API.

The campaign's template takes the one-time code as its only parameter.
Phone numbers are passed without the leading ``+``.
"""

from __future__ import annotations

import logging

import httpx

from otp_guard.config import Settings, settings as default_settings
from otp_guard.errors import TransportUnavailable
from otp_guard.security import mask_contact

logger = logging.getLogger(__name__)


class WhatsAppTransport:
    """Async HTTP wrapper around the AiSensy campaign endpoint."""

    def __init__(
        self,
        config: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config or default_settings
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self._config.aisensy_api_key)

    def _payload(
        self, destination: str, template_params: list[str], user_name: str
    ) -> dict:
        return {
            "apiKey": self._config.aisensy_api_key,
            "campaignName": self._config.aisensy_campaign_name,
            "destination": destination,
            "userName": user_name,
            "templateParams": template_params,
            "source": "otp-guard",
            "media": {},
            "carouselCards": [],
            "location": {},
            "attributes": {},
            "paramsFallbackValue": {"FirstName": "user"},
        }

    async def send_message(
        self,
        destination: str,
        template_params: list[str],
        user_name: str = "",
    ) -> None:
        """Send a template message to *destination* (digits only, no ``+``).

        Raises :class:`TransportUnavailable` when the API key is missing,
        the request times out, or AiSensy answers with a non-2xx status.
        """
        if not self.is_configured:
            raise TransportUnavailable("WhatsApp transport is not configured")

        payload = self._payload(destination, template_params, user_name or self._config.app_name)
        masked = mask_contact(destination)
        logger.info("Sending WhatsApp template %s to %s", self._config.aisensy_campaign_name, masked)

        try:
            async with httpx.AsyncClient(
                timeout=self._config.whatsapp_timeout_seconds,
                transport=self._transport,
            ) as client:
                resp = await client.post(self._config.aisensy_api_url, json=payload)
        except httpx.HTTPError as exc:
            logger.error("WhatsApp request to %s failed: %r", masked, exc)
            raise TransportUnavailable("WhatsApp delivery failed") from exc

        if not resp.is_success:
            logger.error(
                "WhatsApp send to %s rejected: %s %s", masked, resp.status_code, resp.text[:200]
            )
            raise TransportUnavailable(f"WhatsApp API returned {resp.status_code}")

        logger.info("WhatsApp message sent to %s (status %s)", masked, resp.status_code)
