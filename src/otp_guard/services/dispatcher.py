"""Delivery dispatcher — routes a generated code to the right channel."""

from __future__ import annotations

import asyncio
import html
import logging

from otp_guard.config import Environment
from otp_guard.errors import TransportUnavailable
from otp_guard.models.otp import ContactType
from otp_guard.security import mask_contact
from otp_guard.services.email_service import EmailTransport
from otp_guard.services.settings_cache import (
    CONTACT_EMAIL_KEY,
    PLATFORM_NAME_KEY,
    SettingsCache,
)
from otp_guard.services.whatsapp_service import WhatsAppTransport

logger = logging.getLogger(__name__)

DEFAULT_DELIVERY_TIMEOUT = 25.0


class DeliveryDispatcher:
    """Picks the email or WhatsApp transport for a contact and sends the code.

    Outside production an unconfigured transport is simulated (the send is
    logged instead of performed); in production it is an error.
    """

    def __init__(
        self,
        email: EmailTransport,
        whatsapp: WhatsAppTransport,
        settings_cache: SettingsCache,
        environment: Environment = Environment.PRODUCTION,
        ttl_minutes: int = 5,
        timeout_seconds: float = DEFAULT_DELIVERY_TIMEOUT,
        default_platform_name: str = "OTP Guard",
        default_contact_email: str = "no-reply@example.com",
    ) -> None:
        self._email = email
        self._whatsapp = whatsapp
        self._settings = settings_cache
        self._environment = environment
        self._ttl_minutes = ttl_minutes
        self._timeout = timeout_seconds
        self._default_platform_name = default_platform_name
        self._default_contact_email = default_contact_email

    async def deliver(self, contact: str, contact_type: str, code: str, purpose: str) -> None:
        """Send *code* to *contact*.

        Raises :class:`TransportUnavailable` on misconfiguration, transport
        errors or when the bounded timeout elapses.
        """
        if contact_type == ContactType.EMAIL:
            send = self._send_email(contact, code, purpose)
        elif contact_type == ContactType.PHONE:
            send = self._send_whatsapp(contact, code, purpose)
        else:
            raise ValueError(f"unsupported contact type {contact_type!r}")

        try:
            await asyncio.wait_for(send, timeout=self._timeout)
        except TimeoutError as exc:
            logger.error(
                "Delivery to %s timed out after %.0fs", mask_contact(contact), self._timeout
            )
            raise TransportUnavailable("delivery timed out") from exc

    # ── Channels ─────────────────────────────────────────

    async def _send_email(self, email: str, code: str, purpose: str) -> None:
        if not self._email.is_configured:
            self._simulate_or_raise("email", email, code, purpose)
            return

        platform_name = await self._settings.get_str(PLATFORM_NAME_KEY, self._default_platform_name)
        contact_email = await self._settings.get_str(CONTACT_EMAIL_KEY, self._default_contact_email)
        subject, text_body, html_body = render_email(platform_name, code, self._ttl_minutes)

        logger.info("Sending email code to %s (purpose=%s)", mask_contact(email), purpose)
        self._log_code(code)
        await self._email.send_email(
            email,
            subject,
            text_body,
            html_body,
            sender=f"{platform_name} <{contact_email}>",
        )

    async def _send_whatsapp(self, phone: str, code: str, purpose: str) -> None:
        destination = phone.removeprefix("+")
        if not self._whatsapp.is_configured:
            self._simulate_or_raise("WhatsApp", destination, code, purpose)
            return

        platform_name = await self._settings.get_str(PLATFORM_NAME_KEY, self._default_platform_name)
        logger.info("Sending WhatsApp code to %s (purpose=%s)", mask_contact(destination), purpose)
        self._log_code(code)
        await self._whatsapp.send_message(destination, [code], user_name=platform_name)

    # ── Helpers ──────────────────────────────────────────

    def _simulate_or_raise(self, channel: str, contact: str, code: str, purpose: str) -> None:
        if not self._environment.allows_test_hooks:
            raise TransportUnavailable(f"{channel} transport is not configured")
        logger.info(
            "[%s] %s transport not configured; would send code %s to %s for %s",
            self._environment,
            channel,
            code,
            mask_contact(contact),
            purpose,
        )

    def _log_code(self, code: str) -> None:
        if self._environment.allows_test_hooks:
            logger.debug("[%s] code value: %s", self._environment, code)


def render_email(platform_name: str, code: str, ttl_minutes: int) -> tuple[str, str, str]:
    """Return ``(subject, text_body, html_body)`` for a verification email."""
    subject = f"Your {platform_name} Verification Code"
    text_body = (
        f"Your verification code is: {code}. "
        f"This code will expire in {ttl_minutes} minutes.\n\n"
        "If you did not request this code, please ignore this email.\n\n"
        "Best regards,\n"
        f"{platform_name} Team"
    )
    safe_name = html.escape(platform_name)
    html_body = f"""\
<div style="font-family: Arial, sans-serif; padding: 20px; max-width: 500px;">
  <h2 style="color: #2563eb;">{safe_name}</h2>
  <p>Your verification code is:</p>
  <div style="background: #f3f4f6; padding: 15px; border-radius: 8px; font-size: 24px;
              font-weight: bold; text-align: center; margin: 20px 0;">{code}</div>
  <p style="color: #666;">This code will expire in {ttl_minutes} minutes.</p>
  <p style="color: #666; font-size: 12px;">If you did not request this code, please ignore this email.</p>
  <hr style="margin: 20px 0; border: none; border-top: 1px solid #e5e7eb;">
  <p style="color: #666; font-size: 12px;">Best regards,<br>{safe_name} Team</p>
</div>
"""
    return subject, text_body, html_body
