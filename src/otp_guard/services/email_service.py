"""Email service — sends verification emails via async SMTP."""

from __future__ import annotations

import logging
from email.message import EmailMessage

import aiosmtplib

from otp_guard.config import Settings, settings as default_settings
from otp_guard.errors import TransportUnavailable
from otp_guard.security import mask_contact

logger = logging.getLogger(__name__)


class EmailTransport:
    """Sends transactional emails using the configured SMTP server."""

    def __init__(self, config: Settings | None = None) -> None:
        self._config = config or default_settings

    @property
    def is_configured(self) -> bool:
        """SMTP host and credentials must all come from the environment."""
        return bool(
            self._config.smtp_host
            and self._config.smtp_username
            and self._config.smtp_password
        )

    async def send_email(
        self,
        to_address: str,
        subject: str,
        text_body: str,
        html_body: str,
        sender: str | None = None,
    ) -> None:
        """Send a multipart (plain text + HTML) email.

        Parameters
        ----------
        to_address:
            Recipient email address.
        subject:
            Subject line.
        text_body, html_body:
            The two alternative renderings of the message.
        sender:
            ``From`` header; defaults to ``email_from`` or the SMTP username.
        """
        if not self.is_configured:
            raise TransportUnavailable("email transport is not configured")

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = sender or self._config.email_from or self._config.smtp_username
        msg["To"] = to_address
        msg.set_content(text_body)
        msg.add_alternative(html_body, subtype="html")

        logger.info("Sending email to %s", mask_contact(to_address))

        try:
            await aiosmtplib.send(
                msg,
                hostname=self._config.smtp_host,
                port=self._config.smtp_port,
                username=self._config.smtp_username or None,
                password=self._config.smtp_password or None,
                start_tls=True,
                timeout=self._config.smtp_timeout_seconds,
            )
        except (aiosmtplib.SMTPException, OSError) as exc:
            logger.error("SMTP delivery to %s failed: %s", mask_contact(to_address), exc)
            raise TransportUnavailable("email delivery failed") from exc

        logger.info("Email sent to %s", mask_contact(to_address))
