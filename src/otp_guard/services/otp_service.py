"""OTP service — the caller-facing API for issuing and verifying codes.

``send_code`` runs: IP hook → ledger check → ledger record → generate →
store → deliver.  The attempt is recorded before the code is stored, so a
crash in between costs the caller one request but never yields an
uncounted code.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from otp_guard.config import Environment, Settings
from otp_guard.database.code_store import CodeStore
from otp_guard.database.ledger import LimitReason, RateLimitLedger, RateLimitStatus
from otp_guard.database.repository import DatabaseSettingsProvider
from otp_guard.errors import StoreUnavailable, TransportUnavailable
from otp_guard.models.base import utcnow
from otp_guard.models.otp import ContactType
from otp_guard.security import DEFAULT_CODE_LENGTH, generate_code, mask_contact
from otp_guard.services.dispatcher import DeliveryDispatcher
from otp_guard.services.email_service import EmailTransport
from otp_guard.services.results import (
    CleanupReport,
    SendResult,
    SendStatus,
    VerifyResult,
)
from otp_guard.services.settings_cache import SettingsCache
from otp_guard.services.verification import VerificationEngine
from otp_guard.services.whatsapp_service import WhatsAppTransport

logger = logging.getLogger(__name__)

DEFAULT_TTL_MINUTES = 5

MSG_SENT = "Verification code sent"
MSG_GENERIC_FAILURE = "Unable to send verification code. Please try again later."
MSG_DELIVERY_FAILED = "We couldn't deliver your verification code. Please try again."
MSG_IP_LIMITED = "Too many verification requests from your network. Please try again later."
# Applied when an IP hook refuses without saying for how long
IP_LIMIT_RETRY = timedelta(hours=1)


class IpRateLimiter(Protocol):
    """Optional secondary limiter keyed by client IP.

    No thresholds ship with the core; deployments plug their own in.
    """

    async def check(self, ip_address: str, purpose: str) -> bool: ...


class OTPService:
    """Issues, verifies and cleans up one-time codes."""

    def __init__(
        self,
        code_store: CodeStore,
        ledger: RateLimitLedger,
        dispatcher: DeliveryDispatcher,
        verifier: VerificationEngine,
        settings_cache: SettingsCache,
        environment: Environment = Environment.PRODUCTION,
        ttl_minutes: int = DEFAULT_TTL_MINUTES,
        code_length: int = DEFAULT_CODE_LENGTH,
        ip_limiter: IpRateLimiter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._codes = code_store
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._verifier = verifier
        self._settings_cache = settings_cache
        self._environment = environment
        self._ttl = timedelta(minutes=ttl_minutes)
        self._code_length = code_length
        self._ip_limiter = ip_limiter
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        config: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        email: EmailTransport | None = None,
        whatsapp: WhatsAppTransport | None = None,
        ip_limiter: IpRateLimiter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> OTPService:
        """Wire the default collaborators from application settings."""
        cache = SettingsCache(
            DatabaseSettingsProvider(session_factory),
            ttl_seconds=config.settings_cache_ttl_seconds,
        )
        code_store = CodeStore(session_factory, clock=clock)
        ledger = RateLimitLedger(
            session_factory,
            cache,
            clock=clock,
            default_max_requests=config.otp_default_max_requests,
            default_window_minutes=config.otp_default_window_minutes,
        )
        dispatcher = DeliveryDispatcher(
            email or EmailTransport(config),
            whatsapp or WhatsAppTransport(config),
            cache,
            environment=config.environment,
            ttl_minutes=config.otp_ttl_minutes,
            timeout_seconds=config.delivery_timeout_seconds,
            default_platform_name=config.default_platform_name,
            default_contact_email=config.default_contact_email,
        )
        verifier = VerificationEngine(
            code_store,
            ledger,
            environment=config.environment,
            test_codes_enabled=config.otp_test_codes_enabled,
            failure_threshold=config.otp_failure_threshold,
            clock=clock,
        )
        return cls(
            code_store,
            ledger,
            dispatcher,
            verifier,
            cache,
            environment=config.environment,
            ttl_minutes=config.otp_ttl_minutes,
            code_length=config.otp_code_length,
            ip_limiter=ip_limiter,
            clock=clock,
        )

    # ── Issuance ─────────────────────────────────────────

    async def send_code(
        self,
        contact: str,
        purpose: str,
        contact_type: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> SendResult:
        """Issue a code for (contact, purpose) and deliver it.

        Never raises: every failure is reported through the returned
        :class:`SendResult` with a message that is safe to show.
        """
        masked = mask_contact(contact)
        logger.info(
            "Code requested: %s=%s purpose=%s ip=%s", contact_type, masked, purpose, ip_address
        )
        try:
            contact_type = ContactType(contact_type)

            if self._ip_limiter is not None and ip_address:
                if not await self._ip_limiter.check(ip_address, purpose):
                    logger.warning("IP %s refused by the IP limiter", ip_address)
                    return SendResult(
                        SendStatus.IP_RATE_LIMITED,
                        MSG_IP_LIMITED,
                        time_until_reset=IP_LIMIT_RETRY,
                    )

            status = await self._ledger.check(contact, contact_type, purpose, ip_address)
            if not status.allowed:
                return self._denied(status, masked)

            await self._ledger.record(contact, contact_type, purpose, ip_address, user_agent)

            code = generate_code(self._code_length)
            expires_at = self._clock() + self._ttl
            await self._codes.create(contact, code, purpose, contact_type, expires_at)
        except StoreUnavailable:
            logger.exception("Store unavailable while issuing a code for %s", masked)
            return SendResult(SendStatus.UNAVAILABLE, MSG_GENERIC_FAILURE)
        except Exception:
            logger.exception("Unexpected error while issuing a code for %s", masked)
            return SendResult(SendStatus.ERROR, MSG_GENERIC_FAILURE)

        echoed = code if self._environment.allows_test_hooks else None
        try:
            await self._dispatcher.deliver(contact, contact_type, code, purpose)
        except Exception as exc:
            if isinstance(exc, TransportUnavailable):
                logger.error("Delivery failed for %s; code remains valid: %s", masked, exc)
            else:
                logger.exception("Unexpected delivery error for %s", masked)
            return SendResult(
                SendStatus.DELIVERY_FAILED, MSG_DELIVERY_FAILED, issued=True, code=echoed
            )

        logger.info("Code sent to %s (purpose=%s)", masked, purpose)
        return SendResult(SendStatus.SENT, MSG_SENT, issued=True, code=echoed)

    def _denied(self, status: RateLimitStatus, masked: str) -> SendResult:
        wait_minutes = math.ceil(status.time_until_reset.total_seconds() / 60)
        if status.reason is LimitReason.BLOCKED:
            logger.warning("Blocked contact %s requested a code", masked)
            return SendResult(
                SendStatus.BLOCKED,
                "Account temporarily blocked due to too many requests. "
                f"Please try again in {wait_minutes} minutes.",
                time_until_reset=status.time_until_reset,
            )
        if status.reason is LimitReason.STORE_UNAVAILABLE:
            return SendResult(
                SendStatus.UNAVAILABLE,
                MSG_GENERIC_FAILURE,
                time_until_reset=status.time_until_reset,
            )
        logger.warning(
            "Rate limit hit for %s: %d/%d requests",
            masked,
            status.request_count,
            status.max_requests,
        )
        return SendResult(
            SendStatus.RATE_LIMITED,
            f"Too many verification requests. Please wait {wait_minutes} minutes "
            "before trying again.",
            time_until_reset=status.time_until_reset,
        )

    # ── Verification ─────────────────────────────────────

    async def verify_code(
        self,
        contact: str,
        code: str,
        purpose: str,
        contact_type: str = ContactType.PHONE,
    ) -> VerifyResult:
        """Verify *code* for (contact, purpose); see :class:`VerificationEngine`."""
        return await self._verifier.verify(contact, code, purpose, contact_type)

    # ── Maintenance ──────────────────────────────────────

    async def cleanup_expired(self) -> CleanupReport:
        """Purge expired codes, stale ledger rows and expired cached settings.

        Store failures propagate as :class:`StoreUnavailable`.
        """
        report = CleanupReport(
            codes_deleted=await self._codes.cleanup_expired(),
            rate_limits_deleted=await self._ledger.cleanup_stale(),
            settings_evicted=self._settings_cache.evict_expired(),
        )
        logger.info(
            "Cleanup complete: %d codes, %d rate limit records, %d cached settings",
            report.codes_deleted,
            report.rate_limits_deleted,
            report.settings_evicted,
        )
        return report
