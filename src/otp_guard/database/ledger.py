"""Rate-limit ledger — persistent per-key sliding window with penalty blocks.

One row per ``(contact, contact_type, purpose)``.  :meth:`RateLimitLedger.check`
is read-only: when the window has elapsed it reports a fresh window, and the
reset is written by the next :meth:`RateLimitLedger.record`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from sqlalchemy import and_, case, delete, literal, null, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from otp_guard.database.engine import session_scope
from otp_guard.models.base import UTCDateTime, utcnow
from otp_guard.models.otp import OTPRateLimit
from otp_guard.security import mask_contact
from otp_guard.services.settings_cache import (
    MAX_REQUESTS_KEY,
    WINDOW_MINUTES_KEY,
    SettingsCache,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 5
DEFAULT_WINDOW_MINUTES = 5
# Rows untouched for this long, and not blocked, are purged
STALE_AFTER = timedelta(hours=24)
# request_count written when a key is blocked before it has any history
BLOCK_SENTINEL_COUNT = 99
# Retry hint returned when the store cannot be read
UNAVAILABLE_RETRY = timedelta(minutes=5)


class LimitReason(StrEnum):
    ALLOWED = "allowed"
    RATE_LIMITED = "rate_limited"
    BLOCKED = "blocked"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass
class RateLimitStatus:
    """Outcome of a ledger check."""

    allowed: bool
    request_count: int
    max_requests: int
    window_minutes: int
    time_until_reset: timedelta
    blocked_until: datetime | None = None
    reason: LimitReason = LimitReason.ALLOWED


class RateLimitLedger:
    """Reads and writes ``otp_rate_limits`` rows."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings_cache: SettingsCache,
        clock: Callable[[], datetime] = utcnow,
        default_max_requests: int = DEFAULT_MAX_REQUESTS,
        default_window_minutes: int = DEFAULT_WINDOW_MINUTES,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings_cache
        self._clock = clock
        self._default_max_requests = default_max_requests
        self._default_window_minutes = default_window_minutes

    # ── Limits ───────────────────────────────────────────

    async def limits(self) -> tuple[int, int]:
        """Return ``(max_requests, window_minutes)``."""
        max_requests = await self._settings.get_int(MAX_REQUESTS_KEY, self._default_max_requests)
        window_minutes = await self._settings.get_int(
            WINDOW_MINUTES_KEY, self._default_window_minutes
        )
        return max_requests, window_minutes

    # ── Reads ────────────────────────────────────────────

    async def get(
        self, contact: str, contact_type: str, purpose: str
    ) -> OTPRateLimit | None:
        """Return the ledger row for the key, if any."""
        async with session_scope(self._session_factory) as session:
            result = await session.execute(_select_key(contact, contact_type, purpose))
            return result.scalar_one_or_none()

    async def check(
        self,
        contact: str,
        contact_type: str,
        purpose: str,
        ip_address: str | None = None,
    ) -> RateLimitStatus:
        """Decide whether another code may be issued for the key.

        Never raises for store failures: an unreachable store is reported
        as a denial.
        """
        try:
            max_requests, window_minutes = await self.limits()
            await self.cleanup_stale()
            record = await self.get(contact, contact_type, purpose)
        except Exception:
            # Fail closed: any doubt about the ledger is a denial
            logger.exception(
                "Rate limit check failed for %s; denying", mask_contact(contact)
            )
            return RateLimitStatus(
                allowed=False,
                request_count=0,
                max_requests=self._default_max_requests,
                window_minutes=self._default_window_minutes,
                time_until_reset=UNAVAILABLE_RETRY,
                reason=LimitReason.STORE_UNAVAILABLE,
            )

        now = self._clock()
        window = timedelta(minutes=window_minutes)

        if record is None:
            return RateLimitStatus(
                allowed=True,
                request_count=0,
                max_requests=max_requests,
                window_minutes=window_minutes,
                time_until_reset=timedelta(0),
            )

        if record.is_blocked(now):
            logger.info(
                "Contact %s is blocked until %s",
                mask_contact(contact),
                record.blocked_until.isoformat(),
            )
            return RateLimitStatus(
                allowed=False,
                request_count=record.request_count,
                max_requests=max_requests,
                window_minutes=window_minutes,
                time_until_reset=record.blocked_until - now,
                blocked_until=record.blocked_until,
                reason=LimitReason.BLOCKED,
            )

        if record.window_start <= now - window:
            # Elapsed window; the reset is written by the next record()
            return RateLimitStatus(
                allowed=True,
                request_count=0,
                max_requests=max_requests,
                window_minutes=window_minutes,
                time_until_reset=timedelta(0),
            )

        allowed = record.request_count < max_requests
        time_until_reset = max(timedelta(0), record.window_start + window - now)
        logger.debug(
            "Rate limit check for %s: %d/%d requests, allowed=%s (ip=%s)",
            mask_contact(contact),
            record.request_count,
            max_requests,
            allowed,
            ip_address,
        )
        return RateLimitStatus(
            allowed=allowed,
            request_count=record.request_count,
            max_requests=max_requests,
            window_minutes=window_minutes,
            time_until_reset=time_until_reset,
            reason=LimitReason.ALLOWED if allowed else LimitReason.RATE_LIMITED,
        )

    # ── Writes ───────────────────────────────────────────

    async def record(
        self,
        contact: str,
        contact_type: str,
        purpose: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Count one attempt against the key.

        The increment is a single ``UPDATE``; when the window has elapsed
        the same statement restarts it at 1 and clears any lapsed block.
        An active block is never cleared here.
        """
        _, window_minutes = await self.limits()
        now = self._clock()
        cutoff = now - timedelta(minutes=window_minutes)
        window_elapsed = OTPRateLimit.window_start <= cutoff
        block_lapsed = and_(window_elapsed, OTPRateLimit.blocked_until <= now)
        now_value = literal(now, UTCDateTime)

        values = {
            "request_count": case(
                (window_elapsed, 1), else_=OTPRateLimit.request_count + 1
            ),
            "window_start": case((window_elapsed, now_value), else_=OTPRateLimit.window_start),
            "blocked_until": case((block_lapsed, null()), else_=OTPRateLimit.blocked_until),
            "last_request_at": now,
            "updated_at": now,
        }
        if ip_address:
            values["ip_address"] = ip_address
        if user_agent:
            values["user_agent"] = user_agent

        stmt = (
            update(OTPRateLimit)
            .where(*_key_filter(contact, contact_type, purpose))
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        async def _update(session: AsyncSession) -> bool:
            result = await session.execute(stmt)
            return result.rowcount > 0

        def _new_row() -> OTPRateLimit:
            return OTPRateLimit(
                contact=contact,
                contact_type=contact_type,
                purpose=purpose,
                request_count=1,
                window_start=now,
                last_request_at=now,
                ip_address=ip_address,
                user_agent=user_agent,
                created_at=now,
                updated_at=now,
            )

        await self._upsert(_update, _new_row)
        logger.debug("Recorded attempt for %s (purpose=%s)", mask_contact(contact), purpose)

    async def block(
        self,
        contact: str,
        contact_type: str,
        purpose: str,
        duration_minutes: int,
    ) -> datetime:
        """Block the key for *duration_minutes*; return the block expiry."""
        now = self._clock()
        blocked_until = now + timedelta(minutes=duration_minutes)
        stmt = (
            update(OTPRateLimit)
            .where(*_key_filter(contact, contact_type, purpose))
            .values(blocked_until=blocked_until, updated_at=now)
            .execution_options(synchronize_session=False)
        )

        async def _update(session: AsyncSession) -> bool:
            result = await session.execute(stmt)
            return result.rowcount > 0

        def _new_row() -> OTPRateLimit:
            return OTPRateLimit(
                contact=contact,
                contact_type=contact_type,
                purpose=purpose,
                request_count=BLOCK_SENTINEL_COUNT,
                window_start=now,
                last_request_at=now,
                blocked_until=blocked_until,
                created_at=now,
                updated_at=now,
            )

        await self._upsert(_update, _new_row)
        logger.warning(
            "Contact %s blocked until %s (%d minutes)",
            mask_contact(contact),
            blocked_until.isoformat(),
            duration_minutes,
        )
        return blocked_until

    async def reset(self, contact: str, contact_type: str, purpose: str) -> None:
        """Clear the count and any block, and start a new window now."""
        now = self._clock()
        stmt = (
            update(OTPRateLimit)
            .where(*_key_filter(contact, contact_type, purpose))
            .values(request_count=0, window_start=now, blocked_until=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory) as session:
            await session.execute(stmt)
        logger.info("Rate limit reset for %s (purpose=%s)", mask_contact(contact), purpose)

    async def cleanup_stale(self) -> int:
        """Delete rows idle for 24 hours that are not currently blocked."""
        now = self._clock()
        threshold = now - STALE_AFTER
        stmt = (
            delete(OTPRateLimit)
            .where(
                and_(
                    OTPRateLimit.window_start < threshold,
                    OTPRateLimit.last_request_at < threshold,
                    or_(
                        OTPRateLimit.blocked_until.is_(None),
                        OTPRateLimit.blocked_until < now,
                    ),
                )
            )
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
        if result.rowcount:
            logger.info("Deleted %d stale rate limit records", result.rowcount)
        return result.rowcount

    # ── Helpers ──────────────────────────────────────────

    async def _upsert(self, update_existing, new_row) -> None:
        """Update the key's row, inserting it if missing.

        An insert that loses a race against a concurrent insert falls back
        to the update.
        """
        async with session_scope(self._session_factory) as session:
            if await update_existing(session):
                return
        try:
            async with session_scope(self._session_factory) as session:
                session.add(new_row())
            return
        except IntegrityError:
            logger.debug("Ledger row appeared concurrently; updating instead")
        async with session_scope(self._session_factory) as session:
            await update_existing(session)


def _key_filter(contact: str, contact_type: str, purpose: str):
    return (
        OTPRateLimit.contact == contact,
        OTPRateLimit.contact_type == contact_type,
        OTPRateLimit.purpose == purpose,
    )


def _select_key(contact: str, contact_type: str, purpose: str):
    return select(OTPRateLimit).where(*_key_filter(contact, contact_type, purpose)).limit(1)
