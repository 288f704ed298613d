"""Code store — persistent record of issued one-time codes."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from otp_guard.database.engine import session_scope
from otp_guard.errors import StoreUnavailable
from otp_guard.models.base import utcnow
from otp_guard.models.otp import OTPCode
from otp_guard.security import mask_contact

logger = logging.getLogger(__name__)

# Attempts at the invalidate-then-insert transaction before giving up
CREATE_ATTEMPTS = 3


class CodeStore:
    """Creates, looks up, consumes and purges :class:`OTPCode` rows.

    Every method runs in its own transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def create(
        self,
        contact: str,
        code: str,
        purpose: str,
        contact_type: str,
        expires_at: datetime,
    ) -> OTPCode:
        """Invalidate outstanding codes for (contact, purpose) and insert a new one.

        A concurrent ``create`` for the same key trips the partial unique
        index; the losing transaction is rolled back and replayed.
        """
        for attempt in range(1, CREATE_ATTEMPTS + 1):
            try:
                async with session_scope(self._session_factory) as session:
                    await session.execute(
                        update(OTPCode)
                        .where(
                            OTPCode.contact == contact,
                            OTPCode.purpose == purpose,
                            OTPCode.is_used.is_(False),
                        )
                        .values(is_used=True)
                    )
                    otp = OTPCode(
                        contact=contact,
                        contact_type=contact_type,
                        purpose=purpose,
                        code=code,
                        created_at=self._clock(),
                        expires_at=expires_at,
                        is_used=False,
                    )
                    session.add(otp)
                    await session.flush()
            except IntegrityError:
                logger.warning(
                    "Concurrent code creation for %s/%s (attempt %d)",
                    mask_contact(contact),
                    purpose,
                    attempt,
                )
                continue
            logger.info(
                "Stored code for %s (purpose=%s, expires=%s)",
                mask_contact(contact),
                purpose,
                expires_at.isoformat(),
            )
            return otp

        raise StoreUnavailable(
            f"could not create code for purpose {purpose!r} after {CREATE_ATTEMPTS} attempts"
        )

    async def get_valid(self, contact: str, purpose: str) -> OTPCode | None:
        """Return the newest unused, unexpired code for the key."""
        stmt = (
            select(OTPCode)
            .where(
                OTPCode.contact == contact,
                OTPCode.purpose == purpose,
                OTPCode.is_used.is_(False),
                OTPCode.expires_at >= self._clock(),
            )
            .order_by(OTPCode.created_at.desc())
            .limit(1)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def get_latest(self, contact: str, purpose: str) -> OTPCode | None:
        """Return the newest code for the key regardless of state."""
        stmt = (
            select(OTPCode)
            .where(OTPCode.contact == contact, OTPCode.purpose == purpose)
            # On equal timestamps the live code wins over invalidated ones
            .order_by(OTPCode.created_at.desc(), OTPCode.is_used.asc())
            .limit(1)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def mark_used(self, code_id: str) -> bool:
        """Mark a code consumed.

        Idempotent.  Returns ``True`` only for the call that actually
        flipped the flag.
        """
        stmt = (
            update(OTPCode)
            .where(OTPCode.id == code_id, OTPCode.is_used.is_(False))
            .values(is_used=True)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
        return result.rowcount == 1

    async def cleanup_expired(self) -> int:
        """Delete every code whose expiry has passed; return how many."""
        stmt = delete(OTPCode).where(OTPCode.expires_at < self._clock())
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
        if result.rowcount:
            logger.info("Deleted %d expired codes", result.rowcount)
        return result.rowcount
