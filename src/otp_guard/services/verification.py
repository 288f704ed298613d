"""Verification engine — checks a submitted code and escalates abuse.

Each attempt ends in exactly one of ``accepted``, ``invalid``, ``expired``
or ``reused``:

* no code on record                      → ``invalid`` (escalation evaluated, attempt not counted)
* newest code past its expiry            → ``expired`` (code consumed, never escalated)
* newest code consumed, value matches    → ``reused``  (always escalated)
* value differs                          → ``invalid`` (escalation evaluated)
* value matches and consumption wins     → ``accepted`` (ledger reset)

Blocking a key on a failed attempt also consumes its outstanding code.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from otp_guard.config import Environment
from otp_guard.database.code_store import CodeStore
from otp_guard.database.ledger import RateLimitLedger
from otp_guard.models.base import utcnow
from otp_guard.models.otp import ContactType
from otp_guard.security import constant_time_equals, mask_contact
from otp_guard.services.penalty import block_duration_minutes
from otp_guard.services.results import VerifyResult, VerifyStatus

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3

# Accepted for any contact when test codes are enabled
UNIVERSAL_TEST_CODES = frozenset({"1234", "0000"})
CHANNEL_TEST_CODES = {ContactType.EMAIL: "1111", ContactType.PHONE: "2222"}

MSG_ACCEPTED = "Verification successful"
MSG_TEST_ACCEPTED = "Test verification code accepted"
MSG_INVALID = "Invalid verification code"
MSG_NOT_FOUND = "Invalid or expired verification code"
MSG_EXPIRED = "Verification code has expired"
MSG_REUSED = "Verification code has already been used"
MSG_ERROR = "Verification failed. Please try again."


class VerificationEngine:
    """Validates codes against the :class:`CodeStore`.

    Parameters
    ----------
    code_store, ledger:
        Persistence collaborators.
    environment:
        Deployment environment.  Test codes are never honoured in
        production.
    test_codes_enabled:
        Accept the fixed sentinel codes (``1234``, ``0000``, ``1111`` for
        email, ``2222`` for phone) outside production.
    failure_threshold:
        ``request_count`` at which a failed attempt triggers a block.
    """

    def __init__(
        self,
        code_store: CodeStore,
        ledger: RateLimitLedger,
        environment: Environment = Environment.PRODUCTION,
        test_codes_enabled: bool = False,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._codes = code_store
        self._ledger = ledger
        self._failure_threshold = failure_threshold
        self._clock = clock

        if test_codes_enabled and not environment.allows_test_hooks:
            logger.warning("Test codes requested in %s; ignoring", environment)
        self._test_codes_enabled = test_codes_enabled and environment.allows_test_hooks

    @property
    def test_codes_enabled(self) -> bool:
        return self._test_codes_enabled

    async def verify(
        self,
        contact: str,
        submitted: str,
        purpose: str,
        contact_type: str = ContactType.PHONE,
    ) -> VerifyResult:
        """Verify *submitted* for (contact, purpose)."""
        masked = mask_contact(contact)
        submitted = submitted.strip()
        try:
            if self._is_test_code(submitted, contact_type):
                return await self._accept_test_code(contact, purpose, masked)

            stored = await self._codes.get_latest(contact, purpose)
            now = self._clock()

            if stored is None:
                logger.info("No code on record for %s (purpose=%s)", masked, purpose)
                return VerifyResult(
                    VerifyStatus.INVALID,
                    MSG_NOT_FOUND,
                    should_block=await self._should_block(
                        contact, contact_type, purpose, count_attempt=False
                    ),
                )

            if stored.is_expired(now):
                logger.info("Expired code submitted for %s", masked)
                await self._codes.mark_used(stored.id)
                return VerifyResult(VerifyStatus.EXPIRED, MSG_EXPIRED)

            matches = constant_time_equals(stored.code, submitted)

            if stored.is_used:
                if matches:
                    return await self._reject_reuse(contact, contact_type, purpose, masked)
                logger.info("Invalid code for %s (latest already consumed)", masked)
                return VerifyResult(
                    VerifyStatus.INVALID,
                    MSG_INVALID,
                    should_block=await self._should_block(contact, contact_type, purpose),
                )

            if not matches:
                logger.info("Invalid code for %s (purpose=%s)", masked, purpose)
                return VerifyResult(
                    VerifyStatus.INVALID,
                    MSG_INVALID,
                    should_block=await self._should_block(contact, contact_type, purpose),
                )

            if not await self._codes.mark_used(stored.id):
                # Consumed by a concurrent verification between read and write
                return await self._reject_reuse(contact, contact_type, purpose, masked)

            await self._ledger.reset(contact, contact_type, purpose)
            logger.info("Code verified for %s (purpose=%s)", masked, purpose)
            return VerifyResult(VerifyStatus.ACCEPTED, MSG_ACCEPTED)

        except Exception:
            logger.exception("Verification error for %s", masked)
            return VerifyResult(VerifyStatus.ERROR, MSG_ERROR, should_block=False)

    # ── Escalation ───────────────────────────────────────

    async def _should_block(
        self, contact: str, contact_type: str, purpose: str, count_attempt: bool = True
    ) -> bool:
        """Block the key once its attempt count reaches the failure threshold.

        Below the threshold the failed attempt is counted when
        *count_attempt* is set.  Attempts against a key that was never sent
        a code are not counted, so nobody can block a contact without a
        code having been issued to it.
        """
        try:
            record = await self._ledger.get(contact, contact_type, purpose)
            request_count = record.request_count if record else 0
            if request_count >= self._failure_threshold:
                logger.warning(
                    "Blocking %s after %d attempts", mask_contact(contact), request_count
                )
                await self._apply_penalty(contact, contact_type, purpose, request_count)
                # Stop further guessing against the outstanding code
                outstanding = await self._codes.get_valid(contact, purpose)
                if outstanding is not None:
                    await self._codes.mark_used(outstanding.id)
                return True
            if count_attempt:
                await self._ledger.record(contact, contact_type, purpose)
            return False
        except Exception:
            logger.exception("Error evaluating failed attempt for %s", mask_contact(contact))
            return False

    async def _apply_penalty(
        self, contact: str, contact_type: str, purpose: str, request_count: int
    ) -> None:
        minutes = block_duration_minutes(request_count)
        await self._ledger.block(contact, contact_type, purpose, minutes)
        logger.warning(
            "Progressive penalty applied: %s blocked for %d minutes",
            mask_contact(contact),
            minutes,
        )

    async def _reject_reuse(
        self, contact: str, contact_type: str, purpose: str, masked: str
    ) -> VerifyResult:
        logger.warning("Reuse of a consumed code for %s (purpose=%s)", masked, purpose)
        try:
            record = await self._ledger.get(contact, contact_type, purpose)
            await self._apply_penalty(
                contact, contact_type, purpose, record.request_count if record else 0
            )
        except Exception:
            logger.exception("Error applying reuse penalty for %s", masked)
        return VerifyResult(VerifyStatus.REUSED, MSG_REUSED, should_block=True)

    # ── Test codes ───────────────────────────────────────

    def _is_test_code(self, submitted: str, contact_type: str) -> bool:
        if not self._test_codes_enabled:
            return False
        return submitted in UNIVERSAL_TEST_CODES or submitted == CHANNEL_TEST_CODES.get(
            contact_type
        )

    async def _accept_test_code(self, contact: str, purpose: str, masked: str) -> VerifyResult:
        logger.info("Accepting test code for %s (purpose=%s)", masked, purpose)
        outstanding = await self._codes.get_valid(contact, purpose)
        if outstanding is not None:
            await self._codes.mark_used(outstanding.id)
        return VerifyResult(VerifyStatus.ACCEPTED, MSG_TEST_ACCEPTED)
