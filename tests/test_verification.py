"""Tests for the VerificationEngine state machine."""

import asyncio
from datetime import timedelta

import pytest

from otp_guard.config import Environment
from otp_guard.database.ledger import LimitReason
from otp_guard.services.results import VerifyStatus
from otp_guard.services.verification import VerificationEngine

PHONE = "+919876543210"


@pytest.fixture
def engine_factory(code_store, ledger, clock):
    def _make(**kwargs) -> VerificationEngine:
        kwargs.setdefault("environment", Environment.TEST)
        return VerificationEngine(code_store, ledger, clock=clock, **kwargs)

    return _make


@pytest.fixture
def verifier(engine_factory) -> VerificationEngine:
    return engine_factory()


@pytest.fixture
def issue(code_store, ledger, clock):
    """Store a code the way a successful send does."""

    async def _issue(code="4821", contact=PHONE, purpose="login", contact_type="phone"):
        await ledger.record(contact, contact_type, purpose)
        return await code_store.create(
            contact, code, purpose, contact_type, clock() + timedelta(minutes=5)
        )

    return _issue


@pytest.mark.asyncio
async def test_correct_code_is_accepted_and_resets_ledger(verifier, issue, ledger, code_store):
    await issue()
    result = await verifier.verify(PHONE, "4821", "login", "phone")

    assert result.status is VerifyStatus.ACCEPTED
    assert result.success is True
    assert result.should_block is False
    assert (await ledger.get(PHONE, "phone", "login")).request_count == 0
    assert await code_store.get_valid(PHONE, "login") is None


@pytest.mark.asyncio
async def test_submitted_code_is_trimmed(verifier, issue):
    await issue()
    result = await verifier.verify(PHONE, " 4821 ", "login", "phone")
    assert result.status is VerifyStatus.ACCEPTED


@pytest.mark.asyncio
async def test_second_use_is_reuse_and_blocks(verifier, issue, ledger):
    await issue()
    await verifier.verify(PHONE, "4821", "login", "phone")

    result = await verifier.verify(PHONE, "4821", "login", "phone")
    assert result.status is VerifyStatus.REUSED
    assert result.should_block is True
    assert (await ledger.check(PHONE, "phone", "login")).reason is LimitReason.BLOCKED


@pytest.mark.asyncio
async def test_expired_code_is_consumed_without_penalty(verifier, issue, ledger, code_store, clock):
    await issue()
    clock.advance(minutes=6)

    result = await verifier.verify(PHONE, "4821", "login", "phone")
    assert result.status is VerifyStatus.EXPIRED
    assert result.should_block is False
    assert (await code_store.get_latest(PHONE, "login")).is_used is True
    assert (await ledger.get(PHONE, "phone", "login")).blocked_until is None


@pytest.mark.asyncio
async def test_no_code_on_record_is_invalid(verifier):
    result = await verifier.verify(PHONE, "4821", "login", "phone")
    assert result.status is VerifyStatus.INVALID
    assert result.should_block is False


@pytest.mark.asyncio
async def test_code_for_other_purpose_is_invalid(verifier, issue):
    await issue(purpose="password_reset")
    result = await verifier.verify(PHONE, "4821", "login", "phone")
    assert result.status is VerifyStatus.INVALID


@pytest.mark.asyncio
async def test_third_wrong_code_blocks_and_consumes_code(verifier, issue, ledger, code_store, clock):
    await issue()

    first = await verifier.verify(PHONE, "0001", "login", "phone")
    second = await verifier.verify(PHONE, "0002", "login", "phone")
    third = await verifier.verify(PHONE, "0003", "login", "phone")

    assert [r.status for r in (first, second, third)] == [VerifyStatus.INVALID] * 3
    assert [r.should_block for r in (first, second, third)] == [False, False, True]

    status = await ledger.check(PHONE, "phone", "login")
    assert status.reason is LimitReason.BLOCKED
    assert status.blocked_until == clock() + timedelta(minutes=30)
    # The right code no longer works once the key is blocked
    assert await code_store.get_valid(PHONE, "login") is None
    result = await verifier.verify(PHONE, "4821", "login", "phone")
    assert result.status is not VerifyStatus.ACCEPTED


@pytest.mark.asyncio
async def test_wrong_code_against_consumed_code_is_invalid(verifier, issue):
    await issue()
    await verifier.verify(PHONE, "4821", "login", "phone")
    result = await verifier.verify(PHONE, "9999", "login", "phone")
    assert result.status is VerifyStatus.INVALID


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "contact, contact_type, code",
    [
        (PHONE, "phone", "1234"),
        (PHONE, "phone", "0000"),
        (PHONE, "phone", "2222"),
        ("a@example.com", "email", "1111"),
    ],
)
async def test_test_codes_accepted_when_enabled(engine_factory, contact, contact_type, code):
    verifier = engine_factory(test_codes_enabled=True)
    result = await verifier.verify(contact, code, "login", contact_type)
    assert result.status is VerifyStatus.ACCEPTED


@pytest.mark.asyncio
async def test_channel_test_code_is_not_cross_channel(engine_factory):
    verifier = engine_factory(test_codes_enabled=True)
    result = await verifier.verify("a@example.com", "2222", "login", "email")
    assert result.status is VerifyStatus.INVALID


@pytest.mark.asyncio
async def test_test_codes_consume_outstanding_code(engine_factory, issue, code_store):
    await issue()
    verifier = engine_factory(test_codes_enabled=True)
    await verifier.verify(PHONE, "1234", "login", "phone")
    assert await code_store.get_valid(PHONE, "login") is None


@pytest.mark.asyncio
async def test_test_codes_rejected_when_disabled(verifier):
    assert verifier.test_codes_enabled is False
    result = await verifier.verify(PHONE, "1234", "login", "phone")
    assert result.status is VerifyStatus.INVALID


@pytest.mark.asyncio
async def test_test_codes_ignored_in_production(engine_factory):
    verifier = engine_factory(environment=Environment.PRODUCTION, test_codes_enabled=True)
    assert verifier.test_codes_enabled is False
    result = await verifier.verify(PHONE, "1234", "login", "phone")
    assert result.status is VerifyStatus.INVALID


@pytest.mark.asyncio
async def test_concurrent_correct_submissions_consume_once(verifier, issue):
    await issue()
    results = await asyncio.gather(
        verifier.verify(PHONE, "4821", "login", "phone"),
        verifier.verify(PHONE, "4821", "login", "phone"),
    )

    assert sorted(r.status for r in results) == [VerifyStatus.ACCEPTED, VerifyStatus.REUSED]
    reused = next(r for r in results if r.status is VerifyStatus.REUSED)
    assert reused.should_block is True
