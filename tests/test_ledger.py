"""Tests for the RateLimitLedger."""

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from otp_guard.database.ledger import BLOCK_SENTINEL_COUNT, LimitReason, RateLimitLedger
from otp_guard.database.repository import DatabaseSettingsProvider
from otp_guard.services.settings_cache import SettingsCache

KEY = ("a@example.com", "email", "login")


@pytest.mark.asyncio
async def test_check_without_history_allows(ledger: RateLimitLedger):
    status = await ledger.check(*KEY)
    assert status.allowed is True
    assert status.request_count == 0
    assert status.max_requests == 5
    assert status.window_minutes == 5
    assert status.time_until_reset == timedelta(0)


@pytest.mark.asyncio
async def test_record_creates_then_increments(ledger: RateLimitLedger):
    await ledger.record(*KEY, ip_address="10.0.0.1", user_agent="pytest")
    await ledger.record(*KEY)

    row = await ledger.get(*KEY)
    assert row.request_count == 2
    # Advisory metadata keeps the last non-empty value
    assert row.ip_address == "10.0.0.1"
    assert row.user_agent == "pytest"


@pytest.mark.asyncio
async def test_denies_once_max_requests_reached(ledger: RateLimitLedger, clock):
    for _ in range(4):
        await ledger.record(*KEY)
    status = await ledger.check(*KEY)
    assert status.allowed is True
    assert status.request_count == 4

    await ledger.record(*KEY)
    clock.advance(minutes=1)
    status = await ledger.check(*KEY)
    assert status.allowed is False
    assert status.reason is LimitReason.RATE_LIMITED
    assert status.request_count == 5
    assert status.time_until_reset == timedelta(minutes=4)


@pytest.mark.asyncio
async def test_keys_are_independent(ledger: RateLimitLedger):
    for _ in range(5):
        await ledger.record(*KEY)
    assert (await ledger.check("a@example.com", "email", "password_reset")).allowed
    assert (await ledger.check("b@example.com", "email", "login")).allowed


@pytest.mark.asyncio
async def test_admin_settings_override_defaults(ledger: RateLimitLedger, set_admin_setting):
    await set_admin_setting("otp_max_requests", "2")
    await set_admin_setting("otp_window_minutes", "10")

    await ledger.record(*KEY)
    await ledger.record(*KEY)
    status = await ledger.check(*KEY)
    assert status.allowed is False
    assert status.max_requests == 2
    assert status.window_minutes == 10


@pytest.mark.asyncio
async def test_window_reset_is_read_only_until_record(ledger: RateLimitLedger, clock):
    for _ in range(5):
        await ledger.record(*KEY)
    clock.advance(minutes=6)

    first = await ledger.check(*KEY)
    second = await ledger.check(*KEY)
    assert first.allowed and second.allowed
    assert first.request_count == second.request_count == 0
    # check() did not write the reset
    assert (await ledger.get(*KEY)).request_count == 5

    await ledger.record(*KEY)
    row = await ledger.get(*KEY)
    assert row.request_count == 1
    assert row.window_start == clock()


@pytest.mark.asyncio
async def test_block_denies_until_expiry(ledger: RateLimitLedger, clock):
    await ledger.record(*KEY)
    blocked_until = await ledger.block(*KEY, duration_minutes=30)
    assert blocked_until == clock() + timedelta(minutes=30)

    clock.advance(minutes=10)
    status = await ledger.check(*KEY)
    assert status.allowed is False
    assert status.reason is LimitReason.BLOCKED
    assert status.blocked_until == blocked_until
    assert status.time_until_reset == timedelta(minutes=20)

    clock.advance(minutes=21)
    assert (await ledger.check(*KEY)).allowed is True


@pytest.mark.asyncio
async def test_block_without_history_uses_sentinel_count(ledger: RateLimitLedger):
    await ledger.block(*KEY, duration_minutes=45)
    row = await ledger.get(*KEY)
    assert row.request_count == BLOCK_SENTINEL_COUNT
    assert row.blocked_until is not None


@pytest.mark.asyncio
async def test_record_never_clears_an_active_block(ledger: RateLimitLedger, clock):
    await ledger.record(*KEY)
    await ledger.block(*KEY, duration_minutes=30)
    clock.advance(minutes=6)

    await ledger.record(*KEY)
    assert (await ledger.check(*KEY)).reason is LimitReason.BLOCKED


@pytest.mark.asyncio
async def test_reset_clears_count_and_block(ledger: RateLimitLedger, clock):
    for _ in range(5):
        await ledger.record(*KEY)
    await ledger.block(*KEY, duration_minutes=30)

    await ledger.reset(*KEY)
    row = await ledger.get(*KEY)
    assert row.request_count == 0
    assert row.blocked_until is None
    assert row.window_start == clock()
    assert (await ledger.check(*KEY)).allowed is True


@pytest.mark.asyncio
async def test_cleanup_stale_keeps_active_and_blocked_rows(ledger: RateLimitLedger, clock):
    await ledger.record("idle@example.com", "email", "login")
    await ledger.record("blocked@example.com", "email", "login")
    await ledger.block("blocked@example.com", "email", "login", duration_minutes=60 * 48)
    clock.advance(hours=25)
    await ledger.record("fresh@example.com", "email", "login")

    assert await ledger.cleanup_stale() == 1
    assert await ledger.get("idle@example.com", "email", "login") is None
    assert await ledger.get("blocked@example.com", "email", "login") is not None
    assert await ledger.get("fresh@example.com", "email", "login") is not None


@pytest.mark.asyncio
async def test_check_fails_closed_when_store_unreachable(tmp_path, clock):
    broken = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'otp.db'}")
    factory = async_sessionmaker(broken, expire_on_commit=False)
    ledger = RateLimitLedger(
        factory, SettingsCache(DatabaseSettingsProvider(factory)), clock=clock
    )

    status = await ledger.check(*KEY)
    assert status.allowed is False
    assert status.reason is LimitReason.STORE_UNAVAILABLE
    assert status.time_until_reset > timedelta(0)
    await broken.dispose()


@pytest.mark.asyncio
async def test_window_elapses_at_its_boundary(ledger: RateLimitLedger, clock):
    for _ in range(5):
        await ledger.record(*KEY)
    clock.advance(minutes=5)

    status = await ledger.check(*KEY)
    assert status.allowed is True
    assert status.request_count == 0

    await ledger.record(*KEY)
    assert (await ledger.get(*KEY)).request_count == 1
