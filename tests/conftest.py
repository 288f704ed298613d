"""Shared fixtures: a per-test SQLite database, a fake clock and wired services."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from otp_guard.config import Environment, Settings
from otp_guard.database.code_store import CodeStore
from otp_guard.database.engine import init_db
from otp_guard.database.ledger import RateLimitLedger
from otp_guard.database.repository import AdminSettingRepository, DatabaseSettingsProvider
from otp_guard.services.email_service import EmailTransport
from otp_guard.services.otp_service import OTPService
from otp_guard.services.settings_cache import SettingsCache
from otp_guard.services.whatsapp_service import WhatsAppTransport

T0 = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced replacement for ``utcnow``."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def engine(tmp_path):
    """A fresh file-backed SQLite database with all tables created."""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'otp.db'}", echo=False)
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def settings_cache(session_factory) -> SettingsCache:
    return SettingsCache(DatabaseSettingsProvider(session_factory), ttl_seconds=60)


@pytest.fixture
def code_store(session_factory, clock) -> CodeStore:
    return CodeStore(session_factory, clock=clock)


@pytest.fixture
def ledger(session_factory, settings_cache, clock) -> RateLimitLedger:
    return RateLimitLedger(session_factory, settings_cache, clock=clock)


@pytest.fixture
def set_admin_setting(session_factory):
    """Write an admin setting directly to the database."""

    async def _set(key: str, value: str) -> None:
        async with session_factory() as session:
            await AdminSettingRepository(session).set(key, value)
            await session.commit()

    return _set


@pytest.fixture
def app_settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'otp.db'}",
        environment=Environment.TEST,
        otp_test_codes_enabled=False,
    )


@pytest.fixture
def email_transport():
    """Mocked email transport — never actually sends emails."""
    transport = MagicMock(spec=EmailTransport)
    transport.is_configured = True
    transport.send_email = AsyncMock()
    return transport


@pytest.fixture
def whatsapp_transport():
    """Mocked WhatsApp transport — never calls the API."""
    transport = MagicMock(spec=WhatsAppTransport)
    transport.is_configured = True
    transport.send_message = AsyncMock()
    return transport


@pytest.fixture
def otp_service(app_settings, session_factory, email_transport, whatsapp_transport, clock):
    return OTPService.from_settings(
        app_settings,
        session_factory,
        email=email_transport,
        whatsapp=whatsapp_transport,
        clock=clock,
    )
