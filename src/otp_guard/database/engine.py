"""Database engine, async session factory and transaction scope."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from otp_guard.config import settings
from otp_guard.errors import StoreUnavailable
from otp_guard.models.base import Base

# Register every table on Base.metadata
import otp_guard.models.otp  # noqa: F401
import otp_guard.models.setting  # noqa: F401

engine = create_async_engine(settings.database_url, echo=settings.debug)

async_session_factory = async_sessionmaker(engine, expire_on_commit=False)


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create all tables that don't yet exist."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Run the enclosed block in one transaction.

    Commits on success and rolls back on error.  Connectivity failures are
    re-raised as :class:`StoreUnavailable`; integrity errors pass through
    untouched so callers can retry a lost race.
    """
    try:
        async with session_factory() as session, session.begin():
            yield session
    except IntegrityError:
        raise
    except (DBAPIError, OSError) as exc:
        raise StoreUnavailable(str(exc)) from exc


async def ping(session_factory: async_sessionmaker[AsyncSession]) -> bool:
    """Return ``True`` if the store answers a trivial query."""
    try:
        async with session_scope(session_factory) as session:
            await session.execute(text("SELECT 1"))
    except StoreUnavailable:
        return False
    return True
