"""Admin settings repository — data access layer for platform settings."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from otp_guard.database.engine import session_scope
from otp_guard.models.setting import AdminSetting


class AdminSettingRepository:
    """Encapsulates all database queries related to admin settings."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, key: str) -> str | None:
        """Return the raw string value for *key*, or ``None`` if unset."""
        stmt = select(AdminSetting.value).where(AdminSetting.key == key)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def set(self, key: str, value: str) -> None:
        """Insert or overwrite *key*."""
        setting = await self._session.get(AdminSetting, key)
        if setting is None:
            self._session.add(AdminSetting(key=key, value=value))
        else:
            setting.value = value
        await self._session.flush()


class DatabaseSettingsProvider:
    """Settings provider backed by the ``admin_settings`` table.

    Each lookup runs in its own short transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_setting(self, key: str) -> str | None:
        async with session_scope(self._session_factory) as session:
            return await AdminSettingRepository(session).get(key)
