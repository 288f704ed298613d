"""Seed script — populates the admin settings the OTP core reads."""

import asyncio

from otp_guard.database.engine import async_session_factory, init_db
from otp_guard.database.repository import AdminSettingRepository

DEFAULT_SETTINGS = {
    "otp_max_requests": "5",
    "otp_window_minutes": "5",
    "platform_name": "OTP Guard",
    "contact_email": "no-reply@example.com",
}


async def seed() -> None:
    """Insert (or overwrite) the default admin settings."""
    await init_db()
    async with async_session_factory() as session:
        repo = AdminSettingRepository(session)
        for key, value in DEFAULT_SETTINGS.items():
            await repo.set(key, value)
        await session.commit()
    print(f"✅ Seeded {len(DEFAULT_SETTINGS)} admin settings into the database.")


if __name__ == "__main__":
    asyncio.run(seed())
