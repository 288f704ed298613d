"""Settings cache — cache-aside wrapper around the admin settings provider."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)

# Keys read by the OTP core
MAX_REQUESTS_KEY = "otp_max_requests"
WINDOW_MINUTES_KEY = "otp_window_minutes"
PLATFORM_NAME_KEY = "platform_name"
CONTACT_EMAIL_KEY = "contact_email"


class SettingsProvider(Protocol):
    """Anything that can look up a string setting by key."""

    async def get_setting(self, key: str) -> str | None: ...


@dataclass
class _Entry:
    value: str | None
    expires: float


class SettingsCache:
    """TTL cache for admin settings.

    Every read checks the entry's expiry; an expired or missing entry is
    re-read from the provider before a value is returned.  Pass
    ``force_refresh=True`` to bypass the cache when the caller cannot
    tolerate a stale value.
    """

    def __init__(
        self,
        provider: SettingsProvider,
        ttl_seconds: float = 60.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._ttl = ttl_seconds
        self._monotonic = monotonic
        self._entries: dict[str, _Entry] = {}

    async def _read(self, key: str, force_refresh: bool) -> str | None:
        now = self._monotonic()
        entry = self._entries.get(key)
        if entry is not None and entry.expires > now and not force_refresh:
            return entry.value

        value = await self._provider.get_setting(key)
        self._entries[key] = _Entry(value=value, expires=now + self._ttl)
        return value

    async def get_int(self, key: str, default: int, *, force_refresh: bool = False) -> int:
        """Return *key* as an integer.

        Provider errors propagate.  Unset, non-numeric or non-positive
        values fall back to *default*.
        """
        raw = await self._read(key, force_refresh)
        if raw is None or raw == "":
            return default
        try:
            value = int(raw)
        except ValueError:
            logger.warning("Setting %s has non-integer value %r; using %d", key, raw, default)
            return default
        if value <= 0:
            logger.warning("Setting %s must be positive, got %d; using %d", key, value, default)
            return default
        return value

    async def get_str(self, key: str, default: str) -> str:
        """Return a display-only string setting, falling back on any error."""
        try:
            raw = await self._read(key, force_refresh=False)
        except Exception:
            logger.exception("Error reading setting %s; using default", key)
            return default
        return raw or default

    def invalidate(self, key: str | None = None) -> None:
        """Drop one entry, or all of them when *key* is ``None``.

        Called by the host application after it writes an admin setting so
        the new value applies before the TTL runs out.
        """
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def evict_expired(self) -> int:
        """Remove expired entries; return how many were dropped."""
        now = self._monotonic()
        expired = [key for key, entry in self._entries.items() if entry.expires <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)
