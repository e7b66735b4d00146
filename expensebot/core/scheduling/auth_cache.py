"""Authentication state — stored API token and a short-TTL validity cache."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

from loguru import logger

from expensebot.core.scheduling.protocols import KeyValueStore
from expensebot.core.scheduling.types import AuthCacheEntry

AUTH_CACHE_KEY = "expensebot.scheduling.auth_cache"
TOKEN_KEY = "expensebot.auth.token"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenStore:
    """Current API token with an expiry, persisted in the key-value store."""

    def __init__(
        self,
        store: KeyValueStore,
        ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.ttl = ttl
        self.clock = clock

    def save(self, token: str, expires_at: datetime | None = None) -> None:
        token = token.strip()
        if not token:
            raise ValueError("Token must not be empty")
        now = self.clock()
        self.store.set(TOKEN_KEY, {
            "token": token,
            "captured_at": now.isoformat(),
            "expires_at": (expires_at or now + self.ttl).isoformat(),
            "is_valid": True,
        })
        logger.info("API token saved")

    def current(self) -> str | None:
        """Return the token if present and unexpired; an expired token is marked invalid."""
        data = self.store.get(TOKEN_KEY)
        if not data or not data.get("is_valid"):
            return None
        if datetime.fromisoformat(data["expires_at"]) <= self.clock():
            logger.warning("Current API token is expired")
            self.store.set(TOKEN_KEY, {**data, "is_valid": False})
            return None
        return data["token"]

    def info(self) -> dict | None:
        return self.store.get(TOKEN_KEY)

    def clear(self) -> None:
        self.store.set(TOKEN_KEY, None)
        logger.info("API token cleared")

    async def is_valid(self) -> bool:
        return self.current() is not None


class AuthenticationCache:
    """Caches the result of an "is the caller authenticated" check for ``ttl``.

    Negative results are cached too, so a failing backend is re-checked once
    per TTL rather than on every execution of a wake-up burst.
    """

    def __init__(
        self,
        store: KeyValueStore,
        check: Callable[[], Awaitable[bool]],
        ttl: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.check = check
        self.ttl = ttl
        self.clock = clock

    async def validate(self) -> bool:
        now = self.clock()
        cached = self._read()
        if cached and cached.valid_until > now:
            return cached.is_valid

        try:
            is_valid = bool(await self.check())
        except Exception as e:
            logger.error(f"Authentication check failed: {e}")
            is_valid = False

        self._write(AuthCacheEntry(
            is_valid=is_valid, last_checked=now, valid_until=now + self.ttl,
        ))
        return is_valid

    def invalidate(self) -> None:
        """Forget the cached result; the next ``validate`` performs a real check."""
        try:
            self.store.set(AUTH_CACHE_KEY, None)
        except Exception as e:
            logger.warning(f"Could not clear auth cache: {e}")

    def _read(self) -> AuthCacheEntry | None:
        try:
            data = self.store.get(AUTH_CACHE_KEY)
            return AuthCacheEntry.model_validate(data) if data else None
        except Exception as e:
            logger.warning(f"Ignoring unreadable auth cache: {e}")
            return None

    def _write(self, entry: AuthCacheEntry) -> None:
        try:
            self.store.set(AUTH_CACHE_KEY, entry.model_dump(mode="json"))
        except Exception as e:
            logger.warning(f"Could not persist auth cache: {e}")
