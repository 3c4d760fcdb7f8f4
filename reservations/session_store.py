"""
Booking session storage

Keeps serialized booking outcomes by idempotency key so a caller can resume
polling and so a reused key is detected. Values are JSON-compatible dicts.
"""

import asyncio
import json
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as redis

from .utils.logging import get_safe_logger

logger = get_safe_logger("reservations.session_store")

DEFAULT_TTL_SECONDS = 24 * 3600


def booking_key(idempotency_key: str) -> str:
    return f"booking:{idempotency_key}"


class SessionStore(Protocol):
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    async def set(self, key: str, value: Dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        ...

    async def add(self, key: str, value: Dict[str, Any], ttl_seconds: Optional[int] = None) -> bool:
        """Store only if the key is absent; True when stored"""
        ...

    async def delete(self, key: str) -> bool:
        ...


class InMemorySessionStore:
    """Process local store for a single worker and for tests"""

    def __init__(
        self,
        default_ttl_seconds: Optional[int] = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[Dict[str, Any], Optional[float]]] = {}
        self._lock = asyncio.Lock()

    def _expires_at(self, ttl_seconds: Optional[int]) -> Optional[float]:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        return self._clock() + ttl if ttl else None

    def _live(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def _purge_expired(self):
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._entries.items() if expires_at is not None and now >= expires_at]
        for key in expired:
            del self._entries[key]

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            value = self._live(key)
            # Copies keep callers from mutating stored state
            return json.loads(json.dumps(value)) if value is not None else None

    async def set(self, key: str, value: Dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        async with self._lock:
            self._purge_expired()
            self._entries[key] = (json.loads(json.dumps(value, default=str)), self._expires_at(ttl_seconds))

    async def add(self, key: str, value: Dict[str, Any], ttl_seconds: Optional[int] = None) -> bool:
        async with self._lock:
            self._purge_expired()
            if self._live(key) is not None:
                return False
            self._entries[key] = (json.loads(json.dumps(value, default=str)), self._expires_at(ttl_seconds))
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None


class RedisSessionStore:
    """Store shared by several workers, backed by redis.asyncio"""

    def __init__(
        self,
        redis_client: redis.Redis,
        key_prefix: str = "reservations:",
        default_ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ):
        self.redis = redis_client
        self.key_prefix = key_prefix
        self.default_ttl_seconds = default_ttl_seconds

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisSessionStore":
        return cls(redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        cached = await self.redis.get(self._key(key))
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except (TypeError, ValueError):
            logger.warning("session_entry_corrupt", key=key)
            return None

    async def set(self, key: str, value: Dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        await self.redis.set(
            self._key(key),
            json.dumps(value, default=str),
            ex=ttl_seconds or self.default_ttl_seconds,
        )

    async def add(self, key: str, value: Dict[str, Any], ttl_seconds: Optional[int] = None) -> bool:
        stored = await self.redis.set(
            self._key(key),
            json.dumps(value, default=str),
            ex=ttl_seconds or self.default_ttl_seconds,
            nx=True,
        )
        return bool(stored)

    async def delete(self, key: str) -> bool:
        return bool(await self.redis.delete(self._key(key)))

    async def close(self):
        await self.redis.aclose()
