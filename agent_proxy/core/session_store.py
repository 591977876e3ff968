"""SessionStore: user id -> remote session id, with a fixed TTL."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from typing import Callable

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..types import SessionRecord, SessionStoreError

logger = logging.getLogger(__name__)


class SessionStore(ABC):
    """Pluggable cache of remote agent sessions.

    ``put`` always overwrites, so a user has at most one live session id.
    The TTL is fixed when the store is built; reads never extend it.
    """

    def __init__(self, ttl_seconds: int, key_prefix: str = "session:") -> None:
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    def _key(self, user_id: str) -> str:
        return f"{self.key_prefix}{user_id}"

    @abstractmethod
    async def get(self, user_id: str) -> str | None:
        """Cached session id, or None when absent/expired.

        Backend failures raise SessionStoreError, never None.
        """

    @abstractmethod
    async def put(self, user_id: str, session_id: str) -> None:
        """Store (overwrite) the session id for *user_id* with the store TTL."""

    @abstractmethod
    async def delete(self, user_id: str) -> None:
        """Explicitly invalidate a user's session."""

    @abstractmethod
    async def ttl(self, user_id: str) -> int | None:
        """Remaining lifetime in seconds, or None when absent."""

    @abstractmethod
    async def ping(self) -> None:
        """Raise SessionStoreError if the backend is unreachable."""

    async def close(self) -> None:
        return None


class RedisSessionStore(SessionStore):
    """Redis-backed store using ``SETEX`` so expiry is enforced server-side."""

    def __init__(
        self,
        redis_url: str,
        ttl_seconds: int,
        key_prefix: str = "session:",
        client: redis.Redis | None = None,
    ) -> None:
        super().__init__(ttl_seconds, key_prefix)
        self._redis_url = redis_url
        self._client = client or redis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
        )

    async def get(self, user_id: str) -> str | None:
        try:
            value = await self._client.get(self._key(user_id))
        except RedisError as e:
            raise SessionStoreError("Session lookup failed", details=type(e).__name__) from e
        if value is None:
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value or None

    async def put(self, user_id: str, session_id: str) -> None:
        try:
            await self._client.setex(self._key(user_id), self.ttl_seconds, session_id)
        except RedisError as e:
            raise SessionStoreError("Session write failed", details=type(e).__name__) from e
        logger.debug("Stored session for %s (ttl=%ds)", user_id, self.ttl_seconds)

    async def delete(self, user_id: str) -> None:
        try:
            await self._client.delete(self._key(user_id))
        except RedisError as e:
            raise SessionStoreError("Session delete failed", details=type(e).__name__) from e

    async def ttl(self, user_id: str) -> int | None:
        try:
            remaining = await self._client.ttl(self._key(user_id))
        except RedisError as e:
            raise SessionStoreError("Session TTL lookup failed", details=type(e).__name__) from e
        # -2: key missing, -1: key without expiry
        if remaining is None or remaining == -2:
            return None
        return int(remaining)

    async def ping(self) -> None:
        try:
            await self._client.ping()
        except RedisError as e:
            raise SessionStoreError("Redis ping failed", details=type(e).__name__) from e

    async def close(self) -> None:
        await self._client.aclose()


class InMemorySessionStore(SessionStore):
    """Process-local store for development and tests.

    Expired records are dropped on access, and every ``put`` sweeps the
    rest so one-off users do not accumulate.
    """

    def __init__(
        self,
        ttl_seconds: int,
        key_prefix: str = "session:",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(ttl_seconds, key_prefix)
        self._clock = clock
        self._records: dict[str, SessionRecord] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> SessionRecord | None:
        record = self._records.get(key)
        if record is None:
            return None
        if self._clock() >= record.expires_at:
            del self._records[key]
            return None
        return record

    def _sweep(self, now: float) -> None:
        expired = [key for key, rec in self._records.items() if now >= rec.expires_at]
        for key in expired:
            del self._records[key]

    def __len__(self) -> int:
        return len(self._records)

    async def get(self, user_id: str) -> str | None:
        async with self._lock:
            record = self._live(self._key(user_id))
            return record.session_id if record else None

    async def put(self, user_id: str, session_id: str) -> None:
        async with self._lock:
            now = self._clock()
            self._sweep(now)
            self._records[self._key(user_id)] = SessionRecord(
                user_id=user_id,
                session_id=session_id,
                expires_at=now + self.ttl_seconds,
            )

    async def delete(self, user_id: str) -> None:
        async with self._lock:
            self._records.pop(self._key(user_id), None)

    async def ttl(self, user_id: str) -> int | None:
        async with self._lock:
            record = self._live(self._key(user_id))
            if record is None:
                return None
            return max(0, math.ceil(record.expires_at - self._clock()))

    async def ping(self) -> None:
        return None
