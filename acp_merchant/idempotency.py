"""
Idempotency cache for state-mutating ACP requests.

A request's Idempotency-Key is reserved with an atomic set-if-absent before
the handler runs, so racing duplicates produce exactly one handler
invocation. On success the reservation is replaced by the final result with
a shorter TTL.

Backing stores:
- `InMemoryIdempotencyStore`: single-process deployments and tests
- `RedisIdempotencyStore`: shared store for multi-process deployments
"""

from __future__ import annotations

import abc
import asyncio
import hashlib
import json
import logging
import re
import time
from typing import Any, Callable, Optional

from acp_merchant.errors import AuthenticationError, DuplicateRequestError


IDEMPOTENCY_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
CACHE_KEY_PREFIX = "acp:idempotency:"
STATE_PROCESSING = "processing"
STATE_COMPLETED = "completed"

logger = logging.getLogger(__name__)


class IdempotencyStore(abc.ABC):
    """Key/value store with TTLs and an atomic reservation primitive."""

    @abc.abstractmethod
    async def reserve(self, key: str, value: dict[str, Any], ttl: int) -> bool:
        """Store `value` only if `key` is absent. Returns True when stored."""
        ...

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[dict[str, Any]]:
        ...

    @abc.abstractmethod
    async def set(self, key: str, value: dict[str, Any], ttl: int) -> None:
        ...

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        ...


class InMemoryIdempotencyStore(IdempotencyStore):
    """Async-safe TTL dictionary; entries expire on a monotonic clock."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[float, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def reserve(self, key: str, value: dict[str, Any], ttl: int) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._entries[key] = (self._clock() + ttl, dict(value))
            return True

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        async with self._lock:
            return self._live(key)

    async def set(self, key: str, value: dict[str, Any], ttl: int) -> None:
        async with self._lock:
            self._entries[key] = (self._clock() + ttl, dict(value))

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    def _live(self, key: str) -> Optional[dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value


class RedisIdempotencyStore(IdempotencyStore):
    """
    Redis-backed store. The client (`redis.asyncio.Redis`) is created by the
    caller and shared; reservation uses `SET key value NX EX ttl`.
    """

    def __init__(self, client):
        self._client = client

    async def reserve(self, key: str, value: dict[str, Any], ttl: int) -> bool:
        stored = await self._client.set(key, json.dumps(value), nx=True, ex=ttl)
        return bool(stored)

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        raw = await self._client.get(key)
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return json.loads(raw)

    async def set(self, key: str, value: dict[str, Any], ttl: int) -> None:
        await self._client.set(key, json.dumps(value), ex=ttl)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)


def create_redis_client(settings):
    """Build the shared Redis client from settings."""
    import redis.asyncio as redis

    return redis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        password=settings.redis_password or None,
        db=settings.redis_database,
    )


class IdempotencyCache:
    """Reserve/complete/release protocol over an `IdempotencyStore`."""

    def __init__(
        self,
        store: IdempotencyStore,
        processing_ttl: int = 86400,
        result_ttl: int = 3600,
        replay: bool = False,
    ):
        self._store = store
        self.processing_ttl = processing_ttl
        self.result_ttl = result_ttl
        self.replay = replay

    @staticmethod
    def cache_key(idempotency_key: str) -> str:
        digest = hashlib.sha256(idempotency_key.encode("utf-8")).hexdigest()
        return f"{CACHE_KEY_PREFIX}{digest}"

    @staticmethod
    def validate_key(idempotency_key: Optional[str]) -> str:
        if not idempotency_key:
            raise AuthenticationError(
                "Idempotency-Key header required", param="$.headers.Idempotency-Key"
            )
        if not IDEMPOTENCY_KEY_PATTERN.match(idempotency_key):
            raise AuthenticationError(
                "Invalid Idempotency-Key format", param="$.headers.Idempotency-Key"
            )
        return idempotency_key

    async def check_and_reserve(self, idempotency_key: str) -> None:
        """Reserve the key or raise `DuplicateRequestError`."""
        self.validate_key(idempotency_key)
        cache_key = self.cache_key(idempotency_key)
        reserved = await self._store.reserve(
            cache_key, {"state": STATE_PROCESSING}, self.processing_ttl
        )
        if reserved:
            return

        existing = await self._store.get(cache_key)
        cached_response = None
        if self.replay and existing and existing.get("state") == STATE_COMPLETED:
            cached_response = existing
        logger.info(
            "Duplicate request rejected",
            extra={"context": {"state": (existing or {}).get("state")}},
        )
        raise DuplicateRequestError(
            "Duplicate request detected (idempotency)", cached_response=cached_response
        )

    async def store_result(
        self,
        idempotency_key: str,
        status_code: int,
        body: Any,
        ttl: Optional[int] = None,
    ) -> None:
        await self._store.set(
            self.cache_key(idempotency_key),
            {"state": STATE_COMPLETED, "status_code": status_code, "body": body},
            ttl or self.result_ttl,
        )

    async def get_result(self, idempotency_key: str) -> Optional[dict[str, Any]]:
        return await self._store.get(self.cache_key(idempotency_key))

    async def release(self, idempotency_key: str) -> None:
        await self._store.delete(self.cache_key(idempotency_key))
