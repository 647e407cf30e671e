"""
Idempotency Registry

Remembers the response of every mutating request that carried an
``Idempotency-Key`` header, so a client replaying the same logical
mutation (e.g. the offline sync agent after a lost response) gets the
original answer back instead of applying the mutation twice.

Backends:
    - InMemoryIdempotencyStore: development and tests
    - RedisIdempotencyStore: staging/production, shared by all workers
"""

import hashlib
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from functools import lru_cache
from typing import Callable, Optional

import redis.asyncio as aioredis

from delivery_dispatch.core.config import get_settings

logger = logging.getLogger(__name__)

_PENDING = "__pending__"


@dataclass
class StoredResponse:
    """Response recorded for an idempotency key."""
    status_code: int
    body: dict
    fingerprint: str


def request_fingerprint(method: str, path: str, body: bytes) -> str:
    """Identify the request a key was first used with."""
    digest = hashlib.sha256(body or b"").hexdigest()
    return f"{method.upper()} {path} {digest}"


class BaseIdempotencyStore(ABC):
    """Key -> response registry with reservation of in-flight keys."""

    @abstractmethod
    async def get(self, key: str) -> Optional[StoredResponse]:
        """Completed response for ``key``, if any."""
        pass

    @abstractmethod
    async def reserve(self, key: str, ttl: int) -> bool:
        """
        Claim ``key`` for a request about to execute.

        Returns:
            False if the key is already reserved or completed
        """
        pass

    @abstractmethod
    async def save(self, key: str, response: StoredResponse, ttl: int) -> None:
        pass

    @abstractmethod
    async def release(self, key: str) -> None:
        """Forget a reservation whose request did not complete."""
        pass


class InMemoryIdempotencyStore(BaseIdempotencyStore):
    """Process-local registry; expired keys are swept on every write."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: dict[str, tuple[float, object]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _live(self, key: str):
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    def _sweep(self) -> None:
        now = self._clock()
        for key in [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]:
            del self._entries[key]

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    async def get(self, key: str) -> Optional[StoredResponse]:
        with self._lock:
            value = self._live(key)
        return value if isinstance(value, StoredResponse) else None

    async def reserve(self, key: str, ttl: int) -> bool:
        with self._lock:
            self._sweep()
            if self._live(key) is not None:
                return False
            self._entries[key] = (self._clock() + ttl, _PENDING)
            return True

    async def save(self, key: str, response: StoredResponse, ttl: int) -> None:
        with self._lock:
            self._sweep()
            self._entries[key] = (self._clock() + ttl, response)

    async def release(self, key: str) -> None:
        with self._lock:
            if self._entries.get(key, (0, None))[1] == _PENDING:
                del self._entries[key]


class RedisIdempotencyStore(BaseIdempotencyStore):
    """Registry shared through Redis (``SET NX`` reservations)."""

    PREFIX = "idempotency:"

    def __init__(self, url: Optional[str] = None):
        self._redis = aioredis.from_url(url or get_settings().redis_url, decode_responses=True)

    async def get(self, key: str) -> Optional[StoredResponse]:
        raw = await self._redis.get(self.PREFIX + key)
        if raw is None or raw == _PENDING:
            return None
        return StoredResponse(**json.loads(raw))

    async def reserve(self, key: str, ttl: int) -> bool:
        return bool(await self._redis.set(self.PREFIX + key, _PENDING, nx=True, ex=ttl))

    async def save(self, key: str, response: StoredResponse, ttl: int) -> None:
        await self._redis.set(self.PREFIX + key, json.dumps(asdict(response)), ex=ttl)

    async def release(self, key: str) -> None:
        name = self.PREFIX + key
        if await self._redis.get(name) == _PENDING:
            await self._redis.delete(name)


@lru_cache()
def get_idempotency_store() -> BaseIdempotencyStore:
    settings = get_settings()
    if settings.is_development:
        logger.info("Idempotency: Using InMemoryIdempotencyStore (development mode)")
        return InMemoryIdempotencyStore()
    logger.info(f"Idempotency: Using RedisIdempotencyStore ({settings.env_mode.value} mode)")
    return RedisIdempotencyStore()


def reset_idempotency_store() -> None:
    get_idempotency_store.cache_clear()
