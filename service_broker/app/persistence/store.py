"""
Key-value persistence for the Broker Service.

Every piece of broker state (identities, tier records, shared credentials and
usage windows) is a JSON object stored under a single key. Writers that race
use :meth:`KeyValueStore.compare_and_swap`, so the same code is correct for one
process with :class:`MemoryStore` and for many processes sharing
:class:`RedisStore`.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from shared.config import BaseConfig
from shared.errors import PersistenceError
from shared.logging import get_logger

R = TypeVar("R")

KEY_PREFIX = "broker"


def identity_key(caller_context: str) -> str:
    return f"{KEY_PREFIX}:identity:{caller_context}"


def client_key(client_id: str) -> str:
    return f"{KEY_PREFIX}:client:{client_id}"


def tier_key(client_id: str) -> str:
    return f"{KEY_PREFIX}:tier:{client_id}"


def credential_key(tier: str) -> str:
    return f"{KEY_PREFIX}:credential:{tier}"


def usage_key(client_id: str) -> str:
    return f"{KEY_PREFIX}:usage:{client_id}"


def _encode(value: Dict[str, Any]) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _decode(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    return json.loads(raw)


class KeyValueStore(ABC):
    """Get/set/compare-and-swap over JSON objects."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the stored object or None."""

    @abstractmethod
    async def set(self, key: str, value: Dict[str, Any]) -> None:
        """Unconditionally store an object."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove a key; True if it existed."""

    @abstractmethod
    async def compare_and_swap(
        self,
        key: str,
        expected: Optional[Dict[str, Any]],
        new: Dict[str, Any]
    ) -> bool:
        """Store ``new`` only if the current value equals ``expected``.

        ``expected=None`` means the key must be absent.
        """

    async def start(self) -> None:
        """Open connections."""

    async def stop(self) -> None:
        """Close connections."""

    async def ping(self) -> bool:
        return True


class MemoryStore(KeyValueStore):
    """In-process store; state is lost when the process exits."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return _decode(self._data.get(key))

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        self._data[key] = _encode(value)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def compare_and_swap(
        self,
        key: str,
        expected: Optional[Dict[str, Any]],
        new: Dict[str, Any]
    ) -> bool:
        async with self._lock:
            if _decode(self._data.get(key)) != expected:
                return False
            self._data[key] = _encode(new)
            return True

    def keys(self):
        return list(self._data)


class RedisStore(KeyValueStore):
    """Redis-backed store shared by every broker process."""

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self.logger = get_logger("broker.persistence.redis")
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                health_check_interval=30
            )
        return self._redis

    async def start(self):
        """Connect and verify the Redis connection."""
        client = await self._get_redis()
        try:
            await client.ping()
        except RedisError as e:
            self.logger.error("Failed to start Redis store", error=str(e))
            raise PersistenceError("Redis unavailable", details={"error": str(e)}) from e
        self.logger.info("Redis store started")

    async def stop(self):
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis store stopped")

    async def ping(self) -> bool:
        try:
            client = await self._get_redis()
            return bool(await client.ping())
        except RedisError as e:
            self.logger.error("Redis ping failed", error=str(e))
            return False

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            client = await self._get_redis()
            return _decode(await client.get(key))
        except RedisError as e:
            raise PersistenceError("Redis read failed", details={"key": key, "error": str(e)}) from e

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        try:
            client = await self._get_redis()
            await client.set(key, _encode(value))
        except RedisError as e:
            raise PersistenceError("Redis write failed", details={"key": key, "error": str(e)}) from e

    async def delete(self, key: str) -> bool:
        try:
            client = await self._get_redis()
            return bool(await client.delete(key))
        except RedisError as e:
            raise PersistenceError("Redis delete failed", details={"key": key, "error": str(e)}) from e

    async def compare_and_swap(
        self,
        key: str,
        expected: Optional[Dict[str, Any]],
        new: Dict[str, Any]
    ) -> bool:
        try:
            client = await self._get_redis()
            async with client.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                current = await pipe.get(key)
                if _decode(current) != expected:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, _encode(new))
                await pipe.execute()
                return True
        except WatchError:
            self.logger.debug("Compare-and-swap lost race", key=key)
            return False
        except RedisError as e:
            raise PersistenceError("Redis compare-and-swap failed", details={"key": key, "error": str(e)}) from e


async def atomic_update(
    store: KeyValueStore,
    key: str,
    mutate: Callable[[Optional[Dict[str, Any]]], Tuple[Optional[Dict[str, Any]], R]],
    max_attempts: int = 32,
) -> R:
    """Read-modify-write ``key`` with compare-and-swap.

    ``mutate`` receives the current value and returns ``(new_value, result)``.
    A ``new_value`` of None, or one equal to the current value, skips the
    write. Losing a race re-reads and re-applies ``mutate``; after
    ``max_attempts`` losses a :class:`PersistenceError` is raised.
    """
    for _ in range(max_attempts):
        current = await store.get(key)
        new, result = mutate(current)
        if new is None or new == current:
            return result
        if await store.compare_and_swap(key, current, new):
            return result
    raise PersistenceError(
        "Write contention not resolved",
        details={"key": key, "attempts": max_attempts}
    )


def create_store(config: BaseConfig) -> KeyValueStore:
    """Build the store selected by ``storage_backend``."""
    backend = config.storage_backend.lower()
    if backend == "memory":
        return MemoryStore()
    if backend == "redis":
        return RedisStore(config.redis_url)
    raise ValueError(f"Unknown storage backend: {config.storage_backend}")
