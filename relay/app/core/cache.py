"""Key-value persistence backends for the relay.

Rate-limit state is stored as an opaque blob under one well-known key, so
the store only needs get/set semantics. Three backends are provided:
in-memory (tests, single short-lived process), file (survives restarts of a
single host) and Redis (shared by several relay processes).
"""

import asyncio
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

import redis.asyncio as aioredis


class CacheBackend(ABC):
    """Abstract base class for key-value backends."""

    kind: str = "abstract"

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Return the stored value, or None if missing."""

    @abstractmethod
    async def set(self, key: str, value: bytes) -> None:
        """Store a value, replacing any previous one."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryCache(CacheBackend):
    """Process-local dictionary backend.

    Data is lost when the process exits.
    """

    kind = "memory"

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    async def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self._data[key] = value


class FileCache(CacheBackend):
    """One file per key under a state directory.

    Writes go to a temporary file that is then renamed over the target, so a
    crash mid-write never leaves a truncated blob behind.
    """

    kind = "file"

    _SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self._directory = Path(directory)
        self._lock = asyncio.Lock()

    @property
    def directory(self) -> Path:
        return self._directory

    def _path(self, key: str) -> Path:
        return self._directory / f"{self._SAFE_KEY.sub('_', key)}.json"

    def _read(self, key: str) -> bytes | None:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def _write(self, key: str, value: bytes) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        fd, tmp_name = tempfile.mkstemp(dir=self._directory, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(value)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def get(self, key: str) -> bytes | None:
        async with self._lock:
            return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: bytes) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write, key, value)


class RedisCache(CacheBackend):
    """Redis-based backend.

    Example:
        >>> cache = RedisCache("redis://localhost:6379/0")
        >>> await cache.set("rateLimits", b"{}")
    """

    kind = "redis"

    def __init__(self, redis_url: str) -> None:
        self._redis_url = redis_url
        self._redis: aioredis.Redis | None = None

    def _get_client(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    async def get(self, key: str) -> bytes | None:
        return await self._get_client().get(key)

    async def set(self, key: str, value: bytes) -> None:
        await self._get_client().set(key, value)

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


# Global cache instance
_cache_instance: CacheBackend | None = None


def get_cache(backend: str | None = None, force_new: bool = False) -> CacheBackend:
    """Get or create the application key-value backend.

    Args:
        backend: "memory", "file" or "redis"; defaults to settings.rate_limit_backend
        force_new: Build a new instance even if one exists

    Returns:
        A CacheBackend instance.
    """
    global _cache_instance

    if _cache_instance is not None and not force_new:
        return _cache_instance

    # Import settings here to avoid circular imports
    from relay.app.core.config import settings

    kind = backend or settings.rate_limit_backend
    if kind == "redis":
        _cache_instance = RedisCache(settings.redis_url)
    elif kind == "file":
        _cache_instance = FileCache(settings.rate_limit_state_dir)
    elif kind == "memory":
        _cache_instance = InMemoryCache()
    else:
        raise ValueError(f"Unknown cache backend: {kind}")
    return _cache_instance


def reset_cache() -> None:
    """Reset the global cache instance.

    This is primarily useful for testing.
    """
    global _cache_instance
    _cache_instance = None
