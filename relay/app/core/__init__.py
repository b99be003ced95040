"""Core utilities for the relay application."""

from relay.app.core.cache import (
    CacheBackend,
    FileCache,
    InMemoryCache,
    RedisCache,
    get_cache,
    reset_cache,
)
from relay.app.core.config import settings
from relay.app.core.logging import get_log_context, get_logger, setup_logging

__all__ = [
    "CacheBackend",
    "FileCache",
    "InMemoryCache",
    "RedisCache",
    "get_cache",
    "reset_cache",
    "settings",
    "get_log_context",
    "get_logger",
    "setup_logging",
]
