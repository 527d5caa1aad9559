"""
Cache-aside layer for coupon definitions.

The cache is ONLY a cache: the coupon store stays authoritative. Entries are
keyed `coupon:{CODE}` and expire after a fixed TTL (default 5 minutes), which
also bounds how long an edited or expired coupon can keep validating from a
cached copy. There is no explicit invalidation.

Supports redis (REDIS_URL) or a process-local backend when redis is not
configured.
"""

import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

import redis
from pydantic import ValidationError

from .logger import get_logger
from .models import Coupon, normalize_code

logger = get_logger("cache")


class CacheBackend(ABC):
    """Raw key/value store with per-key expiry."""

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        ...

    @abstractmethod
    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        ...


class RedisCacheBackend(CacheBackend):

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 2.0) -> "RedisCacheBackend":
        client = redis.from_url(
            url,
            socket_connect_timeout=socket_timeout,
            socket_timeout=socket_timeout,
        )
        return cls(client)

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    def get(self, key: str) -> Optional[bytes]:
        return self.client.get(key)

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        # SETEX replaces the value and expiry in one command
        self.client.setex(key, ttl_seconds, value)


class InMemoryCacheBackend(CacheBackend):

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        # key -> (expires_at, value)
        self._entries: Dict[str, Tuple[float, bytes]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, value)

    def __len__(self) -> int:
        return len(self._entries)


class CouponCache:
    """
    Coupon-typed view over a CacheBackend.

    Reads and writes never raise: a failed read is a miss and a failed write
    is logged, so a broken cache only costs an extra store lookup.
    """

    DEFAULT_TTL_SECONDS = 300

    def __init__(self, backend: CacheBackend, ttl_seconds: int = DEFAULT_TTL_SECONDS, prefix: str = "coupon:"):
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    def _key(self, code: str) -> str:
        return f"{self.prefix}{normalize_code(code)}"

    def get(self, code: str) -> Optional[Coupon]:
        key = self._key(code)
        try:
            cached = self.backend.get(key)
        except Exception as e:
            logger.warning(f"Cache read error for {key}: {e}")
            return None
        if cached is None:
            logger.debug(f"Cache miss for {key}")
            return None
        try:
            return Coupon.model_validate_json(cached)
        except (ValidationError, ValueError) as e:
            logger.warning(f"Discarding undecodable cache entry {key}: {e}")
            return None

    def put(self, code: str, coupon: Coupon) -> bool:
        key = self._key(code)
        try:
            self.backend.set(key, coupon.model_dump_json().encode("utf-8"), self.ttl_seconds)
            return True
        except Exception as e:
            logger.warning(f"Cache write error for {key}: {e}")
            return False
