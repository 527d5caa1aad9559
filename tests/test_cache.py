"""
Tests for the coupon cache-aside layer: TTL expiry, corrupt entries, and
backend failures degrading to misses.

Redis tests use a local instance (REDIS_URL or localhost:6379, db 15) and are
skipped when it is not reachable.
"""

import os

import pytest
import redis

from coupon_validation.cache import CacheBackend, CouponCache, InMemoryCacheBackend, RedisCacheBackend

from .conftest import make_coupon


class BrokenBackend(CacheBackend):
    def get(self, key):
        raise redis.ConnectionError("down")

    def set(self, key, value, ttl_seconds):
        raise redis.TimeoutError("slow")


class TestInMemoryBackend:
    def test_set_and_get(self, cache_backend):
        cache_backend.set("k", b"v", 10)
        assert cache_backend.get("k") == b"v"

    def test_expires_after_ttl(self, cache_backend, fake_clock):
        cache_backend.set("k", b"v", 10)
        fake_clock.advance(9.9)
        assert cache_backend.get("k") == b"v"
        fake_clock.advance(0.1)
        assert cache_backend.get("k") is None
        assert len(cache_backend) == 0

    def test_overwrite_replaces_value_and_expiry(self, cache_backend, fake_clock):
        cache_backend.set("k", b"old", 5)
        fake_clock.advance(4)
        cache_backend.set("k", b"new", 5)
        fake_clock.advance(4)
        assert cache_backend.get("k") == b"new"


class TestCouponCache:
    def test_round_trip(self, cache):
        coupon = make_coupon()
        assert cache.put("SAVE10", coupon)
        assert cache.get("save10") == coupon

    def test_miss(self, cache):
        assert cache.get("NOPE") is None

    def test_key_format(self, cache, cache_backend):
        cache.put("save10", make_coupon())
        assert cache_backend.get("coupon:SAVE10") is not None

    def test_entry_expires_with_ttl(self, cache, fake_clock):
        cache.put("SAVE10", make_coupon())
        fake_clock.advance(299)
        assert cache.get("SAVE10") is not None
        fake_clock.advance(1)
        assert cache.get("SAVE10") is None

    def test_corrupt_entry_is_a_miss(self, cache, cache_backend):
        cache_backend.set("coupon:SAVE10", b"{not json", 300)
        assert cache.get("SAVE10") is None

    def test_wrong_shape_entry_is_a_miss(self, cache, cache_backend):
        cache_backend.set("coupon:SAVE10", b'{"coupon_code": "SAVE10"}', 300)
        assert cache.get("SAVE10") is None

    def test_backend_failures_never_raise(self):
        cache = CouponCache(BrokenBackend())
        assert cache.get("SAVE10") is None
        assert cache.put("SAVE10", make_coupon()) is False


@pytest.fixture
def redis_backend():
    url = os.getenv("REDIS_URL", "redis://localhost:6379/15")
    backend = RedisCacheBackend.from_url(url, socket_timeout=0.5)
    if not backend.ping():
        pytest.skip("Redis not available")
    backend.client.delete("test-coupon:SAVE10")
    yield backend
    backend.client.delete("test-coupon:SAVE10")


class TestRedisBackend:
    def test_round_trip_with_ttl(self, redis_backend):
        cache = CouponCache(redis_backend, ttl_seconds=60, prefix="test-coupon:")
        coupon = make_coupon()
        assert cache.put("SAVE10", coupon)
        assert cache.get("SAVE10") == coupon
        assert 0 < redis_backend.client.ttl("test-coupon:SAVE10") <= 60
