"""Shared fixtures: a frozen clock, both store flavours, and a TTL-controllable cache."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.pool import StaticPool

from coupon_validation.cache import CouponCache, InMemoryCacheBackend
from coupon_validation.config import Settings
from coupon_validation.models import Coupon, DiscountType
from coupon_validation.service import CouponService
from coupon_validation.storage import InMemoryCouponStore, SqlCouponStore

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Monotonic seconds that only move when told to."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


def make_coupon(**overrides) -> Coupon:
    fields = dict(
        coupon_code="SAVE10",
        expiry_date=NOW + timedelta(days=30),
        applicable_categories=["otc"],
        min_order_value=100.0,
        discount_type=DiscountType.PERCENTAGE,
        discount_value=10.0,
    )
    fields.update(overrides)
    return Coupon(**fields)


def sqlite_store() -> SqlCouponStore:
    store = SqlCouponStore.from_url(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    store.create_schema()
    return store


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture(params=["memory", "sql"])
def store(request):
    if request.param == "memory":
        yield InMemoryCouponStore()
    else:
        s = sqlite_store()
        yield s
        s.engine.dispose()


@pytest.fixture
def cache_backend(fake_clock):
    return InMemoryCacheBackend(clock=fake_clock)


@pytest.fixture
def cache(cache_backend):
    return CouponCache(cache_backend, ttl_seconds=300)


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def service(store, cache, settings):
    return CouponService(store, cache, settings=settings, clock=lambda: NOW)
