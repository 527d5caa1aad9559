"""Store contract, run against the in-memory and SQLite-backed stores."""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from coupon_validation.errors import DuplicateCouponError, StoreError
from coupon_validation.models import DiscountType, TimeWindow, UsageType
from coupon_validation.storage import InMemoryCouponStore, SqlCouponStore

from .conftest import NOW, make_coupon


class TestCreateAndLookup:
    def test_get_by_code_round_trip(self, store):
        window = TimeWindow(start_time=NOW, end_time=NOW + timedelta(hours=3))
        coupon = make_coupon(
            usage_type=UsageType.TIME_BASED,
            valid_time_window=window,
            applicable_medicine_ids=["m1", "m2"],
            max_usage_per_user=2,
            terms_and_conditions="One per order",
        )
        store.create(coupon)
        loaded = store.get_by_code("save10")
        assert loaded == coupon

    def test_unknown_code_is_none(self, store):
        assert store.get_by_code("MISSING") is None

    def test_duplicate_code_is_a_conflict(self, store):
        store.create(make_coupon())
        with pytest.raises(DuplicateCouponError) as exc:
            store.create(make_coupon(coupon_code="save10"))
        assert exc.value.code == "SAVE10"


class TestUsage:
    def test_every_call_appends_a_record(self, store):
        store.create(make_coupon())
        for _ in range(3):
            store.update_usage("SAVE10", "u1")
        store.update_usage("SAVE10", "u2")
        assert store.get_usage_count("SAVE10", "u1") == 3
        assert store.get_usage_count("SAVE10", "u2") == 1
        assert store.get_usage_count("SAVE10", "u3") == 0

    def test_conditional_insert_stops_at_limit(self, store):
        store.create(make_coupon())
        assert store.record_usage_if_below("SAVE10", "u1", 2)
        assert store.record_usage_if_below("SAVE10", "u1", 2)
        assert not store.record_usage_if_below("SAVE10", "u1", 2)
        assert store.get_usage_count("SAVE10", "u1") == 2

    def test_conditional_insert_unlimited(self, store):
        store.create(make_coupon())
        for _ in range(5):
            assert store.record_usage_if_below("SAVE10", "u1", None)
        assert store.get_usage_count("SAVE10", "u1") == 5

    def test_concurrent_redemptions_respect_limit(self):
        # SQLite has no row locks, so the threaded case runs on the locked in-memory store
        store = InMemoryCouponStore()
        store.create(make_coupon())
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: store.record_usage_if_below("SAVE10", "u1", 3), range(20)))
        assert results.count(True) == 3
        assert store.get_usage_count("SAVE10", "u1") == 3


class TestApplicableCoupons:
    def test_coarse_filter(self, store):
        store.create(make_coupon(coupon_code="OK", min_order_value=50.0))
        store.create(make_coupon(coupon_code="TOO_BIG", min_order_value=500.0))
        store.create(make_coupon(coupon_code="EXPIRED", expiry_date=NOW - timedelta(days=1)))
        store.create(make_coupon(
            coupon_code="LATER",
            usage_type=UsageType.TIME_BASED,
            valid_time_window=TimeWindow(start_time=NOW + timedelta(hours=1), end_time=NOW + timedelta(hours=2)),
        ))
        store.create(make_coupon(
            coupon_code="NOW_ON",
            discount_type=DiscountType.FIXED,
            discount_value=20.0,
            valid_time_window=TimeWindow(start_time=NOW - timedelta(hours=1), end_time=NOW + timedelta(hours=1)),
        ))

        found = store.get_applicable_coupons([], 150.0, now=NOW)
        by_code = {c.coupon_code: c for c in found}
        assert set(by_code) == {"OK", "NOW_ON"}
        assert by_code["NOW_ON"].discount_type == DiscountType.FIXED
        assert by_code["NOW_ON"].discount_value == 20.0


def test_sql_failures_surface_as_store_error():
    # no schema created: every query fails at the database
    store = SqlCouponStore.from_url("sqlite://")
    with pytest.raises(StoreError) as exc:
        store.get_by_code("SAVE10")
    assert isinstance(exc.value.__cause__, OperationalError)
    with pytest.raises(StoreError):
        store.get_usage_count("SAVE10", "u1")


class TestIdentity:
    def test_reused_id_is_not_reported_as_duplicate_code(self, store):
        first = store.create(make_coupon())
        with pytest.raises(StoreError) as exc:
            store.create(make_coupon(coupon_code="BRANDNEW", id=first.id))
        assert not isinstance(exc.value, DuplicateCouponError)
        assert store.get_by_code("BRANDNEW") is None
        assert store.get_by_code("SAVE10") == first

    def test_duplicate_code_with_fresh_id_is_still_a_conflict(self, store):
        store.create(make_coupon())
        with pytest.raises(DuplicateCouponError):
            store.create(make_coupon())


def test_applicable_listing_is_sorted_by_code(store):
    for code in ("ZETA", "ALPHA", "MIKE"):
        store.create(make_coupon(coupon_code=code, min_order_value=0.0))
    found = store.get_applicable_coupons([], 10.0, now=NOW)
    assert [c.coupon_code for c in found] == ["ALPHA", "MIKE", "ZETA"]
