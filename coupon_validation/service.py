import uuid
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from . import logic
from .cache import CouponCache, InMemoryCacheBackend, RedisCacheBackend
from .config import Settings
from .logger import get_logger
from .models import (
    ApplicableCoupon,
    CartItem,
    Coupon,
    RedemptionResponse,
    RejectionReason,
    ValidationRequest,
    ValidationResponse,
    as_utc,
    normalize_code,
    utcnow,
)
from .storage import CouponStore, SqlCouponStore

logger = get_logger("service")


class CouponService:
    """
    Orchestrates cache -> store -> rules for the checkout path.

    Validation is read-only: it never records usage. Usage is written only by
    `redeem_coupon`, once checkout has gone through.
    """

    def __init__(
        self,
        store: CouponStore,
        cache: CouponCache,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.cache = cache
        self.settings = settings or Settings()
        self.clock = clock

    def _load_coupon(self, code: str) -> Optional[Coupon]:
        coupon = self.cache.get(code)
        if coupon is not None:
            return coupon

        # StoreError propagates; only the cache is allowed to fail quietly
        coupon = self.store.get_by_code(code)
        if coupon is not None:
            self.cache.put(code, coupon)
        return coupon

    def _check_usage(self, coupon: Coupon, user_id: Optional[str]) -> Optional[RejectionReason]:
        limit = coupon.usage_limit
        if limit is None:
            return None
        if not user_id:
            if self.settings.require_user_for_usage_limit:
                return RejectionReason.USER_REQUIRED
            logger.warning(f"Skipping usage limit for {coupon.coupon_code}: request has no user_id")
            return None
        # read fresh every time; usage counts are never cached
        if self.store.get_usage_count(coupon.coupon_code, user_id) >= limit:
            return RejectionReason.USAGE_LIMIT_EXCEEDED
        return None

    def validate_coupon(self, request: ValidationRequest) -> ValidationResponse:
        code = normalize_code(request.coupon_code)
        coupon = self._load_coupon(code)
        if coupon is None:
            logger.info(f"Coupon {code} not found")
            return ValidationResponse.rejected(RejectionReason.NOT_FOUND)

        if request.timestamp is None:
            request = request.model_copy(update={"timestamp": self.clock()})

        response = logic.evaluate(coupon, request, cap_fixed_discount=self.settings.cap_fixed_discount)
        if not response.is_valid:
            logger.info(f"Coupon {code} rejected: {response.reason.value}")
            return response

        reason = self._check_usage(coupon, request.user_id)
        if reason is not None:
            logger.info(f"Coupon {code} rejected for user {request.user_id}: {reason.value}")
            return ValidationResponse.rejected(reason)

        return response

    def get_applicable_coupons(
        self,
        cart_items: Sequence[CartItem],
        order_total: float,
        now: Optional[datetime] = None,
    ) -> List[ApplicableCoupon]:
        return self.store.get_applicable_coupons(cart_items, order_total, now=now or self.clock())

    def create_coupon(self, coupon: Coupon) -> Coupon:
        # identity and audit fields are server-assigned, never taken from the caller
        now = self.clock()
        coupon = coupon.model_copy(update={"id": str(uuid.uuid4()), "created_at": now, "updated_at": now})
        created = self.store.create(coupon)
        logger.info(f"Created coupon {created.coupon_code}")
        return created

    def redeem_coupon(self, code: str, user_id: str, now: Optional[datetime] = None) -> RedemptionResponse:
        """
        Commit one redemption after a successful checkout.

        Reads the coupon straight from the store rather than the cache, and
        relies on the store's conditional insert so concurrent redemptions
        cannot push a user past the limit.
        """
        code = normalize_code(code)
        moment = as_utc(now) if now is not None else self.clock()

        coupon = self.store.get_by_code(code)
        if coupon is None:
            return RedemptionResponse(redeemed=False, reason=RejectionReason.NOT_FOUND, message="Coupon not found")
        if logic.is_expired(coupon, moment):
            return RedemptionResponse(
                redeemed=False,
                reason=RejectionReason.EXPIRED,
                message="Coupon has expired",
                usage_count=self.store.get_usage_count(code, user_id),
            )

        redeemed = self.store.record_usage_if_below(code, user_id, coupon.usage_limit, used_at=moment)
        usage_count = self.store.get_usage_count(code, user_id)
        if not redeemed:
            logger.info(f"Redemption of {code} refused for user {user_id}: limit reached")
            return RedemptionResponse(
                redeemed=False,
                reason=RejectionReason.USAGE_LIMIT_EXCEEDED,
                message="Usage limit reached",
                usage_count=usage_count,
            )
        return RedemptionResponse(redeemed=True, message="Coupon redeemed", usage_count=usage_count)


def build_service(settings: Optional[Settings] = None) -> CouponService:
    """Wire a service from settings: SQL store, redis cache when REDIS_URL is set."""
    settings = settings or Settings.from_env()

    store = SqlCouponStore.from_url(settings.database_url)
    store.create_schema()

    if settings.redis_url:
        backend = RedisCacheBackend.from_url(settings.redis_url, socket_timeout=settings.redis_socket_timeout)
    else:
        logger.info("REDIS_URL not set, using in-process coupon cache")
        backend = InMemoryCacheBackend()

    cache = CouponCache(backend, ttl_seconds=settings.cache_ttl_seconds)
    return CouponService(store, cache, settings=settings)
