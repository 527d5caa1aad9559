from datetime import datetime
from typing import Iterable, Optional

from .models import (
    CartItem,
    Coupon,
    Discount,
    DiscountType,
    RejectionReason,
    ValidationRequest,
    ValidationResponse,
)


def is_expired(coupon: Coupon, moment: datetime) -> bool:
    return moment > coupon.expiry_date


def meets_min_order(coupon: Coupon, order_total: float) -> bool:
    return order_total >= coupon.min_order_value


def is_within_time_window(coupon: Coupon, moment: datetime) -> bool:
    if coupon.valid_time_window is None:
        return True
    return coupon.valid_time_window.contains(moment)


def item_matches(coupon: Coupon, item: CartItem) -> bool:
    return item.id in coupon.applicable_medicine_ids or item.category in coupon.applicable_categories


def has_applicable_items(coupon: Coupon, items: Iterable[CartItem]) -> bool:
    # one matching item qualifies the whole order
    return any(item_matches(coupon, item) for item in items)


def compute_discount(coupon: Coupon, order_total: float, cap_fixed: bool = False) -> Discount:
    if coupon.discount_type == DiscountType.PERCENTAGE:
        # multiply first so whole percentages of whole totals stay exact
        amount = order_total * coupon.discount_value / 100.0
    else:
        amount = coupon.discount_value
        if cap_fixed:
            amount = min(amount, order_total)
    return Discount(items_discount=amount, charges_discount=0.0)


def check_rules(coupon: Coupon, request: ValidationRequest, moment: datetime) -> Optional[RejectionReason]:
    """
    Run the cart rules in order and return the first failing reason.

    Order:
     1. Expiry
     2. Minimum order value
     3. Time window (inclusive at both ends)
     4. At least one applicable item
    """
    if is_expired(coupon, moment):
        return RejectionReason.EXPIRED

    if not meets_min_order(coupon, request.order_total):
        return RejectionReason.MIN_ORDER_NOT_MET

    if not is_within_time_window(coupon, moment):
        return RejectionReason.OUTSIDE_TIME_WINDOW

    if not has_applicable_items(coupon, request.cart_items):
        return RejectionReason.NO_APPLICABLE_ITEMS

    return None


def evaluate(
    coupon: Coupon,
    request: ValidationRequest,
    now: Optional[datetime] = None,
    cap_fixed_discount: bool = False,
) -> ValidationResponse:
    """
    Decide whether `coupon` applies to `request` and price the discount.

    Pure: no store or cache access. The per-user usage limit is not checked
    here since it needs the usage history; the service layers it on top.
    The request timestamp wins over `now`; one of them must be given.
    """
    moment = request.timestamp or now
    if moment is None:
        raise ValueError("evaluation needs request.timestamp or an explicit now")

    reason = check_rules(coupon, request, moment)
    if reason is not None:
        return ValidationResponse.rejected(reason)

    return ValidationResponse.accepted(compute_discount(coupon, request.order_total, cap_fixed_discount))
