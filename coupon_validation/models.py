import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # naive timestamps are taken as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_code(code: str) -> str:
    return code.strip().upper()


class UsageType(str, Enum):
    ONE_TIME = "one_time"
    MULTI_USE = "multi_use"
    TIME_BASED = "time_based"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class RejectionReason(str, Enum):
    NOT_FOUND = "coupon not found"
    EXPIRED = "coupon has expired"
    MIN_ORDER_NOT_MET = "minimum order value not met"
    OUTSIDE_TIME_WINDOW = "invalid time window"
    NO_APPLICABLE_ITEMS = "no applicable items in cart"
    USAGE_LIMIT_EXCEEDED = "maximum usage limit exceeded"
    USER_REQUIRED = "user identity required"


# ---------------------------
# Coupon definition
# ---------------------------

class TimeWindow(BaseModel):
    start_time: datetime
    end_time: datetime

    @field_validator("start_time", "end_time")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def _ordered(self) -> "TimeWindow":
        if self.start_time > self.end_time:
            raise ValueError("start_time must not be after end_time")
        return self

    def contains(self, moment: datetime) -> bool:
        return self.start_time <= moment <= self.end_time


class Coupon(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    coupon_code: str = Field(..., min_length=1)
    expiry_date: datetime
    usage_type: UsageType = UsageType.MULTI_USE

    # Eligibility: an item matches if its id OR its category is listed
    applicable_medicine_ids: List[str] = Field(default_factory=list)
    applicable_categories: List[str] = Field(default_factory=list)

    min_order_value: float = Field(0.0, ge=0)
    valid_time_window: Optional[TimeWindow] = None
    terms_and_conditions: str = ""

    discount_type: DiscountType
    discount_value: float = Field(..., gt=0)
    max_usage_per_user: Optional[int] = Field(None, ge=1)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("coupon_code")
    @classmethod
    def _normalize_code(cls, value: str) -> str:
        code = normalize_code(value)
        if not code:
            raise ValueError("coupon_code must not be blank")
        return code

    @field_validator("expiry_date", "created_at", "updated_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def _check_invariants(self) -> "Coupon":
        if self.usage_type == UsageType.TIME_BASED and self.valid_time_window is None:
            raise ValueError("time_based coupons require valid_time_window")
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_value > 100:
            raise ValueError("percentage discount_value must be within (0, 100]")
        return self

    @property
    def usage_limit(self) -> Optional[int]:
        """Per-user redemption limit; one_time coupons never allow more than one."""
        if self.usage_type == UsageType.ONE_TIME:
            return 1 if self.max_usage_per_user is None else min(self.max_usage_per_user, 1)
        return self.max_usage_per_user


# ---------------------------
# Requests / responses
# ---------------------------

class CartItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    category: str
    price: float = Field(..., ge=0)


class ValidationRequest(BaseModel):
    coupon_code: str
    cart_items: List[CartItem] = Field(default_factory=list)
    order_total: float = Field(..., ge=0)
    timestamp: Optional[datetime] = None
    user_id: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None


class Discount(BaseModel):
    items_discount: float = 0.0
    # reserved for shipping/fee discounts
    charges_discount: float = 0.0


class ValidationResponse(BaseModel):
    is_valid: bool
    discount: Optional[Discount] = None
    message: str = ""
    reason: Optional[RejectionReason] = None

    @classmethod
    def accepted(cls, discount: Discount) -> "ValidationResponse":
        return cls(is_valid=True, discount=discount, message="Coupon applied successfully")

    @classmethod
    def rejected(cls, reason: RejectionReason) -> "ValidationResponse":
        return cls(is_valid=False, reason=reason, message=f"Coupon cannot be applied: {reason.value}")


class ApplicableCouponsRequest(BaseModel):
    cart_items: List[CartItem] = Field(default_factory=list)
    order_total: float = Field(..., ge=0)


class ApplicableCoupon(BaseModel):
    coupon_code: str
    discount_type: DiscountType
    discount_value: float


class RedemptionRequest(BaseModel):
    coupon_code: str
    user_id: str = Field(..., min_length=1)


class RedemptionResponse(BaseModel):
    redeemed: bool
    message: str = ""
    reason: Optional[RejectionReason] = None
    usage_count: int = 0


class UsageRecord(BaseModel):
    coupon_code: str
    user_id: str
    used_at: datetime = Field(default_factory=utcnow)
