class CouponServiceError(Exception):
    """Base class for coupon service failures."""


class StoreError(CouponServiceError):
    """The coupon store could not be reached or returned garbage."""


class DuplicateCouponError(CouponServiceError):
    def __init__(self, code: str):
        super().__init__(f"Coupon code already exists: {code}")
        self.code = code
