from functools import lru_cache
from typing import List

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .errors import DuplicateCouponError, StoreError
from .logger import get_logger
from .models import (
    ApplicableCoupon,
    ApplicableCouponsRequest,
    Coupon,
    RedemptionRequest,
    RedemptionResponse,
    ValidationRequest,
    ValidationResponse,
)
from .service import CouponService, build_service

logger = get_logger("api")


@lru_cache(maxsize=1)
def get_service() -> CouponService:
    return build_service()


# ---------------------------
# FastAPI App & Routes
# ---------------------------

app = FastAPI(title="Coupon Validation Service")


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.error(f"Store failure on {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Coupon store unavailable"})


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.post("/coupons", response_model=Coupon, status_code=201)
def create_coupon(coupon: Coupon, service: CouponService = Depends(get_service)):
    try:
        return service.create_coupon(coupon)
    except DuplicateCouponError as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.post("/coupons/validate", response_model=ValidationResponse)
def validate_coupon(payload: ValidationRequest, service: CouponService = Depends(get_service)):
    return service.validate_coupon(payload)


@app.post("/coupons/applicable", response_model=List[ApplicableCoupon])
def applicable_coupons(payload: ApplicableCouponsRequest, service: CouponService = Depends(get_service)):
    return service.get_applicable_coupons(payload.cart_items, payload.order_total)


@app.post("/coupons/redeem", response_model=RedemptionResponse)
def redeem_coupon(payload: RedemptionRequest, service: CouponService = Depends(get_service)):
    return service.redeem_coupon(payload.coupon_code, payload.user_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "coupon_validation.main:app",
        host="127.0.0.1",
        port=8000,
        reload=False,
    )
