"""
Coupon store: durable coupon definitions plus the append-only usage log.

Two implementations share the `CouponStore` contract:
- InMemoryCouponStore: dicts behind a lock, for local runs and tests
- SqlCouponStore: SQLAlchemy, the production path (Postgres or SQLite)

`get_by_code` returns None for an unknown code; anything that stops the
store from answering raises StoreError so callers can tell the two apart.
"""

import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Set, Tuple

from pydantic import ValidationError
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    func,
    or_,
    and_,
    select,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from .errors import DuplicateCouponError, StoreError
from .logger import get_logger
from .models import (
    ApplicableCoupon,
    CartItem,
    Coupon,
    TimeWindow,
    UsageRecord,
    as_utc,
    normalize_code,
    utcnow,
)

logger = get_logger("storage")


class CouponStore(ABC):

    @abstractmethod
    def create(self, coupon: Coupon) -> Coupon:
        ...

    @abstractmethod
    def get_by_code(self, code: str) -> Optional[Coupon]:
        ...

    @abstractmethod
    def update_usage(self, code: str, user_id: str, used_at: Optional[datetime] = None) -> None:
        ...

    @abstractmethod
    def get_usage_count(self, code: str, user_id: str) -> int:
        ...

    @abstractmethod
    def get_applicable_coupons(
        self,
        cart_items: Sequence[CartItem],
        order_total: float,
        now: Optional[datetime] = None,
    ) -> List[ApplicableCoupon]:
        """
        Coarse listing for coupon discovery: not expired, minimum order met,
        inside the time window when one is set. Cart items are not matched;
        callers still validate a chosen code.
        """

    @abstractmethod
    def record_usage_if_below(
        self,
        code: str,
        user_id: str,
        limit: Optional[int],
        used_at: Optional[datetime] = None,
    ) -> bool:
        """Append a usage record only while the user's count is under `limit`."""


def _discovery_match(coupon: Coupon, order_total: float, now: datetime) -> bool:
    if coupon.expiry_date <= now:
        return False
    if coupon.min_order_value > order_total:
        return False
    if coupon.valid_time_window is not None and not coupon.valid_time_window.contains(now):
        return False
    return True


# ---------------------------
# In-memory storage
# ---------------------------

class InMemoryCouponStore(CouponStore):

    def __init__(self):
        # code -> Coupon
        self._coupons: Dict[str, Coupon] = {}
        # coupon ids in use, mirroring the SQL primary key
        self._ids: Set[str] = set()
        # (code, userId) -> usage records
        self._usage: Dict[Tuple[str, str], List[UsageRecord]] = defaultdict(list)
        self._lock = threading.Lock()

    def create(self, coupon: Coupon) -> Coupon:
        with self._lock:
            if coupon.coupon_code in self._coupons:
                raise DuplicateCouponError(coupon.coupon_code)
            if coupon.id in self._ids:
                raise StoreError(f"failed to create coupon {coupon.coupon_code}: id {coupon.id} already in use")
            self._coupons[coupon.coupon_code] = coupon.model_copy(deep=True)
            self._ids.add(coupon.id)
        return coupon

    def get_by_code(self, code: str) -> Optional[Coupon]:
        with self._lock:
            coupon = self._coupons.get(normalize_code(code))
        return coupon.model_copy(deep=True) if coupon is not None else None

    def update_usage(self, code: str, user_id: str, used_at: Optional[datetime] = None) -> None:
        record = UsageRecord(coupon_code=normalize_code(code), user_id=user_id, used_at=used_at or utcnow())
        with self._lock:
            self._usage[(record.coupon_code, user_id)].append(record)

    def get_usage_count(self, code: str, user_id: str) -> int:
        with self._lock:
            return len(self._usage.get((normalize_code(code), user_id), ()))

    def get_applicable_coupons(
        self,
        cart_items: Sequence[CartItem],
        order_total: float,
        now: Optional[datetime] = None,
    ) -> List[ApplicableCoupon]:
        moment = as_utc(now) if now is not None else utcnow()
        with self._lock:
            coupons = sorted(self._coupons.values(), key=lambda c: c.coupon_code)
        return [
            ApplicableCoupon(
                coupon_code=c.coupon_code,
                discount_type=c.discount_type,
                discount_value=c.discount_value,
            )
            for c in coupons
            if _discovery_match(c, order_total, moment)
        ]

    def record_usage_if_below(
        self,
        code: str,
        user_id: str,
        limit: Optional[int],
        used_at: Optional[datetime] = None,
    ) -> bool:
        key = (normalize_code(code), user_id)
        with self._lock:
            if limit is not None and len(self._usage.get(key, ())) >= limit:
                return False
            self._usage[key].append(
                UsageRecord(coupon_code=key[0], user_id=user_id, used_at=used_at or utcnow())
            )
        return True


# ---------------------------
# SQL storage
# ---------------------------

Base = declarative_base()


class CouponRow(Base):
    __tablename__ = "coupons"

    id = Column(String(36), primary_key=True)
    coupon_code = Column(String(64), unique=True, nullable=False, index=True)
    expiry_date = Column(DateTime, nullable=False, index=True)
    usage_type = Column(String(16), nullable=False)

    applicable_medicine_ids = Column(JSON, nullable=False, default=list)
    applicable_categories = Column(JSON, nullable=False, default=list)

    min_order_value = Column(Float, nullable=False, default=0.0)
    valid_time_window_start = Column(DateTime, nullable=True)
    valid_time_window_end = Column(DateTime, nullable=True)
    terms_and_conditions = Column(Text, nullable=False, default="")

    discount_type = Column(String(16), nullable=False)
    discount_value = Column(Float, nullable=False)
    max_usage_per_user = Column(Integer, nullable=True)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class CouponUsageRow(Base):
    __tablename__ = "coupon_usage"

    id = Column(Integer, primary_key=True, autoincrement=True)
    coupon_code = Column(
        String(64), ForeignKey("coupons.coupon_code", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column(String(128), nullable=False, index=True)
    used_at = Column(DateTime, nullable=False)


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    # columns hold naive UTC so comparisons behave the same on every backend
    if value is None:
        return None
    return as_utc(value).replace(tzinfo=None)


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def _row_from_coupon(coupon: Coupon) -> CouponRow:
    window = coupon.valid_time_window
    return CouponRow(
        id=coupon.id,
        coupon_code=coupon.coupon_code,
        expiry_date=_to_db(coupon.expiry_date),
        usage_type=coupon.usage_type.value,
        applicable_medicine_ids=list(coupon.applicable_medicine_ids),
        applicable_categories=list(coupon.applicable_categories),
        min_order_value=coupon.min_order_value,
        valid_time_window_start=_to_db(window.start_time) if window else None,
        valid_time_window_end=_to_db(window.end_time) if window else None,
        terms_and_conditions=coupon.terms_and_conditions,
        discount_type=coupon.discount_type.value,
        discount_value=coupon.discount_value,
        max_usage_per_user=coupon.max_usage_per_user,
        created_at=_to_db(coupon.created_at),
        updated_at=_to_db(coupon.updated_at),
    )


def _coupon_from_row(row: CouponRow) -> Coupon:
    window = None
    if row.valid_time_window_start is not None and row.valid_time_window_end is not None:
        window = TimeWindow(
            start_time=_from_db(row.valid_time_window_start),
            end_time=_from_db(row.valid_time_window_end),
        )
    return Coupon(
        id=row.id,
        coupon_code=row.coupon_code,
        expiry_date=_from_db(row.expiry_date),
        usage_type=row.usage_type,
        applicable_medicine_ids=row.applicable_medicine_ids or [],
        applicable_categories=row.applicable_categories or [],
        min_order_value=row.min_order_value,
        valid_time_window=window,
        terms_and_conditions=row.terms_and_conditions or "",
        discount_type=row.discount_type,
        discount_value=row.discount_value,
        max_usage_per_user=row.max_usage_per_user,
        created_at=_from_db(row.created_at),
        updated_at=_from_db(row.updated_at),
    )


class SqlCouponStore(CouponStore):
    """
    SQLAlchemy-backed store. Each call runs in its own session drawn from
    the engine's connection pool, so one instance serves concurrent requests.
    """

    def __init__(self, engine):
        self.engine = engine
        self.SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str, **engine_kwargs) -> "SqlCouponStore":
        engine = create_engine(database_url, pool_pre_ping=True, **engine_kwargs)
        return cls(engine)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def _code_exists(self, session, code: str) -> bool:
        stmt = select(CouponRow.id).where(CouponRow.coupon_code == code)
        return session.execute(stmt).first() is not None

    def create(self, coupon: Coupon) -> Coupon:
        try:
            with self.SessionLocal.begin() as session:
                if self._code_exists(session, coupon.coupon_code):
                    raise DuplicateCouponError(coupon.coupon_code)
                session.add(_row_from_coupon(coupon))
        except DuplicateCouponError:
            logger.info(f"Rejected duplicate coupon {coupon.coupon_code}")
            raise
        except IntegrityError as e:
            # a concurrent insert of the same code, or some other constraint such as the id
            try:
                with self.SessionLocal() as session:
                    taken = self._code_exists(session, coupon.coupon_code)
            except SQLAlchemyError as lookup_error:
                raise StoreError(f"failed to create coupon {coupon.coupon_code}") from lookup_error
            if taken:
                logger.info(f"Rejected duplicate coupon {coupon.coupon_code}")
                raise DuplicateCouponError(coupon.coupon_code) from e
            raise StoreError(f"failed to create coupon {coupon.coupon_code}: constraint violation") from e
        except SQLAlchemyError as e:
            raise StoreError(f"failed to create coupon {coupon.coupon_code}") from e
        return coupon

    def get_by_code(self, code: str) -> Optional[Coupon]:
        stmt = select(CouponRow).where(CouponRow.coupon_code == normalize_code(code))
        try:
            with self.SessionLocal() as session:
                row = session.execute(stmt).scalar_one_or_none()
                return _coupon_from_row(row) if row is not None else None
        except SQLAlchemyError as e:
            raise StoreError(f"failed to load coupon {code}") from e
        except ValidationError as e:
            raise StoreError(f"stored coupon {code} is malformed") from e

    def update_usage(self, code: str, user_id: str, used_at: Optional[datetime] = None) -> None:
        try:
            with self.SessionLocal.begin() as session:
                session.add(CouponUsageRow(
                    coupon_code=normalize_code(code),
                    user_id=user_id,
                    used_at=_to_db(used_at or utcnow()),
                ))
        except SQLAlchemyError as e:
            raise StoreError(f"failed to record usage of {code}") from e

    def _count_usage(self, session, code: str, user_id: str) -> int:
        stmt = (
            select(func.count())
            .select_from(CouponUsageRow)
            .where(CouponUsageRow.coupon_code == code, CouponUsageRow.user_id == user_id)
        )
        return session.execute(stmt).scalar_one()

    def get_usage_count(self, code: str, user_id: str) -> int:
        try:
            with self.SessionLocal() as session:
                return self._count_usage(session, normalize_code(code), user_id)
        except SQLAlchemyError as e:
            raise StoreError(f"failed to count usage of {code}") from e

    def get_applicable_coupons(
        self,
        cart_items: Sequence[CartItem],
        order_total: float,
        now: Optional[datetime] = None,
    ) -> List[ApplicableCoupon]:
        moment = _to_db(now or utcnow())
        stmt = (
            select(CouponRow.coupon_code, CouponRow.discount_type, CouponRow.discount_value)
            .where(
                CouponRow.expiry_date > moment,
                CouponRow.min_order_value <= order_total,
                or_(
                    CouponRow.valid_time_window_start.is_(None),
                    and_(
                        CouponRow.valid_time_window_start <= moment,
                        CouponRow.valid_time_window_end >= moment,
                    ),
                ),
            )
            .order_by(CouponRow.coupon_code)
        )
        try:
            with self.SessionLocal() as session:
                rows = session.execute(stmt).all()
        except SQLAlchemyError as e:
            raise StoreError("failed to list applicable coupons") from e
        return [
            ApplicableCoupon(coupon_code=r.coupon_code, discount_type=r.discount_type, discount_value=r.discount_value)
            for r in rows
        ]

    def record_usage_if_below(
        self,
        code: str,
        user_id: str,
        limit: Optional[int],
        used_at: Optional[datetime] = None,
    ) -> bool:
        code = normalize_code(code)
        try:
            with self.SessionLocal.begin() as session:
                # the coupon row lock serialises concurrent redemptions of one code
                locked = session.execute(
                    select(CouponRow.id).where(CouponRow.coupon_code == code).with_for_update()
                ).first()
                if locked is None:
                    return False
                if limit is not None and self._count_usage(session, code, user_id) >= limit:
                    return False
                session.add(CouponUsageRow(
                    coupon_code=code,
                    user_id=user_id,
                    used_at=_to_db(used_at or utcnow()),
                ))
        except SQLAlchemyError as e:
            raise StoreError(f"failed to redeem {code}") from e
        return True
