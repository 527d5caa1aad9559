import os
from dataclasses import dataclass
from typing import Optional


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./coupons.db"
    redis_url: Optional[str] = None
    redis_socket_timeout: float = 2.0
    cache_ttl_seconds: int = 300  # 5 minutes; bounds how stale a cached coupon can be
    cap_fixed_discount: bool = False
    require_user_for_usage_limit: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            redis_url=os.getenv("REDIS_URL") or None,
            redis_socket_timeout=float(os.getenv("REDIS_SOCKET_TIMEOUT", "2")),
            cache_ttl_seconds=int(os.getenv("COUPON_CACHE_TTL", "300")),
            cap_fixed_discount=_env_flag("CAP_FIXED_DISCOUNT"),
            require_user_for_usage_limit=_env_flag("REQUIRE_USER_FOR_USAGE_LIMIT"),
        )
