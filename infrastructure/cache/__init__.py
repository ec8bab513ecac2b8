"""缓存层对外暴露的接口"""
from .payment_cache import (
    RedisPaymentCache,
    DisabledPaymentCache,
    create_redis_client,
)
from .rate_limiter import FixedWindowRateLimiter, RateLimitDecision

__all__ = [
    "RedisPaymentCache",
    "DisabledPaymentCache",
    "create_redis_client",
    "FixedWindowRateLimiter",
    "RateLimitDecision",
]
