"""
固定窗口限流器

优先使用 Redis INCR + EXPIRE；缓存不可用或未配置时退化为进程内计数。
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from core.logging_config import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    retry_after: int


class FixedWindowRateLimiter:
    """按 (scope, identity) 在固定时间窗口内计数"""

    def __init__(
        self,
        client: Optional[aioredis.Redis] = None,
        *,
        window_seconds: int = 60,
        namespace: str = "",
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self._client = client
        self._window = window_seconds
        self._namespace = namespace.strip(":")
        self._local: dict[str, tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    def _key(self, scope: str, identity: str, window_index: int) -> str:
        key = f"rate_limit:{scope}:{identity}:{window_index}"
        return f"{self._namespace}:{key}" if self._namespace else key

    async def hit(self, scope: str, identity: str, limit: int) -> RateLimitDecision:
        now = time.time()
        window_index = int(now // self._window)
        retry_after = max(1, int((window_index + 1) * self._window - now))
        key = self._key(scope, identity, window_index)

        count: Optional[int] = None
        if self._client is not None:
            try:
                count = await self._incr_remote(key)
            except RedisError as exc:
                logger.warning("rate_limit_cache_unavailable", scope=scope, error=str(exc))
        if count is None:
            count = await self._incr_local(key, now)

        allowed = count <= limit
        if not allowed:
            logger.info("rate_limit_exceeded", scope=scope, identity=identity, count=count, limit=limit)
        return RateLimitDecision(allowed=allowed, count=count, limit=limit, retry_after=retry_after)

    async def _incr_remote(self, key: str) -> int:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, self._window)
            count, _ = await pipe.execute()
        return int(count)

    async def _incr_local(self, key: str, now: float) -> int:
        async with self._lock:
            # 清理过期窗口
            expired = [k for k, (_, exp) in self._local.items() if exp <= now]
            for k in expired:
                del self._local[k]
            count, expires_at = self._local.get(key, (0, now + self._window))
            count += 1
            self._local[key] = (count, expires_at)
            return count
