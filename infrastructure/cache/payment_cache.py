"""Redis-backed payment cache store.

Key layout (namespaced):
    payment:{internal_id}
    payment_ref:{provider_reference}
    provider_status:{provider_reference}
    status_change:{provider_reference}
    processed_event:{event_id}
    user_payment:{user_id}:info
"""
from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Optional, TypeVar

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from core.config import RedisSettings
from core.logging_config import get_logger
from domain.payment.entity import PaymentSnapshot, ProviderStatusSnapshot
from domain.payment.events import StatusChangeEvent
from domain.payment.exceptions import CacheUnavailableError


logger = get_logger(__name__)

T = TypeVar("T")

PAYMENT_PREFIX = "payment"
PAYMENT_REF_PREFIX = "payment_ref"
PROVIDER_STATUS_PREFIX = "provider_status"
STATUS_CHANGE_PREFIX = "status_change"
PROCESSED_EVENT_PREFIX = "processed_event"
USER_PAYMENT_PREFIX = "user_payment"


def _json_dumps(value: Any) -> str:
    return json.dumps(value, default=str, ensure_ascii=False)


def _json_loads(value: Optional[str]) -> Any:
    if value is None:
        return None
    return json.loads(value)


def _require_ttl(ttl: int) -> int:
    if ttl is None or int(ttl) <= 0:
        raise ValueError("cache writes require a positive TTL")
    return int(ttl)


class RedisPaymentCache:
    """基于Redis的支付缓存；连接异常统一转换为 CacheUnavailableError"""

    def __init__(self, client: aioredis.Redis, namespace: str = "") -> None:
        self._client = client
        self._namespace = namespace.strip(":")

    def _format_key(self, key: str) -> str:
        if not self._namespace:
            return key
        return f"{self._namespace}:{key}"

    async def _call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        except RedisError as exc:
            logger.warning("cache_operation_failed", operation=operation, error=str(exc))
            raise CacheUnavailableError(operation) from exc

    async def _get_json(self, operation: str, key: str) -> Any:
        raw = await self._call(operation, lambda: self._client.get(self._format_key(key)))
        if raw is None:
            return None
        try:
            return _json_loads(raw)
        except ValueError:
            logger.warning("cache_entry_corrupt", key=key)
            return None

    async def _set_json(self, operation: str, key: str, value: Any, ttl: int) -> None:
        expire = _require_ttl(ttl)
        payload = _json_dumps(value)
        await self._call(operation, lambda: self._client.set(self._format_key(key), payload, ex=expire))

    # ---- payment snapshots ----

    async def get_payment(self, internal_id: str) -> Optional[PaymentSnapshot]:
        data = await self._get_json("get_payment", f"{PAYMENT_PREFIX}:{internal_id}")
        return PaymentSnapshot.from_dict(data) if data else None

    async def get_payment_by_reference(self, provider_reference: str) -> Optional[PaymentSnapshot]:
        data = await self._get_json("get_payment_by_reference", f"{PAYMENT_REF_PREFIX}:{provider_reference}")
        return PaymentSnapshot.from_dict(data) if data else None

    async def set_payment(self, snapshot: dict[str, Any], ttl: int) -> None:
        """同时写入 payment:{id} 与 payment_ref:{ref} 两个键"""
        expire = _require_ttl(ttl)
        payload = _json_dumps(snapshot)

        async def _write():
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.set(self._format_key(f"{PAYMENT_PREFIX}:{snapshot['internal_id']}"), payload, ex=expire)
                pipe.set(self._format_key(f"{PAYMENT_REF_PREFIX}:{snapshot['provider_reference']}"), payload, ex=expire)
                await pipe.execute()

        await self._call("set_payment", _write)

    # ---- provider status ----

    async def get_provider_status(self, provider_reference: str) -> Optional[ProviderStatusSnapshot]:
        data = await self._get_json("get_provider_status", f"{PROVIDER_STATUS_PREFIX}:{provider_reference}")
        return ProviderStatusSnapshot.from_dict(data) if data else None

    async def set_provider_status(self, snapshot: ProviderStatusSnapshot, ttl: int) -> None:
        await self._set_json(
            "set_provider_status",
            f"{PROVIDER_STATUS_PREFIX}:{snapshot.provider_reference}",
            snapshot.to_dict(),
            ttl,
        )

    # ---- status change breadcrumbs ----

    async def record_status_change(self, event: StatusChangeEvent, ttl: int) -> None:
        await self._set_json(
            "record_status_change",
            f"{STATUS_CHANGE_PREFIX}:{event.provider_reference}",
            event.to_dict(),
            ttl,
        )
        logger.info(
            "status_change_recorded",
            payment_intent_id=event.provider_reference,
            old_status=event.old_status,
            new_status=event.new_status,
            source=event.source.value,
        )

    def _decode_status_change(self, raw: Any, provider_reference: str) -> Optional[StatusChangeEvent]:
        if raw is None:
            return None
        try:
            return StatusChangeEvent.from_dict(_json_loads(raw))
        except (ValueError, KeyError):
            logger.warning("status_change_entry_corrupt", payment_intent_id=provider_reference)
            return None

    async def peek_status_change(self, provider_reference: str) -> Optional[StatusChangeEvent]:
        """只读不删；状态查询附带变更信息，消费留给 pop_status_change"""
        key = self._format_key(f"{STATUS_CHANGE_PREFIX}:{provider_reference}")
        raw = await self._call("peek_status_change", lambda: self._client.get(key))
        return self._decode_status_change(raw, provider_reference)

    async def pop_status_change(self, provider_reference: str) -> Optional[StatusChangeEvent]:
        """读取并删除（一次性投递）；GET+DEL 在同一 MULTI 中执行"""
        key = self._format_key(f"{STATUS_CHANGE_PREFIX}:{provider_reference}")

        async def _pop():
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.get(key)
                pipe.delete(key)
                raw, _ = await pipe.execute()
            return raw

        raw = await self._call("pop_status_change", _pop)
        return self._decode_status_change(raw, provider_reference)

    # ---- webhook dedupe ----

    async def mark_event_processed(self, event_id: str, ttl: int) -> bool:
        """SET NX：首次返回 True，重复事件返回 False"""
        expire = _require_ttl(ttl)
        key = self._format_key(f"{PROCESSED_EVENT_PREFIX}:{event_id}")
        result = await self._call("mark_event_processed", lambda: self._client.set(key, "1", ex=expire, nx=True))
        return bool(result)

    async def release_event(self, event_id: str) -> None:
        """处理失败时撤销去重标记，让渠道重试能够重新处理"""
        key = self._format_key(f"{PROCESSED_EVENT_PREFIX}:{event_id}")
        await self._call("release_event", lambda: self._client.delete(key))

    # ---- user aggregate cache ----

    async def get_user_payment_info(self, user_id: str) -> Optional[dict[str, Any]]:
        return await self._get_json("get_user_payment_info", f"{USER_PAYMENT_PREFIX}:{user_id}:info")

    async def set_user_payment_info(self, user_id: str, info: dict[str, Any], ttl: int) -> None:
        await self._set_json("set_user_payment_info", f"{USER_PAYMENT_PREFIX}:{user_id}:info", info, ttl)

    async def invalidate_user(self, user_id: str) -> int:
        return await self.delete_pattern(f"{USER_PAYMENT_PREFIX}:{user_id}:*")

    async def delete_pattern(self, pattern: str) -> int:
        """按模式批量删除（SCAN 迭代，避免 KEYS 阻塞）"""
        formatted = self._format_key(pattern)

        async def _delete():
            keys = [k async for k in self._client.scan_iter(match=formatted, count=100)]
            if not keys:
                return 0
            return await self._client.delete(*keys)

        deleted = await self._call("delete_pattern", _delete)
        logger.debug("cache_pattern_deleted", pattern=pattern, deleted=deleted)
        return int(deleted)

    async def ping(self) -> bool:
        return bool(await self._call("ping", self._client.ping))

    async def aclose(self) -> None:
        await self._client.aclose()


class DisabledPaymentCache:
    """未配置 Redis 时使用：所有操作都报告缓存不可用"""

    def __getattr__(self, name: str):
        if name.startswith("_"):
            raise AttributeError(name)

        async def _unavailable(*args, **kwargs):
            raise CacheUnavailableError(name)

        return _unavailable

    async def aclose(self) -> None:
        return None


def create_redis_client(config: RedisSettings) -> aioredis.Redis:
    """根据配置创建 Redis 连接池（惰性连接）"""
    if not config.url:
        raise RuntimeError("REDIS__URL 未配置，无法创建Redis客户端")
    return aioredis.from_url(
        config.url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=config.max_connections,
        socket_timeout=config.socket_timeout,
        socket_connect_timeout=config.socket_timeout,
    )
