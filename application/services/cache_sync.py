"""
Best-effort cache writes shared by the reconciliation, webhook and creation paths.

Every write carries a TTL from the status policy. Cache outages are logged and
swallowed here so the durable path never fails because the cache is down.
"""
from __future__ import annotations

from typing import Any, Awaitable, Optional, TypeVar

from application.ports.payment_cache import PaymentCache
from core.config import CacheTTLSettings
from core.logging_config import get_logger
from domain.payment.entity import PaymentRecord, ProviderStatusSnapshot, utcnow
from domain.payment.events import ChangeSource, StatusChangeEvent
from domain.payment.exceptions import CacheUnavailableError
from domain.payment.status import TTLPolicy, is_final


logger = get_logger(__name__)

T = TypeVar("T")


def policy_from_settings(ttl: CacheTTLSettings) -> TTLPolicy:
    return TTLPolicy(
        final=ttl.final_status,
        intermediate=ttl.intermediate_status,
        unknown=ttl.unknown_status,
    )


class StatusCacheWriter:
    def __init__(self, cache: PaymentCache, ttl: CacheTTLSettings) -> None:
        self.cache = cache
        self.ttl = ttl
        self.policy = policy_from_settings(ttl)

    async def guard(self, operation: str, awaitable: Awaitable[T], default: Optional[T] = None) -> Optional[T]:
        """Await a cache call, mapping unavailability to ``default``."""
        try:
            return await awaitable
        except CacheUnavailableError:
            logger.info("cache_unavailable_fallback", operation=operation)
            return default

    def snapshot_ttl(self, status: str) -> int:
        # 终态快照与终态状态缓存同样短
        if is_final(status):
            return self.policy.final
        return self.ttl.payment_snapshot

    async def write_payment(self, record: PaymentRecord) -> None:
        await self.guard(
            "set_payment",
            self.cache.set_payment(record.to_snapshot(), self.snapshot_ttl(record.status)),
        )

    async def write_provider_status(self, provider_reference: str, status: str, amount: int, currency: str) -> None:
        snapshot = ProviderStatusSnapshot(
            provider_reference=provider_reference,
            status=status,
            amount=amount,
            currency=currency,
            cached_at=utcnow(),
        )
        await self.guard(
            "set_provider_status",
            self.cache.set_provider_status(snapshot, self.policy.ttl_for(status)),
        )

    async def write_record(self, record: PaymentRecord) -> None:
        """Refresh both the payment snapshot and the provider status entry."""
        await self.write_payment(record)
        await self.write_provider_status(record.provider_reference, record.status, record.amount, record.currency)

    async def record_change(
        self,
        provider_reference: str,
        old_status: str,
        new_status: str,
        source: ChangeSource,
    ) -> Optional[StatusChangeEvent]:
        event = StatusChangeEvent(
            provider_reference=provider_reference,
            old_status=old_status,
            new_status=new_status,
            source=source,
        )
        await self.guard("record_status_change", self.cache.record_status_change(event, self.ttl.status_change))
        return event

    async def invalidate_user(self, user_id: str) -> int:
        deleted = await self.guard("invalidate_user", self.cache.invalidate_user(user_id), default=0)
        return int(deleted or 0)

    async def get_user_info(self, user_id: str) -> Optional[dict[str, Any]]:
        return await self.guard("get_user_payment_info", self.cache.get_user_payment_info(user_id))

    async def set_user_info(self, user_id: str, info: dict[str, Any]) -> None:
        await self.guard(
            "set_user_payment_info",
            self.cache.set_user_payment_info(user_id, info, self.ttl.user_payment_info),
        )
