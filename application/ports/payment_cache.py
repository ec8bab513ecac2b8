"""
Payment cache port.

Every method raises CacheUnavailableError when the cache engine cannot be
reached; a miss is reported as ``None``. Every write carries a positive TTL.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from domain.payment.entity import PaymentSnapshot, ProviderStatusSnapshot
from domain.payment.events import StatusChangeEvent


@runtime_checkable
class PaymentCache(Protocol):

    async def get_payment(self, internal_id: str) -> Optional[PaymentSnapshot]: ...

    async def get_payment_by_reference(self, provider_reference: str) -> Optional[PaymentSnapshot]: ...

    async def set_payment(self, snapshot: dict[str, Any], ttl: int) -> None: ...

    async def get_provider_status(self, provider_reference: str) -> Optional[ProviderStatusSnapshot]: ...

    async def set_provider_status(self, snapshot: ProviderStatusSnapshot, ttl: int) -> None: ...

    async def record_status_change(self, event: StatusChangeEvent, ttl: int) -> None: ...

    async def peek_status_change(self, provider_reference: str) -> Optional[StatusChangeEvent]: ...

    async def pop_status_change(self, provider_reference: str) -> Optional[StatusChangeEvent]: ...

    async def mark_event_processed(self, event_id: str, ttl: int) -> bool: ...

    async def release_event(self, event_id: str) -> None: ...

    async def get_user_payment_info(self, user_id: str) -> Optional[dict[str, Any]]: ...

    async def set_user_payment_info(self, user_id: str, info: dict[str, Any], ttl: int) -> None: ...

    async def invalidate_user(self, user_id: str) -> int: ...

    async def ping(self) -> bool: ...
