"""
Webhook ingestion.

Signature verification happens before anything else; a rejected notification
mutates nothing. Providers retry until acknowledged, so every accepted event
is deduplicated by id and the status write itself is idempotent.
"""
from __future__ import annotations

from typing import Any, Callable, Optional

from application.dtos.payments import WebhookAck, WebhookEvent
from application.ports.payment_cache import PaymentCache
from application.ports.payment_gateway import PaymentGateway
from application.services.cache_sync import StatusCacheWriter
from core.config import CacheTTLSettings
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.events import ChangeSource
from domain.payment.exceptions import CacheUnavailableError, DatabaseUnavailableError
from domain.payment.status import PaymentStatus, is_success


logger = get_logger(__name__)

# event type -> status written to the durable store
HANDLED_EVENTS = {
    "payment_intent.succeeded": PaymentStatus.SUCCEEDED.value,
    "payment_intent.payment_failed": PaymentStatus.FAILED.value,
    "payment_intent.canceled": PaymentStatus.CANCELED.value,
}


class WebhookIngestor:
    def __init__(
        self,
        *,
        uow_factory: Callable[..., AbstractUnitOfWork],
        cache: PaymentCache,
        gateway: PaymentGateway,
        ttl: CacheTTLSettings,
    ) -> None:
        self._uow_factory = uow_factory
        self._cache = cache
        self._gateway = gateway
        self._ttl = ttl
        self._writer = StatusCacheWriter(cache, ttl)

    async def _first_delivery(self, event_id: str) -> bool:
        try:
            return await self._cache.mark_event_processed(event_id, self._ttl.processed_event)
        except CacheUnavailableError:
            # 状态写入本身幂等，缓存不可用时继续处理
            logger.warning("webhook_dedupe_unavailable", event_id=event_id)
            return True

    async def ingest(self, raw_body: bytes, headers: dict[str, Any]) -> WebhookAck:
        event: WebhookEvent = self._gateway.parse_webhook(headers, raw_body)
        ack = WebhookAck(event_id=event.id, event_type=event.type)

        if not await self._first_delivery(event.id):
            logger.info("webhook_event_duplicate", event_id=event.id, event_type=event.type)
            ack.duplicate = True
            return ack

        new_status = HANDLED_EVENTS.get(event.type)
        if new_status is None:
            logger.info("webhook_event_ignored", event_id=event.id, event_type=event.type)
            return ack

        payment_object = event.payment_object
        reference: Optional[str] = payment_object.get("id")
        if not reference:
            logger.warning("webhook_event_missing_reference", event_id=event.id, event_type=event.type)
            return ack
        ack.payment_intent_id = reference

        try:
            async with self._uow_factory() as uow:
                result = await uow.payment_repository.update_status(reference, new_status)
        except Exception as exc:
            # 渠道会重试：任何持久化失败都撤销去重标记，否则重试会被当作重复事件丢弃
            logger.error(
                "webhook_persist_failed",
                event_id=event.id,
                payment_intent_id=reference,
                error_type=type(exc).__name__,
                database_unavailable=isinstance(exc, DatabaseUnavailableError),
            )
            await self._writer.guard("release_event", self._cache.release_event(event.id))
            raise

        ack.processed = True
        if not result.found:
            logger.warning(
                "webhook_payment_unknown",
                event_id=event.id,
                event_type=event.type,
                payment_intent_id=reference,
            )
            return ack

        record = result.record
        ack.status = result.current_status
        ack.status_changed = result.changed
        logger.info(
            "webhook_event_processed",
            event_id=event.id,
            event_type=event.type,
            payment_intent_id=reference,
            old_status=result.previous_status,
            new_status=result.current_status,
            decision=result.decision.value,
        )

        # 刷新缓存而不是删除，让紧随其后的查询命中新状态
        await self._writer.write_record(record)
        if result.changed:
            await self._writer.record_change(
                reference,
                result.previous_status or "",
                result.current_status or new_status,
                ChangeSource.WEBHOOK,
            )
            if is_success(result.current_status):
                await self._writer.invalidate_user(record.user_id)
        return ack
