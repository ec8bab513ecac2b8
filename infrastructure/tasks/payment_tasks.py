"""
Celery tasks for payment reconciliation: single refresh and periodic sweep of
payments stuck in an intermediate status (missed webhooks).
"""
from __future__ import annotations

import asyncio
from datetime import timedelta

from celery import shared_task

from core.config import settings
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.common.exceptions import BusinessException
from domain.payment.entity import utcnow
from domain.payment.identifiers import parse_provider_reference
from infrastructure.container import ServiceContainer, build_container, close_container
from infrastructure.external.payments.exceptions import PaymentRecoverableError
from infrastructure.tasks.utils.base_task import BaseTask


logger = get_logger(__name__)


async def refresh_status(provider_reference: str) -> dict:
    lookup = parse_provider_reference(provider_reference)
    container = build_container(settings, payment_settings)
    try:
        view = await container.reconciler.refresh_from_provider(lookup)
    finally:
        await close_container(container)
    return {"payment_intent_id": view.payment_intent_id, "status": view.status, "changed": bool(view.status_changed)}


async def sweep_with(container: ServiceContainer, older_than_seconds: int, batch_size: int) -> dict:
    """Refresh intermediate payments not updated for ``older_than_seconds``."""
    refreshed = changed = failed = 0
    cutoff = utcnow() - timedelta(seconds=older_than_seconds)
    async with container.uow(readonly=True) as uow:
        stale = await uow.payment_repository.list_stale_intermediate(cutoff, limit=batch_size)

    for record in stale:
        try:
            view = await container.reconciler.refresh_from_provider(record.lookup_reference)
        except BusinessException as exc:
            failed += 1
            logger.warning(
                "payment_sweep_item_failed",
                payment_intent_id=record.provider_reference,
                error_type=exc.error_type,
            )
            if isinstance(exc, PaymentRecoverableError):
                # 渠道不可用时剩余条目大概率同样失败，留给下一轮
                break
            continue
        refreshed += 1
        if view.status_changed:
            changed += 1

    logger.info("payment_sweep_completed", candidates=len(stale), refreshed=refreshed, changed=changed, failed=failed)
    return {"candidates": len(stale), "refreshed": refreshed, "changed": changed, "failed": failed}


async def sweep_intermediate(older_than_seconds: int, batch_size: int) -> dict:
    container = build_container(settings, payment_settings)
    try:
        return await sweep_with(container, older_than_seconds, batch_size)
    finally:
        await close_container(container)


@shared_task(
    name="payments.refresh_status",
    bind=True,
    base=BaseTask,
    autoretry_for=(PaymentRecoverableError,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_jitter=True,
    retry_kwargs={"max_retries": 3},
)
def task_refresh_status(self, provider_reference: str):
    result = asyncio.run(refresh_status(provider_reference))
    logger.info("payment_status_polled", **result)
    return result


@shared_task(name="payments.sweep_intermediate", bind=True, base=BaseTask)
def task_sweep_intermediate(self, older_than_seconds: int | None = None, batch_size: int | None = None):
    cfg = settings.reconciliation
    return asyncio.run(
        sweep_intermediate(
            older_than_seconds or cfg.sweep_age_seconds,
            batch_size or cfg.sweep_batch_size,
        )
    )
