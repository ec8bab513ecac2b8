"""
Payment status reconciliation.

Answers "what is the status of this payment?" from three sources of differing
cost and trust: the cache, the durable store and the live provider.

Read path:
1. Resolve the lookup to a provider reference (cache, then durable store).
2. Provider-status cache hit:
   - intermediate: answer from cache now, revalidate in the background;
   - final/unknown: answer from the durable store when it already holds the
     same final status, otherwise continue.
3. Durable store holds a final status: answer from it, refresh the cache.
4. Ask the provider and write through. If the provider is unreachable,
   degrade to the last known local status flagged ``stale``.
"""
from __future__ import annotations

from typing import Callable, Optional

from application.dtos.payments import PaymentStatusView, ProviderIntent, StatusChangeView
from application.ports.payment_cache import PaymentCache
from application.ports.payment_gateway import PaymentGateway
from application.services.cache_sync import StatusCacheWriter
from application.services.revalidation import BackgroundRevalidator
from core.config import CacheTTLSettings
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import PaymentRecord, PaymentSnapshot, ProviderStatusSnapshot
from domain.payment.events import ChangeSource, StatusChangeEvent
from domain.payment.exceptions import DatabaseUnavailableError, PaymentNotFoundException
from domain.payment.identifiers import InternalId, PaymentLookup, ProviderReference
from domain.payment.repository import StatusUpdateResult
from domain.payment.status import StatusClass, classify, is_final, is_success
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
    ProviderNotFoundError,
)


logger = get_logger(__name__)

UnitOfWorkFactory = Callable[..., AbstractUnitOfWork]


class _Resolved:
    """Step 1 result: where the provider reference came from and what was seen on the way."""

    __slots__ = ("provider_reference", "internal_id", "via_database", "record", "db_checked", "snapshot")

    def __init__(self, provider_reference: str) -> None:
        self.provider_reference = provider_reference
        self.internal_id: Optional[str] = None
        self.via_database = False
        self.record: Optional[PaymentRecord] = None
        self.db_checked = False
        self.snapshot: Optional[PaymentSnapshot] = None


class PaymentStatusReconciler:
    def __init__(
        self,
        *,
        uow_factory: UnitOfWorkFactory,
        cache: PaymentCache,
        gateway: PaymentGateway,
        revalidator: BackgroundRevalidator,
        ttl: CacheTTLSettings,
    ) -> None:
        self._uow_factory = uow_factory
        self._cache = cache
        self._gateway = gateway
        self._revalidator = revalidator
        self._writer = StatusCacheWriter(cache, ttl)

    # ---- durable store helpers ----

    async def _load_by_reference(self, provider_reference: str) -> tuple[Optional[PaymentRecord], bool]:
        """Returns (record, database_available)."""
        try:
            async with self._uow_factory(readonly=True) as uow:
                return await uow.payment_repository.get_by_provider_reference(provider_reference), True
        except DatabaseUnavailableError:
            logger.warning("reconcile_database_unavailable", payment_intent_id=provider_reference)
            return None, False

    async def _apply_status(self, provider_reference: str, status: str) -> Optional[StatusUpdateResult]:
        try:
            async with self._uow_factory() as uow:
                return await uow.payment_repository.update_status(provider_reference, status)
        except DatabaseUnavailableError:
            logger.warning("reconcile_status_persist_skipped", payment_intent_id=provider_reference, status=status)
            return None

    # ---- step 1 ----

    async def _resolve(self, lookup: PaymentLookup) -> _Resolved:
        if isinstance(lookup, ProviderReference):
            return _Resolved(lookup.value)

        snapshot = await self._writer.guard("get_payment", self._cache.get_payment(lookup.value))
        if snapshot is not None:
            resolved = _Resolved(snapshot.provider_reference)
            resolved.internal_id = lookup.value
            resolved.snapshot = snapshot
            return resolved

        async with self._uow_factory(readonly=True) as uow:
            record = await uow.payment_repository.get_by_internal_id(lookup.value)
        if record is None:
            raise PaymentNotFoundException(lookup.value)

        resolved = _Resolved(record.provider_reference)
        resolved.internal_id = record.internal_id
        resolved.via_database = True
        resolved.record = record
        resolved.db_checked = True
        await self._writer.write_payment(record)
        return resolved

    async def _ensure_record(self, resolved: _Resolved) -> bool:
        """Load the durable record once; returns whether the store answered."""
        if resolved.db_checked:
            return True
        record, available = await self._load_by_reference(resolved.provider_reference)
        resolved.db_checked = available
        resolved.record = record
        if record is not None:
            resolved.internal_id = record.internal_id
        return available

    # ---- views ----

    @staticmethod
    def _view_from_record(record: PaymentRecord, source: str, **extra) -> PaymentStatusView:
        return PaymentStatusView(
            payment_id=record.internal_id,
            payment_intent_id=record.provider_reference,
            status=record.status,
            amount=record.amount,
            currency=record.currency,
            source=source,
            **extra,
        )

    async def _attach_change(self, view: PaymentStatusView) -> PaymentStatusView:
        event = await self._writer.guard("peek_status_change", self._cache.peek_status_change(view.payment_intent_id))
        if event is not None:
            view.status_changed = True
            view.old_status = event.old_status
            view.new_status = event.new_status
            view.status_changed_at = event.changed_at
        return view

    async def _served(self, view: PaymentStatusView) -> PaymentStatusView:
        view = await self._attach_change(view)
        logger.info(
            "payment_status_served",
            payment_intent_id=view.payment_intent_id,
            status=view.status,
            source=view.source,
            stale=view.stale,
        )
        return view

    # ---- write-through ----

    async def _write_through(
        self,
        intent: ProviderIntent,
        *,
        known_status: Optional[str],
        record: Optional[PaymentRecord],
    ) -> tuple[Optional[PaymentRecord], str, Optional[StatusChangeEvent]]:
        """Persist an observed provider status through the guard and refresh the cache.

        Returns the updated record, the effective status and the change event
        recorded for polling clients, if any.
        """
        ref = intent.reference_id
        effective = intent.status
        previous = known_status
        changed = known_status is not None and known_status != intent.status

        if record is not None and record.status != intent.status:
            result = await self._apply_status(ref, intent.status)
            if result is not None and result.found:
                record = result.record
                effective = result.current_status or intent.status
                previous = result.previous_status
                changed = result.changed
            else:
                # 未能持久化：不要用旧记录覆盖缓存
                previous = record.status
                changed = True
                record = None
        elif record is not None:
            changed = changed and known_status != record.status

        event = None
        if changed and previous is not None:
            event = await self._writer.record_change(ref, previous, effective, ChangeSource.REVALIDATE)
            if record is not None and is_success(effective):
                await self._writer.invalidate_user(record.user_id)

        if record is not None:
            await self._writer.write_record(record)
        else:
            await self._writer.write_provider_status(ref, effective, intent.amount, intent.currency)
        return record, effective, event

    async def _revalidate(self, provider_reference: str, cached_status: str) -> None:
        intent = await self._gateway.get_intent(provider_reference)
        if intent.status == cached_status:
            # 仅刷新 TTL
            await self._writer.write_provider_status(provider_reference, intent.status, intent.amount, intent.currency)
            return
        record, _ = await self._load_by_reference(provider_reference)
        await self._write_through(intent, known_status=cached_status, record=record)
        logger.info(
            "background_revalidation_changed",
            payment_intent_id=provider_reference,
            old_status=cached_status,
            new_status=intent.status,
        )

    # ---- public operations ----

    async def get_status(self, lookup: PaymentLookup) -> PaymentStatusView:
        resolved = await self._resolve(lookup)
        ref = resolved.provider_reference

        # step 2
        cached = await self._writer.guard("get_provider_status", self._cache.get_provider_status(ref))
        if cached is not None:
            status_class = classify(cached.status)
            if status_class is StatusClass.INTERMEDIATE:
                await self._revalidator.submit(ref, lambda: self._revalidate(ref, cached.status))
                return await self._served(self._view_from_cache(resolved, cached))

            await self._ensure_record(resolved)
            record = resolved.record
            if record is not None and is_final(record.status):
                if record.status == cached.status:
                    return await self._served(self._view_from_record(record, "database"))
                logger.warning(
                    "cache_db_final_status_mismatch",
                    payment_intent_id=ref,
                    cache_status=cached.status,
                    database_status=record.status,
                )

        # step 3
        await self._ensure_record(resolved)
        record = resolved.record
        if record is not None and is_final(record.status):
            await self._writer.write_record(record)
            return await self._served(self._view_from_record(record, "database"))

        # step 4
        source = "database+provider" if record is not None else "provider"
        try:
            intent = await self._gateway.get_intent(ref)
        except ProviderNotFoundError:
            if record is not None:
                logger.warning("provider_reference_missing_at_provider", payment_intent_id=ref)
                return await self._served(self._view_from_record(record, "database", stale=True))
            raise PaymentNotFoundException(ref) from None
        except (PaymentRecoverableError, PaymentProviderError) as exc:
            return await self._degraded(resolved, cached, exc)

        known = record.status if record is not None else (cached.status if cached is not None else None)
        record, effective, _ = await self._write_through(intent, known_status=known, record=record)
        view = PaymentStatusView(
            payment_id=record.internal_id if record is not None else resolved.internal_id,
            payment_intent_id=ref,
            status=effective,
            amount=intent.amount,
            currency=intent.currency,
            source=source,
        )
        return await self._served(view)

    def _view_from_cache(self, resolved: _Resolved, cached: ProviderStatusSnapshot) -> PaymentStatusView:
        return PaymentStatusView(
            payment_id=resolved.internal_id,
            payment_intent_id=cached.provider_reference,
            status=cached.status,
            amount=cached.amount,
            currency=cached.currency,
            source="database+cache" if resolved.via_database else "cache",
            cached=True,
        )

    async def _degraded(
        self,
        resolved: _Resolved,
        cached: Optional[ProviderStatusSnapshot],
        exc: Exception,
    ) -> PaymentStatusView:
        logger.warning(
            "provider_unavailable_degraded",
            payment_intent_id=resolved.provider_reference,
            error_type=type(exc).__name__,
        )
        if resolved.record is not None:
            return await self._served(self._view_from_record(resolved.record, "database", stale=True))
        if cached is not None:
            view = self._view_from_cache(resolved, cached)
            view.stale = True
            return await self._served(view)
        if resolved.snapshot is not None:
            snap = resolved.snapshot
            view = PaymentStatusView(
                payment_id=snap.internal_id,
                payment_intent_id=snap.provider_reference,
                status=snap.status,
                amount=snap.amount,
                currency=snap.currency,
                source="cache",
                cached=True,
                stale=True,
            )
            return await self._served(view)
        raise exc

    async def check_status_change(self, provider_reference: ProviderReference) -> StatusChangeView:
        """One-shot: a pending change is returned once, then forgotten."""
        ref = provider_reference.value
        event = await self._writer.guard("pop_status_change", self._cache.pop_status_change(ref))
        if event is None:
            return StatusChangeView(payment_intent_id=ref, changed=False)
        return StatusChangeView(
            payment_intent_id=ref,
            changed=True,
            old_status=event.old_status,
            new_status=event.new_status,
            changed_at=event.changed_at,
            source=event.source.value,
        )

    async def refresh_from_provider(self, lookup: PaymentLookup) -> PaymentStatusView:
        """Synchronous provider read followed by a guarded write-through."""
        if isinstance(lookup, InternalId):
            resolved = await self._resolve(lookup)
        else:
            resolved = _Resolved(lookup.value)
        await self._ensure_record(resolved)
        record = resolved.record

        intent = await self._gateway.get_intent(resolved.provider_reference)
        known = record.status if record is not None else None
        record, effective, event = await self._write_through(intent, known_status=known, record=record)
        view = PaymentStatusView(
            payment_id=record.internal_id if record is not None else resolved.internal_id,
            payment_intent_id=intent.reference_id,
            status=effective,
            amount=intent.amount,
            currency=intent.currency,
            source="database+provider" if record is not None else "provider",
        )
        if event is not None:
            view.status_changed = True
            view.old_status = event.old_status
            view.new_status = event.new_status
            view.status_changed_at = event.changed_at
        logger.info(
            "payment_status_refreshed",
            payment_intent_id=view.payment_intent_id,
            status=view.status,
            changed=event is not None,
        )
        return view
