"""
Application service orchestrating payment use-cases.

This class depends only on the application ports and DTOs. Gateway and
persistence implementations are provided by infrastructure and injected from
the composition root (API/tasks), keeping dependencies one-way.
"""
from __future__ import annotations

from typing import Callable, Optional

from application.dtos.payments import (
    CreateIntent,
    CreatePaymentRequest,
    CreatePaymentResult,
    PaymentHistoryItem,
    PricingView,
    ProviderIntent,
    RefundCommand,
    RefundPaymentRequest,
    RefundResult,
    UserPaymentInfo,
    validate_user_id,
)
from application.ports.payment_cache import PaymentCache
from application.ports.payment_gateway import PaymentGateway
from application.services.cache_sync import StatusCacheWriter
from core.config import CacheTTLSettings, PricingSettings
from core.logging_config import get_logger
from domain.common.exceptions import DomainValidationException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import PaymentRecord, PricingConfig, UserPaymentAggregate, utcnow
from domain.payment.exceptions import (
    DatabaseUnavailableError,
    DuplicatePaymentError,
    PaymentNotFoundException,
    PaymentNotRefundableException,
)
from domain.payment.identifiers import InternalId, PaymentLookup, new_internal_id
from domain.payment.status import PaymentStatus
from infrastructure.external.payments.exceptions import PaymentProviderError, PaymentRecoverableError


logger = get_logger(__name__)

MAX_HISTORY_LIMIT = 100
DEFAULT_HISTORY_LIMIT = 50


def _checked_user_id(raw: str) -> str:
    try:
        return validate_user_id(raw)
    except ValueError as exc:
        raise DomainValidationException(str(exc), field="user_id") from None


class PaymentApplicationService:
    def __init__(
        self,
        *,
        uow_factory: Callable[..., AbstractUnitOfWork],
        cache: PaymentCache,
        gateway: PaymentGateway,
        ttl: CacheTTLSettings,
        pricing: PricingSettings,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateway = gateway
        self._pricing = pricing
        self._writer = StatusCacheWriter(cache, ttl)

    # ---- pricing ----

    async def _resolve_pricing(self, currency: Optional[str]) -> PricingConfig:
        wanted = (currency or self._pricing.currency).lower()
        async with self._uow_factory(readonly=True) as uow:
            config = await uow.payment_config_repository.get_pricing(wanted)
        if config is not None:
            return config
        if wanted != self._pricing.currency.lower():
            raise DomainValidationException(f"No pricing configured for currency {wanted}", field="currency")
        return PricingConfig(currency=self._pricing.currency.lower(), amount=self._pricing.amount)

    async def get_current_pricing(self, currency: Optional[str] = None) -> PricingView:
        config = await self._resolve_pricing(currency)
        return PricingView(
            amount=config.amount,
            currency=config.currency,
            description=config.description,
            validity_days=self._pricing.validity_days,
        )

    # ---- creation ----

    async def _existing_result(self, record: PaymentRecord) -> CreatePaymentResult:
        """Return a stored payment; the client secret is fetched best effort."""
        client_secret = None
        try:
            intent = await self._gateway.get_intent(record.provider_reference)
            client_secret = intent.client_secret
        except (PaymentRecoverableError, PaymentProviderError) as exc:
            logger.info(
                "payment_existing_client_secret_unavailable",
                payment_intent_id=record.provider_reference,
                error_type=type(exc).__name__,
            )
        return CreatePaymentResult(
            user_id=record.user_id,
            payment_id=record.internal_id,
            payment_intent_id=record.provider_reference,
            client_secret=client_secret,
            status=record.status,
            amount=record.amount,
            currency=record.currency,
            payment_method=record.payment_method,
            existing=True,
        )

    async def _find_winner(self, dup: DuplicatePaymentError) -> Optional[PaymentRecord]:
        async with self._uow_factory(readonly=True) as uow:
            repo = uow.payment_repository
            if dup.idempotency_key:
                record = await repo.get_by_idempotency_key(dup.idempotency_key)
                if record is not None:
                    return record
            if dup.provider_reference:
                return await repo.get_by_provider_reference(dup.provider_reference)
        return None

    async def create_payment(self, req: CreatePaymentRequest) -> CreatePaymentResult:
        logger.info(
            "payment_create_request",
            user_id=req.user_id,
            payment_method=req.payment_method,
            idempotency_key=req.idempotency_key,
        )

        async with self._uow_factory(readonly=True) as uow:
            if req.idempotency_key:
                existing = await uow.payment_repository.get_by_idempotency_key(req.idempotency_key)
                if existing is not None:
                    logger.info(
                        "payment_idempotent_hit",
                        idempotency_key=req.idempotency_key,
                        payment_id=existing.internal_id,
                    )
                    return await self._existing_result(existing)
            aggregate = await uow.payment_repository.get_user_aggregate(req.user_id)

        validity_days = self._pricing.validity_days
        if aggregate.is_within(validity_days):
            logger.info(
                "payment_already_satisfied",
                user_id=req.user_id,
                days_remaining=aggregate.days_remaining(validity_days),
            )
            return CreatePaymentResult(
                user_id=req.user_id,
                already_paid=True,
                days_remaining=aggregate.days_remaining(validity_days),
                last_payment_at=aggregate.last_payment_at,
            )

        pricing = await self._resolve_pricing(req.currency)
        amount = req.amount or pricing.amount
        internal_id = new_internal_id()
        metadata = dict(req.metadata or {})
        metadata.update({"user_id": req.user_id, "payment_id": internal_id.value})
        if req.description:
            metadata["description"] = req.description
        if req.payment_method == "wechat_pay":
            metadata["client"] = req.client

        intent: ProviderIntent = await self._gateway.create_intent(
            CreateIntent(
                amount=amount,
                currency=pricing.currency,
                payment_method=req.payment_method,
                client=req.client,
                return_url=req.return_url,
                idempotency_key=req.idempotency_key,
                metadata=metadata,
            )
        )

        now = utcnow()
        record = PaymentRecord(
            internal_id=internal_id.value,
            provider_reference=intent.reference_id,
            user_id=req.user_id,
            amount=intent.amount,
            currency=intent.currency,
            status=intent.status,
            payment_method=req.payment_method,
            idempotency_key=req.idempotency_key,
            description=req.description or pricing.description,
            metadata=metadata,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._uow_factory() as uow:
                record = await uow.payment_repository.create(record)
        except DuplicatePaymentError as dup:
            winner = await self._find_winner(dup)
            if winner is None:
                raise
            logger.info(
                "payment_create_race_resolved",
                idempotency_key=req.idempotency_key,
                payment_id=winner.internal_id,
            )
            result = await self._existing_result(winner)
            if winner.provider_reference == intent.reference_id and intent.client_secret:
                result.client_secret = intent.client_secret
            return result
        except DatabaseUnavailableError:
            # 渠道侧已创建，后续状态查询仍可通过 payment_intent_id 进行
            logger.error(
                "payment_persist_failed",
                payment_id=record.internal_id,
                payment_intent_id=record.provider_reference,
            )

        await self._writer.write_record(record)
        logger.info(
            "payment_create_response",
            payment_id=record.internal_id,
            payment_intent_id=record.provider_reference,
            status=record.status,
        )
        return CreatePaymentResult(
            user_id=record.user_id,
            payment_id=record.internal_id,
            payment_intent_id=record.provider_reference,
            client_secret=intent.client_secret,
            status=record.status,
            amount=record.amount,
            currency=record.currency,
            payment_method=record.payment_method,
        )

    # ---- refund ----

    async def refund_payment(self, lookup: PaymentLookup, req: RefundPaymentRequest) -> RefundResult:
        async with self._uow_factory(readonly=True) as uow:
            repo = uow.payment_repository
            if isinstance(lookup, InternalId):
                record = await repo.get_by_internal_id(lookup.value)
            else:
                record = await repo.get_by_provider_reference(lookup.value)
        if record is None:
            raise PaymentNotFoundException(lookup.value)
        if record.status != PaymentStatus.SUCCEEDED.value:
            raise PaymentNotRefundableException(record.status)
        if req.amount is not None and req.amount > record.amount:
            raise DomainValidationException("Refund amount exceeds payment amount", field="amount")

        logger.info(
            "payment_refund_request",
            payment_id=record.internal_id,
            payment_intent_id=record.provider_reference,
            amount=req.amount,
        )
        return await self._gateway.refund(
            RefundCommand(
                reference_id=record.provider_reference,
                amount=req.amount,
                reason=req.reason,
                idempotency_key=f"refund:{record.internal_id}:{req.amount or 'full'}",
            )
        )

    # ---- read models ----

    def _user_info(self, aggregate: UserPaymentAggregate) -> UserPaymentInfo:
        validity_days = self._pricing.validity_days
        return UserPaymentInfo(
            user_id=aggregate.user_id,
            has_paid=aggregate.has_paid,
            total_payment_count=aggregate.total_payment_count,
            total_payment_amount=aggregate.total_payment_amount,
            first_payment_at=aggregate.first_payment_at,
            last_payment_at=aggregate.last_payment_at,
            is_valid=aggregate.is_within(validity_days),
            days_remaining=aggregate.days_remaining(validity_days),
            validity_days=validity_days,
        )

    async def get_user_payment_info(self, user_id: str) -> UserPaymentInfo:
        user_id = _checked_user_id(user_id)
        cached = await self._writer.get_user_info(user_id)
        if cached:
            return UserPaymentInfo.model_validate(cached)

        async with self._uow_factory(readonly=True) as uow:
            aggregate = await uow.payment_repository.get_user_aggregate(user_id)
        info = self._user_info(aggregate)
        await self._writer.set_user_info(user_id, info.model_dump(mode="json"))
        return info

    async def get_payment_history(self, user_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> list[PaymentHistoryItem]:
        user_id = _checked_user_id(user_id)
        limit = max(1, min(int(limit), MAX_HISTORY_LIMIT))
        async with self._uow_factory(readonly=True) as uow:
            records = await uow.payment_repository.list_by_user(user_id, limit=limit)
        return [
            PaymentHistoryItem(
                payment_id=r.internal_id,
                payment_intent_id=r.provider_reference,
                amount=r.amount,
                currency=r.currency,
                status=r.status,
                payment_method=r.payment_method,
                description=r.description,
                created_at=r.created_at,
                updated_at=r.updated_at,
            )
            for r in records
        ]
