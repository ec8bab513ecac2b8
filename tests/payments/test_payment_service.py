import asyncio
from datetime import timedelta

import pytest

from conftest import FakeGateway, make_record
from application.dtos.payments import CreatePaymentRequest, RefundPaymentRequest
from application.services.payment_service import PaymentApplicationService
from domain.common.exceptions import DomainValidationException
from domain.payment.entity import PaymentRecord, PricingConfig, utcnow
from domain.payment.exceptions import PaymentNotFoundException, PaymentNotRefundableException
from domain.payment.identifiers import InternalId, ProviderReference, new_internal_id


@pytest.fixture
def service(uow_factory, cache, gateway, ttl, pricing):
    return PaymentApplicationService(
        uow_factory=uow_factory,
        cache=cache,
        gateway=gateway,
        ttl=ttl,
        pricing=pricing,
    )


@pytest.mark.asyncio
async def test_create_payment_persists_and_caches(service, store, cache, gateway, pricing):
    result = await service.create_payment(CreatePaymentRequest(user_id="user-1", payment_method="wechat_pay", client="mobile"))

    assert not result.existing and not result.already_paid
    assert result.amount == pricing.amount
    assert result.client_secret == f"{result.payment_intent_id}_secret"
    record = store.records[result.payment_intent_id]
    assert record.internal_id == result.payment_id
    assert record.user_id == "user-1"
    sent = gateway.created[0]
    assert sent.metadata["user_id"] == "user-1"
    assert sent.metadata["payment_id"] == result.payment_id
    assert sent.metadata["client"] == "mobile"
    assert result.payment_id in cache.payments
    assert cache.provider_status[result.payment_intent_id].status == "requires_payment_method"


@pytest.mark.asyncio
async def test_idempotency_key_returns_existing_payment(service, store, gateway):
    first = await service.create_payment(CreatePaymentRequest(user_id="user-1", idempotency_key="order-42"))
    second = await service.create_payment(CreatePaymentRequest(user_id="user-1", idempotency_key="order-42"))

    assert second.existing is True
    assert second.payment_id == first.payment_id
    assert len(gateway.created) == 1
    assert len(store.records) == 1


@pytest.mark.asyncio
async def test_concurrent_requests_with_same_key_converge(service, store, gateway):
    req = CreatePaymentRequest(user_id="user-1", idempotency_key="order-7")
    results = await asyncio.gather(*(service.create_payment(req) for _ in range(5)))

    # every request got past the stored-key check before any of them persisted
    assert len(gateway.created) == 5
    assert len(gateway.intents) == 1
    assert len({r.payment_intent_id for r in results}) == 1
    assert len({r.payment_id for r in results}) == 1
    assert sum(1 for r in results if not r.existing) == 1
    assert len(store.records) == 1


class RacingGateway(FakeGateway):
    """Another request commits the same idempotency key while ours talks to the provider."""

    def __init__(self, store) -> None:
        super().__init__()
        self.store = store

    async def create_intent(self, req):
        winner = make_record(self.store, user_id="user-1", idempotency_key=req.idempotency_key)
        self.set_intent(winner.provider_reference, winner.status)
        return await super().create_intent(req)


@pytest.mark.asyncio
async def test_losing_a_creation_race_returns_the_winner(uow_factory, cache, ttl, pricing, store):
    gateway = RacingGateway(store)
    service = PaymentApplicationService(uow_factory=uow_factory, cache=cache, gateway=gateway, ttl=ttl, pricing=pricing)

    result = await service.create_payment(CreatePaymentRequest(user_id="user-1", idempotency_key="order-9"))

    winner = next(r for r in store.records.values() if r.idempotency_key == "order-9")
    assert result.existing is True
    assert result.payment_id == winner.internal_id
    assert len(store.records) == 1


@pytest.mark.asyncio
async def test_recent_success_short_circuits_creation(service, store, gateway):
    make_record(store, status="succeeded", age=timedelta(days=9, hours=23))

    result = await service.create_payment(CreatePaymentRequest(user_id="user-1"))

    assert result.already_paid is True
    assert result.days_remaining == 20
    assert gateway.created == []


@pytest.mark.asyncio
async def test_expired_success_allows_new_payment(service, store, gateway):
    make_record(store, status="succeeded", age=timedelta(days=31))

    result = await service.create_payment(CreatePaymentRequest(user_id="user-1"))

    assert result.already_paid is False
    assert len(gateway.created) == 1


@pytest.mark.asyncio
async def test_persist_failure_still_returns_provider_payment(uow_factory, cache, ttl, pricing, store):
    class OutageGateway(FakeGateway):
        async def create_intent(self, req):
            intent = await super().create_intent(req)
            store.available = False
            return intent

    service = PaymentApplicationService(
        uow_factory=uow_factory, cache=cache, gateway=OutageGateway(), ttl=ttl, pricing=pricing
    )

    result = await service.create_payment(CreatePaymentRequest(user_id="user-1"))

    assert result.payment_intent_id is not None
    assert store.records == {}
    assert cache.provider_status[result.payment_intent_id].status == "requires_payment_method"


@pytest.mark.asyncio
async def test_pricing_prefers_configured_row(service, store):
    store.pricing["usd"] = PricingConfig(currency="usd", amount=999, description="Monthly")

    view = await service.get_current_pricing("USD")

    assert (view.amount, view.currency, view.description) == (999, "usd", "Monthly")


@pytest.mark.asyncio
async def test_pricing_falls_back_to_settings_for_default_currency(service, pricing):
    view = await service.get_current_pricing()

    assert view.amount == pricing.amount
    assert view.validity_days == pricing.validity_days


@pytest.mark.asyncio
async def test_unconfigured_currency_is_rejected(service):
    with pytest.raises(DomainValidationException):
        await service.create_payment(CreatePaymentRequest(user_id="user-1", currency="eur"))


@pytest.mark.asyncio
async def test_refund_requires_succeeded_payment(service, store):
    record = make_record(store, status="processing")

    with pytest.raises(PaymentNotRefundableException):
        await service.refund_payment(InternalId(record.internal_id), RefundPaymentRequest())


@pytest.mark.asyncio
async def test_refund_amount_cannot_exceed_payment(service, store):
    record = make_record(store, status="succeeded", amount=500)

    with pytest.raises(DomainValidationException):
        await service.refund_payment(InternalId(record.internal_id), RefundPaymentRequest(amount=501))


@pytest.mark.asyncio
async def test_refund_uses_stable_idempotency_key(service, store, gateway):
    record = make_record(store, status="succeeded")
    gateway.set_intent(record.provider_reference, "succeeded")

    result = await service.refund_payment(
        ProviderReference(record.provider_reference),
        RefundPaymentRequest(amount=100, reason="requested_by_customer"),
    )

    assert result.amount == 100
    assert gateway.refunds[0].idempotency_key == f"refund:{record.internal_id}:100"


@pytest.mark.asyncio
async def test_refund_unknown_payment(service):
    with pytest.raises(PaymentNotFoundException):
        await service.refund_payment(new_internal_id(), RefundPaymentRequest())


@pytest.mark.asyncio
async def test_user_payment_info_is_computed_then_cached(service, store, cache, ttl):
    make_record(store, status="succeeded", amount=5900, age=timedelta(days=3))
    make_record(store, status="failed", amount=5900)

    info = await service.get_user_payment_info("user-1")

    assert info.has_paid and info.is_valid
    assert info.total_payment_count == 1
    assert info.total_payment_amount == 5900
    assert cache.ttls["user_payment:user-1:info"] == ttl.user_payment_info

    store.available = False
    again = await service.get_user_payment_info("user-1")
    assert again.total_payment_count == 1


@pytest.mark.asyncio
async def test_user_without_payments(service):
    info = await service.get_user_payment_info("fresh-user")

    assert not info.has_paid
    assert info.days_remaining == 0


@pytest.mark.asyncio
async def test_invalid_user_id_is_a_validation_error(service):
    with pytest.raises(DomainValidationException):
        await service.get_user_payment_info("bad user!")


@pytest.mark.asyncio
async def test_history_is_newest_first_and_limited(service, store):
    for days in (3, 1, 2):
        make_record(store, age=timedelta(days=days))
    store.add(
        PaymentRecord(
            internal_id=new_internal_id().value,
            provider_reference="pi_" + "z" * 24,
            user_id="someone-else",
            amount=100,
            currency="hkd",
            status="succeeded",
            created_at=utcnow(),
            updated_at=utcnow(),
        )
    )

    items = await service.get_payment_history("user-1", limit=2)

    assert len(items) == 2
    assert items[0].created_at > items[1].created_at
    assert all(item.payment_intent_id != "pi_" + "z" * 24 for item in items)
