import pytest

from conftest import make_record, make_reference
from application.services.reconciliation_service import PaymentStatusReconciler
from domain.payment.entity import ProviderStatusSnapshot, utcnow
from domain.payment.events import ChangeSource, StatusChangeEvent
from domain.payment.exceptions import PaymentNotFoundException
from domain.payment.identifiers import InternalId, ProviderReference, new_internal_id
from infrastructure.external.payments.exceptions import PaymentRecoverableError


@pytest.fixture
def reconciler(uow_factory, cache, gateway, revalidator, ttl):
    return PaymentStatusReconciler(
        uow_factory=uow_factory,
        cache=cache,
        gateway=gateway,
        revalidator=revalidator,
        ttl=ttl,
    )


def cache_status(cache, record, status):
    cache.provider_status[record.provider_reference] = ProviderStatusSnapshot(
        provider_reference=record.provider_reference,
        status=status,
        amount=record.amount,
        currency=record.currency,
        cached_at=utcnow(),
    )


@pytest.mark.asyncio
async def test_cached_intermediate_is_served_and_revalidated(reconciler, store, cache, gateway, revalidator):
    record = make_record(store, status="processing")
    cache_status(cache, record, "processing")
    gateway.set_intent(record.provider_reference, "succeeded")
    cache.user_info[record.user_id] = {"stale": True}

    view = await reconciler.get_status(ProviderReference(record.provider_reference))

    assert view.status == "processing"
    assert view.source == "cache"
    assert view.cached is True
    assert not view.stale

    await revalidator.drain()
    assert store.records[record.provider_reference].status == "succeeded"
    assert cache.provider_status[record.provider_reference].status == "succeeded"
    event = cache.status_changes[record.provider_reference]
    assert (event.old_status, event.new_status, event.source) == ("processing", "succeeded", ChangeSource.REVALIDATE)
    assert record.user_id not in cache.user_info


@pytest.mark.asyncio
async def test_revalidation_with_unchanged_status_only_refreshes_ttl(reconciler, store, cache, gateway, revalidator):
    record = make_record(store, status="processing")
    cache_status(cache, record, "processing")
    gateway.set_intent(record.provider_reference, "processing")

    await reconciler.get_status(ProviderReference(record.provider_reference))
    await revalidator.drain()

    assert gateway.get_calls == [record.provider_reference]
    assert record.provider_reference not in cache.status_changes
    assert store.status_writes == []


@pytest.mark.asyncio
async def test_internal_id_resolved_via_database_labels_cache_hit(reconciler, store, cache, gateway):
    record = make_record(store, status="requires_action")
    cache_status(cache, record, "requires_action")
    gateway.set_intent(record.provider_reference, "requires_action")

    view = await reconciler.get_status(InternalId(record.internal_id))

    assert view.source == "database+cache"
    assert view.payment_id == record.internal_id
    # DB resolution warms the snapshot for the next lookup
    assert record.internal_id in cache.payments


@pytest.mark.asyncio
async def test_internal_id_resolved_from_snapshot_is_cache(reconciler, store, cache, gateway):
    record = make_record(store, status="processing")
    await cache.set_payment(record.to_snapshot(), 60)
    cache_status(cache, record, "processing")
    gateway.set_intent(record.provider_reference, "processing")

    view = await reconciler.get_status(InternalId(record.internal_id))

    assert view.source == "cache"
    assert view.payment_intent_id == record.provider_reference


@pytest.mark.asyncio
async def test_cached_final_confirmed_by_database_skips_provider(reconciler, store, cache, gateway):
    record = make_record(store, status="succeeded")
    cache_status(cache, record, "succeeded")

    view = await reconciler.get_status(ProviderReference(record.provider_reference))

    assert view.status == "succeeded"
    assert view.source == "database"
    assert gateway.get_calls == []


@pytest.mark.asyncio
async def test_cached_final_without_database_confirmation_asks_provider(reconciler, store, cache, gateway):
    record = make_record(store, status="processing")
    cache_status(cache, record, "succeeded")
    gateway.set_intent(record.provider_reference, "succeeded")

    view = await reconciler.get_status(ProviderReference(record.provider_reference))

    assert gateway.get_calls == [record.provider_reference]
    assert view.source == "database+provider"
    assert store.records[record.provider_reference].status == "succeeded"


@pytest.mark.asyncio
async def test_final_database_status_refreshes_cache(reconciler, store, cache, gateway, ttl):
    record = make_record(store, status="failed")

    view = await reconciler.get_status(ProviderReference(record.provider_reference))

    assert view.source == "database"
    assert gateway.get_calls == []
    assert cache.provider_status[record.provider_reference].status == "failed"
    assert cache.ttls[f"provider_status:{record.provider_reference}"] == ttl.final_status


@pytest.mark.asyncio
async def test_provider_answer_is_written_through(reconciler, store, cache, gateway):
    record = make_record(store, status="processing")
    gateway.set_intent(record.provider_reference, "succeeded")
    cache.user_info[record.user_id] = {"stale": True}

    view = await reconciler.get_status(ProviderReference(record.provider_reference))

    assert view.status == "succeeded"
    assert view.source == "database+provider"
    assert view.status_changed is True
    assert (view.old_status, view.new_status) == ("processing", "succeeded")
    # the breadcrumb stays for clients polling check_status_change
    assert cache.status_changes[record.provider_reference].new_status == "succeeded"
    assert record.user_id not in cache.user_info


@pytest.mark.asyncio
async def test_provider_only_payment_is_cached(reconciler, cache, gateway, ttl):
    ref = make_reference()
    gateway.set_intent(ref, "processing")

    view = await reconciler.get_status(ProviderReference(ref))

    assert view.source == "provider"
    assert view.payment_id is None
    assert cache.ttls[f"provider_status:{ref}"] == ttl.intermediate_status


@pytest.mark.asyncio
async def test_provider_outage_degrades_to_database(reconciler, store, gateway):
    record = make_record(store, status="processing")
    gateway.error = PaymentRecoverableError("down", provider="fake")

    view = await reconciler.get_status(ProviderReference(record.provider_reference))

    assert view.status == "processing"
    assert view.stale is True
    assert view.source == "database"


@pytest.mark.asyncio
async def test_provider_outage_without_local_state_raises(reconciler, gateway):
    gateway.error = PaymentRecoverableError("down", provider="fake")

    with pytest.raises(PaymentRecoverableError):
        await reconciler.get_status(ProviderReference(make_reference()))


@pytest.mark.asyncio
async def test_unknown_reference_is_not_found(reconciler):
    with pytest.raises(PaymentNotFoundException):
        await reconciler.get_status(ProviderReference(make_reference()))


@pytest.mark.asyncio
async def test_unknown_internal_id_is_not_found(reconciler):
    with pytest.raises(PaymentNotFoundException):
        await reconciler.get_status(new_internal_id())


@pytest.mark.asyncio
async def test_cache_outage_falls_back_to_database_and_provider(reconciler, store, cache, gateway):
    record = make_record(store, status="processing")
    gateway.set_intent(record.provider_reference, "succeeded")
    cache.available = False

    view = await reconciler.get_status(InternalId(record.internal_id))

    assert view.status == "succeeded"
    assert view.source == "database+provider"
    assert store.records[record.provider_reference].status == "succeeded"


@pytest.mark.asyncio
async def test_database_outage_answers_from_provider(reconciler, store, cache, gateway):
    record = make_record(store, status="processing")
    gateway.set_intent(record.provider_reference, "succeeded")
    store.available = False

    view = await reconciler.get_status(ProviderReference(record.provider_reference))

    assert view.status == "succeeded"
    assert view.source == "provider"
    assert cache.provider_status[record.provider_reference].status == "succeeded"


@pytest.mark.asyncio
async def test_status_query_reports_change_without_consuming_it(reconciler, store, cache):
    record = make_record(store, status="succeeded")
    cache.status_changes[record.provider_reference] = StatusChangeEvent(
        provider_reference=record.provider_reference,
        old_status="processing",
        new_status="succeeded",
        source=ChangeSource.WEBHOOK,
    )

    first = await reconciler.get_status(ProviderReference(record.provider_reference))
    second = await reconciler.get_status(ProviderReference(record.provider_reference))
    poll = await reconciler.check_status_change(ProviderReference(record.provider_reference))
    after_poll = await reconciler.get_status(ProviderReference(record.provider_reference))

    assert first.status_changed is True
    assert first.old_status == "processing"
    assert second.status_changed is True
    assert poll.changed is True
    assert (poll.old_status, poll.new_status) == ("processing", "succeeded")
    assert after_poll.status_changed is None


@pytest.mark.asyncio
async def test_revalidated_change_survives_later_status_queries(reconciler, store, cache, gateway, revalidator):
    record = make_record(store, status="processing")
    cache_status(cache, record, "processing")
    gateway.set_intent(record.provider_reference, "succeeded")
    ref = ProviderReference(record.provider_reference)

    await reconciler.get_status(ref)
    await revalidator.drain()
    requeried = await reconciler.get_status(ref)
    poll = await reconciler.check_status_change(ref)

    assert requeried.status == "succeeded"
    assert requeried.source == "database"
    assert poll.changed is True
    assert (poll.old_status, poll.new_status) == ("processing", "succeeded")
    assert poll.source == "revalidate"
    assert (await reconciler.check_status_change(ref)).changed is False


@pytest.mark.asyncio
async def test_check_status_change_is_one_shot(reconciler, cache):
    ref = make_reference()
    cache.status_changes[ref] = StatusChangeEvent(
        provider_reference=ref,
        old_status="requires_action",
        new_status="failed",
        source=ChangeSource.WEBHOOK,
    )

    first = await reconciler.check_status_change(ProviderReference(ref))
    second = await reconciler.check_status_change(ProviderReference(ref))

    assert first.changed is True
    assert first.source == "webhook"
    assert second.changed is False


@pytest.mark.asyncio
async def test_refresh_cannot_downgrade_final_status(reconciler, store, gateway):
    record = make_record(store, status="succeeded")
    gateway.set_intent(record.provider_reference, "processing")

    view = await reconciler.refresh_from_provider(InternalId(record.internal_id))

    assert view.status == "succeeded"
    assert view.status_changed is None
    assert store.records[record.provider_reference].status == "succeeded"


@pytest.mark.asyncio
async def test_refresh_reports_change(reconciler, store, cache, gateway):
    record = make_record(store, status="requires_action")
    gateway.set_intent(record.provider_reference, "canceled")

    view = await reconciler.refresh_from_provider(ProviderReference(record.provider_reference))

    assert view.status == "canceled"
    assert view.status_changed is True
    assert cache.status_changes[record.provider_reference].new_status == "canceled"
