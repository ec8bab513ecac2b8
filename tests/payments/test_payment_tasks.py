from datetime import timedelta
from types import SimpleNamespace

import pytest

from conftest import make_record
from application.services.reconciliation_service import PaymentStatusReconciler
from infrastructure.external.payments.exceptions import PaymentRecoverableError
from infrastructure.tasks.payment_tasks import sweep_with


@pytest.fixture
def container(uow_factory, cache, gateway, revalidator, ttl):
    reconciler = PaymentStatusReconciler(
        uow_factory=uow_factory, cache=cache, gateway=gateway, revalidator=revalidator, ttl=ttl
    )
    return SimpleNamespace(uow=uow_factory, reconciler=reconciler)


@pytest.mark.asyncio
async def test_sweep_refreshes_stuck_payments(container, store, gateway):
    stuck = make_record(store, status="processing", age=timedelta(minutes=20))
    waiting = make_record(store, status="requires_action", age=timedelta(minutes=15))
    fresh = make_record(store, status="processing")
    make_record(store, status="succeeded", age=timedelta(hours=1))
    gateway.set_intent(stuck.provider_reference, "succeeded")
    gateway.set_intent(waiting.provider_reference, "requires_action")

    summary = await sweep_with(container, older_than_seconds=300, batch_size=10)

    assert summary == {"candidates": 2, "refreshed": 2, "changed": 1, "failed": 0}
    assert store.records[stuck.provider_reference].status == "succeeded"
    assert fresh.provider_reference not in gateway.get_calls


@pytest.mark.asyncio
async def test_sweep_skips_payments_unknown_to_provider(container, store, gateway):
    missing = make_record(store, status="processing", age=timedelta(minutes=30))
    other = make_record(store, status="processing", age=timedelta(minutes=20))
    gateway.set_intent(other.provider_reference, "canceled")

    summary = await sweep_with(container, older_than_seconds=300, batch_size=10)

    assert summary["failed"] == 1
    assert summary["refreshed"] == 1
    assert store.records[missing.provider_reference].status == "processing"


@pytest.mark.asyncio
async def test_sweep_stops_when_provider_is_down(container, store, gateway):
    make_record(store, status="processing", age=timedelta(minutes=30))
    make_record(store, status="processing", age=timedelta(minutes=20))
    gateway.error = PaymentRecoverableError("down", provider="fake")

    summary = await sweep_with(container, older_than_seconds=300, batch_size=10)

    assert summary["failed"] == 1
    assert len(gateway.get_calls) == 1
