"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings, and provide
in-memory stand-ins for the cache, the durable store and the provider.
"""
import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("STRIPE__SECRET_KEY", "sk_test_123")
os.environ.setdefault("STRIPE__WEBHOOK_SECRET", "whsec_test")

import asyncio
import fnmatch
import itertools
from datetime import datetime, timedelta
from typing import Any, Optional

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from application.dtos.payments import (
    CreateIntent,
    ProviderIntent,
    RefundCommand,
    RefundResult,
    WebhookEvent,
)
from application.services.revalidation import BackgroundRevalidator
from core.config import CacheTTLSettings, PricingSettings
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    PaymentRecord,
    PaymentSnapshot,
    PricingConfig,
    ProviderStatusSnapshot,
    UserPaymentAggregate,
    utcnow,
)
from domain.payment.events import StatusChangeEvent
from domain.payment.exceptions import (
    CacheUnavailableError,
    DatabaseUnavailableError,
    DuplicatePaymentError,
)
from domain.payment.repository import (
    PaymentConfigRepository,
    PaymentRepository,
    StatusUpdateResult,
)
from domain.payment.identifiers import new_internal_id
from domain.payment.status import TransitionDecision, decide_transition, is_final
from infrastructure.external.payments.exceptions import PaymentSignatureError, ProviderNotFoundError


_ref_counter = itertools.count(1)


def make_reference() -> str:
    return f"pi_{next(_ref_counter):024d}"


class FakeCache:
    """PaymentCache backed by dicts; ``available = False`` simulates an outage."""

    def __init__(self) -> None:
        self.available = True
        self.payments: dict[str, dict[str, Any]] = {}
        self.payment_refs: dict[str, dict[str, Any]] = {}
        self.provider_status: dict[str, ProviderStatusSnapshot] = {}
        self.status_changes: dict[str, StatusChangeEvent] = {}
        self.processed: set[str] = set()
        self.user_info: dict[str, dict[str, Any]] = {}
        self.ttls: dict[str, int] = {}

    def _check(self, operation: str) -> None:
        if not self.available:
            raise CacheUnavailableError(operation)

    def _ttl(self, key: str, ttl: int) -> None:
        assert ttl > 0, f"non-positive ttl for {key}"
        self.ttls[key] = ttl

    async def get_payment(self, internal_id: str) -> Optional[PaymentSnapshot]:
        self._check("get_payment")
        data = self.payments.get(internal_id)
        return PaymentSnapshot.from_dict(data) if data else None

    async def get_payment_by_reference(self, provider_reference: str) -> Optional[PaymentSnapshot]:
        self._check("get_payment_by_reference")
        data = self.payment_refs.get(provider_reference)
        return PaymentSnapshot.from_dict(data) if data else None

    async def set_payment(self, snapshot: dict[str, Any], ttl: int) -> None:
        self._check("set_payment")
        self._ttl(f"payment:{snapshot['internal_id']}", ttl)
        self.payments[snapshot["internal_id"]] = dict(snapshot)
        self.payment_refs[snapshot["provider_reference"]] = dict(snapshot)

    async def get_provider_status(self, provider_reference: str) -> Optional[ProviderStatusSnapshot]:
        self._check("get_provider_status")
        return self.provider_status.get(provider_reference)

    async def set_provider_status(self, snapshot: ProviderStatusSnapshot, ttl: int) -> None:
        self._check("set_provider_status")
        self._ttl(f"provider_status:{snapshot.provider_reference}", ttl)
        self.provider_status[snapshot.provider_reference] = snapshot

    async def record_status_change(self, event: StatusChangeEvent, ttl: int) -> None:
        self._check("record_status_change")
        self._ttl(f"status_change:{event.provider_reference}", ttl)
        self.status_changes[event.provider_reference] = event

    async def peek_status_change(self, provider_reference: str) -> Optional[StatusChangeEvent]:
        self._check("peek_status_change")
        return self.status_changes.get(provider_reference)

    async def pop_status_change(self, provider_reference: str) -> Optional[StatusChangeEvent]:
        self._check("pop_status_change")
        return self.status_changes.pop(provider_reference, None)

    async def mark_event_processed(self, event_id: str, ttl: int) -> bool:
        self._check("mark_event_processed")
        self._ttl(f"processed_event:{event_id}", ttl)
        if event_id in self.processed:
            return False
        self.processed.add(event_id)
        return True

    async def release_event(self, event_id: str) -> None:
        self._check("release_event")
        self.processed.discard(event_id)

    async def get_user_payment_info(self, user_id: str) -> Optional[dict[str, Any]]:
        self._check("get_user_payment_info")
        return self.user_info.get(user_id)

    async def set_user_payment_info(self, user_id: str, info: dict[str, Any], ttl: int) -> None:
        self._check("set_user_payment_info")
        self._ttl(f"user_payment:{user_id}:info", ttl)
        self.user_info[user_id] = info

    async def invalidate_user(self, user_id: str) -> int:
        self._check("invalidate_user")
        return 1 if self.user_info.pop(user_id, None) is not None else 0

    async def ping(self) -> bool:
        self._check("ping")
        return True


class InMemoryStore:
    """Shared state behind the in-memory repositories."""

    def __init__(self) -> None:
        self.records: dict[str, PaymentRecord] = {}
        self.pricing: dict[str, PricingConfig] = {}
        self.available = True
        self.status_writes: list[tuple[str, str]] = []

    def add(self, record: PaymentRecord) -> PaymentRecord:
        self.records[record.provider_reference] = record
        return record


class InMemoryPaymentRepository(PaymentRepository):
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    def _check(self, operation: str) -> None:
        if not self.store.available:
            raise DatabaseUnavailableError(operation)

    async def create(self, payment: PaymentRecord) -> PaymentRecord:
        self._check("create")
        for existing in self.store.records.values():
            if payment.idempotency_key and existing.idempotency_key == payment.idempotency_key:
                raise DuplicatePaymentError(idempotency_key=payment.idempotency_key)
            if existing.provider_reference == payment.provider_reference:
                raise DuplicatePaymentError(provider_reference=payment.provider_reference)
        return self.store.add(payment)

    async def get_by_internal_id(self, internal_id: str) -> Optional[PaymentRecord]:
        self._check("get_by_internal_id")
        return next((r for r in self.store.records.values() if r.internal_id == internal_id), None)

    async def get_by_provider_reference(self, provider_reference: str) -> Optional[PaymentRecord]:
        self._check("get_by_provider_reference")
        return self.store.records.get(provider_reference)

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[PaymentRecord]:
        self._check("get_by_idempotency_key")
        return next((r for r in self.store.records.values() if r.idempotency_key == idempotency_key), None)

    async def update_status(self, provider_reference: str, new_status: str) -> StatusUpdateResult:
        self._check("update_status")
        record = self.store.records.get(provider_reference)
        if record is None:
            return StatusUpdateResult(provider_reference, None, None, TransitionDecision.NOOP)
        previous = record.status
        decision = decide_transition(previous, new_status)
        if decision.applied:
            record.status = new_status
            record.updated_at = utcnow()
            self.store.status_writes.append((provider_reference, new_status))
        return StatusUpdateResult(provider_reference, previous, record.status, decision, record)

    async def get_user_aggregate(self, user_id: str) -> UserPaymentAggregate:
        self._check("get_user_aggregate")
        paid = [r for r in self.store.records.values() if r.user_id == user_id and r.status == "succeeded"]
        if not paid:
            return UserPaymentAggregate(user_id=user_id)
        return UserPaymentAggregate(
            user_id=user_id,
            total_payment_count=len(paid),
            total_payment_amount=sum(r.amount for r in paid),
            first_payment_at=min(r.updated_at for r in paid),
            last_payment_at=max(r.updated_at for r in paid),
        )

    async def list_by_user(self, user_id: str, limit: int = 50) -> list[PaymentRecord]:
        self._check("list_by_user")
        rows = [r for r in self.store.records.values() if r.user_id == user_id]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows[:limit]

    async def list_stale_intermediate(self, older_than: datetime, limit: int = 100) -> list[PaymentRecord]:
        self._check("list_stale_intermediate")
        rows = [
            r for r in self.store.records.values()
            if not is_final(r.status) and r.updated_at <= older_than
        ]
        rows.sort(key=lambda r: r.updated_at)
        return rows[:limit]


class InMemoryPaymentConfigRepository(PaymentConfigRepository):
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def get_pricing(self, currency: str) -> Optional[PricingConfig]:
        if not self.store.available:
            raise DatabaseUnavailableError("get_pricing")
        return self.store.pricing.get(currency.lower())


class InMemoryUnitOfWork(AbstractUnitOfWork):
    def __init__(self, store: InMemoryStore, *, readonly: bool = False) -> None:
        super().__init__(readonly=readonly)
        self.payment_repository = InMemoryPaymentRepository(store)
        self.payment_config_repository = InMemoryPaymentConfigRepository(store)

    async def commit(self) -> None:
        self._committed = True

    async def rollback(self) -> None:
        return None


class FakeGateway:
    """Provider stand-in; ``error`` is raised from every provider read when set."""

    provider = "fake"

    def __init__(self) -> None:
        self.intents: dict[str, ProviderIntent] = {}
        self.intents_by_key: dict[str, ProviderIntent] = {}
        self.error: Optional[Exception] = None
        self.created: list[CreateIntent] = []
        self.refunds: list[RefundCommand] = []
        self.get_calls: list[str] = []
        self.webhook_event: Optional[WebhookEvent] = None

    def set_intent(self, reference: str, status: str, amount: int = 5900, currency: str = "hkd") -> ProviderIntent:
        intent = ProviderIntent(
            reference_id=reference,
            status=status,
            amount=amount,
            currency=currency,
            client_secret=f"{reference}_secret",
        )
        self.intents[reference] = intent
        return intent

    async def create_intent(self, req: CreateIntent) -> ProviderIntent:
        if self.error is not None:
            raise self.error
        self.created.append(req)
        # suspend like a network call so concurrent creations interleave
        await asyncio.sleep(0)
        if req.idempotency_key and req.idempotency_key in self.intents_by_key:
            return self.intents_by_key[req.idempotency_key]
        intent = self.set_intent(make_reference(), "requires_payment_method", req.amount, req.currency)
        if req.idempotency_key:
            self.intents_by_key[req.idempotency_key] = intent
        return intent

    async def get_intent(self, reference_id: str) -> ProviderIntent:
        self.get_calls.append(reference_id)
        if self.error is not None:
            raise self.error
        intent = self.intents.get(reference_id)
        if intent is None:
            raise ProviderNotFoundError(reference_id, provider=self.provider)
        return intent

    async def refund(self, req: RefundCommand) -> RefundResult:
        self.refunds.append(req)
        intent = self.intents[req.reference_id]
        return RefundResult(
            refund_id="re_1",
            status="succeeded",
            amount=req.amount or intent.amount,
            currency=intent.currency,
            payment_intent_id=req.reference_id,
        )

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:
        if headers.get("stripe-signature") != "valid":
            raise PaymentSignatureError("Invalid webhook signature", provider=self.provider)
        assert self.webhook_event is not None
        return self.webhook_event

    async def aclose(self) -> None:
        return None


def make_record(
    store: InMemoryStore,
    *,
    status: str = "requires_payment_method",
    user_id: str = "user-1",
    amount: int = 5900,
    idempotency_key: Optional[str] = None,
    age: timedelta = timedelta(0),
) -> PaymentRecord:
    now = utcnow() - age
    record = PaymentRecord(
        internal_id=new_internal_id().value,
        provider_reference=make_reference(),
        user_id=user_id,
        amount=amount,
        currency="hkd",
        status=status,
        idempotency_key=idempotency_key,
        created_at=now,
        updated_at=now,
    )
    return store.add(record)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def uow_factory(store):
    def _factory(*, readonly: bool = False) -> InMemoryUnitOfWork:
        return InMemoryUnitOfWork(store, readonly=readonly)

    return _factory


@pytest.fixture
def cache() -> FakeCache:
    return FakeCache()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def ttl() -> CacheTTLSettings:
    return CacheTTLSettings()


@pytest.fixture
def pricing() -> PricingSettings:
    return PricingSettings()


@pytest_asyncio.fixture
async def revalidator():
    runner = BackgroundRevalidator(max_concurrency=4)
    yield runner
    await runner.aclose(timeout=1.0)


class StubRedis:
    """Just enough of redis.asyncio.Redis for the cache and rate limiter; ``down`` raises ConnectionError."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.expiry: dict[str, int] = {}
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise RedisConnectionError("connection refused")

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None, nx=False):
        self._check()
        if nx and key in self.data:
            return None
        self.data[key] = value
        if ex is not None:
            self.expiry[key] = ex
        return True

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.expiry.pop(key, None)
        return removed

    async def incr(self, key):
        self._check()
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = str(value)
        return value

    async def expire(self, key, seconds):
        self._check()
        self.expiry[key] = seconds
        return True

    async def scan_iter(self, match=None, count=None):
        self._check()
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        return None

    def pipeline(self, transaction=True):
        return _StubPipeline(self)


class _StubPipeline:
    def __init__(self, client: StubRedis) -> None:
        self.client = client
        self.ops: list[tuple[str, tuple, dict]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.ops.clear()

    def __getattr__(self, name):
        def _queue(*args, **kwargs):
            self.ops.append((name, args, kwargs))
            return self

        return _queue

    async def execute(self):
        results = []
        for name, args, kwargs in self.ops:
            results.append(await getattr(self.client, name)(*args, **kwargs))
        self.ops.clear()
        return results


@pytest.fixture
def stub_redis() -> StubRedis:
    return StubRedis()
