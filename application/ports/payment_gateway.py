"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from application.dtos.payments import (
    CreateIntent,
    ProviderIntent,
    RefundCommand,
    RefundResult,
    WebhookEvent,
)


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for the external payment provider.

    Calls are bounded by the adapter's own timeout. Transient failures surface
    as PaymentRecoverableError so callers can degrade to local state.
    """

    provider: str

    async def create_intent(self, req: CreateIntent) -> ProviderIntent: ...

    async def get_intent(self, reference_id: str) -> ProviderIntent: ...

    async def refund(self, req: RefundCommand) -> RefundResult: ...

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent: ...

    async def aclose(self) -> None: ...
