"""
Stripe PaymentIntents adapter using the official stripe-python SDK.

Notes on SDK usage:
- The SDK is synchronous; calls run in a worker thread under a bounded
  total timeout (payment_settings.timeouts.total).
- The API key is passed per request instead of mutating ``stripe.api_key``.
- Idempotency keys are supplied via the ``idempotency_key`` kwarg. Webhook
  verification uses ``stripe.Webhook.construct_event`` with the
  ``Stripe-Signature`` header.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Optional, TypeVar

import stripe

from application.dtos.payments import (
    CreateIntent,
    ProviderIntent,
    RefundCommand,
    RefundResult,
    WebhookEvent,
)
from core.logging_config import get_logger
from core.settings import PaymentSettings
from domain.common.exceptions import DomainValidationException
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
    PaymentSignatureError,
    ProviderConfigurationError,
    ProviderNotFoundError,
)


logger = get_logger(__name__)

T = TypeVar("T")

SIGNATURE_HEADER = "stripe-signature"


def _intent_params(req: CreateIntent) -> dict[str, Any]:
    """Build PaymentIntent.create params for the requested payment method."""
    params: dict[str, Any] = {
        "amount": req.amount,
        "currency": req.currency.lower(),
        "metadata": dict(req.metadata),
    }
    if req.payment_method == "wechat_pay":
        params["payment_method_types"] = ["wechat_pay"]
        params["payment_method_options"] = {"wechat_pay": {"client": req.client}}
    elif req.payment_method == "alipay":
        params["payment_method_types"] = ["alipay"]
    else:
        # apple_pay is a card wallet on Stripe
        params["payment_method_types"] = ["card"]
    if req.return_url:
        params["return_url"] = req.return_url
    return params


class StripeClient(BasePaymentClient):
    provider = "stripe"

    retryable_exceptions = (
        asyncio.TimeoutError,
        stripe.APIConnectionError,
        stripe.RateLimitError,
    )

    def __init__(self, settings: PaymentSettings):
        super().__init__(timeouts=settings.timeouts, retry=settings.retry)
        if not settings.stripe.secret_key:
            raise ProviderConfigurationError("STRIPE__SECRET_KEY not configured", provider=self.provider)
        self._api_key = settings.stripe.secret_key
        self._api_version = settings.stripe.api_version
        self._webhook_secret = settings.stripe.webhook_secret
        self._webhook_tolerance = settings.webhook.tolerance_seconds

    def _request_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {"api_key": self._api_key}
        if self._api_version:
            options["stripe_version"] = self._api_version
        return options

    async def _invoke(self, operation: str, fn: Callable[[], T], *, reference_id: Optional[str] = None) -> T:
        """Retry transient failures, then map SDK errors onto the gateway error taxonomy."""
        try:
            return await self._retry(operation, fn)
        except (asyncio.TimeoutError, stripe.APIConnectionError, stripe.RateLimitError) as exc:
            self._log("payment_provider_unavailable", operation=operation, error_type=type(exc).__name__)
            raise PaymentRecoverableError(
                "Payment provider temporarily unavailable",
                provider=self.provider,
                provider_code=getattr(exc, "code", None),
            ) from exc
        except stripe.AuthenticationError as exc:
            logger.error("payment_provider_auth_failed", provider=self.provider, operation=operation)
            raise ProviderConfigurationError("Payment provider authentication failed", provider=self.provider) from exc
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "code", None) == "resource_missing" and reference_id:
                raise ProviderNotFoundError(reference_id, provider=self.provider) from exc
            raise PaymentProviderError(
                exc.user_message or "Invalid request to payment provider",
                provider=self.provider,
                provider_code=getattr(exc, "code", None),
            ) from exc
        except stripe.StripeError as exc:
            raise PaymentProviderError(
                exc.user_message or "Payment provider error",
                provider=self.provider,
                provider_code=getattr(exc, "code", None),
            ) from exc

    @staticmethod
    def _to_intent(pi: Any) -> ProviderIntent:
        return ProviderIntent(
            reference_id=str(pi["id"]),
            status=str(pi["status"]),
            amount=int(pi["amount"]),
            currency=str(pi["currency"]).lower(),
            client_secret=pi.get("client_secret"),
        )

    async def create_intent(self, req: CreateIntent) -> ProviderIntent:
        params = _intent_params(req)
        options = self._request_options()
        if req.idempotency_key:
            options["idempotency_key"] = req.idempotency_key

        pi = await self._invoke("create_intent", lambda: stripe.PaymentIntent.create(**params, **options))
        intent = self._to_intent(pi)
        self._log(
            "payment_intent_created",
            payment_intent_id=intent.reference_id,
            status=intent.status,
            payment_method=req.payment_method,
        )
        return intent

    async def get_intent(self, reference_id: str) -> ProviderIntent:
        options = self._request_options()
        pi = await self._invoke(
            "get_intent",
            lambda: stripe.PaymentIntent.retrieve(reference_id, **options),
            reference_id=reference_id,
        )
        return self._to_intent(pi)

    async def refund(self, req: RefundCommand) -> RefundResult:
        params: dict[str, Any] = {"payment_intent": req.reference_id}
        if req.amount is not None:
            params["amount"] = req.amount
        if req.reason:
            params["reason"] = req.reason
        options = self._request_options()
        if req.idempotency_key:
            options["idempotency_key"] = req.idempotency_key

        refund = await self._invoke(
            "refund",
            lambda: stripe.Refund.create(**params, **options),
            reference_id=req.reference_id,
        )
        result = RefundResult(
            refund_id=str(refund["id"]),
            status=str(refund.get("status") or ""),
            amount=int(refund["amount"]),
            currency=str(refund["currency"]).lower(),
            payment_intent_id=refund.get("payment_intent"),
        )
        self._log("payment_refund_created", payment_intent_id=req.reference_id, refund_id=result.refund_id, status=result.status)
        return result

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:
        if not self._webhook_secret:
            raise PaymentSignatureError("Webhook secret not configured", provider=self.provider)
        sig = next((v for k, v in headers.items() if k.lower() == SIGNATURE_HEADER), None)
        if not sig:
            raise PaymentSignatureError("Missing Stripe-Signature header", provider=self.provider)
        try:
            stripe.Webhook.construct_event(
                payload=body,
                sig_header=sig,
                secret=self._webhook_secret,
                tolerance=self._webhook_tolerance,
            )
        except stripe.SignatureVerificationError as exc:
            raise PaymentSignatureError("Invalid webhook signature", provider=self.provider) from exc
        except ValueError as exc:
            raise DomainValidationException("Malformed webhook payload", field="body") from exc

        # 验签通过后按原始JSON解析，避免依赖 StripeObject 的序列化行为
        event = json.loads(body)
        return WebhookEvent(
            id=str(event.get("id") or ""),
            type=str(event.get("type") or ""),
            provider=self.provider,
            data=event.get("data") or {},
        )
