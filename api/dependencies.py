"""
API依赖项 - 从应用状态中取出服务容器，以及限流与标识解析
"""
from typing import Callable

from fastapi import Depends, Path, Request

from application.services.health_service import HealthService
from application.services.payment_service import PaymentApplicationService
from application.services.reconciliation_service import PaymentStatusReconciler
from application.services.webhook_service import WebhookIngestor
from core.exceptions import RateLimitException
from domain.payment.identifiers import (
    PaymentLookup,
    ProviderReference,
    parse_payment_lookup,
    parse_provider_reference,
)
from infrastructure.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    """服务容器由 lifespan 创建并挂载在 app.state 上"""
    return request.app.state.container


def get_reconciler(container: ServiceContainer = Depends(get_container)) -> PaymentStatusReconciler:
    return container.reconciler


def get_payment_service(container: ServiceContainer = Depends(get_container)) -> PaymentApplicationService:
    return container.payments


def get_webhook_ingestor(container: ServiceContainer = Depends(get_container)) -> WebhookIngestor:
    return container.webhooks


def get_health_service(container: ServiceContainer = Depends(get_container)) -> HealthService:
    return container.health


def payment_lookup(
    payment_id: str = Path(..., min_length=1, max_length=128, description="内部支付ID(UUID)或 payment_intent_id"),
) -> PaymentLookup:
    """在 API 边界一次性解析标识所属的ID空间"""
    return parse_payment_lookup(payment_id)


def provider_reference(
    payment_intent_id: str = Path(..., min_length=1, max_length=255),
) -> ProviderReference:
    return parse_provider_reference(payment_intent_id)


def rate_limit(scope: str = "default") -> Callable:
    """按客户端IP的固定窗口限流依赖"""

    async def _dependency(request: Request, container: ServiceContainer = Depends(get_container)) -> None:
        config = container.settings.rate_limit
        if not config.enabled:
            return
        limit = config.create_limit if scope == "create" else config.default_limit
        client_ip = getattr(request.state, "client_ip", None) or (
            request.client.host if request.client else "unknown"
        )
        decision = await container.rate_limiter.hit(scope, client_ip, limit)
        if not decision.allowed:
            raise RateLimitException(retry_after=decision.retry_after)

    return _dependency
