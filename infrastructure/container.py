"""
组合根：在进程启动时构建一次所有依赖，并显式注入到各服务

API（main.py lifespan）与 Celery 任务共用同一套构建逻辑。
"""
from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from typing import Optional

from redis import asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from application.ports.payment_cache import PaymentCache
from application.ports.payment_gateway import PaymentGateway
from application.services.health_service import HealthService
from application.services.payment_service import PaymentApplicationService
from application.services.reconciliation_service import PaymentStatusReconciler
from application.services.revalidation import BackgroundRevalidator
from application.services.webhook_service import WebhookIngestor
from core.config import Settings
from core.logging_config import get_logger
from core.settings import PaymentSettings
from infrastructure.cache import (
    DisabledPaymentCache,
    FixedWindowRateLimiter,
    RedisPaymentCache,
    create_redis_client,
)
from infrastructure.database import create_engine_from_settings, create_session_factory, ping
from infrastructure.external.payments import get_payment_gateway
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    cache: PaymentCache
    gateway: PaymentGateway
    revalidator: BackgroundRevalidator
    reconciler: PaymentStatusReconciler
    webhooks: WebhookIngestor
    payments: PaymentApplicationService
    health: HealthService
    rate_limiter: FixedWindowRateLimiter
    redis: Optional[aioredis.Redis] = None

    def uow(self, *, readonly: bool = False) -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(self.session_factory, readonly=readonly)


def build_container(
    settings: Settings,
    payment_settings: PaymentSettings,
    *,
    gateway: Optional[PaymentGateway] = None,
) -> ServiceContainer:
    """构建所有依赖（不发起任何网络连接）"""
    engine = create_engine_from_settings(settings.database)
    session_factory = create_session_factory(engine)
    uow_factory = partial(SQLAlchemyUnitOfWork, session_factory)

    redis_client: Optional[aioredis.Redis] = None
    cache: PaymentCache
    if settings.redis.url:
        redis_client = create_redis_client(settings.redis)
        cache = RedisPaymentCache(redis_client, namespace=settings.redis.namespace)
    else:
        logger.warning("redis_not_configured", detail="running without cache")
        cache = DisabledPaymentCache()

    gateway = gateway or get_payment_gateway(payment_settings)
    revalidator = BackgroundRevalidator(settings.reconciliation.revalidation_concurrency)

    reconciler = PaymentStatusReconciler(
        uow_factory=uow_factory,
        cache=cache,
        gateway=gateway,
        revalidator=revalidator,
        ttl=settings.cache,
    )
    webhooks = WebhookIngestor(uow_factory=uow_factory, cache=cache, gateway=gateway, ttl=settings.cache)
    payments = PaymentApplicationService(
        uow_factory=uow_factory,
        cache=cache,
        gateway=gateway,
        ttl=settings.cache,
        pricing=settings.pricing,
    )
    health = HealthService(
        database_probe=partial(ping, engine),
        cache_probe=cache.ping if redis_client is not None else None,
        version=settings.VERSION,
        timeout=settings.reconciliation.health_timeout,
    )
    rate_limiter = FixedWindowRateLimiter(
        redis_client,
        window_seconds=settings.rate_limit.window_seconds,
        namespace=settings.redis.namespace,
    )
    return ServiceContainer(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        cache=cache,
        gateway=gateway,
        revalidator=revalidator,
        reconciler=reconciler,
        webhooks=webhooks,
        payments=payments,
        health=health,
        rate_limiter=rate_limiter,
        redis=redis_client,
    )


async def check_database(container: ServiceContainer) -> bool:
    """启动时探测数据库；不可用只记录告警，不阻止服务启动"""
    try:
        await ping(container.engine)
        return True
    except Exception as exc:
        logger.warning("database_unavailable_at_startup", error=str(exc), error_type=type(exc).__name__)
        return False


async def close_container(container: ServiceContainer) -> None:
    """按依赖倒序释放资源"""
    await container.revalidator.aclose(container.settings.reconciliation.drain_timeout)
    await container.gateway.aclose()
    if container.redis is not None:
        await container.redis.aclose()
    await container.engine.dispose()
    logger.info("service_container_closed")
