"""
Base payment client implementing shared concerns: bounded calls, retry, logging.

Concrete providers subclass and implement provider-specific logic.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from application.dtos.payments import (
    CreateIntent,
    ProviderIntent,
    RefundCommand,
    RefundResult,
    WebhookEvent,
)
from core.settings import PaymentRetry, PaymentTimeouts


logger = get_logger(__name__)

T = TypeVar("T")


class BasePaymentClient:
    provider: str = "base"

    # Exceptions worth another attempt; subclasses extend with SDK-specific ones
    retryable_exceptions: tuple[type[BaseException], ...] = (asyncio.TimeoutError,)

    def __init__(
        self,
        *,
        timeouts: Optional[PaymentTimeouts] = None,
        retry: Optional[PaymentRetry] = None,
    ) -> None:
        self._timeouts = timeouts or PaymentTimeouts()
        self._retry_cfg = retry or PaymentRetry()

    async def aclose(self) -> None:
        """Nothing pooled by default."""
        return None

    async def _call_blocking(self, operation: str, fn: Callable[[], T]) -> T:
        """Run a blocking SDK call in a worker thread with a bounded total timeout."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=self._timeouts.total)
        except asyncio.TimeoutError:
            logger.warning(
                "payment_provider_timeout",
                provider=self.provider,
                operation=operation,
                elapsed_ms=round((loop.time() - started) * 1000, 1),
            )
            raise

    async def _retry(self, operation: str, fn: Callable[[], T]) -> T:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg.max) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg.base_backoff, min=0.1, max=2.0),
            retry=retry_if_exception_type(self.retryable_exceptions),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    self._log("payment_provider_retry", operation=operation, attempt=attempt.retry_state.attempt_number)
                return await self._call_blocking(operation, fn)
        raise AssertionError("unreachable")  # pragma: no cover

    # Default implementations raise to force override where needed
    async def create_intent(self, req: CreateIntent) -> ProviderIntent:
        raise NotImplementedError

    async def get_intent(self, reference_id: str) -> ProviderIntent:
        raise NotImplementedError

    async def refund(self, req: RefundCommand) -> RefundResult:
        raise NotImplementedError

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:
        raise NotImplementedError

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
