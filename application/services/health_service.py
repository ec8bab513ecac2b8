"""
Dependency health checks.

Each dependency is pinged under its own short timeout, independent of the
request-serving timeouts.
"""
from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional

from application.dtos.payments import HealthReport, ServiceHealth
from core.logging_config import get_logger


logger = get_logger(__name__)

Probe = Callable[[], Awaitable[object]]


class HealthService:
    def __init__(
        self,
        *,
        database_probe: Probe,
        cache_probe: Optional[Probe],
        version: str,
        timeout: float = 3.0,
        started_at: Optional[float] = None,
    ) -> None:
        self._database_probe = database_probe
        self._cache_probe = cache_probe
        self._version = version
        self._timeout = timeout
        self._started_at = started_at if started_at is not None else time.monotonic()

    async def _probe(self, name: str, probe: Optional[Probe]) -> ServiceHealth:
        if probe is None:
            return ServiceHealth(status="disabled")
        started = time.perf_counter()
        try:
            await asyncio.wait_for(probe(), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("health_check_timeout", service=name, timeout=self._timeout)
            return ServiceHealth(status="down", error="timeout")
        except Exception as exc:
            logger.warning("health_check_failed", service=name, error=str(exc), error_type=type(exc).__name__)
            return ServiceHealth(status="down", error=type(exc).__name__)
        return ServiceHealth(status="up", latency_ms=round((time.perf_counter() - started) * 1000, 2))

    async def check(self) -> HealthReport:
        database, cache = await asyncio.gather(
            self._probe("database", self._database_probe),
            self._probe("cache", self._cache_probe),
        )
        services = {"database": database, "cache": cache}
        degraded = any(s.status == "down" for s in services.values())
        return HealthReport(
            status="degraded" if degraded else "healthy",
            version=self._version,
            uptime_seconds=round(time.monotonic() - self._started_at, 3),
            services=services,
        )
