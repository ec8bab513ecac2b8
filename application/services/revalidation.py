"""
Bounded fire-and-forget runner for stale-while-revalidate refreshes.

Jobs are best effort: failures are logged and swallowed, a key is refreshed at
most once at a time, and when every slot is busy new work is skipped instead
of queued. The next read re-checks anyway.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from core.logging_config import get_logger


logger = get_logger(__name__)


class BackgroundRevalidator:
    def __init__(self, max_concurrency: int = 32) -> None:
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be positive")
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: set[asyncio.Task] = set()
        self._inflight: set[str] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def is_inflight(self, key: str) -> bool:
        return key in self._inflight

    async def submit(self, key: str, job: Callable[[], Awaitable[None]]) -> bool:
        """Schedule ``job`` for ``key``; returns False when skipped."""
        if self._closed:
            logger.debug("background_revalidation_skipped", key=key, reason="closed")
            return False
        if key in self._inflight:
            logger.debug("background_revalidation_skipped", key=key, reason="inflight")
            return False
        if self._semaphore.locked():
            logger.warning("background_revalidation_skipped", key=key, reason="saturated")
            return False

        # 信号量未锁定时 acquire 不会挂起
        await self._semaphore.acquire()
        self._inflight.add(key)
        task = asyncio.create_task(self._run(key, job), name=f"revalidate:{key}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _run(self, key: str, job: Callable[[], Awaitable[None]]) -> None:
        try:
            await job()
        except asyncio.CancelledError:
            logger.info("background_revalidation_cancelled", key=key)
            raise
        except Exception as exc:
            logger.warning(
                "background_revalidation_failed",
                key=key,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        finally:
            self._inflight.discard(key)
            self._semaphore.release()

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for in-flight jobs; cancel whatever is still running after ``timeout``."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("background_revalidation_drain_timeout", cancelled=len(pending))

    async def aclose(self, timeout: float = 5.0) -> None:
        self._closed = True
        await self.drain(timeout)
