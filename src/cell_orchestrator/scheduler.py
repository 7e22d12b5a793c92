"""FIFO concurrency limiter for model-backed work.

Each limiter instance owns its width; cells and sections get separate
instances so one surface cannot starve the other. Waiters suspend on a future
and are admitted strictly in arrival order: a released slot is handed directly
to the oldest waiter instead of being returned to the pool.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import TypeVar

from cell_orchestrator.errors import LimiterTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConcurrencyLimiter:
    def __init__(self, limit: int, *, name: str = "default") -> None:
        if limit < 1:
            raise ValueError(f"Limiter width must be >= 1, got {limit}")
        self.limit = limit
        self.name = name
        self.peak_in_flight = 0
        self._in_flight = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def queued(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def submit(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        timeout_s: float | None = None,
    ) -> T:
        """Run `fn` once a slot is free; the slot is released however `fn` ends."""
        await self._acquire(timeout_s)
        try:
            return await fn()
        finally:
            self._release()

    async def _acquire(self, timeout_s: float | None) -> None:
        if self._in_flight < self.limit and not self._waiters:
            self._in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug(
            "limiter event=queued name=%s in_flight=%d queued=%d",
            self.name,
            self._in_flight,
            len(self._waiters),
        )
        try:
            if timeout_s is None:
                await waiter
            else:
                await asyncio.wait_for(waiter, timeout=timeout_s)
        except TimeoutError as exc:
            self._abandon(waiter)
            logger.warning(
                "limiter event=timeout name=%s timeout_s=%s in_flight=%d",
                self.name,
                timeout_s,
                self._in_flight,
            )
            raise LimiterTimeout(
                f"Timed out after {timeout_s}s waiting for a '{self.name}' slot"
            ) from exc
        except asyncio.CancelledError:
            self._abandon(waiter)
            raise

    def _release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            # Hand the slot over; the in-flight count stays the same.
            waiter.set_result(None)
            return
        self._in_flight -= 1

    def _abandon(self, waiter: asyncio.Future[None]) -> None:
        if waiter.done() and not waiter.cancelled():
            # The slot was handed over just as the caller gave up; pass it on.
            self._release()
            return
        waiter.cancel()
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass
