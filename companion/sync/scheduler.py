"""Time source for the sync core.

The engine sleeps for backoff and the orchestrator runs a periodic timer
through a ``Scheduler`` so tests can drive time deterministically
(see ``companion.testing.ManualScheduler``).
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Protocol

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def now(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...

    def call_every(self, interval: float, callback: TimerCallback) -> TimerHandle: ...


class _TaskHandle:
    def __init__(self, task: "asyncio.Task[None]"):
        self._task = task

    def cancel(self) -> None:
        self._task.cancel()

    @property
    def cancelled(self) -> bool:
        return self._task.cancelled()


class AsyncioScheduler:
    """Scheduler backed by the running event loop."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def call_every(self, interval: float, callback: TimerCallback) -> _TaskHandle:
        """Run ``callback`` every ``interval`` seconds until cancelled.

        A callback failure is logged and the timer keeps running.
        """
        if interval <= 0:
            raise ValueError("interval must be positive")

        async def _loop() -> None:
            while True:
                await asyncio.sleep(interval)
                try:
                    await callback()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Periodic callback failed: {e}", exc_info=True)

        return _TaskHandle(asyncio.ensure_future(_loop()))


_default_scheduler: Optional[AsyncioScheduler] = None


def default_scheduler() -> AsyncioScheduler:
    global _default_scheduler
    if _default_scheduler is None:
        _default_scheduler = AsyncioScheduler()
    return _default_scheduler
