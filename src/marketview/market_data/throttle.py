"""Process-wide limiter for concurrent upstream API calls.

Tasks start strictly in submission order, at most ``max_concurrent`` at a
time. After each task finishes the throttle pauses briefly before starting
the next one, which keeps bursts under the provider's rate limit.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from marketview.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ThrottleStatus:
    """Snapshot of the throttle's queue."""

    running: int
    queued: int
    max_concurrent: int


class RequestThrottle:
    """FIFO queue with a concurrency ceiling.

    Results and exceptions are forwarded verbatim to the caller awaiting
    ``schedule``. There is no cancellation: a queued task runs even if its
    caller has gone away.

    Args:
        max_concurrent: Maximum number of tasks running at once (default 3).
        spacing_seconds: Pause after each task completes (default 0.1).
    """

    def __init__(self, max_concurrent: int = 3, spacing_seconds: float = 0.1) -> None:
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self._max_concurrent = max_concurrent
        self._spacing = spacing_seconds
        self._queue: deque[tuple[Callable[[], Awaitable[Any]], asyncio.Future[Any]]] = deque()
        self._running = 0
        self._workers: set[asyncio.Task[None]] = set()

    async def schedule(self, task: Callable[[], Awaitable[T]]) -> T:
        """Queue ``task`` and wait for its result."""
        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._queue.append((task, future))
        logger.debug("throttle_task_queued", queued=len(self._queue), running=self._running)
        self._drain()
        return await future

    def status(self) -> ThrottleStatus:
        return ThrottleStatus(
            running=self._running,
            queued=len(self._queue),
            max_concurrent=self._max_concurrent,
        )

    async def wait_idle(self) -> None:
        """Wait until every queued and running task has finished."""
        while self._workers:
            await asyncio.gather(*list(self._workers), return_exceptions=True)

    def _drain(self) -> None:
        while self._running < self._max_concurrent and self._queue:
            task, future = self._queue.popleft()
            self._running += 1
            worker = asyncio.create_task(self._run(task, future))
            self._workers.add(worker)
            worker.add_done_callback(self._workers.discard)

    async def _run(
        self, task: Callable[[], Awaitable[Any]], future: asyncio.Future[Any]
    ) -> None:
        try:
            result = await task()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            if not future.done():
                future.set_exception(e)
        else:
            if not future.done():
                future.set_result(result)
        finally:
            self._running -= 1
        await asyncio.sleep(self._spacing)
        self._drain()
