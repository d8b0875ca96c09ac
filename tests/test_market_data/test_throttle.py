"""Tests for RequestThrottle concurrency ceiling and FIFO ordering."""

import asyncio

import pytest

from marketview.market_data.throttle import RequestThrottle


class TestRequestThrottle:
    @pytest.mark.asyncio
    async def test_never_exceeds_max_concurrent(self) -> None:
        throttle = RequestThrottle(max_concurrent=3, spacing_seconds=0)
        active = 0
        peak = 0

        async def job(n: int) -> int:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return n

        results = await asyncio.gather(
            *(throttle.schedule(lambda n=n: job(n)) for n in range(10))
        )

        assert results == list(range(10))
        assert peak == 3

    @pytest.mark.asyncio
    async def test_tasks_start_in_submission_order(self) -> None:
        throttle = RequestThrottle(max_concurrent=1, spacing_seconds=0)
        started: list[int] = []

        async def job(n: int) -> None:
            started.append(n)
            await asyncio.sleep(0)

        await asyncio.gather(*(throttle.schedule(lambda n=n: job(n)) for n in range(5)))

        assert started == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_exception_forwarded_to_caller(self) -> None:
        throttle = RequestThrottle(spacing_seconds=0)

        async def failing() -> None:
            raise ValueError("upstream exploded")

        async def ok() -> str:
            return "fine"

        with pytest.raises(ValueError, match="upstream exploded"):
            await throttle.schedule(failing)
        # a failed task frees its slot
        assert await throttle.schedule(ok) == "fine"

    @pytest.mark.asyncio
    async def test_status_reports_running_and_queued(self) -> None:
        throttle = RequestThrottle(max_concurrent=2, spacing_seconds=0)
        gate = asyncio.Event()

        async def blocked() -> None:
            await gate.wait()

        callers = [asyncio.create_task(throttle.schedule(blocked)) for _ in range(5)]
        await asyncio.sleep(0)

        status = throttle.status()
        assert status.running == 2
        assert status.queued == 3
        assert status.max_concurrent == 2

        gate.set()
        await asyncio.gather(*callers)
        await throttle.wait_idle()

        status = throttle.status()
        assert status.running == 0
        assert status.queued == 0

    def test_rejects_zero_concurrency(self) -> None:
        with pytest.raises(ValueError):
            RequestThrottle(max_concurrent=0)
