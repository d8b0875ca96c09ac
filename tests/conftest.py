"""Shared test fixtures for the chart market data layer."""

from datetime import datetime, timezone

import pytest

from marketview.cache.backends import MemoryBackend
from marketview.cache.store import CoinCacheStore
from marketview.config import AppSettings, CoinGeckoSettings, RetrySettings
from marketview.models import Candle


class FakeClock:
    """Settable time source returning epoch seconds."""

    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def epoch(iso: str) -> int:
    """Epoch seconds for an ISO timestamp (UTC)."""
    return int(datetime.fromisoformat(iso).replace(tzinfo=timezone.utc).timestamp())


def make_candles(
    start_sec: int, count: int, step_sec: int = 300, millis: bool = True
) -> list[Candle]:
    """Generate an ascending candle series with distinct, valid prices."""
    candles = []
    for i in range(count):
        ts = start_sec + i * step_sec
        base = 100.0 + i
        candles.append(
            Candle(
                timestamp=ts * 1000 if millis else ts,
                open=base,
                high=base + 2.0,
                low=base - 1.0,
                close=base + 0.5,
            )
        )
    return candles


@pytest.fixture
def mock_settings() -> AppSettings:
    """Return AppSettings with test defaults (dummy API key, no jitter)."""
    return AppSettings(
        log_level="DEBUG",
        coingecko=CoinGeckoSettings(
            api_key="test-api-key",  # type: ignore[arg-type]
            base_url="https://api.test/api/v3",
        ),
        retry=RetrySettings(jitter=False),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(float(epoch("2024-01-03T00:00:00")))


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def coin_cache(backend: MemoryBackend, clock: FakeClock) -> CoinCacheStore:
    return CoinCacheStore(backend, clock=clock)
