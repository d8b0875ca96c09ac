"""Shared data models for chart market data.

Prices are display-only values taken straight from the provider's JSON, so
they stay as float. Candle timestamps keep the unit of their source: the
OHLC endpoint reports epoch milliseconds, candles bucketed from price points
use epoch seconds. Use ``timestamp_seconds`` whenever units must agree.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

# Anything at or above this is an epoch-millisecond value (year 5138 in seconds).
_MS_THRESHOLD = 100_000_000_000


def timestamp_seconds(timestamp: int) -> int:
    """Normalize an epoch timestamp in seconds or milliseconds to seconds."""
    if timestamp >= _MS_THRESHOLD:
        return timestamp // 1000
    return timestamp


def timestamp_millis(timestamp: int) -> int:
    """Normalize an epoch timestamp in seconds or milliseconds to milliseconds."""
    if timestamp >= _MS_THRESHOLD:
        return timestamp
    return timestamp * 1000


class ChartMode(str, Enum):
    """How chart data is returned to the caller."""

    OHLC = "ohlc"
    LINE = "line"


class Timeframe(str, Enum):
    """Candle bucket width shown on the chart."""

    ONE_MIN = "1m"
    THREE_MIN = "3m"
    FIVE_MIN = "5m"
    FIFTEEN_MIN = "15m"


class CacheTTL(IntEnum):
    """Cache durations in milliseconds."""

    SHORT = 30_000  # real-time data
    MEDIUM = 300_000  # frequent updates
    LONG = 172_800_000  # 48h, historical data in trade popups


# Label of the cached raw series. CoinGecko /ohlc has no 5m candles: it returns
# 30m candles for 1-2 days and 4h candles for 3-30 days, so with the default
# 7-day fetch the "5m" series holds 4h candles and a trade window may contain
# one candle or none. Finer data needs the market-chart series
# (MarketDataService.get_live_candles).
NATIVE_TIMEFRAME = Timeframe.FIVE_MIN

TIMEFRAME_SECONDS: dict[Timeframe, int] = {
    Timeframe.ONE_MIN: 60,
    Timeframe.THREE_MIN: 180,
    Timeframe.FIVE_MIN: 300,
    Timeframe.FIFTEEN_MIN: 900,
}

# Display window width per timeframe, in minutes
TIMEFRAME_WINDOW_MINUTES: dict[Timeframe, int] = {
    Timeframe.ONE_MIN: 60,  # 60 candles
    Timeframe.THREE_MIN: 120,  # 40 candles
    Timeframe.FIVE_MIN: 180,  # 36 candles
    Timeframe.FIFTEEN_MIN: 360,  # 24 candles
}


@dataclass(frozen=True)
class Candle:
    """A single OHLC observation.

    Invariant: low <= min(open, close) <= max(open, close) <= high.
    """

    timestamp: int
    open: float
    high: float
    low: float
    close: float

    @property
    def timestamp_s(self) -> int:
        return timestamp_seconds(self.timestamp)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Candle:
        return cls(
            timestamp=int(data["timestamp"]),
            open=float(data["open"]),
            high=float(data["high"]),
            low=float(data["low"]),
            close=float(data["close"]),
        )


@dataclass(frozen=True)
class PricePoint:
    """A single price observation for line charts."""

    timestamp: int  # Unix milliseconds
    price: float

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "price": self.price}


@dataclass(frozen=True)
class SourceRange:
    """Time range (epoch seconds) covered by a fetched candle series."""

    from_ts: int
    to_ts: int


@dataclass(frozen=True)
class Window:
    """Display window (epoch seconds, inclusive) around a trade."""

    from_ts: int
    to_ts: int
    width_minutes: int


@dataclass
class ChartConfig:
    """Per-request chart options."""

    mode: ChartMode = ChartMode.OHLC
    timeframe: Timeframe = Timeframe.FIVE_MIN
    cache_ttl_ms: int = int(CacheTTL.LONG)


@dataclass(frozen=True)
class CoinCacheEntry:
    """All cached market data for one coin.

    ``aggregated`` maps a timeframe label to a candle series derived from
    ``raw_candles``. The native timeframe maps to ``raw_candles`` itself.
    Entries are replaced wholesale, never mutated.
    """

    coin_id: str
    symbol: str
    raw_candles: tuple[Candle, ...]
    fetched_at_ms: int
    ttl_ms: int
    source_range: SourceRange
    aggregated: dict[str, tuple[Candle, ...]] = field(default_factory=dict)

    def is_expired(self, now_ms: int) -> bool:
        return now_ms - self.fetched_at_ms > self.ttl_ms

    def series_for(self, timeframe: Timeframe) -> tuple[Candle, ...]:
        """Return the pre-aggregated series for a timeframe, or the raw series."""
        series = self.aggregated.get(timeframe.value)
        if series is None:
            return self.raw_candles
        return series

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the key/value store.

        Aggregations that are the raw series itself are stored by reference
        ("raw") instead of duplicating every candle.
        """
        aggregated: dict[str, Any] = {}
        for label, series in self.aggregated.items():
            if series is self.raw_candles or series == self.raw_candles:
                aggregated[label] = "raw"
            else:
                aggregated[label] = [c.to_dict() for c in series]
        return {
            "coin_id": self.coin_id,
            "symbol": self.symbol,
            "raw_candles": [c.to_dict() for c in self.raw_candles],
            "fetched_at_ms": self.fetched_at_ms,
            "ttl_ms": self.ttl_ms,
            "source_range": {
                "from": self.source_range.from_ts,
                "to": self.source_range.to_ts,
            },
            "aggregated": aggregated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CoinCacheEntry:
        raw = tuple(Candle.from_dict(c) for c in data["raw_candles"])
        aggregated: dict[str, tuple[Candle, ...]] = {}
        for label, series in data.get("aggregated", {}).items():
            if series == "raw":
                aggregated[label] = raw
            else:
                aggregated[label] = tuple(Candle.from_dict(c) for c in series)
        source_range = data["source_range"]
        return cls(
            coin_id=data["coin_id"],
            symbol=data["symbol"],
            raw_candles=raw,
            fetched_at_ms=int(data["fetched_at_ms"]),
            ttl_ms=int(data["ttl_ms"]),
            source_range=SourceRange(
                from_ts=int(source_range["from"]), to_ts=int(source_range["to"])
            ),
            aggregated=aggregated,
        )


@dataclass(frozen=True)
class MarketSnapshot:
    """Current market state for a coin (live ticker widget)."""

    coin_id: str
    current_price: float
    price_change_24h: float
    price_change_percentage_24h: float
    market_cap: float
    total_volume: float
    high_24h: float
    low_24h: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "coin_id": self.coin_id,
            "current_price": self.current_price,
            "price_change_24h": self.price_change_24h,
            "price_change_percentage_24h": self.price_change_percentage_24h,
            "market_cap": self.market_cap,
            "total_volume": self.total_volume,
            "high_24h": self.high_24h,
            "low_24h": self.low_24h,
        }
