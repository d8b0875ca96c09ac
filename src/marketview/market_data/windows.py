"""Timeframe aggregation and display-window selection for cached candles.

All functions are pure: "now" is always passed in by the caller so the
window policy can be tested against a fixed clock.
"""

from collections.abc import Iterable, Sequence

from marketview.logging import get_logger
from marketview.models import (
    TIMEFRAME_WINDOW_MINUTES,
    Candle,
    CoinCacheEntry,
    PricePoint,
    SourceRange,
    Timeframe,
    Window,
    timestamp_millis,
)

logger = get_logger(__name__)

# A trade whose centered window ended less than this long ago is anchored to "now"
RECENT_TRADE_SECONDS = 30 * 60
FETCH_DAYS = 7


def aggregate(candles: Sequence[Candle], group_size: int) -> list[Candle]:
    """Merge consecutive, non-overlapping groups of candles into coarser candles.

    The last group may be shorter than ``group_size``; it is still emitted.
    Each output candle takes the first candle's timestamp and open, the
    last candle's close, and the extreme high/low of the group.
    """
    if group_size < 1:
        raise ValueError(f"group_size must be >= 1, got {group_size}")

    aggregated: list[Candle] = []
    for i in range(0, len(candles), group_size):
        group = candles[i : i + group_size]
        aggregated.append(
            Candle(
                timestamp=group[0].timestamp,
                open=group[0].open,
                high=max(c.high for c in group),
                low=min(c.low for c in group),
                close=group[-1].close,
            )
        )
    return aggregated


def aggregate_to_15m(candles: Sequence[Candle]) -> list[Candle]:
    """Turn native 5-minute candles into 15-minute candles."""
    aggregated = aggregate(candles, 3)
    logger.debug("candles_aggregated", source=len(candles), result=len(aggregated), timeframe="15m")
    return aggregated


def compute_window(trade_time_sec: int, timeframe: Timeframe, now_sec: int) -> Window:
    """Return the display window for a trade, centered where possible.

    Recent trades trade strict centering for visibility of the latest data:
    - if the centered window ended less than 30 minutes ago, it is anchored
      to end at ``now``;
    - the window never extends past ``now``; when clamped, ``from`` is
      recomputed so the width stays constant.
    """
    width_minutes = TIMEFRAME_WINDOW_MINUTES[timeframe]
    width = width_minutes * 60
    half = width // 2

    from_ts = trade_time_sec - half
    to_ts = trade_time_sec + half

    if to_ts < now_sec and now_sec - to_ts < RECENT_TRADE_SECONDS:
        to_ts = now_sec
        from_ts = now_sec - width

    if to_ts > now_sec:
        to_ts = now_sec
        from_ts = now_sec - width

    return Window(from_ts=from_ts, to_ts=to_ts, width_minutes=width_minutes)


def filter_window(candles: Iterable[Candle], window: Window) -> list[Candle]:
    """Keep candles whose timestamp (in seconds) falls inside the window, inclusive."""
    return [c for c in candles if window.from_ts <= c.timestamp_s <= window.to_ts]


def select_window(
    entry: CoinCacheEntry,
    trade_time_sec: int,
    timeframe: Timeframe,
    now_sec: int,
) -> list[Candle]:
    """Slice the timeframe's series of a cache entry down to the trade window."""
    series = entry.series_for(timeframe)
    window = compute_window(trade_time_sec, timeframe, now_sec)
    selected = filter_window(series, window)
    logger.debug(
        "window_selected",
        coin_id=entry.coin_id,
        timeframe=timeframe.value,
        candles=len(series),
        selected=len(selected),
        window_from=window.from_ts,
        window_to=window.to_ts,
    )
    return selected


def calculate_fetch_range(
    trade_time_sec: int, now_sec: int, days: int = FETCH_DAYS
) -> SourceRange:
    """Return the range to fetch on a cache miss: up to ``days`` back, ending now.

    The start never reaches further back than ``now - days``, since the
    provider only serves the last ``days`` days at 5-minute granularity.
    """
    span = days * 86_400
    return SourceRange(
        from_ts=max(trade_time_sec - span, now_sec - span),
        to_ts=now_sec,
    )


def candles_to_price_points(candles: Iterable[Candle]) -> list[PricePoint]:
    """Line-chart view of a candle series: one point per candle at its close."""
    return [
        PricePoint(timestamp=timestamp_millis(c.timestamp), price=c.close)
        for c in candles
    ]


def convert_prices_to_candles(
    prices: Iterable[PricePoint], interval_minutes: int = 5
) -> list[Candle]:
    """Bucket raw price points into candles of ``interval_minutes``.

    Used where only the market-chart endpoint is available. Output
    timestamps are bucket starts in epoch seconds, sorted ascending.
    """
    interval_ms = interval_minutes * 60 * 1000
    buckets: dict[int, list[float]] = {}

    for point in prices:
        bucket_sec = (point.timestamp // interval_ms) * interval_ms // 1000
        buckets.setdefault(bucket_sec, []).append(point.price)

    candles = [
        Candle(
            timestamp=bucket_sec,
            open=values[0],
            high=max(values),
            low=min(values),
            close=values[-1],
        )
        for bucket_sec, values in sorted(buckets.items())
    ]
    logger.debug("prices_converted", candles=len(candles), interval_minutes=interval_minutes)
    return candles
