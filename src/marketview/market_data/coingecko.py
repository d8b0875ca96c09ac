"""Async CoinGecko REST client.

Every request goes through fetch_with_retry. Responses that are still bad
after retrying are converted into the typed errors in marketview.exceptions,
so callers never have to inspect HTTP status codes themselves.

Endpoints used:
- /coins/{id}/ohlc               -- candlestick data, timestamps in ms. Candle
                                    width follows ``days``: 30m for 1-2 days,
                                    4h for 3-30 days, 4d beyond
- /coins/{id}/market_chart       -- price series for the last N days
- /coins/{id}/market_chart/range -- price series between two epoch-second bounds
- /search                        -- free-text coin lookup
- /coins/{id}                    -- current market snapshot
"""

from __future__ import annotations

from typing import Any, Self

import httpx

from marketview.config import CoinGeckoSettings
from marketview.exceptions import (
    NetworkError,
    UpstreamClientError,
    UpstreamPayloadError,
    UpstreamRateLimited,
    UpstreamServerError,
)
from marketview.logging import get_logger
from marketview.market_data.retry import RetryObserver, RetryPolicy, fetch_with_retry
from marketview.models import Candle, MarketSnapshot, PricePoint

logger = get_logger(__name__)

PRO_BASE_URL = "https://pro-api.coingecko.com/api/v3"


def _raise_for_status(response: httpx.Response) -> None:
    status = response.status_code
    if response.is_success:
        return
    detail = response.reason_phrase
    if status == 429:
        raise UpstreamRateLimited(status, detail)
    if status >= 500:
        raise UpstreamServerError(status, detail)
    raise UpstreamClientError(status, detail)


def parse_ohlc_rows(rows: Any) -> list[Candle]:
    """Convert ``[[ts, open, high, low, close], ...]`` into ascending, de-duplicated candles."""
    if not isinstance(rows, list):
        raise UpstreamPayloadError(f"expected OHLC list, got {type(rows).__name__}")

    by_timestamp: dict[int, Candle] = {}
    for row in rows:
        try:
            timestamp, open_, high, low, close = row[:5]
            candle = Candle(
                timestamp=int(timestamp),
                open=float(open_),
                high=float(high),
                low=float(low),
                close=float(close),
            )
        except (TypeError, ValueError) as e:
            raise UpstreamPayloadError(f"malformed OHLC row {row!r}") from e
        # Later rows win: CoinGecko repeats the still-open candle at the end
        by_timestamp[candle.timestamp] = candle

    return [by_timestamp[ts] for ts in sorted(by_timestamp)]


def parse_price_series(data: Any) -> list[PricePoint]:
    """Extract ``prices`` from a market_chart response."""
    if not isinstance(data, dict):
        raise UpstreamPayloadError("expected market_chart object")
    try:
        return [
            PricePoint(timestamp=int(ts), price=float(price))
            for ts, price in data.get("prices") or []
        ]
    except (TypeError, ValueError) as e:
        raise UpstreamPayloadError("malformed market_chart prices") from e


class CoinGeckoClient:
    """Thin typed wrapper around the CoinGecko v3 API.

    Args:
        settings: API key, base URL and quote currency.
        policy: Retry policy applied to every request.
        client: Shared httpx client. When omitted the client creates (and
            closes) its own.
        on_retry: Optional observer notified before each retry sleep.
    """

    def __init__(
        self,
        settings: CoinGeckoSettings,
        policy: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
        on_retry: RetryObserver | None = None,
    ) -> None:
        self._settings = settings
        self._policy = policy or RetryPolicy()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self._on_retry = on_retry

        base_url = settings.base_url
        if settings.pro and base_url == CoinGeckoSettings.model_fields["base_url"].default:
            base_url = PRO_BASE_URL
        self._base_url = base_url.rstrip("/")

    @property
    def vs_currency(self) -> str:
        return self._settings.vs_currency

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        api_key = self._settings.api_key.get_secret_value()
        if api_key:
            header = "x-cg-pro-api-key" if self._settings.pro else "x-cg-demo-api-key"
            headers[header] = api_key
        return headers

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        url = f"{self._base_url}{path}"
        try:
            response = await fetch_with_retry(
                self._client,
                "GET",
                url,
                policy=self._policy,
                on_retry=self._on_retry,
                params=params,
                headers=self._headers(),
            )
        except (httpx.HTTPError, TimeoutError) as e:
            raise NetworkError(f"request to {path} failed: {e!r}") from e

        if not response.is_success:
            logger.error(
                "coingecko_error_response",
                path=path,
                status=response.status_code,
                body=response.text[:200],
            )
        _raise_for_status(response)

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamPayloadError(f"invalid JSON from {path}") from e

    # ──────────────────────────────────────────────
    # Endpoints
    # ──────────────────────────────────────────────

    async def fetch_ohlc(
        self, coin_id: str, vs: str | None = None, days: int = 1
    ) -> list[Candle]:
        """Fetch candlestick data for the last ``days`` days."""
        data = await self._get_json(
            f"/coins/{coin_id}/ohlc",
            {"vs_currency": vs or self.vs_currency, "days": days},
        )
        candles = parse_ohlc_rows(data)
        logger.info("coingecko_ohlc_fetched", coin_id=coin_id, days=days, candles=len(candles))
        return candles

    async def fetch_market_chart(
        self, coin_id: str, vs: str | None = None, days: int = 1
    ) -> list[PricePoint]:
        """Fetch the price series for the last ``days`` days."""
        data = await self._get_json(
            f"/coins/{coin_id}/market_chart",
            {"vs_currency": vs or self.vs_currency, "days": days},
        )
        points = parse_price_series(data)
        logger.info("coingecko_market_chart_fetched", coin_id=coin_id, points=len(points))
        return points

    async def fetch_market_chart_range(
        self, coin_id: str, from_ts: int, to_ts: int, vs: str | None = None
    ) -> list[PricePoint]:
        """Fetch the price series between two epoch-second bounds."""
        data = await self._get_json(
            f"/coins/{coin_id}/market_chart/range",
            {"vs_currency": vs or self.vs_currency, "from": from_ts, "to": to_ts},
        )
        points = parse_price_series(data)
        logger.info(
            "coingecko_market_chart_range_fetched",
            coin_id=coin_id,
            from_ts=from_ts,
            to_ts=to_ts,
            points=len(points),
        )
        return points

    async def search(self, query: str) -> list[dict]:
        """Free-text coin search. Returns hits with ``id``, ``symbol`` and ``name``."""
        data = await self._get_json("/search", {"query": query})
        if not isinstance(data, dict):
            raise UpstreamPayloadError("expected search object")
        coins = data.get("coins") or []
        return [c for c in coins if isinstance(c, dict)]

    async def fetch_market_snapshot(self, coin_id: str) -> MarketSnapshot:
        """Fetch current price, 24h change, market cap and volume."""
        data = await self._get_json(
            f"/coins/{coin_id}",
            {
                "localization": "false",
                "tickers": "false",
                "community_data": "false",
                "developer_data": "false",
                "sparkline": "false",
            },
        )
        vs = self.vs_currency
        try:
            market = data["market_data"]
            return MarketSnapshot(
                coin_id=coin_id,
                current_price=float(market["current_price"][vs]),
                price_change_24h=float(market.get("price_change_24h") or 0),
                price_change_percentage_24h=float(
                    market.get("price_change_percentage_24h") or 0
                ),
                market_cap=float(market["market_cap"][vs]),
                total_volume=float(market["total_volume"][vs]),
                high_24h=float(market["high_24h"][vs]),
                low_24h=float(market["low_24h"][vs]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamPayloadError(f"malformed market data for {coin_id}") from e

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.aclose()
