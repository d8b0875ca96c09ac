"""Custom exceptions for the market data layer.

Every error the chart pipeline can surface lives here so the HTTP layer
and the service can share one taxonomy without circular imports.
"""


class MarketViewError(Exception):
    """Base exception for all market data errors."""


class InvalidChartRequest(MarketViewError):
    """Raised when a chart request is missing its symbol or has a bad timestamp."""


class UnresolvedSymbol(MarketViewError):
    """Raised when a ticker cannot be mapped to a provider coin id.

    Not retryable: the caller should show a "no data for this symbol" state.
    """

    def __init__(self, symbol: str) -> None:
        super().__init__(f"Unsupported symbol: {symbol}")
        self.symbol = symbol


class UpstreamError(MarketViewError):
    """Base class for non-2xx responses from the market data provider."""

    kind = "upstream_error"

    def __init__(self, status: int, message: str = "") -> None:
        super().__init__(f"CoinGecko API error: {status} {message}".rstrip())
        self.status = status


class UpstreamRateLimited(UpstreamError):
    """HTTP 429 after the retry budget was exhausted."""

    kind = "rate_limited"


class UpstreamServerError(UpstreamError):
    """HTTP 5xx after the retry budget was exhausted."""

    kind = "server_error"


class UpstreamClientError(UpstreamError):
    """Any other non-2xx status. Never retried."""

    kind = "client_error"


class UpstreamPayloadError(MarketViewError):
    """Raised when the provider returns JSON that does not match the expected shape."""

    kind = "bad_payload"


class NetworkError(MarketViewError):
    """Transport-level failure (timeout, DNS, connection reset) that survived retries."""

    kind = "network"


class CacheCapacityError(MarketViewError):
    """Raised by a cache backend when a write would exceed its capacity."""


class CacheWriteFailure(MarketViewError):
    """A cache write failed even after evicting expired entries.

    Logged by the stores and never propagated: caching is best-effort.
    """
