"""Market data layer -- symbol resolution, throttled CoinGecko access, and chart windows."""

from marketview.market_data.coingecko import CoinGeckoClient
from marketview.market_data.retry import RetryPolicy, fetch_with_retry
from marketview.market_data.service import MarketDataService
from marketview.market_data.symbols import SymbolResolver
from marketview.market_data.throttle import RequestThrottle

__all__ = [
    "CoinGeckoClient",
    "MarketDataService",
    "RequestThrottle",
    "RetryPolicy",
    "SymbolResolver",
    "fetch_with_retry",
]
