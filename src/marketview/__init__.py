"""Market data caching and windowing layer for the trading bot dashboard."""

__version__ = "0.1.0"
