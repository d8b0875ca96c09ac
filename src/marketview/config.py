"""Configuration system using pydantic-settings with environment variable loading."""

from typing import Literal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from marketview.models import CacheTTL, ChartMode, Timeframe


class CoinGeckoSettings(BaseSettings):
    """CoinGecko API connection settings."""

    model_config = SettingsConfigDict(env_prefix="COINGECKO_")

    api_key: SecretStr = SecretStr("")
    pro: bool = False  # pro keys use a different host and header
    base_url: str = "https://api.coingecko.com/api/v3"
    vs_currency: str = "usd"
    fetch_days: int = 7  # OHLC history per cache miss; 3-30 days come back as 4h candles


class RetrySettings(BaseSettings):
    """Retry/backoff parameters for upstream HTTP calls."""

    model_config = SettingsConfigDict(env_prefix="RETRY_")

    retries: int = 3
    backoff_base_ms: int = 300
    max_backoff_ms: int = 5000
    jitter: bool = True
    timeout_ms: int = 8000


class ThrottleSettings(BaseSettings):
    """Upstream concurrency limits (CoinGecko free tier is heavily rate limited)."""

    model_config = SettingsConfigDict(env_prefix="THROTTLE_")

    max_concurrent: int = 3
    spacing_seconds: float = 0.1  # pause after each task before starting the next


class CacheSettings(BaseSettings):
    """Local cache storage.

    "memory" keeps entries for the life of the process; "sqlite" persists
    them across restarts in ``db_path``. ``max_bytes`` caps the total
    stored payload size (None = unbounded).
    """

    model_config = SettingsConfigDict(env_prefix="CACHE_")

    backend: Literal["memory", "sqlite"] = "memory"
    db_path: str = "data/marketview_cache.db"
    max_bytes: int | None = 5_000_000  # roughly a browser localStorage quota
    default_ttl_ms: int = int(CacheTTL.SHORT)
    coin_prefix: str = "coin_data_"
    generic_prefix: str = "cg_cache_"


class ChartSettings(BaseSettings):
    """Defaults for chart requests."""

    model_config = SettingsConfigDict(env_prefix="CHART_")

    default_mode: ChartMode = ChartMode.OHLC
    default_timeframe: Timeframe = Timeframe.FIVE_MIN
    default_cache_ttl_ms: int = int(CacheTTL.LONG)
    # False returns the full cached series in line mode instead of the trade window
    window_line_mode: bool = True


class DashboardSettings(BaseSettings):
    """Dashboard API server configuration."""

    model_config = SettingsConfigDict(env_prefix="DASHBOARD_")

    host: str = "0.0.0.0"
    port: int = 8080


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    coingecko: CoinGeckoSettings = CoinGeckoSettings()
    retry: RetrySettings = RetrySettings()
    throttle: ThrottleSettings = ThrottleSettings()
    cache: CacheSettings = CacheSettings()
    chart: ChartSettings = ChartSettings()
    dashboard: DashboardSettings = DashboardSettings()
