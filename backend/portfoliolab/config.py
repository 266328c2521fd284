import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables or `.env`.

    Environment variables:
    - PORTFOLIOLAB_APP_NAME
    - PORTFOLIOLAB_ENVIRONMENT
    - PORTFOLIOLAB_LOG_LEVEL
    - PORTFOLIOLAB_META_DB_PATH
    - PORTFOLIOLAB_PRICES_DB_PATH
    - PORTFOLIOLAB_MARKET_DATA_SOURCE
    - PORTFOLIOLAB_DEFAULT_LOOKBACK_DAYS
    - PORTFOLIOLAB_RISK_FREE_RATE
    - PORTFOLIOLAB_MARKET_RETURN
    - PORTFOLIOLAB_MARKET_PROXY_SYMBOL
    - PORTFOLIOLAB_SHRINKAGE_INTENSITY
    - PORTFOLIOLAB_MAX_SCENARIOS
    - PORTFOLIOLAB_MAX_FRONTIER_POINTS
    """

    model_config = SettingsConfigDict(
        env_prefix="PORTFOLIOLAB_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    app_name: str = "PortfolioLab"
    environment: Literal["dev", "test", "prod"] = "dev"
    log_level: str = "INFO"
    meta_db_path: Path = Path("portfoliolab_meta.db")
    prices_db_path: Path = Path("portfoliolab_prices.db")

    # External provider used to top up the local price store before reading
    # histories. When unset, optimisation relies on whatever bars are stored.
    market_data_source: Literal["yfinance"] | None = None
    history_fetch_timeout_seconds: float = 20.0
    quote_cache_ttl_seconds: float = 60.0
    quote_cache_max_entries: int = 1024

    # Estimation defaults. The shrinkage intensity is a documented default,
    # not a computed optimum; callers can pass "auto" to estimate it.
    default_lookback_days: int = 504
    risk_free_rate: float = 0.02
    market_return: float = 0.08
    market_proxy_symbol: str = "SPY"
    shrinkage_intensity: float = 0.1
    ewma_lambda: float = 0.94
    risk_aversion: float = 3.0
    black_litterman_tau: float = 0.025

    # Upper bounds on CPU-bound loops driven by caller input.
    monte_carlo_scenarios: int = 1000
    max_scenarios: int = 100_000
    default_frontier_points: int = 50
    max_frontier_points: int = 500


@lru_cache()
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()


def _build_sqlite_url(path: Path) -> str:
    """Build a SQLite database URL from a filesystem path."""

    # Ensure the path is absolute to avoid surprises when running from different CWDs.
    db_path = path
    if not db_path.is_absolute():
        db_path = Path(os.getcwd()) / db_path
    return f"sqlite:///{db_path}"


def get_database_url(settings: Settings | None = None) -> str:
    """Return SQLite URL for the meta database."""

    _settings = settings or get_settings()
    return _build_sqlite_url(_settings.meta_db_path)


def get_prices_database_url(settings: Settings | None = None) -> str:
    """Return SQLite URL for the prices database."""

    _settings = settings or get_settings()
    return _build_sqlite_url(_settings.prices_db_path)
