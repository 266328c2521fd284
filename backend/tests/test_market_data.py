from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from portfoliolab import prices_models  # noqa: F401
from portfoliolab.config import Settings
from portfoliolab.exceptions import ProviderUnavailableError
from portfoliolab.market_data import (
    OHLCVBar,
    PriceStoreMarketDataService,
    QuoteCache,
    parse_period,
)
from portfoliolab.prices_database import PricesBase
from portfoliolab.prices_models import PriceBar, PriceFetch


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    PricesBase.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


class RecordingProvider:
    """Serves one daily bar per calendar day inside the requested window."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    def __call__(self, symbol: str, interval: str, start: datetime, end: datetime) -> list[OHLCVBar]:
        self.calls.append((symbol, interval))
        first = (start + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        bars = []
        day = first
        price = 100.0
        while day < end:
            bars.append(
                OHLCVBar(
                    timestamp=day,
                    open=price,
                    high=price + 1.0,
                    low=price - 1.0,
                    close=price,
                    volume=1000.0,
                    source="stub",
                )
            )
            price += 1.0
            day += timedelta(days=1)
        return bars


def test_parse_period_rounds_calendar_units_up() -> None:
    assert parse_period("5d") == timedelta(days=5)
    assert parse_period("2wk") == timedelta(days=14)
    assert parse_period("6mo") == timedelta(days=186)
    assert parse_period("2y") == timedelta(days=732)
    assert parse_period(" 1Y ") == timedelta(days=366)

    for bad in ("", "2", "y", "3h", "0d", "-1y"):
        with pytest.raises(ValueError):
            parse_period(bad)


def test_quote_cache_expires_entries_after_ttl() -> None:
    """Quotes older than the TTL are treated as missing."""

    clock = FakeClock()
    cache = QuoteCache(ttl_seconds=10.0, max_entries=8, clock=clock)
    cache.set("aapl", 190.5)
    assert cache.get("AAPL") == 190.5

    clock.now = 10.0
    assert cache.get("AAPL") == 190.5
    clock.now = 10.5
    assert cache.get("AAPL") is None
    assert len(cache) == 0


def test_quote_cache_evicts_least_recently_used() -> None:
    cache = QuoteCache(ttl_seconds=60.0, max_entries=2, clock=FakeClock())
    cache.set("A", 1.0)
    cache.set("B", 2.0)
    # Touch A so that B becomes the eviction candidate.
    assert cache.get("A") == 1.0
    cache.set("C", 3.0)

    assert cache.get("B") is None
    assert cache.get("A") == 1.0
    assert cache.get("C") == 3.0

    with pytest.raises(ValueError):
        QuoteCache(ttl_seconds=0)


def test_price_store_tops_up_from_provider_once() -> None:
    """A covered window is served from the store without calling the provider."""

    factory = _session_factory()
    provider = RecordingProvider()
    service = PriceStoreMarketDataService(
        settings=Settings(), session_factory=factory, provider=provider
    )

    bars = service.fetch_historical_prices("TEST", period="1mo")
    assert len(bars) >= 25
    assert [b.timestamp for b in bars] == sorted(b.timestamp for b in bars)
    assert all(b.source == "stub" for b in bars)

    again = service.fetch_historical_prices("TEST", period="1mo")
    assert len(again) == len(bars)
    assert provider.calls == [("TEST", "1d")]

    with factory() as db:
        assert db.query(PriceBar).filter(PriceBar.symbol == "TEST").count() == len(bars)
        fetch = db.query(PriceFetch).filter(PriceFetch.symbol == "TEST").one()
        assert fetch.source == "stub"

    # The last close seeds the quote cache.
    assert service.get_quote("TEST") == bars[-1].close


def test_get_quote_reads_latest_stored_close() -> None:
    factory = _session_factory()
    with factory() as db:
        for offset, close in ((2, 10.0), (1, 12.5)):
            db.add(
                PriceBar(
                    symbol="ABC",
                    timeframe="1d",
                    timestamp=datetime(2024, 1, 10) - timedelta(days=offset),
                    open=close,
                    high=close,
                    low=close,
                    close=close,
                    volume=None,
                    source="csv",
                )
            )
        db.commit()

    service = PriceStoreMarketDataService(settings=Settings(), session_factory=factory)
    assert service.get_quote("ABC") == 12.5
    assert service.get_quote("MISSING") is None


def test_provider_failure_yields_empty_history() -> None:
    """An unavailable provider degrades to whatever is stored, here nothing."""

    def broken(symbol: str, interval: str, start: datetime, end: datetime) -> list[OHLCVBar]:
        raise ProviderUnavailableError("offline")

    service = PriceStoreMarketDataService(
        settings=Settings(), session_factory=_session_factory(), provider=broken
    )
    assert service.fetch_historical_prices("NOPE", period="6mo") == []
    assert service.get_quote("NOPE") is None
