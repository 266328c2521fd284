from __future__ import annotations

import logging
import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from sqlalchemy import delete, func
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .exceptions import ProviderUnavailableError
from .prices_database import PricesSessionLocal
from .prices_models import PriceBar, PriceFetch

logger = logging.getLogger(__name__)


@dataclass
class OHLCVBar:
    """In-memory representation of a single OHLCV bar."""

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float | None
    source: str


_PERIOD_RE = re.compile(r"^(\d+)(d|wk|mo|y)$")
_PERIOD_DAYS = {"d": 1, "wk": 7, "mo": 31, "y": 366}


def parse_period(period: str) -> timedelta:
    """Translate yfinance-style periods (5d, 6mo, 2y) into a timedelta.

    Calendar units are rounded up so a period always covers at least the
    requested number of trading days.
    """

    match = _PERIOD_RE.match(period.strip().lower())
    if match is None:
        raise ValueError(f"Unsupported period: {period}")
    count, unit = int(match.group(1)), match.group(2)
    if count <= 0:
        raise ValueError(f"Period must be positive: {period}")
    return timedelta(days=count * _PERIOD_DAYS[unit])


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def fetch_ohlcv_from_yfinance(
    symbol: str,
    interval: str,
    start: datetime,
    end: datetime,
) -> List[OHLCVBar]:
    """Fetch daily OHLCV bars from yfinance."""

    try:
        import yfinance as yf
    except ImportError as exc:  # pragma: no cover - environment dependent
        raise ProviderUnavailableError("yfinance is not installed") from exc

    if interval.lower() != "1d":
        raise ValueError(f"Unsupported history interval: {interval}")

    df = yf.download(
        symbol,
        start=start,
        end=end,
        interval="1d",
        progress=False,
        auto_adjust=False,
    )
    if df is None or df.empty:
        return []

    def _scalar(value: object) -> float | None:
        if value is None:
            return None
        # Single-ticker downloads may still carry a one-element Series.
        if hasattr(value, "item"):
            value = value.item()  # type: ignore[assignment]
        return float(value)  # type: ignore[arg-type]

    bars: List[OHLCVBar] = []
    for ts, row in df.iterrows():
        close_price = _scalar(row["Close"])
        open_price = _scalar(row["Open"])
        high_price = _scalar(row["High"])
        low_price = _scalar(row["Low"])
        if None in (open_price, high_price, low_price, close_price):
            continue
        bars.append(
            OHLCVBar(
                timestamp=ts.to_pydatetime().replace(tzinfo=None),
                open=open_price,  # type: ignore[arg-type]
                high=high_price,  # type: ignore[arg-type]
                low=low_price,  # type: ignore[arg-type]
                close=close_price,  # type: ignore[arg-type]
                volume=_scalar(row["Volume"]) if "Volume" in row else None,
                source="yfinance",
            )
        )
    return bars


class QuoteCache:
    """Thread-safe TTL cache of latest prices with LRU eviction.

    Entries older than `ttl_seconds` are treated as missing. When the cache
    holds `max_entries` symbols, inserting a new one evicts the least
    recently used symbol.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 60.0,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, float]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, symbol: str) -> float | None:
        key = symbol.upper()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, price = entry
            if self._clock() - stored_at > self.ttl_seconds:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return price

    def set(self, symbol: str, price: float) -> None:
        key = symbol.upper()
        with self._lock:
            self._entries[key] = (self._clock(), float(price))
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class MarketDataService:
    """Contract consumed by the optimiser for prices and histories."""

    def fetch_historical_prices(
        self, symbol: str, period: str = "2y", interval: str = "1d"
    ) -> List[OHLCVBar]:
        raise NotImplementedError

    def get_quote(self, symbol: str) -> float | None:
        raise NotImplementedError


HistoryProvider = Callable[[str, str, datetime, datetime], List[OHLCVBar]]


class PriceStoreMarketDataService(MarketDataService):
    """Market data read from the local prices DB.

    When `market_data_source` is configured the store is topped up from the
    provider before reading, but only if stored bars do not already cover the
    requested window. Provider failures are logged and the stored bars are
    returned as-is, so a data gap yields a short or empty series rather than
    an exception.
    """

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        session_factory: Callable[[], Session] = PricesSessionLocal,
        quote_cache: QuoteCache | None = None,
        provider: HistoryProvider | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._session_factory = session_factory
        self.quote_cache = quote_cache or QuoteCache(
            ttl_seconds=self._settings.quote_cache_ttl_seconds,
            max_entries=self._settings.quote_cache_max_entries,
        )
        if provider is None and self._settings.market_data_source == "yfinance":
            provider = fetch_ohlcv_from_yfinance
        self._provider = provider

    def _ensure_coverage(
        self,
        db: Session,
        *,
        symbol: str,
        interval: str,
        start: datetime,
        end: datetime,
    ) -> None:
        if self._provider is None:
            return

        min_ts, max_ts = (
            db.query(func.min(PriceBar.timestamp), func.max(PriceBar.timestamp))
            .filter(PriceBar.symbol == symbol, PriceBar.timeframe == interval)
            .one()
        )
        # Daily bars are stamped at midnight and weekends have none, so allow
        # a few days of slack before treating the window as uncovered.
        slack = timedelta(days=4)
        if min_ts is not None and max_ts is not None:
            if min_ts <= start + slack and max_ts >= end - slack:
                return

        try:
            bars = self._provider(symbol, interval, start, end)
        except (ProviderUnavailableError, ValueError, OSError) as exc:
            logger.warning(
                "History top-up failed",
                extra={"symbol": symbol, "error": str(exc)},
            )
            return
        if not bars:
            return

        db.execute(
            delete(PriceBar).where(
                PriceBar.symbol == symbol,
                PriceBar.timeframe == interval,
                PriceBar.timestamp >= start,
                PriceBar.timestamp <= end,
            )
        )
        db.add_all(
            PriceBar(
                symbol=symbol,
                timeframe=interval,
                timestamp=bar.timestamp,
                open=bar.open,
                high=bar.high,
                low=bar.low,
                close=bar.close,
                volume=bar.volume,
                source=bar.source,
            )
            for bar in bars
        )
        db.add(
            PriceFetch(
                symbol=symbol,
                timeframe=interval,
                source=bars[0].source,
                start_timestamp=min(bar.timestamp for bar in bars),
                end_timestamp=max(bar.timestamp for bar in bars),
            )
        )
        db.commit()

    def fetch_historical_prices(
        self, symbol: str, period: str = "2y", interval: str = "1d"
    ) -> List[OHLCVBar]:
        end = _utcnow()
        start = end - parse_period(period)
        with self._session_factory() as db:
            self._ensure_coverage(db, symbol=symbol, interval=interval, start=start, end=end)
            rows = (
                db.query(PriceBar)
                .filter(
                    PriceBar.symbol == symbol,
                    PriceBar.timeframe == interval,
                    PriceBar.timestamp >= start,
                )
                .order_by(PriceBar.timestamp.asc())
                .all()
            )
            bars = [
                OHLCVBar(
                    timestamp=row.timestamp,
                    open=row.open,
                    high=row.high,
                    low=row.low,
                    close=row.close,
                    volume=row.volume,
                    source=row.source,
                )
                for row in rows
            ]
        if bars:
            self.quote_cache.set(symbol, bars[-1].close)
        return bars

    def get_quote(self, symbol: str) -> float | None:
        cached = self.quote_cache.get(symbol)
        if cached is not None:
            return cached
        with self._session_factory() as db:
            row = (
                db.query(PriceBar)
                .filter(PriceBar.symbol == symbol)
                .order_by(PriceBar.timestamp.desc())
                .first()
            )
            price = row.close if row is not None else None
        if price is None or price <= 0:
            return None
        self.quote_cache.set(symbol, price)
        return float(price)
