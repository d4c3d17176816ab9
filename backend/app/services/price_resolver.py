"""USD price resolution for the cost basis ledger.

Prices come from an external, fallible source. Resolvers return ``None`` when a
price is unavailable; callers (ledger engine, P&L queries) treat that as 0.
"""

import asyncio
import bisect
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

import ccxt.async_support as ccxt

logger = logging.getLogger(__name__)

STABLECOINS = frozenset({"USDT", "USDC", "USD"})
UNPRICEABLE = frozenset({"ETHW", "LUNA", "LUNC", "UST"})

HISTORY_TIMEFRAME = "1h"
_CANDLE_MS = ccxt.Exchange.parse_timeframe(HISTORY_TIMEFRAME) * 1000


def normalize_asset(asset: str) -> str:
    """Canonical ticker form used as the price table key."""
    return asset.strip().upper()


def asset_candidates(asset: str) -> List[str]:
    """Tickers to try for ``asset``, most specific first.

    Binance Simple Earn flexible products carry an "LD" prefix (LDBTC). Real
    tickers can start with "LD" too (LDO), so the raw ticker is always tried
    before the stripped one.
    """
    normalized = normalize_asset(asset)
    candidates = [normalized]
    if normalized.startswith("LD") and len(normalized) > 2:
        candidates.append(normalized[2:])
    return candidates


def candle_open_ms(at: datetime) -> int:
    """Open time (ms) of the history candle containing ``at`` (naive UTC)."""
    since = int(at.replace(tzinfo=timezone.utc).timestamp() * 1000)
    return since - since % _CANDLE_MS


class PriceResolver(ABC):
    """Interface for current and historical USD prices."""

    @abstractmethod
    async def current_price(self, asset: str) -> Optional[float]:
        """Latest USD price, or None if unavailable."""

    @abstractmethod
    async def historical_price(self, asset: str, at: datetime) -> Optional[float]:
        """USD price as of ``at`` (naive UTC), or None if unavailable."""

    async def current_prices(self, assets: Iterable[str]) -> Dict[str, float]:
        """Current prices for several assets; unavailable prices map to 0.0."""
        prices = {}
        for asset in assets:
            try:
                price = await self.current_price(asset)
            except Exception as e:
                logger.warning(f"Price lookup failed for {asset}: {e}")
                price = None
            prices[asset] = price or 0.0
        return prices

    async def close(self) -> None:
        """Release any held resources."""


class StaticPriceResolver(PriceResolver):
    """In-memory price table.

    Historical lookups return the latest point at or before the requested time.
    """

    def __init__(
        self,
        current: Optional[Dict[str, float]] = None,
        history: Optional[Dict[str, List[Tuple[datetime, float]]]] = None,
    ):
        self._current: Dict[str, float] = {}
        self._history: Dict[str, List[Tuple[datetime, float]]] = {}
        for asset, price in (current or {}).items():
            self.set_price(asset, price)
        for asset, points in (history or {}).items():
            for at, price in points:
                self.add_history_point(asset, at, price)

    def set_price(self, asset: str, price: float) -> None:
        self._current[normalize_asset(asset)] = price

    def add_history_point(self, asset: str, at: datetime, price: float) -> None:
        points = self._history.setdefault(normalize_asset(asset), [])
        bisect.insort(points, (at, price))

    async def current_price(self, asset: str) -> Optional[float]:
        for candidate in asset_candidates(asset):
            if candidate in STABLECOINS:
                return 1.0
            if candidate in self._current:
                return self._current[candidate]
        return None

    async def historical_price(self, asset: str, at: datetime) -> Optional[float]:
        for candidate in asset_candidates(asset):
            if candidate in STABLECOINS:
                return 1.0
            points = self._history.get(candidate)
            if not points:
                continue
            index = bisect.bisect_right([point_at for point_at, _ in points], at)
            if index > 0:
                return points[index - 1][1]
        return None


class ExchangePriceResolver(PriceResolver):
    """Resolve prices from public exchange market data via ccxt.

    Exchanges are tried in order and, per exchange, quote currencies are tried
    in order (USDT before USD). Current prices are cached for ``cache_ttl_seconds``.
    """

    def __init__(
        self,
        exchange_ids: Optional[List[str]] = None,
        quote_currencies: Optional[List[str]] = None,
        cache_ttl_seconds: int = 60,
        exchanges: Optional[Dict[str, "ccxt.Exchange"]] = None,
    ):
        """Initialize the resolver.

        Args:
            exchange_ids: ccxt exchange ids to query, in priority order
            quote_currencies: Quote currencies treated as USD, in priority order
            cache_ttl_seconds: Lifetime of cached current prices
            exchanges: Pre-built exchange clients keyed by id (created lazily otherwise)
        """
        self.exchange_ids = exchange_ids or ["binance", "kraken"]
        self.quote_currencies = quote_currencies or ["USDT", "USD"]
        self.cache_ttl_seconds = cache_ttl_seconds
        self._exchanges: Dict[str, "ccxt.Exchange"] = dict(exchanges or {})
        self._cache: Dict[str, Tuple[float, float]] = {}
        self._lock = asyncio.Lock()

    def _get_exchange(self, exchange_id: str) -> Optional["ccxt.Exchange"]:
        exchange = self._exchanges.get(exchange_id)
        if exchange is not None:
            return exchange

        exchange_class = getattr(ccxt, exchange_id, None)
        if not exchange_class:
            logger.error(f"Exchange {exchange_id} not supported by ccxt")
            return None

        exchange = exchange_class({"enableRateLimit": True})
        self._exchanges[exchange_id] = exchange
        return exchange

    def _symbols(self, asset: str) -> List[str]:
        return [f"{asset}/{quote}" for quote in self.quote_currencies if quote != asset]

    def _cached(self, asset: str) -> Optional[float]:
        entry = self._cache.get(asset)
        if entry and time.monotonic() - entry[1] < self.cache_ttl_seconds:
            return entry[0]
        return None

    async def current_price(self, asset: str) -> Optional[float]:
        candidates = asset_candidates(asset)
        cached = self._cached(candidates[0])
        if cached is not None:
            return cached

        async with self._lock:
            for candidate in candidates:
                if candidate in STABLECOINS:
                    return 1.0
                if candidate in UNPRICEABLE:
                    continue
                price = await self._fetch_last(candidate)
                if price is not None:
                    self._cache[candidates[0]] = (price, time.monotonic())
                    return price

        logger.warning(f"No current price found for {asset}")
        return None

    async def historical_price(self, asset: str, at: datetime) -> Optional[float]:
        since = candle_open_ms(at)
        for candidate in asset_candidates(asset):
            if candidate in STABLECOINS:
                return 1.0
            if candidate in UNPRICEABLE:
                continue
            price = await self._fetch_close(candidate, since)
            if price is not None:
                return price

        logger.warning(f"No historical price found for {asset} at {at.isoformat()}")
        return None

    async def _fetch_last(self, asset: str) -> Optional[float]:
        for exchange_id in self.exchange_ids:
            exchange = self._get_exchange(exchange_id)
            if exchange is None:
                continue
            for symbol in self._symbols(asset):
                try:
                    ticker = await exchange.fetch_ticker(symbol)
                except (ccxt.BadSymbol, ccxt.NetworkError, ccxt.ExchangeError) as e:
                    logger.debug(f"No ticker for {symbol} on {exchange_id}: {e}")
                    continue
                last = ticker.get("last") or 0
                if last > 0:
                    return float(last)
        return None

    async def _fetch_close(self, asset: str, since: int) -> Optional[float]:
        """Close of the candle opening at ``since``, which contains the requested time."""
        for exchange_id in self.exchange_ids:
            exchange = self._get_exchange(exchange_id)
            if exchange is None:
                continue
            for symbol in self._symbols(asset):
                try:
                    candles = await exchange.fetch_ohlcv(symbol, HISTORY_TIMEFRAME, since=since, limit=1)
                except (ccxt.BadSymbol, ccxt.NetworkError, ccxt.ExchangeError) as e:
                    logger.debug(f"No candles for {symbol} on {exchange_id}: {e}")
                    continue
                if candles:
                    close = candles[0][4]
                    if close and close > 0:
                        return float(close)
        return None

    async def close(self) -> None:
        for exchange_id, exchange in self._exchanges.items():
            try:
                await exchange.close()
            except Exception as e:
                logger.warning(f"Error closing {exchange_id} client: {e}")
        self._exchanges.clear()


async def resolve_price(resolver: PriceResolver, asset: str, at: Optional[datetime] = None) -> float:
    """Resolve a USD price, degrading every failure to 0.0.

    Args:
        resolver: Price source
        asset: Asset symbol
        at: Timestamp for a historical lookup, or None for the current price
    """
    try:
        if at is None:
            price = await resolver.current_price(asset)
        else:
            price = await resolver.historical_price(asset, at)
    except Exception as e:
        logger.warning(f"Price resolver failed for {asset}: {e}; using 0")
        return 0.0

    if not price:
        when = at.isoformat() if at else "now"
        logger.warning(f"No USD price for {asset} at {when}; using 0")
        return 0.0
    return float(price)
