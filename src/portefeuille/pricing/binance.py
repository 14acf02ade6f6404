"""Binance client: crypto exchange price provider.

Prices are quoted per trading pair (``BTCUSDT``, ``ETHEUR``...). A base
asset is resolved by trying it against a fixed, ordered list of counter
currencies; a non-reference counter is then converted to the reference
currency with a rate fetched from the same exchange.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import httpx
from aiolimiter import AsyncLimiter

from portefeuille.core.exceptions import (
    ConversionRateUnavailable,
    NoHistoryFound,
    NoPriceFound,
    UpstreamUnavailable,
)
from portefeuille.core.models import (
    PricePoint,
    PriceQuote,
    PriceSource,
    to_positive_decimal,
)
from portefeuille.pricing.attempts import AttemptsExhausted, first_success
from portefeuille.pricing.cache import PriceCache

logger = logging.getLogger(__name__)

_TICKER_URL = "https://api.binance.com/api/v3/ticker/price"
_KLINES_URL = "https://api.binance.com/api/v3/klines"
_PROVIDER = "binance"
CACHE_NAMESPACE = "binance"

KLINE_PAGE_SIZE = 1000
# Kline tuple positions
_KLINE_CLOSE = 4
_KLINE_CLOSE_TIME = 6

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


@dataclass(frozen=True)
class ConversionRule:
    """How to express a counter-currency price in the reference currency.

    ``pair`` is empty for the reference currency itself. When ``multiply``
    is set the pair is quoted as COUNTER/REFERENCE, otherwise as
    REFERENCE/COUNTER and the price is divided by the rate.
    """

    pair: str
    multiply: bool = False

    def apply(self, price: Decimal, rate: Decimal) -> Decimal:
        return price * rate if self.multiply else price / rate


def counter_currencies(reference: str) -> tuple[str, ...]:
    """Counters tried in order: reference, two stablecoins, then BTC."""
    return (reference, "USDT", "BUSD", "BTC")


def conversion_table(reference: str) -> dict[str, ConversionRule]:
    return {
        reference: ConversionRule(pair=""),
        "USDT": ConversionRule(pair=f"{reference}USDT"),
        "BUSD": ConversionRule(pair=f"{reference}BUSD"),
        "BTC": ConversionRule(pair=f"BTC{reference}", multiply=True),
    }


def normalise_crypto_symbol(symbol: str) -> str:
    return _NON_ALNUM.sub("", symbol).upper()


def build_pairs(symbol: str, counters: tuple[str, ...]) -> list[str]:
    """Candidate trading pairs for a base asset, in counter order.

    A symbol that already ends with a known counter is tried verbatim first.
    """
    base = normalise_crypto_symbol(symbol)
    if not base:
        return []
    pairs: list[str] = []
    if any(base.endswith(c) and base != c for c in counters):
        pairs.append(base)
    for counter in counters:
        if not base.endswith(counter):
            pairs.append(f"{base}{counter}")
    return list(dict.fromkeys(pairs))


def detect_counter(pair: str, counters: tuple[str, ...]) -> str | None:
    """Longest known counter the pair ends with."""
    for counter in sorted(counters, key=len, reverse=True):
        if pair.endswith(counter) and pair != counter:
            return counter
    return None


class BinanceClient:
    """Async client for the crypto exchange provider.

    Parameters
    ----------
    client : httpx.AsyncClient
        Shared HTTP client.
    cache : PriceCache
        Pair tickers are read from and written to ``binance:<pair>``.
    reference_currency : str
        Currency every returned price is expressed in.
    conversion_ttl : int
        Seconds a counter-currency rate is reused before being refetched.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache: PriceCache,
        reference_currency: str = "EUR",
        conversion_ttl: int = 60,
        limiter: AsyncLimiter | None = None,
        ticker_url: str = _TICKER_URL,
        klines_url: str = _KLINES_URL,
        page_size: int = KLINE_PAGE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._cache = cache
        self._reference = reference_currency
        self._counters = counter_currencies(reference_currency)
        self._conversions = conversion_table(reference_currency)
        self._conversion_ttl = conversion_ttl
        self._limiter = limiter or AsyncLimiter(max_rate=10, time_period=1.0)
        self._ticker_url = ticker_url
        self._klines_url = klines_url
        self._page_size = page_size
        self._clock = clock
        self._rates: dict[str, tuple[Decimal, float]] = {}

    @property
    def reference_currency(self) -> str:
        return self._reference

    def pairs_for(self, symbol: str) -> list[str]:
        return build_pairs(symbol, self._counters)

    # --- Transport ---

    async def _get_json(self, url: str, params: dict[str, str]) -> Any:
        await self._limiter.acquire()
        try:
            response = await self._client.get(url, params=params)
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(
                f"Binance request failed: {exc}",
                context={"provider": _PROVIDER, "url": url, "status_code": None},
            ) from exc
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and isinstance(payload.get("code"), int) and payload["code"] != 0:
            raise UpstreamUnavailable(
                payload.get("msg") or f"Binance error code {payload['code']}",
                context={"provider": _PROVIDER, "url": url, "status_code": response.status_code},
            )
        if not response.is_success or payload is None:
            raise UpstreamUnavailable(
                f"Binance returned status {response.status_code}",
                context={"provider": _PROVIDER, "url": url, "status_code": response.status_code},
            )
        return payload

    # --- Spot ---

    async def fetch_ticker(self, pair: str, use_cache: bool = True) -> Decimal:
        """Last traded price of ``pair`` in its own counter currency."""
        cache_key = f"{CACHE_NAMESPACE}:{pair}"
        if use_cache:
            cached = await self._cache.get(cache_key)
            if cached is not None:
                logger.debug("Binance price for %s served from cache: %s", pair, cached)
                return cached

        payload = await self._get_json(self._ticker_url, {"symbol": pair})
        price = to_positive_decimal(payload.get("price") if isinstance(payload, dict) else None)
        if price is None:
            raise UpstreamUnavailable(
                f"Invalid Binance response for {pair}",
                context={"provider": _PROVIDER, "url": self._ticker_url, "status_code": 200},
            )
        if use_cache:
            await self._cache.put(cache_key, price)
        return price

    async def conversion_rate(self, counter: str) -> Decimal | None:
        """Rate for ``counter``, or None when it is the reference currency.

        Rates are kept locally for ``conversion_ttl`` seconds.

        Raises:
            ConversionRateUnavailable: Unknown counter or failed rate fetch.
        """
        rule = self._conversions.get(counter)
        if rule is None:
            raise ConversionRateUnavailable(
                f"No conversion to {self._reference} for {counter}",
                context={"counter": counter, "pair": None},
            )
        if not rule.pair:
            return None

        now = self._clock()
        cached = self._rates.get(rule.pair)
        if cached is not None and now - cached[1] <= self._conversion_ttl:
            return cached[0]

        try:
            rate = await self.fetch_ticker(rule.pair, use_cache=False)
        except UpstreamUnavailable as exc:
            raise ConversionRateUnavailable(
                f"Conversion rate {rule.pair} unavailable: {exc}",
                context={"counter": counter, "pair": rule.pair},
            ) from exc
        self._rates[rule.pair] = (rate, now)
        return rate

    async def to_reference(self, price: Decimal, counter: str) -> Decimal:
        rate = await self.conversion_rate(counter)
        if rate is None:
            return price
        return self._conversions[counter].apply(price, rate)

    async def fetch_pair_quote(self, pair: str) -> PriceQuote:
        """Price of one pair, converted to the reference currency."""
        counter = detect_counter(pair, self._counters)
        if counter is None:
            raise ConversionRateUnavailable(
                f"Unable to determine counter currency for {pair}",
                context={"counter": None, "pair": pair},
            )
        price = await self.fetch_ticker(pair)
        converted = await self.to_reference(price, counter)
        return PriceQuote(
            price=converted,
            as_of=datetime.now(timezone.utc),
            source=PriceSource.CRYPTO_EXCHANGE,
            symbol=pair,
        )

    async def fetch_price(self, symbol: str) -> PriceQuote:
        """First pair of ``symbol`` that yields a convertible price.

        Raises:
            NoPriceFound: Every pair failed; the trail lists each reason.
        """
        pairs = self.pairs_for(symbol)
        try:
            _, result = await first_success(
                (pair, lambda p=pair: self.fetch_pair_quote(p)) for pair in pairs
            )
        except AttemptsExhausted as exc:
            raise NoPriceFound(
                f"Binance: {exc}", context={"symbol": symbol, "attempts": exc.trail}
            ) from exc
        return result

    # --- History ---

    async def fetch_history(self, pair: str, from_date: datetime) -> list[PricePoint]:
        """Daily closes for ``pair`` from ``from_date`` to now, paged.

        Each page starts one millisecond after the previous page's last
        close time; a short page ends the series.
        """
        start_ms = int(from_date.timestamp() * 1000)
        end_ms = int(datetime.now(timezone.utc).timestamp() * 1000)
        points: list[PricePoint] = []

        while start_ms < end_ms:
            page = await self._get_json(
                self._klines_url,
                {
                    "symbol": pair,
                    "interval": "1d",
                    "startTime": str(start_ms),
                    "endTime": str(end_ms),
                    "limit": str(self._page_size),
                },
            )
            if not isinstance(page, list) or not page:
                break
            last_close_ms: int | None = None
            for candle in page:
                try:
                    close_ms = int(candle[_KLINE_CLOSE_TIME])
                    closed_at = datetime.fromtimestamp(close_ms / 1000, tz=timezone.utc)
                    price = to_positive_decimal(candle[_KLINE_CLOSE])
                except (IndexError, KeyError, TypeError, ValueError, OverflowError, OSError):
                    logger.debug("Skipping malformed kline for %s: %r", pair, candle)
                    continue
                last_close_ms = close_ms
                if price is None:
                    continue
                points.append(PricePoint(date=closed_at, price=price))
            if len(page) < self._page_size or last_close_ms is None:
                break
            start_ms = last_close_ms + 1

        if not points:
            raise NoHistoryFound(
                f"Binance history for {pair} is empty", context={"symbol": pair}
            )
        return points

    async def fetch_symbol_history(
        self, symbol: str, from_date: datetime
    ) -> tuple[str, list[PricePoint]]:
        """History from the first reference-quoted pair of ``symbol`` that has data."""
        pairs = [p for p in self.pairs_for(symbol) if p.endswith(self._reference)]
        try:
            return await first_success(
                (pair, lambda p=pair: self.fetch_history(p, from_date)) for pair in pairs
            )
        except AttemptsExhausted as exc:
            raise NoHistoryFound(
                f"Binance history unavailable: {exc}",
                context={"symbol": symbol, "attempts": exc.trail},
            ) from exc
