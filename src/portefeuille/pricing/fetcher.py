"""QuoteFetcher: resolves spot and historical prices across providers.

Routing for a spot request, in order:

1. Fixed-price pseudo-assets (cash placeholders, the reference currency)
   short-circuit at 1.
2. Numeric-only symbols are priced manually from the asset's own records.
3. Crypto assets try the exchange provider, then the equity provider;
   every other asset class tries them the other way round.

Each provider attempt walks its own candidate list. All failures are
collected into one trail; only total exhaustion is raised.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timezone
from decimal import Decimal
from typing import Protocol, runtime_checkable

from portefeuille.core.exceptions import InvalidSymbol, NoHistoryFound, NoPriceFound
from portefeuille.core.models import (
    AssetClass,
    HistoricalSeries,
    PricePoint,
    PriceQuote,
    PriceSource,
)
from portefeuille.pricing.attempts import AttemptsExhausted, first_success
from portefeuille.pricing.binance import BinanceClient
from portefeuille.pricing.candidates import SymbolCandidateGenerator
from portefeuille.pricing.yahoo import YahooFinanceClient

logger = logging.getLogger(__name__)

# Cash-like placeholders priced at a fixed 1 unit of reference currency.
STATIC_PRICES: dict[str, Decimal] = {
    "PEA_CASH": Decimal(1),
    "_PEA_CASH": Decimal(1),
    "CASH": Decimal(1),
}

_MANUAL_SYMBOL = re.compile(r"^[0-9]+$")


def is_manual_symbol(symbol: str | None) -> bool:
    """Purely numeric identifiers (local cooperative shares...) have no market feed."""
    if not symbol:
        return False
    return bool(_MANUAL_SYMBOL.match(symbol.strip()))


def is_cash_symbol(symbol: str | None) -> bool:
    if not symbol:
        return False
    normalised = symbol.strip().upper()
    return normalised in STATIC_PRICES or normalised.endswith("_CASH")


@runtime_checkable
class ManualPriceSource(Protocol):
    """Supplies the most recent recorded price of an asset."""

    async def latest_manual_quote(self, asset_id: int) -> PriceQuote | None: ...


class QuoteFetcher:
    """Spot and historical price resolution in the reference currency.

    Parameters
    ----------
    yahoo : YahooFinanceClient
        Equity/ETF provider.
    binance : BinanceClient
        Crypto exchange provider; also defines the reference currency.
    candidates : SymbolCandidateGenerator
        Candidate list for equity lookups.
    manual_prices : ManualPriceSource | None
        Record-backed fallback for numeric-only symbols.
    spot_cache_seconds : int
        Lifetime of the local cache behind ``spot_in_reference``.
    """

    def __init__(
        self,
        yahoo: YahooFinanceClient,
        binance: BinanceClient,
        candidates: SymbolCandidateGenerator,
        manual_prices: ManualPriceSource | None = None,
        spot_cache_seconds: int = 30,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._yahoo = yahoo
        self._binance = binance
        self._candidates = candidates
        self._manual = manual_prices
        self._spot_ttl = spot_cache_seconds
        self._clock = clock
        self._spot_cache: dict[str, tuple[Decimal, float]] = {}

    @property
    def reference_currency(self) -> str:
        return self._binance.reference_currency

    # --- Spot ---

    def fixed_quote(self, symbol: str) -> PriceQuote | None:
        """Quote for cash placeholders and the reference currency itself, else None."""
        normalised = symbol.strip().upper()
        if normalised == self.reference_currency:
            price: Decimal | None = Decimal(1)
        else:
            price = STATIC_PRICES.get(normalised)
        if price is None:
            return None
        return PriceQuote(
            price=price,
            as_of=datetime.now(timezone.utc),
            source=PriceSource.STATIC,
            symbol=normalised,
        )

    async def get_spot(
        self,
        raw_identifier: str,
        hints: Sequence[str] = (),
        *,
        asset_class: AssetClass = AssetClass.OTHER,
        asset_id: int | None = None,
    ) -> PriceQuote:
        """Resolve the current price of an instrument.

        Raises:
            InvalidSymbol: Blank identifier.
            NoPriceFound: Every route failed; ``context["attempts"]`` holds the trail.
        """
        if not raw_identifier or not raw_identifier.strip():
            raise InvalidSymbol("Empty instrument identifier", context={"symbol": raw_identifier})

        fixed = self.fixed_quote(raw_identifier)
        if fixed is not None:
            return fixed

        if is_manual_symbol(raw_identifier):
            return await self._manual_quote(raw_identifier, asset_id)

        attempts = self._ordered_providers(
            asset_class,
            crypto=lambda: self._binance.fetch_price(raw_identifier),
            equity=lambda: self._equity_spot(raw_identifier, hints),
        )
        try:
            _, quote = await first_success(attempts)
        except AttemptsExhausted as exc:
            raise NoPriceFound(
                f'Unable to fetch price for "{raw_identifier}". Attempts: {exc}',
                context={"symbol": raw_identifier, "attempts": exc.trail},
            ) from exc
        return quote

    async def _manual_quote(self, symbol: str, asset_id: int | None) -> PriceQuote:
        quote = None
        if self._manual is not None and asset_id is not None:
            quote = await self._manual.latest_manual_quote(asset_id)
        if quote is None:
            raise NoPriceFound(
                f"No manual price available for {symbol}",
                context={"symbol": symbol, "attempts": []},
            )
        return quote

    async def _equity_spot(self, raw_identifier: str, hints: Sequence[str]) -> PriceQuote:
        candidates = await self._candidates.generate(raw_identifier, hints)
        try:
            _, quote = await first_success(
                (c, lambda c=c: self._yahoo.fetch_quote(c)) for c in candidates
            )
        except AttemptsExhausted as exc:
            raise NoPriceFound(
                f"Yahoo: {exc}", context={"symbol": raw_identifier, "attempts": exc.trail}
            ) from exc
        return quote

    @staticmethod
    def _ordered_providers(
        asset_class: AssetClass,
        crypto: Callable[[], Awaitable],
        equity: Callable[[], Awaitable],
    ) -> list[tuple[str, Callable[[], Awaitable]]]:
        if asset_class == AssetClass.CRYPTO:
            return [("binance", crypto), ("yahoo", equity)]
        return [("yahoo", equity), ("binance", crypto)]

    # --- Reference-currency conversion ---

    async def spot_in_reference(self, symbol: str) -> PriceQuote:
        """Price of one unit of a currency or crypto code in the reference currency.

        The reference currency itself is 1. Results are cached locally for
        ``spot_cache_seconds``.
        """
        normalised = symbol.strip().upper()
        if not normalised:
            raise InvalidSymbol("Empty currency code", context={"symbol": symbol})
        fixed = self.fixed_quote(normalised)
        if fixed is not None:
            return fixed

        now = self._clock()
        cached = self._spot_cache.get(normalised)
        if cached is not None and now - cached[1] < self._spot_ttl:
            return PriceQuote(
                price=cached[0],
                as_of=datetime.now(timezone.utc),
                source=PriceSource.CRYPTO_EXCHANGE,
                symbol=normalised,
            )

        quote = await self._binance.fetch_price(normalised)
        self._spot_cache[normalised] = (quote.price, now)
        return quote

    async def convert_to_reference(self, symbol: str, amount: Decimal) -> Decimal:
        quote = await self.spot_in_reference(symbol)
        return quote.price * amount

    # --- History ---

    async def get_historical(
        self,
        raw_identifier: str,
        hints: Sequence[str],
        from_date: datetime,
        *,
        asset_class: AssetClass = AssetClass.OTHER,
    ) -> HistoricalSeries:
        """Daily series from ``from_date`` to now, oldest first.

        Raises:
            InvalidSymbol: Blank identifier.
            NoHistoryFound: No provider returned a non-empty series, or the
                instrument has a fixed price.
        """
        if not raw_identifier or not raw_identifier.strip():
            raise InvalidSymbol("Empty instrument identifier", context={"symbol": raw_identifier})
        if self.fixed_quote(raw_identifier) is not None:
            raise NoHistoryFound(
                f'"{raw_identifier}" has a fixed price and no history',
                context={"symbol": raw_identifier, "attempts": []},
            )
        if from_date.tzinfo is None:
            from_date = from_date.replace(tzinfo=timezone.utc)

        attempts = self._ordered_providers(
            asset_class,
            crypto=lambda: self._crypto_history(raw_identifier, from_date),
            equity=lambda: self._equity_history(raw_identifier, hints, from_date),
        )
        try:
            _, series = await first_success(attempts)
        except AttemptsExhausted as exc:
            raise NoHistoryFound(
                f'No history for "{raw_identifier}". Attempts: {exc}',
                context={"symbol": raw_identifier, "attempts": exc.trail},
            ) from exc
        return series

    async def _crypto_history(self, raw_identifier: str, from_date: datetime) -> HistoricalSeries:
        pair, points = await self._binance.fetch_symbol_history(raw_identifier, from_date)
        return self._series(pair, PriceSource.CRYPTO_EXCHANGE, points, from_date)

    async def _equity_history(
        self, raw_identifier: str, hints: Sequence[str], from_date: datetime
    ) -> HistoricalSeries:
        candidates = await self._candidates.generate(raw_identifier, hints)
        try:
            symbol, points = await first_success(
                (c, lambda c=c: self._yahoo.fetch_history(c, from_date)) for c in candidates
            )
        except AttemptsExhausted as exc:
            raise NoHistoryFound(
                f"Yahoo: {exc}", context={"symbol": raw_identifier, "attempts": exc.trail}
            ) from exc
        return self._series(symbol, PriceSource.PRIMARY_CHART, points, from_date)

    @staticmethod
    def _series(
        symbol: str, source: PriceSource, points: list[PricePoint], from_date: datetime
    ) -> HistoricalSeries:
        relevant = sorted((p for p in points if p.date >= from_date), key=lambda p: p.date)
        if not relevant:
            raise NoHistoryFound(
                f"No relevant history for {symbol} since {from_date:%Y-%m-%d}",
                context={"symbol": symbol},
            )
        return HistoricalSeries(symbol=symbol, source=source, points=relevant)
