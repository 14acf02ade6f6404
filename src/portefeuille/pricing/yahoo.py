"""Yahoo Finance client: equity/ETF price provider.

Three endpoint families are used:

- ``/v8/finance/chart/``: unauthenticated, cheap. Spot price from the
  ``meta`` block; daily closes for historical mode.
- ``/v7/finance/quote``: needs a session cookie (and crumb when one was
  issued). Used only when the chart endpoint fails.
- ``/v1/finance/search``: fuzzy symbol search feeding the candidate list.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import httpx
from aiolimiter import AsyncLimiter

from portefeuille.core.exceptions import (
    AuthenticationRequired,
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
from portefeuille.pricing.cache import PriceCache
from portefeuille.pricing.session import HOME_URL, UpstreamSession

logger = logging.getLogger(__name__)

_CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart/"
_QUOTE_URL = "https://query2.finance.yahoo.com/v7/finance/quote"
_SEARCH_URL = "https://query2.finance.yahoo.com/v1/finance/search"

_AUTH_REJECTIONS = frozenset({401, 403})
_PROVIDER = "yahoo"
CACHE_NAMESPACE = "yahoo"

# Spot chart request: one day of daily bars is enough for ``meta``.
_SPOT_CHART_PARAMS = {
    "range": "1d",
    "interval": "1d",
    "includePrePost": "false",
    "corsDomain": "finance.yahoo.com",
    ".tsrc": "finance",
}


def _epoch_to_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _mapping(value: Any) -> dict:
    return value if isinstance(value, dict) else {}

class YahooChartAdapter:
    """Extracts prices from Yahoo Finance chart and quote payloads."""

    def spot(self, payload: Any, symbol: str) -> PriceQuote:
        """Parse a chart response into a spot quote.

        Uses ``meta.regularMarketPrice``, falling back to
        ``meta.chartPreviousClose``.

        Raises:
            NoPriceFound: If the payload carries no positive price.
        """
        meta = self._first_result(payload).get("meta")
        if not isinstance(meta, dict):
            raise NoPriceFound(
                f"Invalid chart response for {symbol}", context={"symbol": symbol}
            )
        price = to_positive_decimal(meta.get("regularMarketPrice"))
        if price is None:
            price = to_positive_decimal(meta.get("chartPreviousClose"))
        if price is None:
            raise NoPriceFound(
                f"No price in chart response for {symbol}", context={"symbol": symbol}
            )
        as_of = _epoch_to_datetime(meta.get("regularMarketTime")) or datetime.now(
            timezone.utc
        )
        return PriceQuote(
            price=price, as_of=as_of, source=PriceSource.PRIMARY_CHART, symbol=symbol
        )

    def market_quote(self, payload: Any, symbol: str) -> PriceQuote:
        """Parse a ``quoteResponse`` payload: regular, then post-, then pre-market."""
        results = _mapping(_mapping(payload).get("quoteResponse")).get("result") or []
        quote_data = _mapping(results[0]) if isinstance(results, list) and results else {}
        for prefix in ("regularMarket", "postMarket", "preMarket"):
            price = to_positive_decimal(quote_data.get(f"{prefix}Price"))
            if price is not None:
                as_of = _epoch_to_datetime(quote_data.get(f"{prefix}Time"))
                return PriceQuote(
                    price=price,
                    as_of=as_of or datetime.now(timezone.utc),
                    source=PriceSource.PRIMARY_MARKET,
                    symbol=symbol,
                )
        raise NoPriceFound(f"No price available for {symbol}", context={"symbol": symbol})

    def series(self, payload: Any, symbol: str) -> list[PricePoint]:
        """Parse a historical chart response into points sorted by date.

        Null and non-positive closes (holidays, missing data) are skipped.

        Raises:
            NoHistoryFound: If no usable point remains.
        """
        result = self._first_result(payload)
        timestamps: list[Any] = result.get("timestamp") or []
        quotes = _mapping(result.get("indicators")).get("quote") or [{}]
        first_quote = _mapping(quotes[0]) if isinstance(quotes, list) else {}
        closes: list[Any] = first_quote.get("close") or []
        if not isinstance(timestamps, list) or not isinstance(closes, list):
            timestamps, closes = [], []
        if not timestamps or not closes:
            raise NoHistoryFound(
                f"No historical data returned for {symbol}", context={"symbol": symbol}
            )

        points: list[PricePoint] = []
        for i, ts in enumerate(timestamps):
            close = closes[i] if i < len(closes) else None
            price = to_positive_decimal(close)
            when = _epoch_to_datetime(ts)
            if price is None or when is None:
                continue
            points.append(PricePoint(date=when, price=price))

        if not points:
            raise NoHistoryFound(
                f"Historical data for {symbol} is empty", context={"symbol": symbol}
            )
        return sorted(points, key=lambda p: p.date)

    @staticmethod
    def _first_result(payload: Any) -> dict:
        results = _mapping(_mapping(payload).get("chart")).get("result")
        if not isinstance(results, list) or not results or not isinstance(results[0], dict):
            return {}
        return results[0]


class YahooFinanceClient:
    """Async client for the equity/ETF provider.

    Parameters
    ----------
    client : httpx.AsyncClient
        Shared HTTP client carrying browser-like default headers.
    session : UpstreamSession
        Session cell used by authenticated requests.
    cache : PriceCache
        Spot prices are read from and written to ``yahoo:<symbol>``.
    limiter : AsyncLimiter | None
        Token bucket shared by every request to this provider.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        session: UpstreamSession,
        cache: PriceCache,
        limiter: AsyncLimiter | None = None,
        adapter: YahooChartAdapter | None = None,
        chart_url: str = _CHART_URL,
        quote_url: str = _QUOTE_URL,
        search_url: str = _SEARCH_URL,
    ) -> None:
        self._client = client
        self._session = session
        self._cache = cache
        self._limiter = limiter or AsyncLimiter(max_rate=5, time_period=1.0)
        self._adapter = adapter or YahooChartAdapter()
        self._chart_url = chart_url
        self._quote_url = quote_url
        self._search_url = search_url

    # --- Transport ---

    async def _send(
        self,
        url: str,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        await self._limiter.acquire()
        try:
            return await self._client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(
                f"Yahoo Finance request failed: {exc}",
                context={"provider": _PROVIDER, "url": url, "status_code": None},
            ) from exc

    @staticmethod
    def _json(response: httpx.Response, url: str) -> dict:
        """Decode a JSON object body, mapping every failure to the error taxonomy."""
        if response.status_code in _AUTH_REJECTIONS:
            raise AuthenticationRequired(
                f"Yahoo Finance returned status {response.status_code}",
                context={
                    "provider": _PROVIDER,
                    "url": url,
                    "status_code": response.status_code,
                },
            )
        if not response.is_success:
            raise UpstreamUnavailable(
                f"Yahoo Finance returned status {response.status_code}",
                context={
                    "provider": _PROVIDER,
                    "url": url,
                    "status_code": response.status_code,
                },
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamUnavailable(
                f"Yahoo Finance returned invalid JSON: {exc}",
                context={"provider": _PROVIDER, "url": url, "status_code": response.status_code},
            ) from exc
        if not isinstance(payload, dict):
            raise UpstreamUnavailable(
                f"Yahoo Finance returned {type(payload).__name__}, expected a JSON object",
                context={"provider": _PROVIDER, "url": url, "status_code": response.status_code},
            )
        return payload

    async def _authenticated_get(
        self, url: str, params: dict[str, str], referer: str
    ) -> dict:
        """GET with the session attached; one forced renewal on rejection.

        Raises:
            AuthenticationRequired: If the renewed session is rejected too.
        """
        session = await self._session.ensure()
        response = await self._send_with_session(url, params, referer, session)
        if response.status_code in _AUTH_REJECTIONS:
            logger.info(
                "Yahoo Finance rejected session (status %d), renewing",
                response.status_code,
            )
            session = await self._session.ensure(force_renew=True)
            response = await self._send_with_session(url, params, referer, session)
        return self._json(response, url)

    async def _send_with_session(self, url, params, referer, session) -> httpx.Response:
        request_params = dict(params)
        if session.crumb:
            request_params["crumb"] = session.crumb
        return await self._send(
            url,
            params=request_params,
            headers={"Cookie": session.cookie, "Referer": referer},
        )

    # --- Spot ---

    async def fetch_chart_quote(self, symbol: str) -> PriceQuote:
        """Spot price from the unauthenticated chart endpoint."""
        url = f"{self._chart_url}{quote(symbol, safe='')}"
        response = await self._send(url, params=_SPOT_CHART_PARAMS)
        return self._adapter.spot(self._json(response, url), symbol)

    async def fetch_market_quote(self, symbol: str) -> PriceQuote:
        """Spot price from the authenticated quote endpoint."""
        payload = await self._authenticated_get(
            self._quote_url,
            {"symbols": symbol},
            referer=f"{HOME_URL}/quote/{quote(symbol, safe='')}",
        )
        return self._adapter.market_quote(payload, symbol)

    async def fetch_quote(self, symbol: str) -> PriceQuote:
        """Resolve one candidate symbol: cache, then chart, then quote endpoint.

        A fresh price is written back to the cache before being returned.
        """
        cache_key = f"{CACHE_NAMESPACE}:{symbol}"
        cached = await self._cache.get(cache_key)
        if cached is not None:
            logger.debug("Yahoo price for %s served from cache: %s", symbol, cached)
            return PriceQuote(
                price=cached,
                as_of=datetime.now(timezone.utc),
                source=PriceSource.PRIMARY_MARKET,
                symbol=symbol,
            )

        try:
            result = await self.fetch_chart_quote(symbol)
        except (UpstreamUnavailable, NoPriceFound) as exc:
            logger.debug("Chart lookup failed for %s, trying quote endpoint: %s", symbol, exc)
            result = await self.fetch_market_quote(symbol)

        await self._cache.put(cache_key, result.price)
        return result

    # --- Search ---

    async def search_symbols(self, query: str) -> list[str]:
        """Fuzzy symbol search. Option contracts are excluded."""
        response = await self._send(
            self._search_url,
            params={"q": query, "quotesCount": "6", "newsCount": "0"},
            headers={"Referer": HOME_URL},
        )
        payload = self._json(response, self._search_url)
        symbols: list[str] = []
        quotes = payload.get("quotes")
        for item in quotes if isinstance(quotes, list) else []:
            if not isinstance(item, dict):
                continue
            symbol = item.get("symbol")
            if symbol and item.get("quoteType") != "OPTION":
                symbols.append(str(symbol))
        return symbols

    # --- History ---

    def _history_params(self, from_date: datetime) -> dict[str, str]:
        start = int(from_date.timestamp())
        end = int(datetime.now(timezone.utc).timestamp())
        return {
            "interval": "1d",
            "period1": str(start),
            "period2": str(end),
            "events": "history",
            "includeAdjustedClose": "true",
        }

    async def fetch_history(self, symbol: str, from_date: datetime) -> list[PricePoint]:
        """Daily closes from ``from_date`` to now.

        Tries without a session first; an authentication rejection triggers
        one retry through the authenticated path.
        """
        url = f"{self._chart_url}{quote(symbol, safe='')}"
        params = self._history_params(from_date)
        try:
            response = await self._send(url, params=params)
            payload = self._json(response, url)
        except AuthenticationRequired:
            logger.info("History for %s requires a session, retrying authenticated", symbol)
            payload = await self._authenticated_get(
                url,
                params,
                referer=f"{HOME_URL}/quote/{quote(symbol, safe='')}/history",
            )
        return self._adapter.series(payload, symbol)
