"""Wiring of the pricing stack around one shared HTTP client.

Use via ``async with PricingEngine(config) as engine:``.
"""

from __future__ import annotations

import logging

import httpx
from aiolimiter import AsyncLimiter

from portefeuille.core.config import PortefeuilleConfig
from portefeuille.pricing.binance import BinanceClient
from portefeuille.pricing.cache import PriceCache, RedisBackingStore
from portefeuille.pricing.candidates import SymbolCandidateGenerator
from portefeuille.pricing.fetcher import ManualPriceSource, QuoteFetcher
from portefeuille.pricing.session import UpstreamSession
from portefeuille.pricing.yahoo import YahooFinanceClient

logger = logging.getLogger(__name__)


def _default_headers(user_agent: str) -> dict[str, str]:
    return {
        "User-Agent": user_agent,
        "Accept": "application/json,text/html;q=0.9,*/*;q=0.8",
        "Accept-Language": "fr-FR,fr;q=0.9,en-US;q=0.8,en;q=0.7",
    }


class PricingEngine:
    """Owns the HTTP client, rate limiters, session, cache and providers.

    Parameters
    ----------
    config : PortefeuilleConfig
        Loaded configuration.
    manual_prices : ManualPriceSource | None
        Record-backed price source for numeric-only symbols.
    http_client : httpx.AsyncClient | None
        Injected client (tests). When omitted one is created and owned.
    """

    def __init__(
        self,
        config: PortefeuilleConfig,
        manual_prices: ManualPriceSource | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            headers=_default_headers(config.upstream.user_agent),
            timeout=httpx.Timeout(config.upstream.request_timeout),
            follow_redirects=True,
        )

        self._backing = RedisBackingStore(config.cache) if config.cache.enabled else None
        self.cache = PriceCache(
            backing=self._backing, default_ttl=config.cache.price_ttl_seconds
        )
        self.session = UpstreamSession(
            self._client, ttl_seconds=config.pricing.session_ttl_seconds
        )
        self.yahoo = YahooFinanceClient(
            self._client,
            self.session,
            self.cache,
            limiter=AsyncLimiter(max_rate=config.upstream.yahoo_rate_limit, time_period=1.0),
        )
        self.binance = BinanceClient(
            self._client,
            self.cache,
            reference_currency=config.pricing.reference_currency,
            conversion_ttl=config.pricing.conversion_cache_seconds,
            limiter=AsyncLimiter(max_rate=config.upstream.binance_rate_limit, time_period=1.0),
        )
        self.candidates = SymbolCandidateGenerator(search=self.yahoo.search_symbols)
        self.fetcher = QuoteFetcher(
            self.yahoo,
            self.binance,
            self.candidates,
            manual_prices=manual_prices,
            spot_cache_seconds=config.pricing.spot_cache_seconds,
        )

    async def start(self) -> None:
        """Connect the shared cache tier. An unreachable server is not fatal."""
        await self.cache.connect()

    async def close(self) -> None:
        await self.cache.close()
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> PricingEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
