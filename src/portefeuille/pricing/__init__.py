"""Price resolution across an equity provider and a crypto exchange.

Architecture
------------
Every lookup flows through a single routing layer:

    identifier → SymbolCandidateGenerator → providers → PriceQuote

Key abstractions:

- ``QuoteFetcher``: static / manual / provider routing, spot and history.
- ``PriceCache``: two-tier cache (shared Redis tier + process-local fallback).
- ``UpstreamSession``: cookie/crumb session shared by authenticated calls.
- ``first_success`` / ``run_batch``: ordered attempts and failure isolation.

Providers:

- ``YahooFinanceClient``: chart, authenticated quote, search, history.
- ``BinanceClient``: pair tickers, counter-currency conversion, klines.

``PricingEngine`` wires them around one shared ``httpx.AsyncClient``.
"""

from portefeuille.pricing.attempts import AttemptsExhausted, BatchOutcome, first_success, run_batch
from portefeuille.pricing.binance import BinanceClient
from portefeuille.pricing.cache import PriceCache, RedisBackingStore, normalise_key
from portefeuille.pricing.candidates import SymbolCandidateGenerator
from portefeuille.pricing.engine import PricingEngine
from portefeuille.pricing.fetcher import ManualPriceSource, QuoteFetcher
from portefeuille.pricing.refresh import PriceRefreshService, StoreManualPriceSource
from portefeuille.pricing.session import UpstreamSession
from portefeuille.pricing.yahoo import YahooChartAdapter, YahooFinanceClient

__all__ = [
    # Routing
    "QuoteFetcher",
    "ManualPriceSource",
    "SymbolCandidateGenerator",
    # Combinators
    "AttemptsExhausted",
    "BatchOutcome",
    "first_success",
    "run_batch",
    # Cache
    "PriceCache",
    "RedisBackingStore",
    "normalise_key",
    # Providers
    "UpstreamSession",
    "YahooChartAdapter",
    "YahooFinanceClient",
    "BinanceClient",
    # Services
    "PricingEngine",
    "PriceRefreshService",
    "StoreManualPriceSource",
]
