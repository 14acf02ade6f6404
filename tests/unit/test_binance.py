"""Tests for portefeuille.pricing.binance."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
import respx
from aiolimiter import AsyncLimiter

from portefeuille.core.exceptions import (
    ConversionRateUnavailable,
    NoHistoryFound,
    NoPriceFound,
    UpstreamUnavailable,
)
from portefeuille.core.models import PriceSource
from portefeuille.pricing.binance import (
    BinanceClient,
    ConversionRule,
    build_pairs,
    conversion_table,
    counter_currencies,
    detect_counter,
    normalise_crypto_symbol,
)

TICKER = "https://api.binance.com/api/v3/ticker/price"
KLINES = "https://api.binance.com/api/v3/klines"

INVALID_SYMBOL = {"code": -1121, "msg": "Invalid symbol."}


def ticker_router(prices: dict[str, str]):
    """respx side effect answering ticker requests from a pair -> price map."""

    def _handler(request: httpx.Request) -> httpx.Response:
        pair = request.url.params["symbol"]
        if pair in prices:
            return httpx.Response(200, json={"symbol": pair, "price": prices[pair]})
        return httpx.Response(400, json=INVALID_SYMBOL)

    return _handler


def kline(close_time: datetime, close: str) -> list:
    close_ms = int(close_time.timestamp() * 1000)
    return [close_ms - 86_399_999, "1", "1", "1", close, "10", close_ms, "0", 1, "0", "0", "0"]


@pytest.fixture
async def http_client():
    async with httpx.AsyncClient() as client:
        yield client


@pytest.fixture
def binance(http_client, local_cache, clock) -> BinanceClient:
    return BinanceClient(
        http_client,
        local_cache,
        reference_currency="EUR",
        conversion_ttl=60,
        limiter=AsyncLimiter(1000, 1),
        clock=clock,
    )


class TestPairs:
    def test_counters_in_order(self):
        assert counter_currencies("EUR") == ("EUR", "USDT", "BUSD", "BTC")

    def test_bare_asset(self):
        assert build_pairs("eth", counter_currencies("EUR")) == [
            "ETHEUR",
            "ETHUSDT",
            "ETHBUSD",
            "ETHBTC",
        ]

    def test_asset_equal_to_counter(self):
        assert build_pairs("BTC", counter_currencies("EUR")) == ["BTCEUR", "BTCUSDT", "BTCBUSD"]

    def test_full_pair_tried_verbatim_first(self):
        assert build_pairs("SOLUSDT", counter_currencies("EUR"))[0] == "SOLUSDT"

    def test_blank_symbol(self):
        assert build_pairs(" - ", counter_currencies("EUR")) == []

    def test_normalise(self):
        assert normalise_crypto_symbol("eth/usdt") == "ETHUSDT"

    def test_detect_counter_prefers_longest(self):
        counters = counter_currencies("EUR")
        assert detect_counter("ETHBUSD", counters) == "BUSD"
        assert detect_counter("ETHBTC", counters) == "BTC"
        assert detect_counter("BTC", counters) is None


class TestConversionTable:
    def test_stablecoins_divide(self):
        table = conversion_table("EUR")
        assert table["USDT"] == ConversionRule(pair="EURUSDT")
        assert table["USDT"].apply(Decimal("110"), Decimal("1.1")) == Decimal("100")

    def test_btc_multiplies(self):
        rule = conversion_table("EUR")["BTC"]
        assert rule.pair == "BTCEUR"
        assert rule.apply(Decimal("0.05"), Decimal("60000")) == Decimal("3000")

    def test_reference_has_no_pair(self):
        assert conversion_table("EUR")["EUR"].pair == ""


class TestFetchPrice:
    @respx.mock
    async def test_reference_pair_needs_no_conversion(self, binance):
        respx.get(TICKER).mock(side_effect=ticker_router({"BTCEUR": "60000.00"}))
        quote = await binance.fetch_price("btc")
        assert quote.price == Decimal("60000.00")
        assert quote.symbol == "BTCEUR"
        assert quote.source == PriceSource.CRYPTO_EXCHANGE

    @respx.mock
    async def test_falls_through_to_stablecoin_and_converts(self, binance):
        route = respx.get(TICKER).mock(
            side_effect=ticker_router({"ETHUSDT": "3300", "EURUSDT": "1.1"})
        )
        quote = await binance.fetch_price("ETH")
        assert quote.price == Decimal("3000")
        assert quote.symbol == "ETHUSDT"
        requested = [call.request.url.params["symbol"] for call in route.calls]
        assert requested == ["ETHEUR", "ETHUSDT", "EURUSDT"]

    @respx.mock
    async def test_btc_counter_multiplies(self, binance):
        respx.get(TICKER).mock(
            side_effect=ticker_router({"XYZBTC": "0.0001", "BTCEUR": "60000"})
        )
        quote = await binance.fetch_price("XYZ")
        assert quote.price == Decimal("6")

    @respx.mock
    async def test_conversion_failure_moves_to_next_pair(self, binance):
        respx.get(TICKER).mock(
            side_effect=ticker_router({"ABCUSDT": "2", "ABCBUSD": "3", "EURBUSD": "1.5"})
        )
        quote = await binance.fetch_price("ABC")
        assert quote.symbol == "ABCBUSD"
        assert quote.price == Decimal("2")

    @respx.mock
    async def test_exhaustion_keeps_trail(self, binance):
        respx.get(TICKER).mock(side_effect=ticker_router({}))
        with pytest.raises(NoPriceFound) as exc_info:
            await binance.fetch_price("NOPE")
        attempts = exc_info.value.context["attempts"]
        assert len(attempts) == 4
        assert attempts[0] == "NOPEEUR: Invalid symbol."

    @respx.mock
    async def test_ticker_is_cached(self, binance, local_cache):
        route = respx.get(TICKER).mock(side_effect=ticker_router({"BTCEUR": "60000"}))
        await binance.fetch_ticker("BTCEUR")
        await binance.fetch_ticker("BTCEUR")
        assert route.call_count == 1
        assert await local_cache.get("binance:btceur") == Decimal("60000")

    @respx.mock
    async def test_garbage_payload(self, binance):
        respx.get(TICKER).mock(return_value=httpx.Response(200, json={"symbol": "BTCEUR"}))
        with pytest.raises(UpstreamUnavailable):
            await binance.fetch_ticker("BTCEUR")

    @respx.mock
    async def test_server_error(self, binance):
        respx.get(TICKER).mock(return_value=httpx.Response(502, text="Bad Gateway"))
        with pytest.raises(UpstreamUnavailable) as exc_info:
            await binance.fetch_ticker("BTCEUR")
        assert exc_info.value.context["status_code"] == 502


class TestConversionRate:
    async def test_reference_currency(self, binance):
        assert await binance.conversion_rate("EUR") is None

    async def test_unknown_counter(self, binance):
        with pytest.raises(ConversionRateUnavailable):
            await binance.conversion_rate("DOGE")

    @respx.mock
    async def test_rate_reused_within_ttl(self, binance, clock):
        route = respx.get(TICKER).mock(side_effect=ticker_router({"EURUSDT": "1.1"}))
        assert await binance.conversion_rate("USDT") == Decimal("1.1")
        clock.advance(59)
        assert await binance.conversion_rate("USDT") == Decimal("1.1")
        assert route.call_count == 1

        clock.advance(2)
        await binance.conversion_rate("USDT")
        assert route.call_count == 2

    @respx.mock
    async def test_rate_fetch_failure(self, binance):
        respx.get(TICKER).mock(side_effect=ticker_router({}))
        with pytest.raises(ConversionRateUnavailable) as exc_info:
            await binance.conversion_rate("BUSD")
        assert exc_info.value.context["pair"] == "EURBUSD"


class TestHistory:
    @respx.mock
    async def test_pages_until_short_page(self, http_client, local_cache):
        client = BinanceClient(
            http_client, local_cache, limiter=AsyncLimiter(1000, 1), page_size=2
        )
        start = datetime.now(timezone.utc) - timedelta(days=10)
        days = [start + timedelta(days=i) for i in range(1, 4)]
        route = respx.get(KLINES).mock(
            side_effect=[
                httpx.Response(200, json=[kline(days[0], "100"), kline(days[1], "101")]),
                httpx.Response(200, json=[kline(days[2], "102")]),
            ]
        )

        points = await client.fetch_history("BTCEUR", start)

        assert [p.price for p in points] == [Decimal("100"), Decimal("101"), Decimal("102")]
        assert route.call_count == 2
        second = route.calls[1].request.url.params
        assert second["startTime"] == str(int(days[1].timestamp() * 1000) + 1)
        assert second["limit"] == "2"
        assert second["interval"] == "1d"

    @respx.mock
    async def test_malformed_klines_are_skipped(self, binance):
        start = datetime.now(timezone.utc) - timedelta(days=5)
        good = kline(start + timedelta(days=1), "100")
        respx.get(KLINES).mock(
            return_value=httpx.Response(
                200, json=[{"close": "99"}, ["short"], [0, "1", "1", "1", "5", "1", 10**20], good]
            )
        )
        points = await binance.fetch_history("BTCEUR", start)
        assert [p.price for p in points] == [Decimal("100")]

    @respx.mock
    async def test_empty_history(self, binance):
        respx.get(KLINES).mock(return_value=httpx.Response(200, json=[]))
        with pytest.raises(NoHistoryFound):
            await binance.fetch_history("BTCEUR", datetime.now(timezone.utc) - timedelta(days=3))

    @respx.mock
    async def test_symbol_history_uses_reference_pairs_only(self, binance):
        start = datetime.now(timezone.utc) - timedelta(days=3)
        route = respx.get(KLINES).mock(
            return_value=httpx.Response(200, json=[kline(start + timedelta(days=1), "59000")])
        )

        pair, points = await binance.fetch_symbol_history("BTC", start)

        assert pair == "BTCEUR"
        assert len(points) == 1
        assert {call.request.url.params["symbol"] for call in route.calls} == {"BTCEUR"}

    @respx.mock
    async def test_symbol_history_exhausted(self, binance):
        respx.get(KLINES).mock(return_value=httpx.Response(400, json=INVALID_SYMBOL))
        with pytest.raises(NoHistoryFound) as exc_info:
            await binance.fetch_symbol_history("NOPE", datetime.now(timezone.utc) - timedelta(days=3))
        assert exc_info.value.context["attempts"] == ["NOPEEUR: Invalid symbol."]
