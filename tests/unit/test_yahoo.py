"""Tests for portefeuille.pricing.yahoo (YahooChartAdapter, YahooFinanceClient)."""

from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest
import respx
from aiolimiter import AsyncLimiter

from portefeuille.core.exceptions import (
    AuthenticationRequired,
    NoHistoryFound,
    NoPriceFound,
    UpstreamUnavailable,
)
from portefeuille.core.models import PriceSource
from portefeuille.pricing.candidates import SymbolCandidateGenerator
from portefeuille.pricing.session import CRUMB_URL, HOME_URL, UpstreamSession
from portefeuille.pricing.yahoo import YahooChartAdapter, YahooFinanceClient

CHART = "https://query1.finance.yahoo.com/v8/finance/chart/"
QUOTE = "https://query2.finance.yahoo.com/v7/finance/quote"
SEARCH = "https://query2.finance.yahoo.com/v1/finance/search"


def chart_payload(price=None, previous=None, market_time=1709287200) -> dict:
    meta = {"currency": "EUR", "symbol": "AIR.PA", "regularMarketTime": market_time}
    if price is not None:
        meta["regularMarketPrice"] = price
    if previous is not None:
        meta["chartPreviousClose"] = previous
    return {"chart": {"result": [{"meta": meta}], "error": None}}


def quote_payload(**fields) -> dict:
    return {"quoteResponse": {"result": [fields], "error": None}}


def history_payload(timestamps, closes) -> dict:
    return {
        "chart": {
            "result": [
                {
                    "meta": {"symbol": "CW8.PA"},
                    "timestamp": timestamps,
                    "indicators": {"quote": [{"close": closes}]},
                }
            ]
        }
    }


@pytest.fixture
async def http_client():
    async with httpx.AsyncClient() as client:
        yield client


@pytest.fixture
def session(http_client) -> UpstreamSession:
    return UpstreamSession(http_client)


@pytest.fixture
def yahoo(http_client, session, local_cache) -> YahooFinanceClient:
    return YahooFinanceClient(
        http_client, session, local_cache, limiter=AsyncLimiter(1000, 1)
    )


def mock_session_routes():
    home = respx.get(HOME_URL).mock(
        return_value=httpx.Response(200, headers=[("set-cookie", "A3=tok; Path=/")])
    )
    respx.get(CRUMB_URL).mock(return_value=httpx.Response(200, text="crumbX"))
    return home


class TestChartAdapter:
    def test_spot_regular_price(self):
        quote = YahooChartAdapter().spot(chart_payload(price=151.3), "AIR.PA")
        assert quote.price == Decimal("151.3")
        assert quote.source == PriceSource.PRIMARY_CHART
        assert quote.as_of == datetime.fromtimestamp(1709287200, tz=timezone.utc)

    def test_spot_falls_back_to_previous_close(self):
        quote = YahooChartAdapter().spot(chart_payload(price=0, previous=149.9), "AIR.PA")
        assert quote.price == Decimal("149.9")

    def test_spot_without_price(self):
        with pytest.raises(NoPriceFound):
            YahooChartAdapter().spot(chart_payload(), "AIR.PA")

    def test_spot_malformed(self):
        with pytest.raises(NoPriceFound):
            YahooChartAdapter().spot({"chart": {"result": None}}, "AIR.PA")

    @pytest.mark.parametrize(
        "payload",
        [{"chart": []}, {"chart": {"result": "x"}}, {"chart": {"result": [["meta"]]}}],
    )
    def test_spot_wrong_shapes(self, payload):
        with pytest.raises(NoPriceFound):
            YahooChartAdapter().spot(payload, "AIR.PA")

    def test_market_quote_fallback_chain(self):
        payload = quote_payload(regularMarketPrice=None, postMarketPrice=12.5, postMarketTime=1709290000)
        quote = YahooChartAdapter().market_quote(payload, "X")
        assert quote.price == Decimal("12.5")
        assert quote.source == PriceSource.PRIMARY_MARKET

    def test_market_quote_empty(self):
        with pytest.raises(NoPriceFound):
            YahooChartAdapter().market_quote(quote_payload(), "X")

    @pytest.mark.parametrize(
        "payload",
        [{"quoteResponse": []}, {"quoteResponse": {"result": {"x": 1}}}, {"quoteResponse": {"result": [5]}}],
    )
    def test_market_quote_wrong_shapes(self, payload):
        with pytest.raises(NoPriceFound):
            YahooChartAdapter().market_quote(payload, "X")

    def test_series_skips_nulls_and_sorts(self):
        payload = history_payload([1709510400, 1709251200, 1709337600], [None, 480.1, 481.0])
        points = YahooChartAdapter().series(payload, "CW8.PA")
        assert [p.price for p in points] == [Decimal("480.1"), Decimal("481.0")]
        assert points[0].date < points[1].date

    def test_series_all_null(self):
        with pytest.raises(NoHistoryFound):
            YahooChartAdapter().series(history_payload([1709251200], [None]), "CW8.PA")


    def test_series_wrong_shapes(self):
        payload = {"chart": {"result": [{"timestamp": 1709251200, "indicators": ["quote"]}]}}
        with pytest.raises(NoHistoryFound):
            YahooChartAdapter().series(payload, "CW8.PA")

class TestFetchQuote:
    @respx.mock
    async def test_chart_success_is_cached(self, yahoo, local_cache):
        route = respx.get(f"{CHART}AIR.PA").mock(
            return_value=httpx.Response(200, json=chart_payload(price=151.3))
        )
        quote = await yahoo.fetch_quote("AIR.PA")
        assert quote.price == Decimal("151.3")
        assert await local_cache.get("yahoo:AIR.PA") == Decimal("151.3")

        again = await yahoo.fetch_quote("AIR.PA")
        assert again.price == Decimal("151.3")
        assert route.call_count == 1

    @respx.mock
    async def test_chart_500_then_quote_401_then_200_renews_once(self, yahoo, session):
        respx.get(f"{CHART}AIR.PA").mock(return_value=httpx.Response(500))
        home = mock_session_routes()
        quote_route = respx.get(QUOTE).mock(
            side_effect=[
                httpx.Response(401, json={"finance": {"error": "Unauthorized"}}),
                httpx.Response(200, json=quote_payload(regularMarketPrice=152.0)),
            ]
        )
        await session.ensure()
        home.reset()

        quote = await yahoo.fetch_quote("AIR.PA")

        assert quote.price == Decimal("152.0")
        assert quote.source == PriceSource.PRIMARY_MARKET
        assert home.call_count == 1
        assert session.renewals == 2
        assert quote_route.call_count == 2
        sent = quote_route.calls.last.request
        assert sent.url.params["crumb"] == "crumbX"
        assert sent.url.params["symbols"] == "AIR.PA"
        assert sent.headers["Cookie"] == "A3=tok"

    @respx.mock
    async def test_chart_list_payload_falls_back_to_quote(self, yahoo):
        respx.get(f"{CHART}AIR.PA").mock(return_value=httpx.Response(200, json=[{"meta": {}}]))
        mock_session_routes()
        respx.get(QUOTE).mock(
            return_value=httpx.Response(200, json=quote_payload(regularMarketPrice=153.1))
        )
        quote = await yahoo.fetch_quote("AIR.PA")
        assert quote.price == Decimal("153.1")

    @respx.mock
    async def test_second_rejection_is_surfaced(self, yahoo):
        respx.get(f"{CHART}AIR.PA").mock(return_value=httpx.Response(404))
        mock_session_routes()
        respx.get(QUOTE).mock(return_value=httpx.Response(401))

        with pytest.raises(AuthenticationRequired):
            await yahoo.fetch_quote("AIR.PA")

    @respx.mock
    async def test_crumbless_session_omits_crumb(self, yahoo):
        respx.get(f"{CHART}AIR.PA").mock(return_value=httpx.Response(500))
        respx.get(HOME_URL).mock(
            return_value=httpx.Response(200, headers=[("set-cookie", "B=b; Path=/")])
        )
        respx.get(CRUMB_URL).mock(return_value=httpx.Response(500))
        quote_route = respx.get(QUOTE).mock(
            return_value=httpx.Response(200, json=quote_payload(regularMarketPrice=10))
        )

        await yahoo.fetch_quote("AIR.PA")
        assert "crumb" not in quote_route.calls.last.request.url.params

    @respx.mock
    async def test_transport_error_becomes_upstream_unavailable(self, yahoo):
        respx.get(f"{CHART}AIR.PA").mock(side_effect=httpx.ConnectError("refused"))
        respx.get(HOME_URL).mock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(UpstreamUnavailable):
            await yahoo.fetch_quote("AIR.PA")


class TestSearch:
    @respx.mock
    async def test_excludes_options(self, yahoo):
        route = respx.get(SEARCH).mock(
            return_value=httpx.Response(
                200,
                json={
                    "quotes": [
                        {"symbol": "AIR.PA", "quoteType": "EQUITY"},
                        {"symbol": "AIR240621C00150000", "quoteType": "OPTION"},
                        {"symbol": "EADSY", "quoteType": "EQUITY"},
                        {"quoteType": "EQUITY"},
                    ]
                },
            )
        )
        assert await yahoo.search_symbols("Airbus") == ["AIR.PA", "EADSY"]
        params = route.calls.last.request.url.params
        assert params["q"] == "Airbus"
        assert params["newsCount"] == "0"

    @respx.mock
    async def test_error_status_raises(self, yahoo):
        respx.get(SEARCH).mock(return_value=httpx.Response(503))
        with pytest.raises(UpstreamUnavailable):
            await yahoo.search_symbols("Airbus")


    @respx.mock
    async def test_non_object_payload_raises(self, yahoo):
        respx.get(SEARCH).mock(return_value=httpx.Response(200, json=[{"symbol": "X"}]))
        with pytest.raises(UpstreamUnavailable):
            await yahoo.search_symbols("AIR")

    @respx.mock
    async def test_quotes_not_a_list(self, yahoo):
        respx.get(SEARCH).mock(return_value=httpx.Response(200, json={"quotes": {"symbol": "X"}}))
        assert await yahoo.search_symbols("AIR") == []

    @respx.mock
    async def test_candidate_generation_survives_non_object_payload(self, yahoo):
        respx.get(SEARCH).mock(return_value=httpx.Response(200, json=[{"symbol": "X"}]))
        generator = SymbolCandidateGenerator(search=yahoo.search_symbols)
        assert await generator.generate("AIR.PA", ["Airbus"]) == ["AIR.PA"]

class TestFetchHistory:
    @respx.mock
    async def test_unauthenticated_history(self, yahoo):
        route = respx.get(f"{CHART}CW8.PA").mock(
            return_value=httpx.Response(200, json=history_payload([1709251200, 1709337600], [480.1, 481.0]))
        )
        points = await yahoo.fetch_history("CW8.PA", datetime(2024, 3, 1, tzinfo=timezone.utc))
        assert len(points) == 2
        params = route.calls.last.request.url.params
        assert params["interval"] == "1d"
        assert params["events"] == "history"
        assert params["period1"] == str(int(datetime(2024, 3, 1, tzinfo=timezone.utc).timestamp()))

    @respx.mock
    async def test_rejection_retries_authenticated(self, yahoo):
        route = respx.get(f"{CHART}CW8.PA").mock(
            side_effect=[
                httpx.Response(401),
                httpx.Response(200, json=history_payload([1709251200], [480.1])),
            ]
        )
        mock_session_routes()

        points = await yahoo.fetch_history("CW8.PA", datetime(2024, 3, 1, tzinfo=timezone.utc))
        assert [p.price for p in points] == [Decimal("480.1")]
        assert route.calls.last.request.headers["Cookie"] == "A3=tok"

    @respx.mock
    async def test_empty_history(self, yahoo):
        respx.get(f"{CHART}CW8.PA").mock(
            return_value=httpx.Response(200, json=history_payload([], []))
        )
        with pytest.raises(NoHistoryFound):
            await yahoo.fetch_history("CW8.PA", datetime(2024, 3, 1, tzinfo=timezone.utc))
