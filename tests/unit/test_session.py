"""Tests for portefeuille.pricing.session (UpstreamSession)."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest
import respx

from portefeuille.core.exceptions import UpstreamUnavailable
from portefeuille.pricing.session import CRUMB_URL, HOME_URL, UpstreamSession, extract_cookie


class MutableClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
async def http_client():
    async with httpx.AsyncClient() as client:
        yield client


@pytest.fixture
def wall_clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def session(http_client, wall_clock) -> UpstreamSession:
    return UpstreamSession(http_client, ttl_seconds=1800, clock=wall_clock)


def _landing(cookie: str = "A3=abc; Path=/; Secure") -> httpx.Response:
    return httpx.Response(200, headers=[("set-cookie", cookie)], text="<html></html>")


class TestExtractCookie:
    def test_prefers_known_session_cookie(self):
        headers = ["GUC=1; Path=/", "A3=token; Secure", "B=other"]
        assert extract_cookie(headers) == "A3=token"

    def test_falls_back_to_first_cookie(self):
        assert extract_cookie(["tbla_id=1; Path=/", "x=2"]) == "tbla_id=1"

    def test_no_cookie(self):
        assert extract_cookie([]) is None
        assert extract_cookie(["garbage"]) is None


class TestEnsure:
    @respx.mock
    async def test_lazy_creation_with_crumb(self, session):
        respx.get(HOME_URL).mock(return_value=_landing())
        crumb_route = respx.get(CRUMB_URL).mock(return_value=httpx.Response(200, text="crumb123\n"))

        assert session.current is None
        s = await session.ensure()
        assert s.cookie == "A3=abc"
        assert s.crumb == "crumb123"
        assert crumb_route.calls.last.request.headers["Cookie"] == "A3=abc"
        assert session.renewals == 1

    @respx.mock
    async def test_reused_until_expiry(self, session, wall_clock):
        home = respx.get(HOME_URL).mock(return_value=_landing())
        respx.get(CRUMB_URL).mock(return_value=httpx.Response(200, text="c"))

        first = await session.ensure()
        wall_clock.now += timedelta(minutes=29)
        assert await session.ensure() is first
        assert home.call_count == 1

        wall_clock.now += timedelta(minutes=2)
        renewed = await session.ensure()
        assert renewed is not first
        assert home.call_count == 2

    @respx.mock
    async def test_forced_renewal(self, session):
        home = respx.get(HOME_URL).mock(return_value=_landing())
        respx.get(CRUMB_URL).mock(return_value=httpx.Response(200, text="c"))

        await session.ensure()
        await session.ensure(force_renew=True)
        assert home.call_count == 2
        assert session.renewals == 2

    @respx.mock
    async def test_crumb_failure_is_not_fatal(self, session):
        respx.get(HOME_URL).mock(return_value=_landing())
        respx.get(CRUMB_URL).mock(return_value=httpx.Response(429, text="Too Many Requests"))

        s = await session.ensure()
        assert s.cookie == "A3=abc"
        assert s.crumb is None

    @respx.mock
    async def test_crumb_transport_error_is_not_fatal(self, session):
        respx.get(HOME_URL).mock(return_value=_landing())
        respx.get(CRUMB_URL).mock(side_effect=httpx.ConnectError("refused"))

        assert (await session.ensure()).crumb is None

    @respx.mock
    async def test_missing_cookie_is_fatal(self, session):
        respx.get(HOME_URL).mock(return_value=httpx.Response(200, text="no cookies"))

        with pytest.raises(UpstreamUnavailable, match="no cookie"):
            await session.ensure()
        assert session.current is None

    @respx.mock
    async def test_landing_page_unreachable(self, session):
        respx.get(HOME_URL).mock(side_effect=httpx.ConnectTimeout("timeout"))

        with pytest.raises(UpstreamUnavailable) as exc_info:
            await session.ensure()
        assert exc_info.value.context["provider"] == "yahoo"
