"""Renewable authenticated session against the equity provider.

The session is a single cell owned by one ``UpstreamSession`` instance and
injected into the clients that need it. ``ensure`` is the only mutator;
a renewal always replaces the whole ``Session`` value.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import httpx

from portefeuille.core.exceptions import UpstreamUnavailable
from portefeuille.core.models import Session

logger = logging.getLogger(__name__)

HOME_URL = "https://finance.yahoo.com"
CRUMB_URL = "https://query1.finance.yahoo.com/v1/test/getcrumb"

# Preferred cookie names, in order. Any other cookie is accepted as a last resort.
_SESSION_COOKIES = ("A3", "B")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def extract_cookie(set_cookie_headers: list[str]) -> str | None:
    """Pick the ``name=value`` pair to replay from a list of Set-Cookie headers."""
    pairs: dict[str, str] = {}
    ordered: list[str] = []
    for header in set_cookie_headers:
        pair = header.split(";", 1)[0].strip()
        name, sep, _ = pair.partition("=")
        if not sep or not name:
            continue
        pairs.setdefault(name, pair)
        ordered.append(pair)
    for name in _SESSION_COOKIES:
        if name in pairs:
            return pairs[name]
    return ordered[0] if ordered else None


class UpstreamSession:
    """Lazily created, TTL-bound session (cookie + optional crumb).

    Parameters
    ----------
    client : httpx.AsyncClient
        Shared HTTP client. Its default headers are sent with renewals.
    ttl_seconds : int
        Lifetime of a session before it is renewed on next use.
    home_url, crumb_url : str
        Endpoints for cookie harvesting and crumb retrieval.
    clock : Callable[[], datetime]
        Timezone-aware clock. Injected by tests.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        ttl_seconds: int = 1800,
        home_url: str = HOME_URL,
        crumb_url: str = CRUMB_URL,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._client = client
        self._ttl = timedelta(seconds=ttl_seconds)
        self._home_url = home_url
        self._crumb_url = crumb_url
        self._clock = clock
        self._session: Session | None = None
        self._lock = asyncio.Lock()
        self._renewals = 0

    @property
    def current(self) -> Session | None:
        return self._session

    @property
    def renewals(self) -> int:
        """Number of sessions created so far, the first one included."""
        return self._renewals

    async def ensure(self, force_renew: bool = False) -> Session:
        """Return an active session, renewing it when unset, expired or forced."""
        async with self._lock:
            current = self._session
            if force_renew or current is None or current.is_expired(self._clock()):
                self._session = await self._renew()
            return self._session

    async def _renew(self) -> Session:
        cookie = await self._harvest_cookie()
        crumb = await self._fetch_crumb(cookie)
        self._renewals += 1
        logger.info(
            "Equity provider session renewed (crumb %s)",
            "present" if crumb else "missing",
        )
        return Session(
            cookie=cookie,
            crumb=crumb,
            expires_at=self._clock() + self._ttl,
        )

    async def _harvest_cookie(self) -> str:
        try:
            response = await self._client.get(self._home_url)
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(
                f"Session landing page unreachable: {exc}",
                context={"provider": "yahoo", "url": self._home_url, "status_code": None},
            ) from exc

        cookie = extract_cookie(response.headers.get_list("set-cookie"))
        if not cookie:
            raise UpstreamUnavailable(
                "Unable to start a session: no cookie in landing page response",
                context={
                    "provider": "yahoo",
                    "url": self._home_url,
                    "status_code": response.status_code,
                },
            )
        return cookie

    async def _fetch_crumb(self, cookie: str) -> str | None:
        try:
            response = await self._client.get(
                self._crumb_url, headers={"Cookie": cookie}
            )
        except httpx.HTTPError as exc:
            logger.warning("Crumb fetch failed, continuing without crumb: %s", exc)
            return None
        if response.status_code != 200:
            logger.warning(
                "Crumb endpoint returned %d, continuing without crumb",
                response.status_code,
            )
            return None
        crumb = response.text.strip()
        return crumb or None
