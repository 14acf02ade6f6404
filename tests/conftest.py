"""Shared pytest fixtures for portefeuille."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from portefeuille.core.config import StorageConfig
from portefeuille.core.exceptions import CacheUnavailable, NoPriceFound
from portefeuille.core.models import PriceQuote, PriceSource, RawLedgerEvent
from portefeuille.pricing.cache import PriceCache
from portefeuille.storage.store import SqliteStore

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackingStore:
    """In-memory shared tier that can be switched off to simulate an outage.

    Like the Redis tier, ``connected`` turns False on a failed command and
    True again on the next successful one.
    """

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.down = False
        self.ready = True
        self.calls: list[str] = []

    @property
    def connected(self) -> bool:
        return self.ready

    def _check(self, op: str) -> None:
        self.calls.append(op)
        if self.down:
            self.ready = False
            raise CacheUnavailable("connection refused", context={"operation": op})
        self.ready = True

    async def connect(self) -> bool:
        try:
            self._check("ping")
        except CacheUnavailable:
            return False
        return True

    async def get(self, key: str) -> str | None:
        self._check("get")
        return self.data.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._check("set")
        self.data[key] = value

    async def delete(self, key: str) -> int:
        self._check("delete")
        return 1 if self.data.pop(key, None) is not None else 0

    async def delete_prefix(self, prefix: str) -> int:
        self._check("scan")
        doomed = [k for k in self.data if k.startswith(prefix)]
        for k in doomed:
            del self.data[k]
        return len(doomed)

    async def count(self, prefix: str) -> int:
        self._check("scan")
        return sum(1 for k in self.data if k.startswith(prefix))

    async def close(self) -> None:
        self.calls.append("close")


class FakeRates:
    """Reference-currency rates with fixed unit prices (EUR reference)."""

    def __init__(self, prices: dict[str, Decimal] | None = None, reference: str = "EUR") -> None:
        self.prices = {"USDT": Decimal(1), **(prices or {})}
        self.reference_currency = reference
        self.calls: list[str] = []

    async def spot_in_reference(self, symbol: str) -> PriceQuote:
        self.calls.append(symbol)
        if symbol == self.reference_currency:
            price = Decimal(1)
        elif symbol in self.prices:
            price = self.prices[symbol]
        else:
            raise NoPriceFound(f"No rate for {symbol}", context={"symbol": symbol, "attempts": []})
        return PriceQuote(price=price, as_of=T0, source=PriceSource.CRYPTO_EXCHANGE, symbol=symbol)

    async def convert_to_reference(self, symbol: str, amount: Decimal) -> Decimal:
        quote = await self.spot_in_reference(symbol)
        return quote.price * amount


def _make_event(
    index: int,
    seconds: float,
    amount: str,
    asset: str,
    label: str,
) -> RawLedgerEvent:
    return RawLedgerEvent(
        sequence_index=index,
        timestamp=T0 + timedelta(seconds=seconds),
        signed_amount=Decimal(amount),
        asset=asset,
        operation_label=label,
    )


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def make_event():
    """Factory for raw ledger events at T0 + seconds."""
    return _make_event


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backing() -> FakeBackingStore:
    return FakeBackingStore()


@pytest.fixture
def local_cache(clock: FakeClock) -> PriceCache:
    """Cache running on the local tier only."""
    return PriceCache(backing=None, default_ttl=3600, clock=clock)


@pytest.fixture
def rates() -> FakeRates:
    return FakeRates()


@pytest.fixture
async def store():
    """An in-memory SqliteStore."""
    s = SqliteStore(StorageConfig(sqlite_path=":memory:"))
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def make_rates():
    """Factory for FakeRates with extra unit prices."""
    return FakeRates
