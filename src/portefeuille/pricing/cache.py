"""Two-tier price cache: shared Redis tier with a process-local fallback.

The local tier is written on every successful ``put`` regardless of what
the shared tier does, so a Redis outage degrades lookups to the local
copy instead of to the network. Cache failures are never raised to
callers; a miss is always an acceptable answer.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from decimal import Decimal, InvalidOperation
from typing import Protocol, TypeVar, runtime_checkable

import redis.asyncio as aioredis
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from redis.exceptions import RedisError

from portefeuille.core.config import CacheConfig
from portefeuille.core.exceptions import CacheUnavailable
from portefeuille.core.models import CacheStats

logger = logging.getLogger(__name__)

PRICE_KEY_PREFIX = "price:"
RECHECK_SECONDS = 30.0

T = TypeVar("T")


def normalise_key(raw: str) -> str | None:
    """Namespace a cache key as ``price:<namespace>:<SYMBOL>``.

    ``"yahoo:air.pa"`` becomes ``"price:yahoo:AIR.PA"``; a key without a
    namespace becomes ``"price:<SYMBOL>"``. Blank keys yield None.
    """
    if not raw:
        return None
    trimmed = raw.strip()
    if not trimmed:
        return None
    namespace, sep, symbol = trimmed.partition(":")
    if not sep:
        return f"{PRICE_KEY_PREFIX}{trimmed.upper()}"
    return f"{PRICE_KEY_PREFIX}{namespace.lower()}:{symbol.upper()}"


def _parse_price(raw: str | bytes | None) -> Decimal | None:
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode()
    try:
        value = Decimal(raw)
    except InvalidOperation:
        return None
    if not value.is_finite() or value <= 0:
        return None
    return value


@runtime_checkable
class BackingStore(Protocol):
    """Shared, TTL-native key/value tier. Every operation may raise CacheUnavailable."""

    @property
    def connected(self) -> bool: ...
    async def connect(self) -> bool: ...
    async def get(self, key: str) -> str | None: ...
    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...
    async def delete(self, key: str) -> int: ...
    async def delete_prefix(self, prefix: str) -> int: ...
    async def count(self, prefix: str) -> int: ...
    async def close(self) -> None: ...


class RedisBackingStore:
    """Redis implementation of the shared tier.

    Connection errors flip ``connected`` to False and surface as
    CacheUnavailable; the next successful command flips it back. The
    client never retries a failed command.
    """

    def __init__(self, config: CacheConfig) -> None:
        self._config = config
        self._client = aioredis.Redis(
            host=config.host,
            port=config.port,
            db=config.db,
            password=config.password,
            socket_connect_timeout=config.connect_timeout,
            socket_timeout=config.connect_timeout,
            decode_responses=True,
            retry=Retry(NoBackoff(), 0),
        )
        self._ready = False

    @property
    def connected(self) -> bool:
        return self._ready

    async def connect(self) -> bool:
        """Ping the server once. Returns whether it answered."""
        try:
            await self._call("ping", self._client.ping)
        except CacheUnavailable as exc:
            logger.warning(
                "Redis unreachable at %s:%d, running on local cache only: %s",
                self._config.host, self._config.port, exc,
            )
            return False
        logger.info("Redis connected at %s:%d", self._config.host, self._config.port)
        return True

    async def _call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            result = await fn()
        except (RedisError, OSError) as exc:
            self._ready = False
            raise CacheUnavailable(
                f"Redis {operation} failed: {exc}",
                context={"operation": operation},
            ) from exc
        self._ready = True
        return result

    async def get(self, key: str) -> str | None:
        return await self._call("get", lambda: self._client.get(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._call("set", lambda: self._client.setex(key, ttl_seconds, value))

    async def delete(self, key: str) -> int:
        return await self._call("delete", lambda: self._client.delete(key))

    async def delete_prefix(self, prefix: str) -> int:
        async def _scan_and_delete() -> int:
            deleted = 0
            batch: list[str] = []
            async for key in self._client.scan_iter(match=f"{prefix}*", count=100):
                batch.append(key)
                if len(batch) >= 100:
                    deleted += await self._client.delete(*batch)
                    batch = []
            if batch:
                deleted += await self._client.delete(*batch)
            return deleted

        return await self._call("scan", _scan_and_delete)

    async def count(self, prefix: str) -> int:
        async def _count() -> int:
            total = 0
            async for _ in self._client.scan_iter(match=f"{prefix}*", count=100):
                total += 1
            return total

        return await self._call("scan", _count)

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except (RedisError, OSError) as exc:
            logger.warning("Failed to close Redis connection: %s", exc)
        finally:
            self._ready = False


class PriceCache:
    """Read-through / write-through symbol → price cache.

    Parameters
    ----------
    backing : BackingStore | None
        Shared tier. None runs the cache on the local tier alone (cache
        disabled in config).
    default_ttl : int
        Seconds an entry lives when ``put`` is called without a TTL.
    clock : Callable[[], float]
        Monotonic clock used for local expiry. Injected by tests.
    recheck_seconds : float
        While the shared tier is disconnected, ``get`` and ``put`` try it
        again at most once per this many seconds.
    """

    def __init__(
        self,
        backing: BackingStore | None = None,
        default_ttl: int = 3600,
        clock: Callable[[], float] = time.monotonic,
        recheck_seconds: float = RECHECK_SECONDS,
    ) -> None:
        self._backing = backing
        self._default_ttl = default_ttl
        self._clock = clock
        self._local: dict[str, tuple[Decimal, float]] = {}
        self._outage_logged = False
        self._recheck_seconds = recheck_seconds
        self._last_attempt: float | None = None

    # --- Outage bookkeeping ---

    def _note_outage(self, exc: CacheUnavailable) -> None:
        self._last_attempt = self._clock()
        if not self._outage_logged:
            self._outage_logged = True
            logger.warning("Shared price cache unavailable, using local tier: %s", exc)

    def _note_recovery(self) -> None:
        if self._outage_logged:
            self._outage_logged = False
            logger.info("Shared price cache reachable again")

    def _shared_tier(self) -> BackingStore | None:
        """The shared tier if it should be tried now, else None."""
        if self._backing is None:
            return None
        if self._backing.connected:
            return self._backing
        now = self._clock()
        if self._last_attempt is not None and now - self._last_attempt < self._recheck_seconds:
            return None
        self._last_attempt = now
        return self._backing

    # --- Local tier ---

    def _remember(self, key: str, price: Decimal, ttl: int) -> None:
        self._local[key] = (price, self._clock() + ttl)

    def _recall(self, key: str) -> Decimal | None:
        entry = self._local.get(key)
        if entry is None:
            return None
        price, expires_at = entry
        if expires_at <= self._clock():
            self._local.pop(key, None)
            return None
        return price

    def _live_local_count(self) -> int:
        now = self._clock()
        expired = [k for k, (_, exp) in self._local.items() if exp <= now]
        for k in expired:
            self._local.pop(k, None)
        return len(self._local)

    # --- Public contract ---

    async def connect(self) -> bool:
        """Try the shared tier once. Returns whether it answered."""
        if self._backing is None:
            return False
        self._last_attempt = self._clock()
        return await self._backing.connect()

    async def get(self, key: str) -> Decimal | None:
        """Return the cached price for ``key``, or None.

        A shared-tier hit also extends the local copy's lifetime. A
        disconnected shared tier is skipped between rechecks.
        """
        redis_key = normalise_key(key)
        if redis_key is None:
            return None

        backing = self._shared_tier()
        if backing is not None:
            try:
                raw = await backing.get(redis_key)
            except CacheUnavailable as exc:
                self._note_outage(exc)
            else:
                self._note_recovery()
                price = _parse_price(raw)
                if price is not None:
                    self._remember(redis_key, price, self._default_ttl)
                    return price

        return self._recall(redis_key)

    async def put(self, key: str, price: Decimal, ttl_seconds: int | None = None) -> None:
        """Store ``price`` in both tiers. Non-positive or non-finite prices are ignored."""
        redis_key = normalise_key(key)
        if redis_key is None or not price.is_finite() or price <= 0:
            return
        ttl = ttl_seconds if ttl_seconds and ttl_seconds > 0 else self._default_ttl

        self._remember(redis_key, price, ttl)

        backing = self._shared_tier()
        if backing is None:
            return
        try:
            await backing.set(redis_key, str(price), ttl)
        except CacheUnavailable as exc:
            self._note_outage(exc)
        else:
            self._note_recovery()

    async def invalidate(self, key: str | None = None) -> int:
        """Drop one key, or every price key when ``key`` is None.

        The local tier is always cleared; the shared tier is best-effort.
        Returns the number of shared-tier keys removed (0 when unreachable).
        """
        if key is None:
            self._local.clear()
            if self._backing is None:
                return 0
            try:
                removed = await self._backing.delete_prefix(PRICE_KEY_PREFIX)
            except CacheUnavailable as exc:
                self._note_outage(exc)
                return 0
            logger.info("Price cache purged (%d shared keys removed)", removed)
            return removed

        redis_key = normalise_key(key)
        if redis_key is None:
            return 0
        self._local.pop(redis_key, None)
        if self._backing is None:
            return 0
        try:
            return await self._backing.delete(redis_key)
        except CacheUnavailable as exc:
            self._note_outage(exc)
            return 0

    async def stats(self) -> CacheStats:
        local_count = self._live_local_count()
        if self._backing is None:
            return CacheStats(
                enabled=False,
                backing_store_connected=False,
                entry_count=local_count,
                fallback_entry_count=local_count,
            )
        try:
            shared_count = await self._backing.count(PRICE_KEY_PREFIX)
        except CacheUnavailable as exc:
            self._note_outage(exc)
            shared_count = local_count
        return CacheStats(
            enabled=True,
            backing_store_connected=self._backing.connected,
            entry_count=shared_count,
            fallback_entry_count=local_count,
        )

    async def close(self) -> None:
        if self._backing is not None:
            await self._backing.close()
