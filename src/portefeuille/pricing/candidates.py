"""Candidate symbol generation for ambiguous asset references."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Iterable, Sequence

from portefeuille.core.exceptions import InvalidSymbol, PortefeuilleError

logger = logging.getLogger(__name__)

SymbolSearch = Callable[[str], Awaitable[list[str]]]

ISIN_PATTERN = re.compile(r"^[A-Z]{2}[A-Z0-9]{9}[0-9]$")

# Exchange suffixes tried for a bare ticker, most likely first.
MARKET_SUFFIXES: tuple[str, ...] = ("PA", "AS", "MI", "DE", "F", "MC", "L", "IR", "VI")

# ISIN country prefix → exchange suffixes worth guessing.
ISIN_MARKET_GUESSES: dict[str, tuple[str, ...]] = {
    "FR": ("PA",),
    "LU": ("AS", "PA"),
    "NL": ("AS",),
    "DE": ("DE", "F"),
    "IT": ("MI",),
}

CRYPTO_QUOTE_SUFFIXES: tuple[str, ...] = ("USD", "EUR")


def is_isin(value: str) -> bool:
    return bool(ISIN_PATTERN.match(value))


def dedupe(values: Iterable[str]) -> list[str]:
    """Drop blanks and exact duplicates, keeping first-occurrence order."""
    return list(dict.fromkeys(v for v in values if v and v.strip()))


def static_candidates(raw_identifier: str) -> list[str]:
    """Guesses that need no network call, highest confidence first."""
    trimmed = raw_identifier.strip()
    upper = trimmed.upper()
    guesses = [trimmed, upper]

    if is_isin(upper):
        for suffix in ISIN_MARKET_GUESSES.get(upper[:2], ()):
            guesses.append(f"{upper}.{suffix}")
    elif "." not in upper:
        guesses.extend(f"{upper}.{suffix}" for suffix in MARKET_SUFFIXES)
        guesses.extend(f"{upper}-{quote_ccy}" for quote_ccy in CRYPTO_QUOTE_SUFFIXES)

    return dedupe(guesses)


class SymbolCandidateGenerator:
    """Builds the ordered list of symbols to try for a raw identifier.

    Static guesses come first; fuzzy search results for the identifier and
    each auxiliary hint (typically the asset's display name) follow. Search
    queries run concurrently and a failing query contributes nothing.
    """

    def __init__(self, search: SymbolSearch | None = None) -> None:
        self._search = search

    async def generate(
        self, raw_identifier: str, hints: Sequence[str] = ()
    ) -> list[str]:
        """Return deduplicated candidates in confidence order.

        Raises:
            InvalidSymbol: If the identifier is blank.
        """
        if not raw_identifier or not raw_identifier.strip():
            raise InvalidSymbol(
                "Empty instrument identifier", context={"symbol": raw_identifier}
            )

        guesses = static_candidates(raw_identifier)
        if self._search is None:
            return guesses

        queries = dedupe([raw_identifier.strip(), *(h.strip() for h in hints if h)])
        results = await asyncio.gather(*(self._safe_search(q) for q in queries))
        found = [symbol for batch in results for symbol in batch]
        return dedupe([*guesses, *found])

    async def _safe_search(self, query: str) -> list[str]:
        try:
            return await self._search(query)
        except PortefeuilleError as exc:
            logger.debug("Symbol search failed for %r: %s", query, exc)
            return []
