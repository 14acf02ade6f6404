"""Time-ordered index of ledger events waiting for their counterpart."""

from __future__ import annotations

import bisect
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from portefeuille.core.models import RawLedgerEvent


@dataclass(order=True, frozen=True)
class _Pending:
    timestamp: datetime
    order: int
    event: RawLedgerEvent = field(compare=False)


class PendingWindow:
    """Pending events of one category, kept sorted by (timestamp, enqueue order).

    ``take_nearest`` removes the entry closest in time to a reference
    instant. Among equally close entries the earliest enqueued wins, since
    the scan runs in sort order and only a strictly smaller delta replaces
    the current best.
    """

    def __init__(self, window: timedelta) -> None:
        self._window = window
        self._entries: list[_Pending] = []
        self._counter = itertools.count()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return (entry.event for entry in self._entries)

    def add(self, event: RawLedgerEvent) -> None:
        bisect.insort(self._entries, _Pending(event.timestamp, next(self._counter), event))

    def take_nearest(self, at: datetime) -> RawLedgerEvent | None:
        best_index: int | None = None
        best_delta: timedelta | None = None
        for index, entry in enumerate(self._entries):
            delta = abs(entry.timestamp - at)
            if delta > self._window:
                continue
            if best_delta is None or delta < best_delta:
                best_index, best_delta = index, delta
        if best_index is None:
            return None
        return self._entries.pop(best_index).event

    def evict_before(self, threshold: datetime) -> list[RawLedgerEvent]:
        """Remove and return every entry strictly older than ``threshold``."""
        cut = bisect.bisect_left([e.timestamp for e in self._entries], threshold)
        evicted = [e.event for e in self._entries[:cut]]
        del self._entries[:cut]
        return evicted

    def drain(self) -> list[RawLedgerEvent]:
        remaining = [e.event for e in self._entries]
        self._entries.clear()
        return remaining
