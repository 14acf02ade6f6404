"""LedgerReconciler: turns an exchange event stream into buy/sell transactions.

Conversions on an exchange show up as two opposite-signed events a few
seconds apart (``spend`` + ``buy``, ``sell`` + ``revenue``). Events are
walked in time order; each half of a conversion waits in a pending window
until its counterpart arrives, and the nearest counterpart within the
pairing window is consumed. Deposits and withdrawals are single-sided and
priced directly at the current reference rate.

Counter-values are converted with the rate at reconciliation time, not
the rate at the event's own timestamp.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Protocol

from portefeuille.core.exceptions import PortefeuilleError
from portefeuille.core.models import (
    AssetClass,
    Direction,
    NormalizedTransaction,
    PriceQuote,
    RawLedgerEvent,
    ReconciliationReport,
)
from portefeuille.ledger.classify import OperationKind, classify
from portefeuille.ledger.window import PendingWindow

logger = logging.getLogger(__name__)

PROVENANCE = "binance"


class ReferenceRates(Protocol):
    """Reference-currency pricing used for counter-values."""

    @property
    def reference_currency(self) -> str: ...

    async def spot_in_reference(self, symbol: str) -> PriceQuote: ...

    async def convert_to_reference(self, symbol: str, amount: Decimal) -> Decimal: ...


@dataclass
class _Tally:
    transactions: list[NormalizedTransaction] = field(default_factory=list)
    processed: int = 0
    skipped: int = 0
    errored: int = 0
    errors: list[str] = field(default_factory=list)


def _transaction(
    event: RawLedgerEvent,
    quantity: Decimal,
    price: Decimal,
    direction: Direction,
    asset_class: AssetClass,
) -> NormalizedTransaction:
    return NormalizedTransaction(
        symbol=event.asset,
        display_name=event.asset,
        asset_class=asset_class,
        date=event.timestamp,
        unit_price=price,
        quantity=quantity,
        direction=direction,
        provenance=PROVENANCE,
    )


def _tradeable(quantity: Decimal, value: Decimal) -> bool:
    if quantity <= 0 or value <= 0:
        return False
    price = value / quantity
    return price.is_finite() and price > 0


class LedgerReconciler:
    """Pairs opposite-signed exchange events into normalized transactions.

    Parameters
    ----------
    rates : ReferenceRates
        Prices counter-values and single-sided movements.
    window_seconds : int
        Maximum distance in time between the two halves of a conversion.
    """

    def __init__(self, rates: ReferenceRates, window_seconds: int = 120) -> None:
        self._rates = rates
        self._window = timedelta(seconds=window_seconds)

    def _leg(
        self, event: RawLedgerEvent, quantity: Decimal, price: Decimal, direction: Direction
    ) -> NormalizedTransaction:
        """One transaction; the reference currency is a cash leg, anything else crypto."""
        is_cash = event.asset.strip().upper() == self._rates.reference_currency
        asset_class = AssetClass.OTHER if is_cash else AssetClass.CRYPTO
        return _transaction(event, quantity, price, direction, asset_class)

    async def reconcile(self, events: list[RawLedgerEvent]) -> list[NormalizedTransaction]:
        report = await self.reconcile_report(events)
        return report.transactions

    async def reconcile_report(self, events: list[RawLedgerEvent]) -> ReconciliationReport:
        """Reconcile a batch of events. Never raises for a single bad event."""
        ordered = sorted(events, key=lambda e: (e.timestamp, e.sequence_index))
        pending = {
            kind: PendingWindow(self._window)
            for kind in (
                OperationKind.SPEND,
                OperationKind.BUY,
                OperationKind.SELL,
                OperationKind.REVENUE,
            )
        }
        # Each side waits in its own window and is matched against its counterpart's.
        counterpart = {
            OperationKind.SELL: OperationKind.REVENUE,
            OperationKind.REVENUE: OperationKind.SELL,
            OperationKind.BUY: OperationKind.SPEND,
            OperationKind.SPEND: OperationKind.BUY,
        }
        tally = _Tally()

        for event in ordered:
            kind = classify(event)
            if kind in (OperationKind.FEE, OperationKind.UNCLASSIFIED):
                logger.debug("Skipping %s event #%d (%s)", kind, event.sequence_index, event.operation_label)
                tally.skipped += 1
            elif kind in (OperationKind.DEPOSIT, OperationKind.WITHDRAWAL):
                await self._single_sided(event, kind, tally)
            else:
                match = pending[counterpart[kind]].take_nearest(event.timestamp)
                if match is None:
                    pending[kind].add(event)
                elif kind in (OperationKind.SELL, OperationKind.BUY):
                    await self._pair(event, match, kind, tally)
                else:
                    await self._pair(match, event, counterpart[kind], tally)

            threshold = event.timestamp - self._window
            for window in pending.values():
                evicted = window.evict_before(threshold)
                if evicted:
                    logger.debug("Evicted %d unmatched event(s)", len(evicted))
                    tally.skipped += len(evicted)

        for window in pending.values():
            tally.skipped += len(window.drain())

        logger.info(
            "Reconciled %d events: %d transactions, %d processed, %d skipped, %d errored",
            len(ordered),
            len(tally.transactions),
            tally.processed,
            tally.skipped,
            tally.errored,
        )
        return ReconciliationReport(
            transactions=tally.transactions,
            processed=tally.processed,
            skipped=tally.skipped,
            errored=tally.errored,
            errors=tally.errors,
        )

    async def _single_sided(
        self, event: RawLedgerEvent, kind: OperationKind, tally: _Tally
    ) -> None:
        quantity = abs(event.signed_amount)
        try:
            quote = await self._rates.spot_in_reference(event.asset)
        except PortefeuilleError as exc:
            self._record_error(tally, [event], exc)
            return
        direction = Direction.BUY if kind == OperationKind.DEPOSIT else Direction.SELL
        tally.transactions.append(self._leg(event, quantity, quote.price, direction))
        tally.processed += 1

    async def _pair(
        self,
        primary: RawLedgerEvent,
        counter: RawLedgerEvent,
        kind: OperationKind,
        tally: _Tally,
    ) -> None:
        """Emit both legs of a conversion.

        ``primary`` is the buy (or sell) event, ``counter`` the spend (or
        revenue) that paid for it. The counter-value in the reference
        currency prices both legs.
        """
        primary_qty = abs(primary.signed_amount)
        counter_qty = abs(counter.signed_amount)
        if counter_qty <= 0 or primary_qty <= 0:
            tally.skipped += 2
            return
        try:
            value = await self._rates.convert_to_reference(counter.asset, counter_qty)
        except PortefeuilleError as exc:
            self._record_error(tally, [primary, counter], exc)
            return
        if not (_tradeable(primary_qty, value) and _tradeable(counter_qty, value)):
            logger.debug(
                "Dropping degenerate pair #%d/#%d", primary.sequence_index, counter.sequence_index
            )
            tally.skipped += 2
            return

        if kind == OperationKind.BUY:
            legs = [
                self._leg(primary, primary_qty, value / primary_qty, Direction.BUY),
                self._leg(counter, counter_qty, value / counter_qty, Direction.SELL),
            ]
        else:
            legs = [
                self._leg(primary, primary_qty, value / primary_qty, Direction.SELL),
                self._leg(counter, counter_qty, value / counter_qty, Direction.BUY),
            ]
        tally.transactions.extend(legs)
        tally.processed += 2

    @staticmethod
    def _record_error(
        tally: _Tally, events: list[RawLedgerEvent], exc: PortefeuilleError
    ) -> None:
        labels = ", ".join(f"#{e.sequence_index} {e.asset}" for e in events)
        message = f"{labels}: {exc}"
        logger.warning("Unable to price ledger event(s) %s", message)
        tally.errored += len(events)
        tally.errors.append(message)
