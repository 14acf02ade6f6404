"""CSV import use case: parse, reconcile, persist with duplicate detection."""

from __future__ import annotations

import csv
import logging

from portefeuille.core.exceptions import LedgerImportError
from portefeuille.core.models import (
    AssetRecord,
    ImportSummary,
    LedgerSource,
    NormalizedTransaction,
    PricePointRecord,
    ReconciliationReport,
)
from portefeuille.ledger.csv_parsing import (
    ROW_PARSERS,
    parse_binance_events,
    read_records,
    resolve_source,
)
from portefeuille.ledger.reconciler import LedgerReconciler
from portefeuille.storage.store import RecordStore

logger = logging.getLogger(__name__)


class CsvImporter:
    """Imports one broker or exchange export into a portfolio.

    Parameters
    ----------
    store : RecordStore
        Destination of assets, transactions and price points.
    reconciler : LedgerReconciler
        Turns Binance event streams into transactions.
    """

    def __init__(self, store: RecordStore, reconciler: LedgerReconciler) -> None:
        self._store = store
        self._reconciler = reconciler

    async def import_csv(
        self, portfolio_id: int, source: LedgerSource | str, text: str
    ) -> ImportSummary:
        """Import ``text`` exported by ``source``.

        An identical transaction already on record (same asset, direction,
        date, quantity, price and source) counts as skipped. Every imported
        row also records its price as the asset's price point for that day.

        Raises:
            LedgerImportError: Unknown source or unreadable CSV.
            StorageError: The record store failed.
        """
        ledger_source = source if isinstance(source, LedgerSource) else resolve_source(source)
        transactions, report = await self._parse(ledger_source, text)

        imported = skipped = 0
        assets: dict[str, AssetRecord] = {}
        for transaction in transactions:
            asset = assets.get(transaction.symbol)
            if asset is None:
                asset = await self._asset_for(portfolio_id, transaction)
                assets[transaction.symbol] = asset

            if await self._store.transaction_exists(
                asset.id,
                transaction.direction,
                transaction.date,
                transaction.quantity,
                transaction.unit_price,
                transaction.provenance,
            ):
                skipped += 1
            else:
                await self._store.add_transaction(
                    asset.id,
                    transaction.direction,
                    transaction.quantity,
                    transaction.unit_price,
                    transaction.date,
                    source=transaction.provenance,
                    fee=transaction.fee,
                )
                imported += 1

            await self._store.upsert_price_point(
                PricePointRecord(
                    asset_id=asset.id,
                    date=transaction.date,
                    price=transaction.unit_price,
                    source=transaction.provenance,
                )
            )

        logger.info(
            "Imported %s CSV into portfolio %d: %d imported, %d skipped",
            ledger_source,
            portfolio_id,
            imported,
            skipped,
        )
        return ImportSummary(
            source=ledger_source, imported=imported, skipped=skipped, reconciliation=report
        )

    async def _parse(
        self, source: LedgerSource, text: str
    ) -> tuple[list[NormalizedTransaction], ReconciliationReport | None]:
        try:
            records = read_records(text)
        except (csv.Error, ValueError) as e:
            raise LedgerImportError(
                f"Unreadable {source} CSV: {e}", context={"source": str(source)}
            ) from e

        if source == LedgerSource.BINANCE:
            report = await self._reconciler.reconcile_report(parse_binance_events(records))
            return report.transactions, report
        return ROW_PARSERS[source](records), None

    async def _asset_for(
        self, portfolio_id: int, transaction: NormalizedTransaction
    ) -> AssetRecord:
        existing = await self._store.find_asset(portfolio_id, transaction.symbol)
        if existing is not None:
            return existing
        logger.debug("Creating asset %s in portfolio %d", transaction.symbol, portfolio_id)
        return await self._store.create_asset(
            portfolio_id,
            transaction.symbol,
            transaction.display_name,
            transaction.asset_class,
        )
