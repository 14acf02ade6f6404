"""Store-backed price refresh and history backfill."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from portefeuille.core.exceptions import PortefeuilleError, StorageError
from portefeuille.core.models import (
    AssetId,
    AssetRecord,
    BackfillEntry,
    BackfillOutcome,
    PricePointRecord,
    PriceQuote,
    PriceSource,
    RefreshFailure,
    RefreshOutcome,
    RefreshResult,
)
from portefeuille.pricing.attempts import run_batch
from portefeuille.pricing.fetcher import QuoteFetcher, is_cash_symbol, is_manual_symbol
from portefeuille.storage.store import RecordStore

logger = logging.getLogger(__name__)


class StoreManualPriceSource:
    """Manual price of an asset: its latest transaction, else its latest price point."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    async def latest_manual_quote(self, asset_id: AssetId) -> PriceQuote | None:
        transaction = await self._store.latest_transaction(asset_id)
        if transaction is not None and transaction.price > 0:
            return PriceQuote(
                price=transaction.price,
                as_of=transaction.date,
                source=PriceSource.MANUAL,
            )
        point = await self._store.latest_price_point(asset_id)
        if point is not None and point.price > 0:
            return PriceQuote(price=point.price, as_of=point.date, source=PriceSource.MANUAL)
        return None


class PriceRefreshService:
    """Refreshes stored prices of assets through a QuoteFetcher.

    Parameters
    ----------
    store : RecordStore
        Source of assets and transactions; destination of price points.
    fetcher : QuoteFetcher
        Resolves quotes and historical series.
    """

    def __init__(self, store: RecordStore, fetcher: QuoteFetcher) -> None:
        self._store = store
        self._fetcher = fetcher

    async def _require_asset(self, asset_id: AssetId) -> AssetRecord:
        asset = await self._store.get_asset(asset_id)
        if asset is None:
            raise StorageError(
                f"Asset {asset_id} not found",
                context={"operation": "query", "table": "assets", "asset_id": asset_id},
            )
        return asset

    async def refresh_asset_price(self, asset_id: AssetId) -> RefreshResult:
        """Fetch the current price of one asset and record it.

        The price point is keyed by (asset, day) so a second refresh on the
        same day replaces the first.

        Raises:
            StorageError: Unknown asset or write failure.
            NoPriceFound: No route produced a price.
        """
        asset = await self._require_asset(asset_id)
        quote = await self._fetcher.get_spot(
            asset.symbol,
            [asset.name],
            asset_class=asset.asset_class,
            asset_id=asset.id,
        )
        await self._store.upsert_price_point(
            PricePointRecord(
                asset_id=asset.id,
                date=quote.as_of,
                price=quote.price,
                source=str(quote.source),
            )
        )
        updated_at = datetime.now(timezone.utc)
        await self._store.touch_asset_price(asset.id, updated_at)
        logger.debug("Refreshed %s: %s (%s)", asset.symbol, quote.price, quote.source)
        return RefreshResult(
            asset_id=asset.id,
            price=quote.price,
            price_date=quote.as_of,
            source=quote.source,
            last_price_update_at=updated_at,
        )

    async def refresh_all(self, portfolio_id: int | None = None) -> RefreshOutcome:
        """Refresh every asset (of one portfolio, or all), isolating failures."""
        assets = await self._store.list_assets(portfolio_id)
        batch = await run_batch([a.id for a in assets], self.refresh_asset_price)
        logger.info(
            "Price refresh: %d refreshed, %d failed", len(batch.results), len(batch.failures)
        )
        return RefreshOutcome(
            refreshed=[result for _, result in batch.results],
            failures=[RefreshFailure(asset_id=i, message=m) for i, m in batch.failures],
        )

    def _is_reference(self, symbol: str) -> bool:
        return symbol.strip().upper() == self._fetcher.reference_currency

    async def backfill_price_history(self, portfolio_id: int | None = None) -> BackfillOutcome:
        """Load each asset's daily history starting at its first purchase.

        Cash placeholders (including the reference currency), manually
        priced assets and assets never bought are skipped. A failing asset
        is recorded and the run continues.
        """
        processed: list[BackfillEntry] = []
        skipped: list[BackfillEntry] = []
        errors: list[BackfillEntry] = []

        for asset in await self._store.list_assets(portfolio_id):
            if is_cash_symbol(asset.symbol) or self._is_reference(asset.symbol):
                skipped.append(BackfillEntry(asset_id=asset.id, symbol=asset.symbol, reason="cash"))
                continue
            if is_manual_symbol(asset.symbol):
                skipped.append(
                    BackfillEntry(asset_id=asset.id, symbol=asset.symbol, reason="manual price")
                )
                continue
            first_buy = await self._store.first_buy(asset.id)
            if first_buy is None:
                skipped.append(
                    BackfillEntry(asset_id=asset.id, symbol=asset.symbol, reason="no purchases")
                )
                continue

            try:
                series = await self._fetcher.get_historical(
                    asset.symbol,
                    [asset.name],
                    first_buy.date,
                    asset_class=asset.asset_class,
                )
                inserted = await self._store.upsert_price_points(
                    PricePointRecord(
                        asset_id=asset.id,
                        date=point.date,
                        price=point.price,
                        source=str(series.source),
                    )
                    for point in series.points
                )
            except PortefeuilleError as exc:
                logger.warning("Backfill failed for %s: %s", asset.symbol, exc)
                errors.append(
                    BackfillEntry(asset_id=asset.id, symbol=asset.symbol, reason=str(exc))
                )
                continue
            processed.append(
                BackfillEntry(asset_id=asset.id, symbol=asset.symbol, points_inserted=inserted)
            )

        logger.info(
            "History backfill: %d processed, %d skipped, %d errors",
            len(processed),
            len(skipped),
            len(errors),
        )
        return BackfillOutcome(processed=processed, skipped=skipped, errors=errors)
