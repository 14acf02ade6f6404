"""Record store: Protocol definition, SQLite implementation, factory."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import ClassVar, Protocol, runtime_checkable

import aiosqlite

from portefeuille.core.config import StorageConfig
from portefeuille.core.exceptions import StorageError
from portefeuille.core.models import (
    AssetClass,
    AssetId,
    AssetRecord,
    Direction,
    PricePointRecord,
    TransactionRecord,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class RecordStore(Protocol):
    """Keyed record store consumed by the refresh and import use cases."""

    async def get_asset(self, asset_id: AssetId) -> AssetRecord | None: ...
    async def list_assets(self, portfolio_id: int | None = None) -> list[AssetRecord]: ...
    async def find_asset(self, portfolio_id: int, symbol: str) -> AssetRecord | None: ...
    async def create_asset(
        self,
        portfolio_id: int,
        symbol: str,
        name: str,
        asset_class: AssetClass = AssetClass.OTHER,
    ) -> AssetRecord: ...
    async def touch_asset_price(self, asset_id: AssetId, at: datetime) -> None: ...
    async def add_transaction(
        self,
        asset_id: AssetId,
        direction: Direction,
        quantity: Decimal,
        price: Decimal,
        date: datetime,
        source: str | None = None,
        fee: Decimal | None = None,
    ) -> TransactionRecord: ...
    async def transaction_exists(
        self,
        asset_id: AssetId,
        direction: Direction,
        date: datetime,
        quantity: Decimal,
        price: Decimal,
        source: str | None,
    ) -> bool: ...
    async def latest_transaction(self, asset_id: AssetId) -> TransactionRecord | None: ...
    async def first_buy(self, asset_id: AssetId) -> TransactionRecord | None: ...
    async def upsert_price_point(self, point: PricePointRecord) -> None: ...
    async def upsert_price_points(self, points: Iterable[PricePointRecord]) -> int: ...
    async def latest_price_point(self, asset_id: AssetId) -> PricePointRecord | None: ...
    async def list_price_points(self, asset_id: AssetId) -> list[PricePointRecord]: ...
    async def initialize(self) -> None: ...
    async def close(self) -> None: ...
    async def health_check(self) -> bool: ...


def _to_text(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_text(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _decimal_text(value: Decimal) -> str:
    """Plain positional notation: 46000, never 4.600E+4."""
    return format(value, "f")


def _day_key(value: datetime) -> str:
    """Price points are unique per calendar day (UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).date().isoformat()


class SqliteStore:
    """SQLite implementation of the record store.

    Uses aiosqlite for async access and a version-tracked migration system.
    Decimal amounts are stored as TEXT so no precision is lost.
    """

    _MIGRATIONS: ClassVar[dict[int, tuple[str, list[str]]]] = {
        1: (
            "Initial schema",
            [
                """CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT DEFAULT (datetime('now'))
                )""",
                """CREATE TABLE IF NOT EXISTS assets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    portfolio_id INTEGER NOT NULL,
                    symbol TEXT NOT NULL,
                    name TEXT NOT NULL,
                    asset_class TEXT NOT NULL DEFAULT 'OTHER',
                    last_price_update_at TEXT,
                    UNIQUE(portfolio_id, symbol)
                )""",
                """CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    asset_id INTEGER NOT NULL REFERENCES assets(id),
                    direction TEXT NOT NULL,
                    quantity TEXT NOT NULL,
                    price TEXT NOT NULL,
                    date TEXT NOT NULL,
                    source TEXT,
                    fee TEXT
                )""",
                """CREATE TABLE IF NOT EXISTS price_points (
                    asset_id INTEGER NOT NULL REFERENCES assets(id),
                    day TEXT NOT NULL,
                    date TEXT NOT NULL,
                    price TEXT NOT NULL,
                    source TEXT NOT NULL,
                    PRIMARY KEY (asset_id, day)
                )""",
                "CREATE INDEX IF NOT EXISTS idx_assets_portfolio ON assets(portfolio_id)",
                "CREATE INDEX IF NOT EXISTS idx_transactions_asset_date ON transactions(asset_id, date)",
            ],
        ),
    }

    def __init__(self, config: StorageConfig) -> None:
        self._path = config.sqlite_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open connection, enable FK, run migrations."""
        try:
            if self._path != ":memory:":
                Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(self._path)
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("PRAGMA foreign_keys=ON")
            current = await self._get_schema_version()
            await self._apply_migrations(current)
            await self._db.commit()
        except Exception as e:
            raise StorageError(
                f"Failed to initialize SQLite store: {e}",
                context={"operation": "initialize", "path": self._path},
            ) from e

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def health_check(self) -> bool:
        if self._db is None:
            return False
        try:
            async with self._db.execute("SELECT 1") as cursor:
                row = await cursor.fetchone()
            return row is not None
        except aiosqlite.Error:
            return False

    # --- Schema Migration ---

    async def _get_schema_version(self) -> int:
        try:
            async with self._db.execute(
                "SELECT MAX(version) FROM schema_version"
            ) as cursor:
                row = await cursor.fetchone()
            return row[0] if row[0] is not None else 0
        except aiosqlite.OperationalError:
            return 0

    async def _apply_migrations(self, current_version: int) -> None:
        for version in sorted(self._MIGRATIONS.keys()):
            if version <= current_version:
                continue
            desc, statements = self._MIGRATIONS[version]
            logger.info("Applying migration %d: %s", version, desc)
            for sql in statements:
                await self._db.execute(sql)
            await self._db.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )

    def _require_db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageError(
                "Store is not initialized", context={"operation": "connect", "path": self._path}
            )
        return self._db

    async def _fetchall(self, sql: str, params: tuple, table: str) -> list[aiosqlite.Row]:
        db = self._require_db()
        try:
            async with db.execute(sql, params) as cursor:
                return list(await cursor.fetchall())
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to query {table}: {e}",
                context={"operation": "query", "table": table},
            ) from e

    async def _fetchone(self, sql: str, params: tuple, table: str) -> aiosqlite.Row | None:
        rows = await self._fetchall(sql, params, table)
        return rows[0] if rows else None

    # --- Assets ---

    async def get_asset(self, asset_id: AssetId) -> AssetRecord | None:
        row = await self._fetchone("SELECT * FROM assets WHERE id = ?", (asset_id,), "assets")
        return self._row_to_asset(row) if row else None

    async def list_assets(self, portfolio_id: int | None = None) -> list[AssetRecord]:
        if portfolio_id is None:
            rows = await self._fetchall("SELECT * FROM assets ORDER BY id", (), "assets")
        else:
            rows = await self._fetchall(
                "SELECT * FROM assets WHERE portfolio_id = ? ORDER BY id",
                (portfolio_id,),
                "assets",
            )
        return [self._row_to_asset(r) for r in rows]

    async def find_asset(self, portfolio_id: int, symbol: str) -> AssetRecord | None:
        row = await self._fetchone(
            "SELECT * FROM assets WHERE portfolio_id = ? AND symbol = ?",
            (portfolio_id, symbol),
            "assets",
        )
        return self._row_to_asset(row) if row else None

    async def create_asset(
        self,
        portfolio_id: int,
        symbol: str,
        name: str,
        asset_class: AssetClass = AssetClass.OTHER,
    ) -> AssetRecord:
        db = self._require_db()
        try:
            cursor = await db.execute(
                """INSERT INTO assets (portfolio_id, symbol, name, asset_class)
                   VALUES (?, ?, ?, ?)""",
                (portfolio_id, symbol, name, str(asset_class)),
            )
            await db.commit()
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to create asset {symbol}: {e}",
                context={"operation": "insert", "table": "assets", "symbol": symbol},
            ) from e
        return AssetRecord(
            id=cursor.lastrowid,
            portfolio_id=portfolio_id,
            symbol=symbol,
            name=name,
            asset_class=asset_class,
        )

    async def touch_asset_price(self, asset_id: AssetId, at: datetime) -> None:
        db = self._require_db()
        try:
            await db.execute(
                "UPDATE assets SET last_price_update_at = ? WHERE id = ?",
                (_to_text(at), asset_id),
            )
            await db.commit()
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to update asset {asset_id}: {e}",
                context={"operation": "update", "table": "assets", "asset_id": asset_id},
            ) from e

    # --- Transactions ---

    async def add_transaction(
        self,
        asset_id: AssetId,
        direction: Direction,
        quantity: Decimal,
        price: Decimal,
        date: datetime,
        source: str | None = None,
        fee: Decimal | None = None,
    ) -> TransactionRecord:
        db = self._require_db()
        try:
            cursor = await db.execute(
                """INSERT INTO transactions
                   (asset_id, direction, quantity, price, date, source, fee)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    asset_id,
                    str(direction),
                    _decimal_text(quantity),
                    _decimal_text(price),
                    _to_text(date),
                    source,
                    _decimal_text(fee) if fee is not None else None,
                ),
            )
            await db.commit()
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to save transaction: {e}",
                context={"operation": "insert", "table": "transactions", "asset_id": asset_id},
            ) from e
        return TransactionRecord(
            id=cursor.lastrowid,
            asset_id=asset_id,
            direction=direction,
            quantity=quantity,
            price=price,
            date=date,
            source=source,
            fee=fee,
        )

    async def transaction_exists(
        self,
        asset_id: AssetId,
        direction: Direction,
        date: datetime,
        quantity: Decimal,
        price: Decimal,
        source: str | None,
    ) -> bool:
        # Amounts are compared numerically: "0.50" and "0.5" are the same trade.
        rows = await self._fetchall(
            """SELECT quantity, price FROM transactions
               WHERE asset_id = ? AND direction = ? AND date = ? AND source IS ?""",
            (asset_id, str(direction), _to_text(date), source),
            "transactions",
        )
        return any(
            Decimal(r["quantity"]) == quantity and Decimal(r["price"]) == price for r in rows
        )

    async def latest_transaction(self, asset_id: AssetId) -> TransactionRecord | None:
        row = await self._fetchone(
            "SELECT * FROM transactions WHERE asset_id = ? ORDER BY date DESC, id DESC LIMIT 1",
            (asset_id,),
            "transactions",
        )
        return self._row_to_transaction(row) if row else None

    async def first_buy(self, asset_id: AssetId) -> TransactionRecord | None:
        row = await self._fetchone(
            """SELECT * FROM transactions WHERE asset_id = ? AND direction = ?
               ORDER BY date ASC, id ASC LIMIT 1""",
            (asset_id, str(Direction.BUY)),
            "transactions",
        )
        return self._row_to_transaction(row) if row else None

    async def list_transactions(self, asset_id: AssetId) -> list[TransactionRecord]:
        rows = await self._fetchall(
            "SELECT * FROM transactions WHERE asset_id = ? ORDER BY date, id",
            (asset_id,),
            "transactions",
        )
        return [self._row_to_transaction(r) for r in rows]

    # --- Price Points ---

    async def upsert_price_point(self, point: PricePointRecord) -> None:
        await self.upsert_price_points([point])

    async def upsert_price_points(self, points: Iterable[PricePointRecord]) -> int:
        rows = [
            (p.asset_id, _day_key(p.date), _to_text(p.date), _decimal_text(p.price), p.source)
            for p in points
        ]
        if not rows:
            return 0
        db = self._require_db()
        try:
            await db.executemany(
                """INSERT OR REPLACE INTO price_points (asset_id, day, date, price, source)
                   VALUES (?, ?, ?, ?, ?)""",
                rows,
            )
            await db.commit()
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to save price points: {e}",
                context={"operation": "upsert", "table": "price_points"},
            ) from e
        logger.debug("Upserted %d price points", len(rows))
        return len(rows)

    async def latest_price_point(self, asset_id: AssetId) -> PricePointRecord | None:
        row = await self._fetchone(
            "SELECT * FROM price_points WHERE asset_id = ? ORDER BY day DESC LIMIT 1",
            (asset_id,),
            "price_points",
        )
        return self._row_to_price_point(row) if row else None

    async def list_price_points(self, asset_id: AssetId) -> list[PricePointRecord]:
        rows = await self._fetchall(
            "SELECT * FROM price_points WHERE asset_id = ? ORDER BY day",
            (asset_id,),
            "price_points",
        )
        return [self._row_to_price_point(r) for r in rows]

    # --- Row Mapping ---

    @staticmethod
    def _row_to_asset(row: aiosqlite.Row) -> AssetRecord:
        return AssetRecord(
            id=row["id"],
            portfolio_id=row["portfolio_id"],
            symbol=row["symbol"],
            name=row["name"],
            asset_class=AssetClass(row["asset_class"]),
            last_price_update_at=_from_text(row["last_price_update_at"]),
        )

    @staticmethod
    def _row_to_transaction(row: aiosqlite.Row) -> TransactionRecord:
        return TransactionRecord(
            id=row["id"],
            asset_id=row["asset_id"],
            direction=Direction(row["direction"]),
            quantity=Decimal(row["quantity"]),
            price=Decimal(row["price"]),
            date=_from_text(row["date"]),
            source=row["source"],
            fee=Decimal(row["fee"]) if row["fee"] is not None else None,
        )

    @staticmethod
    def _row_to_price_point(row: aiosqlite.Row) -> PricePointRecord:
        return PricePointRecord(
            asset_id=row["asset_id"],
            date=_from_text(row["date"]),
            price=Decimal(row["price"]),
            source=row["source"],
        )


async def create_store(config: StorageConfig) -> SqliteStore:
    """Create and initialize the SQLite record store."""
    store = SqliteStore(config)
    await store.initialize()
    return store
