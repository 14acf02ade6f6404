"""Pydantic data models: the system's type contracts."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, field_validator

# --- Type Aliases ---

Symbol = str
CacheKey = str
AssetId = int

# --- Enumerations ---


class AssetClass(StrEnum):
    """Instrument classification used to route price lookups."""

    STOCK = "STOCK"
    ETF = "ETF"
    FUND = "FUND"
    CRYPTO = "CRYPTO"
    OTHER = "OTHER"


class Direction(StrEnum):
    """Side of a normalized transaction."""

    BUY = "BUY"
    SELL = "SELL"


class PriceSource(StrEnum):
    """Where a quote came from."""

    PRIMARY_MARKET = "primary-market"
    PRIMARY_CHART = "primary-chart"
    CRYPTO_EXCHANGE = "crypto-exchange"
    STATIC = "static"
    MANUAL = "manual"


class LedgerSource(StrEnum):
    """Supported ledger export formats."""

    BINANCE = "binance"
    COINBASE = "coinbase"
    CREDIT_AGRICOLE = "credit-agricole"


def to_positive_decimal(value: object) -> Decimal | None:
    """Coerce an upstream number (JSON float, numeric string) to a positive Decimal.

    Returns None for missing, non-numeric, non-finite, zero or negative
    values: those mean "no price", never a valid zero price.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite() or result <= 0:
        return None
    return result


def _require_positive(value: Decimal, field: str) -> Decimal:
    if not value.is_finite() or value <= 0:
        raise ValueError(f"{field} must be a positive finite number, got {value}")
    return value


# --- Price Models ---


class PriceQuote(BaseModel):
    """A single resolved price, expressed in the reference currency."""

    model_config = ConfigDict(frozen=True)

    price: Decimal
    as_of: datetime
    source: PriceSource
    symbol: Symbol | None = None

    @field_validator("price")
    @classmethod
    def price_positive(cls, v: Decimal) -> Decimal:
        return _require_positive(v, "price")


class PricePoint(BaseModel):
    """One observation of a historical series."""

    model_config = ConfigDict(frozen=True)

    date: datetime
    price: Decimal

    @field_validator("price")
    @classmethod
    def price_positive(cls, v: Decimal) -> Decimal:
        return _require_positive(v, "price")


class HistoricalSeries(BaseModel):
    """A historical series together with the symbol that produced it."""

    model_config = ConfigDict(frozen=True)

    symbol: Symbol
    source: PriceSource
    points: list[PricePoint]


class Session(BaseModel):
    """Authenticated context for the equity provider. Replaced wholesale on renewal."""

    model_config = ConfigDict(frozen=True)

    cookie: str
    crumb: str | None = None
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class CacheStats(BaseModel):
    """Snapshot of the two-tier price cache."""

    model_config = ConfigDict(frozen=True)

    enabled: bool
    backing_store_connected: bool
    entry_count: int
    fallback_entry_count: int


# --- Ledger Models ---


class RawLedgerEvent(BaseModel):
    """One line of an exchange export, not yet classified or priced."""

    model_config = ConfigDict(frozen=True)

    sequence_index: int
    timestamp: datetime
    signed_amount: Decimal
    asset: Symbol
    operation_label: str

    @field_validator("asset")
    @classmethod
    def asset_upper(cls, v: str) -> str:
        return v.strip().upper()


class NormalizedTransaction(BaseModel):
    """A buy or sell ready to be handed to the persistence layer.

    Quantity and unit price are always strictly positive.
    """

    model_config = ConfigDict(frozen=True)

    symbol: Symbol
    display_name: str
    asset_class: AssetClass
    date: datetime
    unit_price: Decimal
    quantity: Decimal
    direction: Direction
    provenance: str
    fee: Decimal | None = None

    @field_validator("unit_price")
    @classmethod
    def unit_price_positive(cls, v: Decimal) -> Decimal:
        return _require_positive(v, "unit_price")

    @field_validator("quantity")
    @classmethod
    def quantity_positive(cls, v: Decimal) -> Decimal:
        return _require_positive(v, "quantity")

    @field_validator("fee")
    @classmethod
    def fee_non_negative(cls, v: Decimal | None) -> Decimal | None:
        if v is not None and v < 0:
            raise ValueError(f"fee must be >= 0, got {v}")
        return v


class ReconciliationReport(BaseModel):
    """Outcome of one reconciliation run. Never fails atomically."""

    model_config = ConfigDict(frozen=True)

    transactions: list[NormalizedTransaction]
    processed: int = 0
    skipped: int = 0
    errored: int = 0
    errors: list[str] = []


# --- Persisted Records ---


class AssetRecord(BaseModel):
    """An asset row as held by the record store."""

    model_config = ConfigDict(frozen=True)

    id: AssetId
    portfolio_id: int
    symbol: Symbol
    name: str
    asset_class: AssetClass = AssetClass.OTHER
    last_price_update_at: datetime | None = None


class TransactionRecord(BaseModel):
    """A stored transaction."""

    model_config = ConfigDict(frozen=True)

    id: int
    asset_id: AssetId
    direction: Direction
    quantity: Decimal
    price: Decimal
    date: datetime
    source: str | None = None
    fee: Decimal | None = None


class PricePointRecord(BaseModel):
    """A stored price observation, unique per (asset, date)."""

    model_config = ConfigDict(frozen=True)

    asset_id: AssetId
    date: datetime
    price: Decimal
    source: str


# --- Batch Outcomes ---


class RefreshResult(BaseModel):
    """One successfully refreshed asset."""

    model_config = ConfigDict(frozen=True)

    asset_id: AssetId
    price: Decimal
    price_date: datetime
    source: PriceSource
    last_price_update_at: datetime


class RefreshFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    asset_id: AssetId
    message: str


class RefreshOutcome(BaseModel):
    """Result of a refresh-all run: successes and isolated failures."""

    model_config = ConfigDict(frozen=True)

    refreshed: list[RefreshResult] = []
    failures: list[RefreshFailure] = []


class BackfillEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    asset_id: AssetId
    symbol: Symbol
    points_inserted: int = 0
    reason: str | None = None


class BackfillOutcome(BaseModel):
    """Result of a history backfill: processed, skipped and errored assets."""

    model_config = ConfigDict(frozen=True)

    processed: list[BackfillEntry] = []
    skipped: list[BackfillEntry] = []
    errors: list[BackfillEntry] = []


class ImportSummary(BaseModel):
    """Result of a CSV import."""

    model_config = ConfigDict(frozen=True)

    source: LedgerSource
    imported: int
    skipped: int
    reconciliation: ReconciliationReport | None = None
