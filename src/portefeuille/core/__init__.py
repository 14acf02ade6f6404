"""portefeuille.core: Foundation types, config, and exceptions."""

from portefeuille.core.config import (
    CacheConfig,
    LedgerConfig,
    PortefeuilleConfig,
    PricingConfig,
    StorageConfig,
    UpstreamConfig,
    load_config,
)
from portefeuille.core.exceptions import (
    AuthenticationRequired,
    CacheUnavailable,
    ConfigError,
    ConversionRateUnavailable,
    InvalidSymbol,
    LedgerImportError,
    NoHistoryFound,
    NoPriceFound,
    PortefeuilleError,
    PricingError,
    StorageError,
    UpstreamUnavailable,
)
from portefeuille.core.models import (
    AssetClass,
    AssetRecord,
    BackfillEntry,
    BackfillOutcome,
    CacheStats,
    Direction,
    HistoricalSeries,
    ImportSummary,
    LedgerSource,
    NormalizedTransaction,
    PricePoint,
    PricePointRecord,
    PriceQuote,
    PriceSource,
    RawLedgerEvent,
    ReconciliationReport,
    RefreshFailure,
    RefreshOutcome,
    RefreshResult,
    Session,
    TransactionRecord,
)

__all__ = [
    # Enums
    "AssetClass",
    "Direction",
    "PriceSource",
    "LedgerSource",
    # Price models
    "PriceQuote",
    "PricePoint",
    "HistoricalSeries",
    "Session",
    "CacheStats",
    # Ledger models
    "RawLedgerEvent",
    "NormalizedTransaction",
    "ReconciliationReport",
    # Records
    "AssetRecord",
    "TransactionRecord",
    "PricePointRecord",
    # Batch outcomes
    "RefreshResult",
    "RefreshFailure",
    "RefreshOutcome",
    "BackfillEntry",
    "BackfillOutcome",
    "ImportSummary",
    # Config
    "PortefeuilleConfig",
    "PricingConfig",
    "CacheConfig",
    "UpstreamConfig",
    "LedgerConfig",
    "StorageConfig",
    "load_config",
    # Exceptions
    "PortefeuilleError",
    "ConfigError",
    "InvalidSymbol",
    "PricingError",
    "NoPriceFound",
    "NoHistoryFound",
    "ConversionRateUnavailable",
    "UpstreamUnavailable",
    "AuthenticationRequired",
    "CacheUnavailable",
    "StorageError",
    "LedgerImportError",
]
