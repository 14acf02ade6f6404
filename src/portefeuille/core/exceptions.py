"""Custom exception hierarchy for portefeuille."""

from typing import Any


class PortefeuilleError(Exception):
    """Base exception for all portefeuille errors.

    All exceptions carry an optional `context` dict for structured error
    metadata that can be logged or serialized without parsing the message.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.context = context or {}


class ConfigError(PortefeuilleError):
    """Invalid or missing configuration.

    Raised by load_config() during startup. Should be treated as fatal.

    Context keys:
        field: str — the config field that failed validation
        value: Any — the invalid value (redacted for secrets)
    """


class InvalidSymbol(PortefeuilleError):
    """Malformed or empty instrument identifier.

    Policy: never retried.

    Context keys:
        symbol: str — the identifier as received
    """


class PricingError(PortefeuilleError):
    """A price could not be resolved."""


class NoPriceFound(PricingError):
    """Every candidate symbol and provider was exhausted.

    Policy: surface to the caller. The per-attempt trail is kept for
    diagnostics.

    Context keys:
        symbol: str — the identifier that was requested
        attempts: list[str] — "<label>: <reason>" for each failed attempt
    """


class NoHistoryFound(PricingError):
    """A historical series came back empty after paging.

    Context keys:
        symbol: str
        attempts: list[str]
    """


class ConversionRateUnavailable(PricingError):
    """The counter-currency rate needed to express a price could not be fetched.

    Policy: aborts the current crypto pair attempt, not the whole loop.

    Context keys:
        counter: str — the counter currency
        pair: str | None — the rate pair that was queried
    """


class UpstreamUnavailable(PortefeuilleError):
    """A provider returned a non-2xx status, garbage, or the network failed.

    Policy: log, add to the attempt trail, continue with the next candidate.

    Context keys:
        provider: str — "yahoo" or "binance"
        url: str — the URL that was being fetched
        status_code: int | None
    """


class AuthenticationRequired(UpstreamUnavailable):
    """The provider rejected the request for lack of a valid session.

    Policy: renew the session and retry exactly once. A second rejection
    is raised to the caller.
    """


class CacheUnavailable(PortefeuilleError):
    """The shared cache tier could not be reached.

    Policy: never surfaced. PriceCache catches it and degrades to its
    process-local tier.

    Context keys:
        operation: str — "get", "set", "delete", "scan"
    """


class StorageError(PortefeuilleError):
    """Database operation failed.

    Policy: raise immediately. Data integrity is critical.

    Context keys:
        operation: str — "insert", "query", "migrate", etc.
        table: str — the table involved
    """


class LedgerImportError(PortefeuilleError):
    """A ledger export could not be imported.

    Context keys:
        source: str — the export source name
    """
