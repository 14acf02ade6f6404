"""CSV sanitising and per-source row parsers for ledger exports.

Broker exports are hand-edited, localised and inconsistent: French
headers with accents, decimal commas, thousands separators, a free-text
prelude before the header row. Everything here tolerates that and turns
rows into either raw exchange events (Binance) or ready transactions
(Coinbase, Crédit Agricole).
"""

from __future__ import annotations

import csv
import io
import logging
import re
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from portefeuille.core.exceptions import LedgerImportError
from portefeuille.core.models import (
    AssetClass,
    Direction,
    LedgerSource,
    NormalizedTransaction,
    RawLedgerEvent,
)
from portefeuille.ledger.classify import normalise_text

logger = logging.getLogger(__name__)

CsvRecord = dict[str, str]

DELIMITERS = (",", ";", "\t")
_ANY_DELIMITER = re.compile(r"[;, \t]")
_NOT_NUMERIC = re.compile(r"[^\d,.\-]")
_SELL_KEYWORDS = ("vente", "sell", "withdraw")

# Column aliases, matched against normalised headers, first hit wins
_CA_SYMBOL = ("isin", "code", "ticker", "libelle", "nom", "reference")
_CA_NAME = ("libelle", "nom", "designation")
_CA_QUANTITY = ("quantite", "qte", "quantitenegociable")
_CA_PRICE = ("cours d'execution", "coursdexecution", "cours", "prix", "prix unitaire", "prixunitaire")
_CA_DATE = ("date", "dateoperation", "dateop", "date de mise a jour", "date de creation")
_CA_DIRECTION = ("sens", "type", "typedoperation", "type d operation", "operation")

_CB_SYMBOL = ("asset", "currency", "symbol")
_CB_NAME = ("asset", "product")
_CB_QUANTITY = ("quantity transacted", "amount", "quantity")
_CB_PRICE = ("spot price at transaction", "price")
_CB_DATE = ("timestamp", "date")
_CB_DIRECTION = ("transaction type", "type")

_BN_TIME = ("utc_time", "utc time", "utctime", "time", "date")
_BN_COIN = ("coin", "symbol")


def strip_prelude(text: str) -> str:
    """Drop a BOM and every line before the header row.

    The header row is the first non-blank line that contains a delimiter
    and, once normalised, the word "date". Without one the text is kept.
    """
    lines = text.removeprefix("\ufeff").splitlines()
    for index, line in enumerate(lines):
        if not line.strip() or not _ANY_DELIMITER.search(line):
            continue
        if "date" in normalise_text(line):
            return "\n".join(lines[index:])
    return "\n".join(lines)


def sniff_delimiter(header_line: str) -> str:
    """Most frequent of the supported delimiters in the header row."""
    counts = {d: header_line.count(d) for d in DELIMITERS}
    best = max(DELIMITERS, key=lambda d: counts[d])
    return best if counts[best] else ","


def read_records(text: str) -> list[CsvRecord]:
    """Parse sanitised CSV text into trimmed dict rows; blank rows are skipped."""
    cleaned = strip_prelude(text)
    if not cleaned.strip():
        return []
    delimiter = sniff_delimiter(cleaned.splitlines()[0])
    reader = csv.DictReader(io.StringIO(cleaned), delimiter=delimiter)
    records: list[CsvRecord] = []
    for row in reader:
        record = {
            key.strip(): (value or "").strip()
            for key, value in row.items()
            if isinstance(key, str) and not isinstance(value, list)
        }
        if any(record.values()):
            records.append(record)
    return records


def normalise_headers(record: CsvRecord) -> CsvRecord:
    """Normalise keys; also register a compact alias without spaces or quotes."""
    normalised: CsvRecord = {}
    for key, value in record.items():
        base = normalise_text(key)
        if not base:
            continue
        normalised[base] = value
        compact = re.sub(r"['\s]", "", base)
        normalised.setdefault(compact, value)
    return normalised


def _find_value(row: CsvRecord, aliases: tuple[str, ...]) -> str | None:
    """First non-empty value among the aliased columns."""
    for alias in aliases:
        value = row.get(alias)
        if value:
            return value
    return None


def normalise_number(value: str | int | float | Decimal | None) -> Decimal:
    """Parse a localised number. The last separator is the decimal point.

    ``"1 234,56"`` and ``"1.234,56"`` both give 1234.56. Text without any
    digit gives 0.
    """
    if value is None:
        return Decimal(0)
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))

    cleaned = _NOT_NUMERIC.sub("", value.replace("\u00a0", " "))
    cleaned = re.sub(r",+", ",", cleaned)
    cleaned = re.sub(r"\.+", ".", cleaned)
    if not re.search(r"\d", cleaned):
        return Decimal(0)

    negative = cleaned.startswith("-")
    unsigned = cleaned.lstrip("-").replace("-", "").replace(",", ".")
    segments = unsigned.split(".")
    fraction = segments.pop() if len(segments) > 1 else ""
    integer = "".join(segments) or "0"
    recomposed = f"{'-' if negative else ''}{integer}{'.' + fraction if fraction else ''}"
    try:
        result = Decimal(recomposed)
    except InvalidOperation:
        return Decimal(0)
    return result if result.is_finite() else Decimal(0)


def normalise_date(value: str) -> datetime:
    """Parse an export date into an aware UTC datetime.

    Accepts ISO-8601 (with or without offset, ``T`` or space separator),
    ``YYYY-MM-DD``, ``DD/MM/YYYY`` and ``DD-MM-YYYY``. Naive values are UTC.

    Raises:
        ValueError: If the value matches none of these forms.
    """
    trimmed = value.strip()
    try:
        parsed = datetime.fromisoformat(trimmed.replace("Z", "+00:00"))
    except ValueError:
        parts = re.split(r"[/-]", trimmed.split(" ")[0])
        if len(parts) != 3 or not all(p.isdigit() for p in parts):
            raise ValueError(f"Unrecognised date: {value!r}") from None
        first, second, third = (int(p) for p in parts)
        if len(parts[0]) == 4:
            parsed = datetime(first, second, third)
        else:
            parsed = datetime(third, second, first)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def detect_direction(raw: str | None) -> Direction:
    value = (raw or "").lower()
    if any(keyword in value for keyword in _SELL_KEYWORDS):
        return Direction.SELL
    return Direction.BUY


def _row_transaction(
    index: int,
    source: LedgerSource,
    symbol: str,
    name: str,
    asset_class: AssetClass,
    date_raw: str | None,
    quantity: Decimal,
    price: Decimal,
    direction: Direction,
) -> NormalizedTransaction | None:
    quantity, price = abs(quantity), abs(price)
    if quantity == 0 or price == 0:
        logger.warning("Skipping %s row %d: zero quantity or price", source, index)
        return None
    try:
        date = normalise_date(date_raw) if date_raw else datetime.now(timezone.utc)
    except ValueError as exc:
        logger.warning("Skipping %s row %d: %s", source, index, exc)
        return None
    return NormalizedTransaction(
        symbol=symbol,
        display_name=name,
        asset_class=asset_class,
        date=date,
        unit_price=price,
        quantity=quantity,
        direction=direction,
        provenance=str(source),
    )


def parse_credit_agricole(records: list[CsvRecord]) -> list[NormalizedTransaction]:
    """One securities-account row per transaction."""
    transactions: list[NormalizedTransaction] = []
    for index, record in enumerate(records):
        row = normalise_headers(record)
        symbol = _find_value(row, _CA_SYMBOL)
        name = _find_value(row, _CA_NAME) or symbol or "Valeur Credit Agricole"
        transaction = _row_transaction(
            index,
            LedgerSource.CREDIT_AGRICOLE,
            symbol or name,
            name,
            AssetClass.STOCK,
            _find_value(row, _CA_DATE),
            normalise_number(_find_value(row, _CA_QUANTITY)),
            normalise_number(_find_value(row, _CA_PRICE)),
            detect_direction(_find_value(row, _CA_DIRECTION)),
        )
        if transaction is not None:
            transactions.append(transaction)
    return transactions


def parse_coinbase(records: list[CsvRecord]) -> list[NormalizedTransaction]:
    """One Coinbase history row per transaction, priced at the exported spot price."""
    transactions: list[NormalizedTransaction] = []
    for index, record in enumerate(records):
        row = normalise_headers(record)
        symbol = _find_value(row, _CB_SYMBOL)
        name = _find_value(row, _CB_NAME) or symbol or "Crypto Coinbase"
        transaction = _row_transaction(
            index,
            LedgerSource.COINBASE,
            (symbol or name).upper(),
            name,
            AssetClass.CRYPTO,
            _find_value(row, _CB_DATE),
            normalise_number(_find_value(row, _CB_QUANTITY)),
            normalise_number(_find_value(row, _CB_PRICE)),
            detect_direction(_find_value(row, _CB_DIRECTION)),
        )
        if transaction is not None:
            transactions.append(transaction)
    return transactions


def parse_binance_events(records: list[CsvRecord]) -> list[RawLedgerEvent]:
    """Binance transaction-history rows as raw events, in file order.

    Rows without a coin, with a zero change or with an unreadable time
    are dropped.
    """
    events: list[RawLedgerEvent] = []
    for index, record in enumerate(records):
        row = normalise_headers(record)
        coin = (_find_value(row, _BN_COIN) or "").strip()
        amount = normalise_number(row.get("change"))
        if not coin or amount == 0:
            continue
        time_raw = _find_value(row, _BN_TIME)
        try:
            timestamp = normalise_date(time_raw) if time_raw else datetime.now(timezone.utc)
        except ValueError as exc:
            logger.warning("Skipping binance row %d: %s", index, exc)
            continue
        events.append(
            RawLedgerEvent(
                sequence_index=index,
                timestamp=timestamp,
                signed_amount=amount,
                asset=coin,
                operation_label=row.get("operation", ""),
            )
        )
    return events


ROW_PARSERS: dict[LedgerSource, Callable[[list[CsvRecord]], list[NormalizedTransaction]]] = {
    LedgerSource.COINBASE: parse_coinbase,
    LedgerSource.CREDIT_AGRICOLE: parse_credit_agricole,
}


def resolve_source(value: str) -> LedgerSource:
    """Map a user-supplied source name to a LedgerSource.

    Raises:
        LedgerImportError: Unknown source.
    """
    try:
        return LedgerSource(value.strip().lower())
    except ValueError:
        raise LedgerImportError(
            f"Unknown CSV source: {value}",
            context={"source": value, "supported": [s.value for s in LedgerSource]},
        ) from None
