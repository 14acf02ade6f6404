"""Classification of raw ledger events into a closed set of operation kinds."""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from enum import StrEnum

from portefeuille.core.models import RawLedgerEvent

_QUOTES = re.compile("[\u2018\u2019]")
_NOT_WORD = re.compile(r"[^a-z0-9'\s]")
_SPACES = re.compile(r"\s+")


class OperationKind(StrEnum):
    FEE = "fee"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    SELL = "sell"
    REVENUE = "revenue"
    BUY = "buy"
    SPEND = "spend"
    UNCLASSIFIED = "unclassified"


class Sign(StrEnum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    ANY = "any"


@dataclass(frozen=True)
class KeywordRule:
    """An event is of ``kind`` when its amount has ``sign`` and its label holds any keyword."""

    kind: OperationKind
    sign: Sign
    keywords: tuple[str, ...]

    def matches(self, label: str, positive: bool) -> bool:
        if self.sign == Sign.POSITIVE and not positive:
            return False
        if self.sign == Sign.NEGATIVE and positive:
            return False
        return any(keyword in label for keyword in self.keywords)


# Evaluated in order; the first matching rule wins.
CLASSIFICATION_RULES: tuple[KeywordRule, ...] = (
    KeywordRule(OperationKind.FEE, Sign.ANY, ("fee",)),
    KeywordRule(OperationKind.DEPOSIT, Sign.POSITIVE, ("deposit",)),
    KeywordRule(OperationKind.WITHDRAWAL, Sign.NEGATIVE, ("withdraw",)),
    KeywordRule(OperationKind.SELL, Sign.NEGATIVE, ("sold", "sell")),
    KeywordRule(OperationKind.REVENUE, Sign.POSITIVE, ("revenue",)),
    KeywordRule(OperationKind.BUY, Sign.POSITIVE, ("buy", "convert", "earn")),
    KeywordRule(OperationKind.SPEND, Sign.NEGATIVE, ("spend", "convert", "deposit")),
)


def normalise_text(value: str) -> str:
    """Lower-case, strip accents, turn punctuation into single spaces."""
    lowered = _QUOTES.sub("'", value.strip().lower())
    decomposed = unicodedata.normalize("NFD", lowered)
    without_accents = "".join(c for c in decomposed if not unicodedata.combining(c))
    return _SPACES.sub(" ", _NOT_WORD.sub(" ", without_accents)).strip()


def classify_label(
    label: str,
    positive: bool,
    rules: tuple[KeywordRule, ...] = CLASSIFICATION_RULES,
) -> OperationKind:
    normalised = normalise_text(label)
    for rule in rules:
        if rule.matches(normalised, positive):
            return rule.kind
    return OperationKind.UNCLASSIFIED


def classify(event: RawLedgerEvent) -> OperationKind:
    """Kind of one raw event. Zero amounts are never tradeable."""
    if event.signed_amount == 0:
        return OperationKind.UNCLASSIFIED
    return classify_label(event.operation_label, event.signed_amount > 0)
