"""Ledger import: CSV parsing, event classification and reconciliation."""

from portefeuille.ledger.classify import OperationKind, classify, normalise_text
from portefeuille.ledger.importer import CsvImporter
from portefeuille.ledger.reconciler import LedgerReconciler, ReferenceRates
from portefeuille.ledger.window import PendingWindow

__all__ = [
    "OperationKind",
    "classify",
    "normalise_text",
    "PendingWindow",
    "LedgerReconciler",
    "ReferenceRates",
    "CsvImporter",
]
