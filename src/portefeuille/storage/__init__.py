"""Persistence for assets, transactions and price points."""

from portefeuille.storage.store import RecordStore, SqliteStore, create_store

__all__ = ["RecordStore", "SqliteStore", "create_store"]
