"""Integration test fixtures: real SQLite files and config, mocked network."""

from __future__ import annotations

import os
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep host PORTEFEUILLE_* variables out of the loaded config."""
    for key in list(os.environ):
        if key.startswith("PORTEFEUILLE_"):
            monkeypatch.delenv(key)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "portefeuille.db"


@pytest.fixture
def config_file(tmp_path: Path, db_path: Path) -> Path:
    """YAML config with the shared cache tier disabled and a temp database."""
    path = tmp_path / "portefeuille.yml"
    path.write_text(
        "pricing:\n"
        "  reference_currency: EUR\n"
        "cache:\n"
        "  enabled: false\n"
        "storage:\n"
        f"  sqlite_path: {db_path}\n"
    )
    return path


@pytest.fixture
def write_csv(tmp_path: Path):
    """Write an export file and return its path."""

    def _write(name: str, content: str) -> Path:
        path = tmp_path / name
        path.write_text(content, encoding="utf-8")
        return path

    return _write
