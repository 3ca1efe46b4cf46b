"""Shared fixtures for CLI tests.

Every command opens its own engine, configures logging, and installs the
process-wide analytics collector.  The fixtures here point the CLI at a
throwaway SQLite file and undo the global logging and collector changes
after each test.
"""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

_ENV_VARS = (
    "CI",
    "LEDGER_CI",
    "LEDGER_DATABASE_URL",
    "LEDGER_EVENTS_FILE",
    "LEDGER_STRIPE_SECRET_KEY",
    "LEDGER_STRUCTURED_LOGGING",
)


@pytest.fixture(autouse=True)
def _isolated_globals(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(logging, "root", logging.RootLogger(logging.WARNING))
    monkeypatch.setattr("ledger_engine.metering.collector._collector", None)


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}"


@pytest.fixture
def events_file(tmp_path: Path) -> Path:
    return tmp_path / "events.jsonl"
