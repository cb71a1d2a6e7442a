"""
Shared pytest fixtures for the pulse-badges test suite.

Provides:
  - ``in_memory_db``: A fresh in-memory SQLite connection with the full
    schema and migrations applied. Created anew for each test that requests it.
  - ``make_snapshot``: Factory for ``InstrumentSnapshot`` with growth defaults.
  - ``fixed_now``: A fixed UTC reference instant for run-date tests.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import Callable, Generator

import pytest

from pulse_badges.db.migrations import run_migrations
from pulse_badges.db.schema import apply_schema
from pulse_badges.models.formula import Formula
from pulse_badges.models.instrument import InstrumentSnapshot


# ── Database fixture ──────────────────────────────────────────────────────────

@pytest.fixture
def in_memory_db() -> Generator[sqlite3.Connection, None, None]:
    """Yield a fresh in-memory SQLite connection with schema and migrations.

    Foreign key enforcement is ON. The default formula is seeded.
    Connection is closed after the test.
    """
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    apply_schema(conn)
    run_migrations(conn)
    yield conn
    conn.close()


# ── Sample domain object factories ────────────────────────────────────────────

@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2026, 3, 10, 15, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_snapshot() -> Callable[..., InstrumentSnapshot]:
    """Factory: ``make_snapshot("AAPL", growth_1m=12.0, ...)``.

    Defaults give a snapshot the built-in formula recommends
    (5D=5, 1M=10, 6M=20, 12M=30).
    """

    def _make(symbol: str = "AAPL", market: str = "nasdaq", **overrides) -> InstrumentSnapshot:
        fields = {
            "symbol": symbol,
            "market": market,
            "name": f"{symbol} Inc.",
            "price": 100.0,
            "market_cap": 2.5e9,
            "growth_1d": 0.5,
            "growth_5d": 5.0,
            "growth_1m": 10.0,
            "growth_6m": 20.0,
            "growth_12m": 30.0,
        }
        fields.update(overrides)
        return InstrumentSnapshot(**fields)

    return _make


@pytest.fixture
def make_formula() -> Callable[..., Formula]:
    """Factory for a published formula with a chosen expression."""

    def _make(formula_id: str, expression: str, version: int = 1) -> Formula:
        return Formula(
            formula_id=formula_id,
            name=f"Formula {formula_id}",
            expression=expression,
            status="published",
            version=version,
        )

    return _make
