"""
SQLite schema DDL — all CREATE TABLE and CREATE INDEX statements.

All statements use ``IF NOT EXISTS`` so ``apply_schema()`` is **idempotent**:
safe to call on an already-initialized database (e.g. after restart or in tests).

Table creation order respects foreign key dependencies:
  1. recommendation_formulas (no FKs)
  2. market_settings         (→ recommendation_formulas)
  3. omit_rule_settings      (no FKs; single row)
  4. stock_analyses          (no FKs)
  5. daily_runs              (no FKs; formula_id may be the built-in default)
  6. daily_badges            (→ daily_runs, stock_analyses)
"""

from __future__ import annotations

import logging
import sqlite3

logger = logging.getLogger(__name__)

# ── DDL statements ─────────────────────────────────────────────────────────────

_DDL_RECOMMENDATION_FORMULAS = """
CREATE TABLE IF NOT EXISTS recommendation_formulas (
    formula_id   TEXT    PRIMARY KEY,
    name         TEXT    NOT NULL,
    description  TEXT,
    expression   TEXT    NOT NULL,
    status       TEXT    NOT NULL DEFAULT 'draft'
                 CHECK (status IN ('draft', 'published', 'archived')),
    version      INTEGER NOT NULL DEFAULT 1 CHECK (version >= 1),
    notes        TEXT,
    created_by   TEXT,
    updated_by   TEXT,
    created_at   TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at   TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

_DDL_RECOMMENDATION_FORMULAS_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_formulas_status_updated
    ON recommendation_formulas(status, updated_at);
"""

_DDL_MARKET_SETTINGS = """
CREATE TABLE IF NOT EXISTS market_settings (
    market            TEXT PRIMARY KEY,
    active_formula_id TEXT REFERENCES recommendation_formulas(formula_id),
    updated_by        TEXT,
    updated_at        TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

_DDL_OMIT_RULE_SETTINGS = """
CREATE TABLE IF NOT EXISTS omit_rule_settings (
    settings_id  INTEGER PRIMARY KEY CHECK (settings_id = 1),
    enabled      INTEGER NOT NULL DEFAULT 0,
    rules_json   TEXT    NOT NULL DEFAULT '{}',
    updated_by   TEXT,
    updated_at   TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

_DDL_STOCK_ANALYSES = """
CREATE TABLE IF NOT EXISTS stock_analyses (
    analysis_id     INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol          TEXT    NOT NULL,
    recommendation  TEXT    NOT NULL CHECK (recommendation IN ('buy', 'hold', 'sell')),
    analysis_text   TEXT    NOT NULL DEFAULT '',
    model_id        TEXT,
    generated_at    TEXT    NOT NULL
);
"""

_DDL_STOCK_ANALYSES_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_analyses_symbol_generated
    ON stock_analyses(symbol, generated_at DESC);
"""

_DDL_DAILY_RUNS = """
CREATE TABLE IF NOT EXISTS daily_runs (
    run_id           INTEGER PRIMARY KEY AUTOINCREMENT,
    market           TEXT    NOT NULL,
    run_date         TEXT    NOT NULL,
    formula_id       TEXT    NOT NULL,
    formula_version  INTEGER NOT NULL,
    trigger          TEXT    NOT NULL
                     CHECK (trigger IN ('periodic', 'formula-change', 'manual')),
    status           TEXT    NOT NULL DEFAULT 'running'
                     CHECK (status IN ('running', 'ok', 'partial', 'failed')),
    error            TEXT,
    started_at       TEXT    NOT NULL,
    completed_at     TEXT,
    updated_at       TEXT    NOT NULL,
    UNIQUE(market, run_date)
);
"""

_DDL_DAILY_RUNS_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_daily_runs_market_status
    ON daily_runs(market, status, run_date DESC);
"""

_DDL_DAILY_BADGES = """
CREATE TABLE IF NOT EXISTS daily_badges (
    badge_id        INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id          INTEGER NOT NULL REFERENCES daily_runs(run_id) ON DELETE CASCADE,
    symbol          TEXT    NOT NULL,
    recommendation  TEXT    NOT NULL CHECK (recommendation IN ('buy', 'hold', 'sell')),
    analysis_id     INTEGER NOT NULL REFERENCES stock_analyses(analysis_id),
    generated_at    TEXT    NOT NULL,
    UNIQUE(run_id, symbol)
);
"""

# ── Ordered list of all DDL to apply ──────────────────────────────────────────

_ALL_DDL: list[str] = [
    _DDL_RECOMMENDATION_FORMULAS,
    _DDL_RECOMMENDATION_FORMULAS_INDEXES,
    _DDL_MARKET_SETTINGS,
    _DDL_OMIT_RULE_SETTINGS,
    _DDL_STOCK_ANALYSES,
    _DDL_STOCK_ANALYSES_INDEXES,
    _DDL_DAILY_RUNS,
    _DDL_DAILY_RUNS_INDEXES,
    _DDL_DAILY_BADGES,
]

# Table names for introspection / tests
ALL_TABLE_NAMES = [
    "recommendation_formulas",
    "market_settings",
    "omit_rule_settings",
    "stock_analyses",
    "daily_runs",
    "daily_badges",
]


def apply_schema(conn: sqlite3.Connection) -> None:
    """Apply all DDL statements to ``conn``.

    Idempotent — safe to call on an already-initialized database.

    Args:
        conn: An open ``sqlite3.Connection`` (FK enforcement should be ON).
    """
    logger.debug("Applying schema to database...")

    for ddl in _ALL_DDL:
        for statement in _split_ddl(ddl):
            conn.execute(statement)

    conn.commit()
    logger.info("Schema applied: %d tables, indexes created/verified.", len(ALL_TABLE_NAMES))


def _split_ddl(ddl: str) -> list[str]:
    """Split a multi-statement DDL block on semicolons."""
    return [s.strip() for s in ddl.split(";") if s.strip()]


def get_existing_tables(conn: sqlite3.Connection) -> list[str]:
    """Return the sorted table names present in the database."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name;"
    ).fetchall()
    return [row["name"] for row in rows]
