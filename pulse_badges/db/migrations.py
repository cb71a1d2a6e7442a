"""
Sequential schema migrations.

A ``schema_versions`` table records applied migration IDs; ``run_migrations()``
applies every registered migration not yet recorded, in registry order.
There are no down migrations.

The base tables come from ``apply_schema()`` in ``schema.py``; migrations
carry seed data and incremental changes on top of it.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable

from pulse_badges.formulas.constants import DEFAULT_FORMULA
from pulse_badges.utils.time_utils import format_timestamp, utcnow

logger = logging.getLogger(__name__)

MigrationFn = Callable[[sqlite3.Connection], None]


def _ensure_version_table(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_versions (
            version_id  TEXT    NOT NULL PRIMARY KEY,
            applied_at  TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
            description TEXT
        );
    """)
    conn.commit()


def _get_applied_versions(conn: sqlite3.Connection) -> set[str]:
    rows = conn.execute("SELECT version_id FROM schema_versions;").fetchall()
    return {row["version_id"] for row in rows}


def _mark_applied(conn: sqlite3.Connection, version_id: str, description: str) -> None:
    conn.execute(
        "INSERT INTO schema_versions(version_id, description) VALUES (?, ?);",
        (version_id, description),
    )
    conn.commit()


# ── Migration functions ────────────────────────────────────────────────────────

def migration_0001_seed_default_formula(conn: sqlite3.Connection) -> None:
    """Insert the built-in default formula as a published row."""
    now = format_timestamp(utcnow())
    conn.execute(
        """
        INSERT OR IGNORE INTO recommendation_formulas (
            formula_id, name, description, expression, status, version,
            notes, created_by, updated_by, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
        """,
        (
            DEFAULT_FORMULA.formula_id,
            DEFAULT_FORMULA.name,
            DEFAULT_FORMULA.description,
            DEFAULT_FORMULA.expression,
            DEFAULT_FORMULA.status,
            DEFAULT_FORMULA.version,
            json.dumps(DEFAULT_FORMULA.notes),
            "system",
            "system",
            now,
            now,
        ),
    )
    conn.commit()


def migration_0002_seed_omit_rule_settings(conn: sqlite3.Connection) -> None:
    """Create the single omit-rule settings row (disabled, no rules)."""
    conn.execute(
        """
        INSERT OR IGNORE INTO omit_rule_settings (settings_id, enabled, rules_json, updated_at)
        VALUES (1, 0, '{}', ?);
        """,
        (format_timestamp(utcnow()),),
    )
    conn.commit()


def migration_0003_add_badge_symbol_index(conn: sqlite3.Connection) -> None:
    """Index badges by symbol for per-symbol history lookups."""
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_daily_badges_symbol ON daily_badges(symbol);"
    )
    conn.commit()


# ── Registry ──────────────────────────────────────────────────────────────────

MIGRATIONS: dict[str, tuple[MigrationFn, str]] = {
    "0001_seed_default_formula": (
        migration_0001_seed_default_formula,
        "Seed the built-in default formula",
    ),
    "0002_seed_omit_rule_settings": (
        migration_0002_seed_omit_rule_settings,
        "Seed the omit_rule_settings row",
    ),
    "0003_badge_symbol_index": (
        migration_0003_add_badge_symbol_index,
        "Add idx_daily_badges_symbol",
    ),
}


def run_migrations(conn: sqlite3.Connection) -> int:
    """Apply all pending migrations.

    Args:
        conn: An open ``sqlite3.Connection`` on which ``apply_schema()`` ran.

    Returns:
        Number of migrations applied in this call.
    """
    _ensure_version_table(conn)
    applied = _get_applied_versions(conn)

    count = 0
    for version_id, (fn, description) in MIGRATIONS.items():
        if version_id in applied:
            continue

        logger.info("Applying migration %s: %s", version_id, description)
        try:
            fn(conn)
            _mark_applied(conn, version_id, description)
            count += 1
        except Exception as exc:
            conn.rollback()
            logger.error("Migration %s FAILED: %s", version_id, exc)
            raise

    if count:
        logger.info("Applied %d migration(s).", count)
    else:
        logger.debug("No pending migrations.")

    return count
