"""
SQLite connection management.

``get_connection()`` yields a connection that:
  - Enforces foreign keys (OFF by default in SQLite).
  - Uses WAL journal mode so refresh workers can write badge rows while
    other connections read.
  - Waits ``busy_timeout_ms`` on lock contention instead of failing at once.
  - Returns ``sqlite3.Row`` rows (dict-like access).
  - Commits on clean exit, rolls back on exception.

``open_database(config)`` is the same context manager driven by the
``[database]`` config section, and ``ensure_database(config)`` applies the
schema and pending migrations (idempotent).

Usage::

    from pulse_badges.db.connection import open_database

    with open_database(config.database) as conn:
        conn.execute("INSERT INTO ...")
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Generator, Optional

if TYPE_CHECKING:
    from pulse_badges.config import DatabaseConfig

logger = logging.getLogger(__name__)


@contextmanager
def get_connection(
    db_path: str,
    wal_mode: bool = True,
    busy_timeout_ms: int = 5000,
) -> Generator[sqlite3.Connection, None, None]:
    """Context manager yielding a configured SQLite connection.

    The database file (and any parent directories) are created if missing.

    Args:
        db_path: Path to the SQLite database file, or ``":memory:"``.
        wal_mode: If ``True``, enable WAL journal mode.
        busy_timeout_ms: Milliseconds to wait on a locked database before
            raising ``OperationalError``.

    Yields:
        An open, configured ``sqlite3.Connection``.

    Raises:
        sqlite3.OperationalError: If the database cannot be opened or stays locked.
    """
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path, timeout=busy_timeout_ms / 1000)
    conn.row_factory = sqlite3.Row

    try:
        # Pragmas must precede any DML/DDL
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms};")
        if wal_mode and db_path != ":memory:":
            conn.execute("PRAGMA journal_mode = WAL;")

        yield conn
        conn.commit()

    except Exception:
        conn.rollback()
        raise

    finally:
        conn.close()


@contextmanager
def open_database(
    config: "DatabaseConfig",
    db_path: Optional[str] = None,
) -> Generator[sqlite3.Connection, None, None]:
    """``get_connection()`` with settings taken from a ``DatabaseConfig``.

    Args:
        config: ``[database]`` section of ``AppConfig``.
        db_path: Optional override of ``config.db_path``.
    """
    with get_connection(
        db_path or config.db_path,
        wal_mode=config.wal_mode,
        busy_timeout_ms=config.busy_timeout_ms,
    ) as conn:
        yield conn


def ensure_database(config: "DatabaseConfig", db_path: Optional[str] = None) -> int:
    """Apply the schema and pending migrations.

    Returns:
        Number of migrations applied by this call.
    """
    from pulse_badges.db.migrations import run_migrations
    from pulse_badges.db.schema import apply_schema

    with open_database(config, db_path) as conn:
        apply_schema(conn)
        return run_migrations(conn)
