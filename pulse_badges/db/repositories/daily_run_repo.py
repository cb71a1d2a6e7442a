"""
Repositories for daily runs and their badge rows.

``daily_runs`` is keyed by (market, run_date) and ``daily_badges`` by
(run_id, symbol); both writes here are upserts so a repeated or resumed
refresh never duplicates rows.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from datetime import date, datetime
from typing import Optional

from pulse_badges.db.repositories.base import BaseRepository
from pulse_badges.models.daily_run import Badge, DailyRun
from pulse_badges.utils.time_utils import format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

# ok > partial > running > failed when several runs compete for a date.
_STATUS_RANK_SQL = """
CASE status
    WHEN 'ok'      THEN 0
    WHEN 'partial' THEN 1
    WHEN 'running' THEN 2
    ELSE 3
END
"""


def _row_to_run(row: sqlite3.Row) -> DailyRun:
    return DailyRun(
        run_id=row["run_id"],
        market=row["market"],
        run_date=date.fromisoformat(row["run_date"]),
        formula_id=row["formula_id"],
        formula_version=row["formula_version"],
        trigger=row["trigger"],
        status=row["status"],
        started_at=parse_timestamp(row["started_at"]),
        completed_at=parse_timestamp(row["completed_at"]),
        error=row["error"],
    )


def _row_to_badge(row: sqlite3.Row) -> Badge:
    return Badge(
        run_id=row["run_id"],
        symbol=row["symbol"],
        recommendation=row["recommendation"],
        analysis_id=row["analysis_id"],
        generated_at=parse_timestamp(row["generated_at"]),
    )


class DailyRunRepository(BaseRepository):
    """Read/write access to ``daily_runs``."""

    def upsert_running(
        self,
        market: str,
        run_date: date,
        formula_id: str,
        formula_version: int,
        trigger: str,
        now: Optional[datetime] = None,
    ) -> DailyRun:
        """Create or restart the run for (market, run_date) as ``running``.

        An existing row keeps its ``run_id`` (and therefore its badges); its
        formula, trigger and start time are overwritten and any previous
        terminal state is cleared.
        """
        stamp = format_timestamp(now or utcnow())
        self.execute(
            """
            INSERT INTO daily_runs (
                market, run_date, formula_id, formula_version, trigger,
                status, error, started_at, completed_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, 'running', NULL, ?, NULL, ?)
            ON CONFLICT(market, run_date) DO UPDATE SET
                formula_id      = excluded.formula_id,
                formula_version = excluded.formula_version,
                trigger         = excluded.trigger,
                status          = 'running',
                error           = NULL,
                started_at      = excluded.started_at,
                completed_at    = NULL,
                updated_at      = excluded.updated_at;
            """,
            (market, run_date.isoformat(), formula_id, formula_version, trigger, stamp, stamp),
        )
        self.commit()
        run = self.get_for(market, run_date)
        assert run is not None
        return run

    def finalize(
        self,
        run_id: int,
        status: str,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Move a run to a terminal status.

        Raises:
            KeyError: If ``run_id`` does not exist.
        """
        stamp = format_timestamp(now or utcnow())
        cursor = self.execute(
            """
            UPDATE daily_runs
               SET status = ?, error = ?, completed_at = ?, updated_at = ?
             WHERE run_id = ?;
            """,
            (status, error, stamp, stamp, run_id),
        )
        if cursor.rowcount == 0:
            raise KeyError(run_id)
        self.commit()

    def get(self, run_id: int) -> Optional[DailyRun]:
        row = self.fetchone("SELECT * FROM daily_runs WHERE run_id = ?;", (run_id,))
        return _row_to_run(row) if row else None

    def get_for(self, market: str, run_date: date) -> Optional[DailyRun]:
        row = self.fetchone(
            "SELECT * FROM daily_runs WHERE market = ? AND run_date = ?;",
            (market, run_date.isoformat()),
        )
        return _row_to_run(row) if row else None

    def list_runs_with_badges(self, market: str, run_date: date) -> list[DailyRun]:
        """Runs of ``market`` on ``run_date`` holding at least one badge.

        Ordered best status first, then newest first.
        """
        rows = self.fetchall(
            f"""
            SELECT r.* FROM daily_runs r
             WHERE r.market = ? AND r.run_date = ?
               AND EXISTS (SELECT 1 FROM daily_badges b WHERE b.run_id = r.run_id)
             ORDER BY {_STATUS_RANK_SQL}, r.started_at DESC;
            """,
            (market, run_date.isoformat()),
        )
        return [_row_to_run(r) for r in rows]

    def latest_completed_with_badges(self, market: str) -> Optional[DailyRun]:
        """Most recent ``ok``/``partial`` run of ``market`` that has badges."""
        row = self.fetchone(
            """
            SELECT r.* FROM daily_runs r
             WHERE r.market = ? AND r.status IN ('ok', 'partial')
               AND EXISTS (SELECT 1 FROM daily_badges b WHERE b.run_id = r.run_id)
             ORDER BY r.run_date DESC, r.started_at DESC
             LIMIT 1;
            """,
            (market,),
        )
        return _row_to_run(row) if row else None

    def list_recent(self, market: Optional[str] = None, limit: int = 20) -> list[DailyRun]:
        if market is None:
            rows = self.fetchall(
                "SELECT * FROM daily_runs ORDER BY run_date DESC, market LIMIT ?;",
                (limit,),
            )
        else:
            rows = self.fetchall(
                "SELECT * FROM daily_runs WHERE market = ? ORDER BY run_date DESC LIMIT ?;",
                (market, limit),
            )
        return [_row_to_run(r) for r in rows]


class BadgeRepository(BaseRepository):
    """Read/write access to ``daily_badges``."""

    def list_for_run(self, run_id: int) -> list[Badge]:
        rows = self.fetchall(
            "SELECT * FROM daily_badges WHERE run_id = ? ORDER BY symbol;",
            (run_id,),
        )
        return [_row_to_badge(r) for r in rows]

    def delete_symbols(self, run_id: int, symbols: Iterable[str]) -> int:
        """Delete the badges of ``symbols`` in ``run_id`` only.

        Returns:
            Number of rows deleted.
        """
        symbols = list(symbols)
        if not symbols:
            return 0
        placeholders = ", ".join("?" for _ in symbols)
        cursor = self.execute(
            f"DELETE FROM daily_badges WHERE run_id = ? AND symbol IN ({placeholders});",
            (run_id, *symbols),
        )
        self.commit()
        return cursor.rowcount

    def upsert(self, badge: Badge) -> None:
        self.execute(
            """
            INSERT INTO daily_badges (run_id, symbol, recommendation, analysis_id, generated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(run_id, symbol) DO UPDATE SET
                recommendation = excluded.recommendation,
                analysis_id    = excluded.analysis_id,
                generated_at   = excluded.generated_at;
            """,
            (
                badge.run_id,
                badge.symbol,
                badge.recommendation,
                badge.analysis_id,
                format_timestamp(badge.generated_at),
            ),
        )
        self.commit()
