"""
Repository for generated stock analyses (``stock_analyses``).

Analyses are append-only and belong to no run; badges reference them by id.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Optional

from pulse_badges.db.repositories.base import BaseRepository
from pulse_badges.models.daily_run import AnalysisRecord, GeneratedAnalysis
from pulse_badges.utils.time_utils import format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)


def _row_to_analysis(row: sqlite3.Row) -> AnalysisRecord:
    return AnalysisRecord(
        analysis_id=row["analysis_id"],
        symbol=row["symbol"],
        recommendation=row["recommendation"],
        text=row["analysis_text"],
        model_id=row["model_id"],
        generated_at=parse_timestamp(row["generated_at"]),
    )


class AnalysisRepository(BaseRepository):
    """Read/write access to ``stock_analyses``."""

    def insert(
        self,
        symbol: str,
        analysis: GeneratedAnalysis,
        generated_at: Optional[datetime] = None,
    ) -> AnalysisRecord:
        """Persist a freshly generated analysis and return the stored record."""
        generated_at = generated_at or utcnow()
        self.execute(
            """
            INSERT INTO stock_analyses (symbol, recommendation, analysis_text, model_id, generated_at)
            VALUES (?, ?, ?, ?, ?);
            """,
            (
                symbol,
                analysis.recommendation,
                analysis.text,
                analysis.model_id,
                format_timestamp(generated_at),
            ),
        )
        analysis_id = self.last_insert_rowid()
        self.commit()
        return AnalysisRecord(
            analysis_id=analysis_id,
            symbol=symbol,
            recommendation=analysis.recommendation,
            text=analysis.text,
            model_id=analysis.model_id,
            generated_at=generated_at,
        )

    def find_latest(
        self,
        symbol: str,
        newer_than: Optional[datetime] = None,
    ) -> Optional[AnalysisRecord]:
        """Most recent analysis for ``symbol``.

        Args:
            symbol: Normalized symbol.
            newer_than: If given, only analyses generated at or after it count.
        """
        if newer_than is None:
            row = self.fetchone(
                """
                SELECT * FROM stock_analyses
                 WHERE symbol = ?
                 ORDER BY generated_at DESC, analysis_id DESC
                 LIMIT 1;
                """,
                (symbol,),
            )
        else:
            row = self.fetchone(
                """
                SELECT * FROM stock_analyses
                 WHERE symbol = ? AND generated_at >= ?
                 ORDER BY generated_at DESC, analysis_id DESC
                 LIMIT 1;
                """,
                (symbol, format_timestamp(newer_than)),
            )
        return _row_to_analysis(row) if row else None

    def get(self, analysis_id: int) -> Optional[AnalysisRecord]:
        row = self.fetchone(
            "SELECT * FROM stock_analyses WHERE analysis_id = ?;", (analysis_id,)
        )
        return _row_to_analysis(row) if row else None
