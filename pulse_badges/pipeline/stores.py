"""
SQLite implementation of ``BadgeStore``.

Each call opens its own connection inside ``asyncio.to_thread`` so refresh
workers never block the event loop and never share a connection across
threads. WAL mode plus the busy timeout lets concurrent workers write badge
rows for distinct symbols.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Callable, Iterable
from datetime import date, datetime
from typing import Optional, TypeVar

from pulse_badges.config import DatabaseConfig
from pulse_badges.db.connection import open_database
from pulse_badges.db.repositories.analysis_repo import AnalysisRepository
from pulse_badges.db.repositories.daily_run_repo import BadgeRepository, DailyRunRepository
from pulse_badges.db.repositories.formula_repo import (
    FormulaRepository,
    MarketSettingsRepository,
    OmitRuleSettingsRepository,
)
from pulse_badges.models.daily_run import AnalysisRecord, Badge, DailyRun, GeneratedAnalysis
from pulse_badges.models.formula import Formula
from pulse_badges.models.omit_rules import OmitRuleSet
from pulse_badges.pipeline.collaborators import BadgeStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SqliteBadgeStore(BadgeStore):
    """``BadgeStore`` over the ``pulse_badges`` SQLite database.

    Args:
        config: ``[database]`` config section.
        db_path: Optional override of ``config.db_path`` (must be a file;
            ``:memory:`` would give every call an empty database).
    """

    def __init__(self, config: DatabaseConfig, db_path: Optional[str] = None) -> None:
        self.config = config
        self.db_path = db_path or config.db_path

    async def _call(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        def run() -> T:
            with open_database(self.config, self.db_path) as conn:
                return fn(conn)

        return await asyncio.to_thread(run)

    # ── Formulas & settings ──

    async def get_formula(self, formula_id: str) -> Optional[Formula]:
        return await self._call(lambda c: FormulaRepository(c).get(formula_id))

    async def get_active_formula_id(self, market: str) -> Optional[str]:
        return await self._call(
            lambda c: MarketSettingsRepository(c).get_active_formula_id(market)
        )

    async def get_omit_rules(self, market: str) -> Optional[OmitRuleSet]:
        return await self._call(lambda c: OmitRuleSettingsRepository(c).get())

    # ── Analyses ──

    async def find_reusable_analysis(
        self,
        symbol: str,
        newer_than: Optional[datetime] = None,
    ) -> Optional[AnalysisRecord]:
        return await self._call(
            lambda c: AnalysisRepository(c).find_latest(symbol, newer_than=newer_than)
        )

    async def save_analysis(
        self,
        symbol: str,
        analysis: GeneratedAnalysis,
        generated_at: datetime,
    ) -> AnalysisRecord:
        return await self._call(
            lambda c: AnalysisRepository(c).insert(symbol, analysis, generated_at)
        )

    # ── Runs ──

    async def upsert_run(
        self,
        market: str,
        run_date: date,
        formula_id: str,
        formula_version: int,
        trigger: str,
        now: datetime,
    ) -> DailyRun:
        return await self._call(
            lambda c: DailyRunRepository(c).upsert_running(
                market, run_date, formula_id, formula_version, trigger, now
            )
        )

    async def finalize_run(
        self,
        run_id: int,
        status: str,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        await self._call(
            lambda c: DailyRunRepository(c).finalize(run_id, status, error, now)
        )

    async def list_runs_with_badges(self, market: str, run_date: date) -> list[DailyRun]:
        return await self._call(
            lambda c: DailyRunRepository(c).list_runs_with_badges(market, run_date)
        )

    async def latest_completed_run_with_badges(self, market: str) -> Optional[DailyRun]:
        return await self._call(
            lambda c: DailyRunRepository(c).latest_completed_with_badges(market)
        )

    # ── Badges ──

    async def list_badges(self, run_id: int) -> list[Badge]:
        return await self._call(lambda c: BadgeRepository(c).list_for_run(run_id))

    async def delete_badges(self, run_id: int, symbols: Iterable[str]) -> int:
        symbols = list(symbols)
        return await self._call(lambda c: BadgeRepository(c).delete_symbols(run_id, symbols))

    async def upsert_badge(self, badge: Badge) -> None:
        await self._call(lambda c: BadgeRepository(c).upsert(badge))
