"""
Async interfaces the daily refresh depends on.

  SnapshotSource    — read-only market-data cache.
  BadgeStore        — formulas, settings, analyses, runs and badges.
  AnalysisGenerator — the external generative call (no retries here).

Implementations: ``ParquetSnapshotSource`` (ingestion), ``SqliteBadgeStore``
(pipeline.stores) and ``GeminiAnalysisGenerator`` (analysis). Tests supply
in-memory fakes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import date, datetime
from typing import Any, Optional

from pulse_badges.models.daily_run import (
    AnalysisRecord,
    Badge,
    DailyRun,
    GeneratedAnalysis,
)
from pulse_badges.models.formula import Formula
from pulse_badges.models.instrument import InstrumentSnapshot
from pulse_badges.models.omit_rules import OmitRuleSet


class SnapshotSource(ABC):
    @abstractmethod
    async def get_snapshots(self, market: str) -> list[InstrumentSnapshot]:
        """All cached snapshots of ``market``."""


class BadgeStore(ABC):
    """Persistence used by the refresh and the badge read path."""

    # ── Formulas & settings ──

    @abstractmethod
    async def get_formula(self, formula_id: str) -> Optional[Formula]: ...

    @abstractmethod
    async def get_active_formula_id(self, market: str) -> Optional[str]: ...

    @abstractmethod
    async def get_omit_rules(self, market: str) -> Optional[OmitRuleSet]: ...

    # ── Analyses ──

    @abstractmethod
    async def find_reusable_analysis(
        self,
        symbol: str,
        newer_than: Optional[datetime] = None,
    ) -> Optional[AnalysisRecord]:
        """Most recent analysis of ``symbol``, optionally generated at or after ``newer_than``."""

    @abstractmethod
    async def save_analysis(
        self,
        symbol: str,
        analysis: GeneratedAnalysis,
        generated_at: datetime,
    ) -> AnalysisRecord: ...

    # ── Runs ──

    @abstractmethod
    async def upsert_run(
        self,
        market: str,
        run_date: date,
        formula_id: str,
        formula_version: int,
        trigger: str,
        now: datetime,
    ) -> DailyRun:
        """Create the (market, run_date) run, or restart it as ``running``."""

    @abstractmethod
    async def finalize_run(
        self,
        run_id: int,
        status: str,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None: ...

    @abstractmethod
    async def list_runs_with_badges(self, market: str, run_date: date) -> list[DailyRun]:
        """Runs on ``run_date`` that hold badges, best status then newest first."""

    @abstractmethod
    async def latest_completed_run_with_badges(self, market: str) -> Optional[DailyRun]: ...

    # ── Badges ──

    @abstractmethod
    async def list_badges(self, run_id: int) -> list[Badge]: ...

    @abstractmethod
    async def delete_badges(self, run_id: int, symbols: Iterable[str]) -> int: ...

    @abstractmethod
    async def upsert_badge(self, badge: Badge) -> None: ...


class AnalysisGenerator(ABC):
    @abstractmethod
    async def generate_analysis(
        self,
        symbol: str,
        company_name: str,
        metrics: dict[str, Any],
    ) -> GeneratedAnalysis:
        """Produce a label and explanation for one symbol.

        Raises:
            Exception: Any failure; the caller falls back to stored analyses.
        """
