"""
Fixtures for the refresh pipeline test suite.

Provides in-memory collaborators for ``DailyRefreshOrchestrator``:
  - ``FakeStore``: a dict-backed ``BadgeStore`` with optional failure injection.
  - ``FakeSnapshots``: a ``SnapshotSource`` over fixed per-market lists.
  - ``FakeGenerator``: an ``AnalysisGenerator`` returning canned analyses,
    raising for chosen symbols and tracking peak concurrency.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import date, datetime
from typing import Any, Optional

import pytest

from pulse_badges.models.daily_run import (
    AnalysisRecord,
    Badge,
    DailyRun,
    GeneratedAnalysis,
)
from pulse_badges.models.formula import Formula
from pulse_badges.models.instrument import InstrumentSnapshot
from pulse_badges.models.omit_rules import OmitRuleSet
from pulse_badges.pipeline.collaborators import (
    AnalysisGenerator,
    BadgeStore,
    SnapshotSource,
)

_STATUS_RANK = {"ok": 0, "partial": 1, "running": 2, "failed": 3}


class FakeStore(BadgeStore):
    def __init__(self) -> None:
        self.formulas: dict[str, Formula] = {}
        self.active: dict[str, str] = {}
        self.omit_rules: Optional[OmitRuleSet] = None
        self.analyses: list[AnalysisRecord] = []
        self.runs: dict[int, DailyRun] = {}
        self.badges: dict[int, dict[str, Badge]] = {}
        self.finalize_calls: list[tuple[int, str, Optional[str]]] = []
        self.fail_on: set[str] = set()
        self.fail_save_for: set[str] = set()

    def _maybe_fail(self, method: str) -> None:
        if method in self.fail_on:
            raise RuntimeError(f"{method} unavailable")

    # ── Seeding helpers ──

    def add_analysis(self, symbol: str, generated_at: datetime, label: str = "hold") -> AnalysisRecord:
        record = AnalysisRecord(
            analysis_id=len(self.analyses) + 1,
            symbol=symbol,
            recommendation=label,
            text=f"stored {symbol}",
            model_id="seed",
            generated_at=generated_at,
        )
        self.analyses.append(record)
        return record

    def badge_symbols(self, run_id: int) -> list[str]:
        return sorted(self.badges.get(run_id, {}))

    # ── BadgeStore ──

    async def get_formula(self, formula_id: str) -> Optional[Formula]:
        return self.formulas.get(formula_id)

    async def get_active_formula_id(self, market: str) -> Optional[str]:
        return self.active.get(market)

    async def get_omit_rules(self, market: str) -> Optional[OmitRuleSet]:
        return self.omit_rules

    async def find_reusable_analysis(
        self,
        symbol: str,
        newer_than: Optional[datetime] = None,
    ) -> Optional[AnalysisRecord]:
        matches = [
            a for a in self.analyses
            if a.symbol == symbol and (newer_than is None or a.generated_at >= newer_than)
        ]
        if not matches:
            return None
        return max(matches, key=lambda a: (a.generated_at, a.analysis_id))

    async def save_analysis(
        self,
        symbol: str,
        analysis: GeneratedAnalysis,
        generated_at: datetime,
    ) -> AnalysisRecord:
        if symbol in self.fail_save_for:
            raise RuntimeError(f"cannot save {symbol}")
        record = AnalysisRecord(
            analysis_id=len(self.analyses) + 1,
            symbol=symbol,
            recommendation=analysis.recommendation,
            text=analysis.text,
            model_id=analysis.model_id,
            generated_at=generated_at,
        )
        self.analyses.append(record)
        return record

    async def upsert_run(
        self,
        market: str,
        run_date: date,
        formula_id: str,
        formula_version: int,
        trigger: str,
        now: datetime,
    ) -> DailyRun:
        self._maybe_fail("upsert_run")
        existing = next(
            (r for r in self.runs.values() if r.market == market and r.run_date == run_date),
            None,
        )
        run_id = existing.run_id if existing else len(self.runs) + 1
        run = DailyRun(
            run_id=run_id,
            market=market,
            run_date=run_date,
            formula_id=formula_id,
            formula_version=formula_version,
            trigger=trigger,
            status="running",
            started_at=now,
        )
        self.runs[run_id] = run
        self.badges.setdefault(run_id, {})
        return run

    async def finalize_run(
        self,
        run_id: int,
        status: str,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        self.finalize_calls.append((run_id, status, error))
        if status != "failed":
            self._maybe_fail("finalize_run")
        self.runs[run_id] = self.runs[run_id].model_copy(
            update={"status": status, "error": error, "completed_at": now}
        )

    async def list_runs_with_badges(self, market: str, run_date: date) -> list[DailyRun]:
        runs = [
            r for r in self.runs.values()
            if r.market == market and r.run_date == run_date and self.badges.get(r.run_id)
        ]
        return sorted(runs, key=lambda r: _STATUS_RANK[r.status])

    async def latest_completed_run_with_badges(self, market: str) -> Optional[DailyRun]:
        runs = [
            r for r in self.runs.values()
            if r.market == market and r.status in ("ok", "partial") and self.badges.get(r.run_id)
        ]
        return max(runs, key=lambda r: r.run_date) if runs else None

    async def list_badges(self, run_id: int) -> list[Badge]:
        self._maybe_fail("list_badges")
        return [self.badges[run_id][s] for s in sorted(self.badges.get(run_id, {}))]

    async def delete_badges(self, run_id: int, symbols: Iterable[str]) -> int:
        self._maybe_fail("delete_badges")
        removed = 0
        for symbol in symbols:
            if self.badges.get(run_id, {}).pop(symbol, None) is not None:
                removed += 1
        return removed

    async def upsert_badge(self, badge: Badge) -> None:
        self.badges.setdefault(badge.run_id, {})[badge.symbol] = badge


class FakeSnapshots(SnapshotSource):
    def __init__(self, by_market: Optional[dict[str, list[InstrumentSnapshot]]] = None) -> None:
        self.by_market = by_market or {}
        self.error: Optional[Exception] = None

    async def get_snapshots(self, market: str) -> list[InstrumentSnapshot]:
        if self.error is not None:
            raise self.error
        return list(self.by_market.get(market, []))


class FakeGenerator(AnalysisGenerator):
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.metrics: dict[str, dict[str, Any]] = {}
        self.fail_for: set[str] = set()
        self.delays: dict[str, float] = {}
        self.label = "buy"
        self.in_flight = 0
        self.peak_in_flight = 0

    async def generate_analysis(
        self,
        symbol: str,
        company_name: str,
        metrics: dict[str, Any],
    ) -> GeneratedAnalysis:
        self.calls.append(symbol)
        self.metrics[symbol] = metrics
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(symbol, 0))
            if symbol in self.fail_for:
                raise RuntimeError(f"model refused {symbol}")
            return GeneratedAnalysis(
                recommendation=self.label,
                text=f"{company_name}: fresh analysis",
                model_id="fake-model",
            )
        finally:
            self.in_flight -= 1


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def snapshots() -> FakeSnapshots:
    return FakeSnapshots()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()
