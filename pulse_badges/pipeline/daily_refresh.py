"""
Daily badge refresh for one or more markets.

``DailyRefreshOrchestrator`` keeps each market's "recommended today" badge
set in step with the active formula, generating analyses only where needed:

  Step 1 — Resolve formulas:  unknown ids fall back to the built-in default.
  Step 2 — Open the run:      upsert today's (market, run_date) row as running.
  Step 3 — Rank:              new_top under the new formula; for a formula
                              change, old_top under the previous formula.
  Step 4 — Diff:              to_remove = existing badges not in new_top;
                              must_regenerate = new_top - old_top (periodic:
                              new_top - existing badges).
  Step 5 — Remove:            delete only the to_remove badge rows.
  Step 6 — Resolve content:   a bounded worker pool walks the unbacked
                              new_top symbols in rank order. Each symbol
                              reuses a stored analysis (today's only when it
                              must be regenerated), else generates one, else
                              falls back to any historical analysis.
  Step 7 — Deadline:          checked before each dispatch; undispatched
                              symbols are left for the next pass and are not
                              failures.
  Step 8 — Finalize:          ok / partial / failed, exactly once.

Failure isolation
-----------------
- Per-symbol failure (lookup, generation, persistence): recorded in
  ``RefreshResult.failed``; the run continues.
- Infrastructure failure (run row, snapshots, badge listing or deletion,
  finalization): the run is marked ``failed`` with the error when its row
  exists, and the exception propagates to the caller.

Concurrency
-----------
Workers are asyncio tasks sharing one queue, so every symbol is owned by
exactly one worker and badge writes never collide within a run. The pool
size caps simultaneous generative calls. Outcome lists are assembled in
``new_top`` order, independent of completion order.

Two refreshes of the same market and date are not serialized against each
other; callers must not overlap them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Optional

from pulse_badges.config import AppConfig
from pulse_badges.formulas.constants import DEFAULT_FORMULA
from pulse_badges.formulas.engine import normalize_formula
from pulse_badges.models.daily_run import (
    AnalysisRecord,
    Badge,
    RefreshResult,
    RunTrigger,
    SymbolFailure,
)
from pulse_badges.models.formula import Formula
from pulse_badges.models.instrument import InstrumentSnapshot
from pulse_badges.pipeline.collaborators import (
    AnalysisGenerator,
    BadgeStore,
    SnapshotSource,
)
from pulse_badges.recommendations.ranker import top_symbols
from pulse_badges.utils.time_utils import run_date_for, start_of_day_utc, utcnow

logger = logging.getLogger(__name__)

OutcomeKind = Literal["added", "skipped", "failed"]


# ── Planning ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RefreshPlan:
    """Set difference between the new top-N and what the run already holds.

    Attributes:
        new_top:          Ranked symbols to badge, best first.
        to_remove:        Existing badge symbols no longer in ``new_top``.
        must_regenerate:  New entrants; only an analysis from today may back them.
        backed:           ``new_top`` symbols already holding a badge (reused as-is).
        pending:          ``new_top`` symbols still needing a badge, in rank order.
    """

    new_top:         tuple[str, ...]
    to_remove:       tuple[str, ...]
    must_regenerate: frozenset[str]
    backed:          frozenset[str]
    pending:         tuple[str, ...]


def plan_refresh(
    new_top: Sequence[str],
    old_top: Optional[Sequence[str]],
    existing: Iterable[str],
) -> RefreshPlan:
    """Diff ``new_top`` against ``old_top`` and the run's existing badges.

    Args:
        new_top: Ranked symbols under the new formula.
        old_top: Ranked symbols under the previous formula, or ``None`` for a
            periodic refresh (new entrants are then the unbadged symbols).
        existing: Symbols that already have a badge in this run.

    Returns:
        A ``RefreshPlan``. Pure; the result depends only on the three inputs.
    """
    existing_list = list(dict.fromkeys(existing))
    existing_set = set(existing_list)
    new_set = set(new_top)

    baseline = existing_set if old_top is None else set(old_top)
    return RefreshPlan(
        new_top=tuple(new_top),
        to_remove=tuple(s for s in existing_list if s not in new_set),
        must_regenerate=frozenset(new_set - baseline),
        backed=frozenset(new_set & existing_set),
        pending=tuple(s for s in new_top if s not in existing_set),
    )


@dataclass
class _Outcome:
    kind: OutcomeKind
    error: Optional[str] = None


# ── Orchestrator ──────────────────────────────────────────────────────────────

@dataclass
class _RefreshContext:
    """Per-market state shared by the workers of one refresh."""

    run_id: int
    snapshots: dict[str, InstrumentSnapshot]
    must_regenerate: frozenset[str]
    day_start: datetime
    now: datetime
    deadline: Optional[float]
    outcomes: dict[str, _Outcome] = field(default_factory=dict)


class DailyRefreshOrchestrator:
    """Drives periodic and formula-change badge refreshes.

    Args:
        config: Application config (``refresh`` and ``markets`` sections).
        store: Persistence for formulas, runs, badges and analyses.
        snapshots: Read-only market-data cache.
        generator: External analysis generator.
    """

    def __init__(
        self,
        config: AppConfig,
        store: BadgeStore,
        snapshots: SnapshotSource,
        generator: AnalysisGenerator,
    ) -> None:
        self.config = config
        self.store = store
        self.snapshots = snapshots
        self.generator = generator

    # ── Entry points ──

    async def refresh_periodic(
        self,
        market: str,
        trigger: RunTrigger = "periodic",
        time_budget_s: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> RefreshResult:
        """Refresh ``market`` under its currently active formula.

        Args:
            market: Market to refresh.
            trigger: Recorded on the run row (``periodic`` or ``manual``).
            time_budget_s: Soft budget in seconds; defaults to
                ``config.refresh.time_budget_s`` (``None`` = unbounded).
            now: Reference instant for the run date (defaults to now).

        Raises:
            Exception: Infrastructure failures, after the run is marked failed.
        """
        market = market.strip().lower()
        deadline = self._deadline(time_budget_s)
        formula = await self._resolve_active(market)
        logger.info(
            "Periodic refresh | market=%s | formula=%s v%d | trigger=%s",
            market, formula.formula_id, formula.version, trigger,
        )
        return await self._refresh_market(
            market, None, formula, trigger, deadline, now or utcnow()
        )

    async def refresh_on_formula_change(
        self,
        previous_formula_id: Optional[str],
        new_formula_id: Optional[str],
        markets: Optional[Sequence[str]] = None,
        trigger: RunTrigger = "formula-change",
        time_budget_s: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> dict[str, RefreshResult]:
        """Delta refresh after the active formula changed.

        Only symbols entering the top-N under the new formula need an analysis
        from today; the overlap with the previous top-N reuses what exists.
        Markets are processed in order under one shared deadline.

        Returns:
            ``{market: RefreshResult}`` in processing order.
        """
        deadline = self._deadline(time_budget_s)
        old_formula = await self._resolve_formula(previous_formula_id)
        new_formula = await self._resolve_formula(new_formula_id)
        now = now or utcnow()
        targets = [m.strip().lower() for m in (markets or self.config.markets.defaults)]
        logger.info(
            "Formula-change refresh | %s v%d -> %s v%d | markets=%s",
            old_formula.formula_id, old_formula.version,
            new_formula.formula_id, new_formula.version, targets,
        )

        results: dict[str, RefreshResult] = {}
        for market in targets:
            results[market] = await self._refresh_market(
                market, old_formula, new_formula, trigger, deadline, now
            )
        return results

    # ── Formula resolution ──

    async def _resolve_formula(self, formula_id: Optional[str]) -> Formula:
        if not formula_id:
            return DEFAULT_FORMULA
        formula = await self.store.get_formula(formula_id)
        if formula is None:
            logger.warning("Formula %s not found; using the default formula.", formula_id)
            return DEFAULT_FORMULA
        if not formula.is_published:
            logger.warning(
                "Formula %s is %s; using the default formula.", formula_id, formula.status
            )
            return DEFAULT_FORMULA
        return normalize_formula(formula)

    async def _resolve_active(self, market: str) -> Formula:
        return await self._resolve_formula(await self.store.get_active_formula_id(market))

    def _deadline(self, time_budget_s: Optional[float]) -> Optional[float]:
        budget = time_budget_s if time_budget_s is not None else self.config.refresh.time_budget_s
        if budget is None:
            return None
        return asyncio.get_running_loop().time() + max(budget, 0.0)

    # ── One market ──

    async def _refresh_market(
        self,
        market: str,
        old_formula: Optional[Formula],
        new_formula: Formula,
        trigger: RunTrigger,
        deadline: Optional[float],
        now: datetime,
    ) -> RefreshResult:
        tz_name = self.config.refresh.reference_timezone
        run_date = run_date_for(now, tz_name)

        run = await self.store.upsert_run(
            market, run_date, new_formula.formula_id, new_formula.version, trigger, now
        )
        result = RefreshResult(
            market=market,
            run_date=run_date,
            formula_id=new_formula.formula_id,
            run_id=run.run_id,
        )
        log_ctx = {"market": market, "run_id": run.run_id}

        try:
            snapshots = await self.snapshots.get_snapshots(market)
            omit_rules = await self.store.get_omit_rules(market)
            top_n = self.config.refresh.top_n
            new_top = top_symbols(snapshots, new_formula, omit_rules, market, limit=top_n)
            old_top = (
                top_symbols(snapshots, old_formula, omit_rules, market, limit=top_n)
                if old_formula is not None else None
            )

            existing = await self.store.list_badges(run.run_id)
            plan = plan_refresh(new_top, old_top, (b.symbol for b in existing))
            logger.info(
                "Plan | new_top=%d | remove=%d | regenerate=%d | pending=%d",
                len(plan.new_top), len(plan.to_remove),
                len(plan.must_regenerate), len(plan.pending),
                extra=log_ctx,
            )

            if plan.to_remove:
                await self.store.delete_badges(run.run_id, plan.to_remove)
            result.removed = list(plan.to_remove)

            ctx = _RefreshContext(
                run_id=run.run_id,
                snapshots={s.symbol: s.with_derived_growth_3m() for s in snapshots},
                must_regenerate=plan.must_regenerate,
                day_start=start_of_day_utc(run_date, tz_name),
                now=now,
                deadline=deadline,
            )
            await self._run_workers(plan.pending, ctx)
            self._collect(result, plan, ctx.outcomes)

        except Exception as exc:
            logger.error("Run FAILED: %s", exc, extra=log_ctx)
            result.status = "failed"
            await self.store.finalize_run(run.run_id, "failed", str(exc) or type(exc).__name__)
            raise

        result.status = result.final_status()
        try:
            await self.store.finalize_run(run.run_id, result.status)
        except Exception as exc:
            logger.error("Run could not be finalized: %s", exc, extra=log_ctx)
            await self.store.finalize_run(run.run_id, "failed", str(exc) or type(exc).__name__)
            raise

        logger.info(
            "Run %s | added=%d | removed=%d | skipped=%d | failed=%d",
            result.status, len(result.added), len(result.removed),
            len(result.skipped), len(result.failed),
            extra=log_ctx,
        )
        return result

    @staticmethod
    def _collect(
        result: RefreshResult,
        plan: RefreshPlan,
        outcomes: dict[str, _Outcome],
    ) -> None:
        deferred = 0
        for symbol in plan.new_top:
            if symbol in plan.backed:
                result.skipped.append(symbol)
                continue
            outcome = outcomes.get(symbol)
            if outcome is None:
                deferred += 1
            elif outcome.kind == "added":
                result.added.append(symbol)
            elif outcome.kind == "skipped":
                result.skipped.append(symbol)
            else:
                result.failed.append(SymbolFailure(symbol=symbol, error=outcome.error or ""))
        if deferred:
            logger.warning(
                "%s: deadline reached, %d symbol(s) left for the next refresh.",
                result.market, deferred,
            )

    # ── Worker pool ──

    async def _run_workers(self, pending: Sequence[str], ctx: _RefreshContext) -> None:
        if not pending:
            return
        queue: asyncio.Queue[str] = asyncio.Queue()
        for symbol in pending:
            queue.put_nowait(symbol)

        loop = asyncio.get_running_loop()

        async def worker() -> None:
            while True:
                if ctx.deadline is not None and loop.time() >= ctx.deadline:
                    return
                try:
                    symbol = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                ctx.outcomes[symbol] = await self._process_symbol(symbol, ctx)

        size = min(self.config.refresh.concurrency, len(pending))
        await asyncio.gather(*(worker() for _ in range(size)))

    async def _process_symbol(self, symbol: str, ctx: _RefreshContext) -> _Outcome:
        try:
            return await self._resolve_content(symbol, ctx)
        except Exception as exc:
            logger.warning("%s: badge could not be written: %s", symbol, exc)
            return _Outcome("failed", str(exc) or type(exc).__name__)

    async def _resolve_content(self, symbol: str, ctx: _RefreshContext) -> _Outcome:
        newer_than = ctx.day_start if symbol in ctx.must_regenerate else None
        reusable = await self.store.find_reusable_analysis(symbol, newer_than=newer_than)
        if reusable is not None:
            await self._write_badge(ctx.run_id, symbol, reusable)
            return _Outcome("skipped")

        snapshot = ctx.snapshots.get(symbol)
        try:
            generated = await self.generator.generate_analysis(
                symbol,
                (snapshot.name if snapshot else None) or symbol,
                snapshot.metrics() if snapshot else {},
            )
            record = await self.store.save_analysis(symbol, generated, ctx.now)
        except Exception as exc:
            logger.warning("%s: generation failed, trying stored analyses: %s", symbol, exc)
            fallback = await self.store.find_reusable_analysis(symbol)
            if fallback is None:
                return _Outcome(
                    "failed", f"No analysis available (generation failed: {exc})"
                )
            await self._write_badge(ctx.run_id, symbol, fallback)
            return _Outcome("skipped")

        await self._write_badge(ctx.run_id, symbol, record)
        return _Outcome("added")

    async def _write_badge(self, run_id: int, symbol: str, analysis: AnalysisRecord) -> None:
        await self.store.upsert_badge(
            Badge(
                run_id=run_id,
                symbol=symbol,
                recommendation=analysis.recommendation,
                analysis_id=analysis.analysis_id,
                generated_at=analysis.generated_at,
            )
        )
