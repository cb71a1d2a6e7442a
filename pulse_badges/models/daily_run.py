"""
Daily run, badge and analysis models.

``DailyRun`` is keyed by (market, run_date). It is created as ``running`` at
the start of a refresh and finalized exactly once to ``ok``, ``partial`` or
``failed``. Only the run's own refresh mutates it.

``Badge`` is keyed by (run_id, symbol): the persisted "recommended today"
marker for one symbol, pointing at the ``AnalysisRecord`` that explains it.

``AnalysisRecord`` belongs to no run. The same analysis may back badges on
several days while it is still relevant.

``RefreshResult`` is what a refresh reports per market. It is mutable so the
orchestrator can fill it in as symbols are classified.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Recommendation = Literal["buy", "hold", "sell"]
VALID_RECOMMENDATIONS: frozenset[str] = frozenset({"buy", "hold", "sell"})

RunTrigger = Literal["periodic", "formula-change", "manual"]
VALID_TRIGGERS: frozenset[str] = frozenset({"periodic", "formula-change", "manual"})

RunStatus = Literal["running", "ok", "partial", "failed"]
TERMINAL_RUN_STATUSES: frozenset[str] = frozenset({"ok", "partial", "failed"})


class DailyRun(BaseModel):
    """One market's badge computation for one calendar day."""

    model_config = ConfigDict(frozen=True)

    run_id: int
    market: str
    run_date: date
    formula_id: str
    formula_version: int
    trigger: RunTrigger
    status: RunStatus = "running"
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None


class Badge(BaseModel):
    """A persisted recommendation badge for one symbol in one run."""

    model_config = ConfigDict(frozen=True)

    run_id: int
    symbol: str
    recommendation: Recommendation
    analysis_id: int
    generated_at: datetime


class AnalysisRecord(BaseModel):
    """A generated explanation and label for one symbol."""

    model_config = ConfigDict(frozen=True)

    analysis_id: int
    symbol: str
    recommendation: Recommendation
    text: str = ""
    model_id: Optional[str] = None
    generated_at: datetime


class GeneratedAnalysis(BaseModel):
    """Raw output of the generative collaborator, before persistence."""

    model_config = ConfigDict(frozen=True)

    recommendation: Recommendation
    text: str
    model_id: str


class SymbolFailure(BaseModel):
    """A symbol that could not be backed by any analysis."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    error: str


class RefreshResult(BaseModel):
    """Outcome of refreshing one market's badge set.

    Attributes:
        market: Market refreshed.
        run_date: Run date in the reference timezone.
        formula_id: Formula that produced the new top-N.
        run_id: ``daily_runs`` row id.
        status: Final run status (``running`` until finalized).
        added: Symbols whose analysis was freshly generated.
        removed: Symbols whose badge was deleted because they left the top-N.
        skipped: Symbols backed by a reused analysis (no generation).
        failed: Symbols with neither a new nor a historical analysis.
    """

    model_config = ConfigDict(frozen=False)

    market: str
    run_date: date
    formula_id: str
    run_id: Optional[int] = None
    status: RunStatus = "running"
    added: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed: list[SymbolFailure] = Field(default_factory=list)

    def final_status(self) -> RunStatus:
        """Terminal status implied by the per-symbol outcomes."""
        if not self.failed:
            return "ok"
        if self.added or self.skipped:
            return "partial"
        return "failed"
