"""Tests for pulse_badges/recommendations/reporter.py."""

from __future__ import annotations

import csv
import json
from datetime import date
from pathlib import Path

from pulse_badges.models.daily_run import RefreshResult, SymbolFailure
from pulse_badges.recommendations.ranker import select_recommended
from pulse_badges.recommendations.reporter import write_refresh_json, write_top_csv


def test_write_top_csv(tmp_path: Path, make_snapshot, make_formula) -> None:
    snaps = [make_snapshot("A", growth_1m=1.0), make_snapshot("B", growth_1m=2.0)]
    ranked = select_recommended(
        [s.with_derived_growth_3m() for s in snaps],
        make_formula("f1", "g1m", version=2),
    )
    path = write_top_csv(ranked, tmp_path / "out", "nasdaq", date(2026, 3, 10))

    assert path.name == "top_nasdaq_2026-03-10.csv"
    with path.open(encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert [r["symbol"] for r in rows] == ["B", "A"]
    assert rows[0]["rank"] == "1"
    assert rows[0]["score"] == "2.0000"
    assert rows[0]["growth_3m"] == "15.0000"
    assert rows[0]["formula_version"] == "2"


def test_write_top_csv_empty(tmp_path: Path) -> None:
    path = write_top_csv([], tmp_path, "tlv", date(2026, 3, 10))
    with path.open(encoding="utf-8") as f:
        assert list(csv.DictReader(f)) == []


def test_write_refresh_json(tmp_path: Path) -> None:
    result = RefreshResult(
        market="nasdaq",
        run_date=date(2026, 3, 10),
        formula_id="f1",
        run_id=7,
        status="partial",
        added=["D"],
        removed=["A"],
        skipped=["C", "B"],
        failed=[SymbolFailure(symbol="E", error="No analysis available")],
    )
    path = write_refresh_json(result, tmp_path)

    assert path.name == "refresh_nasdaq_2026-03-10.json"
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["status"] == "partial"
    assert payload["skipped"] == ["C", "B"]
    assert payload["failed"] == [{"symbol": "E", "error": "No analysis available"}]
