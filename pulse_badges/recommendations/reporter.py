"""
Report writers: CSV of a ranked top-N and JSON of a refresh outcome.

Pure file I/O, no DB access.

Output files
------------
  data/outputs/badges/
    top_{market}_{date}.csv       -- ranked recommended instruments
    refresh_{market}_{date}.json  -- added / removed / skipped / failed
"""

from __future__ import annotations

import csv
import json
import logging
from datetime import date
from pathlib import Path
from typing import Optional

from pulse_badges.models.daily_run import RefreshResult
from pulse_badges.models.instrument import ScoredSnapshot

logger = logging.getLogger(__name__)


def _fmt(value: Optional[float]) -> str:
    return "" if value is None else f"{value:.4f}"


def write_top_csv(
    ranked: list[ScoredSnapshot],
    output_dir: Path,
    market: str,
    run_date: Optional[date] = None,
) -> Path:
    """Write ranked snapshots to ``top_{market}_{date}.csv``.

    Columns: rank, symbol, name, score, growth_5d, growth_1m, growth_3m,
    growth_6m, growth_12m, price, market_cap, formula_id, formula_version.

    Returns:
        Path to the written CSV file.
    """
    if run_date is None:
        run_date = date.today()

    output_dir.mkdir(parents=True, exist_ok=True)
    csv_path = output_dir / f"top_{market}_{run_date}.csv"

    fieldnames = [
        "rank", "symbol", "name", "score",
        "growth_5d", "growth_1m", "growth_3m", "growth_6m", "growth_12m",
        "price", "market_cap", "formula_id", "formula_version",
    ]

    with csv_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for rank, scored in enumerate(ranked, start=1):
            snap = scored.snapshot
            writer.writerow(
                {
                    "rank":            rank,
                    "symbol":          snap.symbol,
                    "name":            snap.name or "",
                    "score":           _fmt(scored.score),
                    "growth_5d":       _fmt(snap.growth_5d),
                    "growth_1m":       _fmt(snap.growth_1m),
                    "growth_3m":       _fmt(snap.growth_3m),
                    "growth_6m":       _fmt(snap.growth_6m),
                    "growth_12m":      _fmt(snap.growth_12m),
                    "price":           _fmt(snap.price),
                    "market_cap":      _fmt(snap.market_cap),
                    "formula_id":      scored.formula_id,
                    "formula_version": scored.formula_version,
                }
            )

    logger.info("Top-N CSV written: %s (%d rows)", csv_path, len(ranked))
    return csv_path


def refresh_result_payload(result: RefreshResult) -> dict:
    return {
        "market":     result.market,
        "run_date":   result.run_date.isoformat(),
        "formula_id": result.formula_id,
        "run_id":     result.run_id,
        "status":     result.status,
        "added":      list(result.added),
        "removed":    list(result.removed),
        "skipped":    list(result.skipped),
        "failed":     [{"symbol": f.symbol, "error": f.error} for f in result.failed],
    }


def write_refresh_json(result: RefreshResult, output_dir: Path) -> Path:
    """Write a refresh outcome to ``refresh_{market}_{date}.json``."""
    output_dir.mkdir(parents=True, exist_ok=True)
    json_path = output_dir / f"refresh_{result.market}_{result.run_date}.json"

    with json_path.open("w", encoding="utf-8") as f:
        json.dump(refresh_result_payload(result), f, indent=2)

    logger.info("Refresh JSON written: %s", json_path)
    return json_path
