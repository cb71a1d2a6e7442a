"""
Parquet-backed snapshot cache.

Layout: one file per market, ``<snapshots_dir>/<market>.parquet``, one row
per symbol. Column names may be snake_case (``growth_1m``, ``market_cap``)
or the camelCase used by the upstream cache (``growth1m``, ``marketCap``).
Unknown columns are ignored; rows that fail validation are skipped with a
warning.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import pyarrow as pa
import pyarrow.parquet as pq
from pydantic import ValidationError

from pulse_badges.models.instrument import InstrumentSnapshot
from pulse_badges.pipeline.collaborators import SnapshotSource

logger = logging.getLogger(__name__)

_COLUMN_ALIASES: dict[str, str] = {
    "marketCap": "market_cap",
    "growth1d":  "growth_1d",
    "growth5d":  "growth_5d",
    "growth1m":  "growth_1m",
    "growth3m":  "growth_3m",
    "growth6m":  "growth_6m",
    "growth12m": "growth_12m",
}

_FIELDS = frozenset(InstrumentSnapshot.model_fields)

_SCHEMA = pa.schema([
    pa.field("symbol",      pa.string(),  nullable=False),
    pa.field("market",      pa.string(),  nullable=False),
    pa.field("name",        pa.string()),
    pa.field("price",       pa.float64()),
    pa.field("market_cap",  pa.float64()),
    pa.field("growth_1d",   pa.float64()),
    pa.field("growth_5d",   pa.float64()),
    pa.field("growth_1m",   pa.float64()),
    pa.field("growth_3m",   pa.float64()),
    pa.field("growth_6m",   pa.float64()),
    pa.field("growth_12m",  pa.float64()),
    pa.field("sector",      pa.string()),
    pa.field("industry",    pa.string()),
    pa.field("description", pa.string()),
])


def _normalize_row(row: dict[str, Any], market: str) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in row.items():
        name = _COLUMN_ALIASES.get(key, key)
        if name in _FIELDS:
            out[name] = value
    out.setdefault("market", market)
    return out


def read_snapshot_parquet(path: Path, market: str) -> list[InstrumentSnapshot]:
    """Load every valid snapshot row from ``path``.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
    """
    if not path.exists():
        raise FileNotFoundError(f"Snapshot Parquet not found: {path}")

    rows = pq.read_table(str(path)).to_pylist()
    snapshots: list[InstrumentSnapshot] = []
    skipped = 0
    for row in rows:
        try:
            snapshots.append(InstrumentSnapshot(**_normalize_row(row, market)))
        except ValidationError as exc:
            skipped += 1
            logger.warning("Skipping snapshot row %r: %s", row.get("symbol"), exc)

    logger.info(
        "Loaded %d snapshots for %s from %s (%d skipped)",
        len(snapshots), market, path.name, skipped,
    )
    return snapshots


def write_snapshot_parquet(snapshots: list[InstrumentSnapshot], path: Path) -> int:
    """Write snapshots to ``path`` (used to seed the cache). Returns row count."""
    path.parent.mkdir(parents=True, exist_ok=True)
    rows = [s.model_dump() for s in snapshots]
    arrays = {f.name: pa.array([r[f.name] for r in rows], type=f.type) for f in _SCHEMA}
    pq.write_table(pa.table(arrays, schema=_SCHEMA), str(path), compression="snappy")
    return len(rows)


class ParquetSnapshotSource(SnapshotSource):
    """``SnapshotSource`` reading ``<snapshots_dir>/<market>.parquet``."""

    def __init__(self, snapshots_dir: Path) -> None:
        self.snapshots_dir = Path(snapshots_dir)

    def path_for(self, market: str) -> Path:
        return self.snapshots_dir / f"{market.strip().lower()}.parquet"

    async def get_snapshots(self, market: str) -> list[InstrumentSnapshot]:
        market = market.strip().lower()
        return await asyncio.to_thread(read_snapshot_parquet, self.path_for(market), market)
