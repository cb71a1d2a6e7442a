"""Tests for pulse_badges/ingestion/snapshot_source.py (Parquet snapshot cache)."""

from __future__ import annotations

import asyncio
import math
from pathlib import Path

import pyarrow as pa
import pyarrow.parquet as pq
import pytest

from pulse_badges.ingestion.snapshot_source import (
    ParquetSnapshotSource,
    read_snapshot_parquet,
    write_snapshot_parquet,
)


def test_write_then_read(tmp_path: Path, make_snapshot) -> None:
    path = tmp_path / "nasdaq.parquet"
    snaps = [make_snapshot("AAPL"), make_snapshot("MSFT", market_cap=None)]
    assert write_snapshot_parquet(snaps, path) == 2

    loaded = read_snapshot_parquet(path, "nasdaq")
    assert loaded == snaps


def test_camel_case_columns_and_unknown_columns(tmp_path: Path) -> None:
    path = tmp_path / "tlv.parquet"
    table = pa.table(
        {
            "symbol": ["teva", "elal"],
            "price": [42.0, 3.1],
            "marketCap": [1.2e10, None],
            "growth1m": [5.0, math.nan],
            "growth6m": [10.0, 2.0],
            "growth12m": [15.0, 4.0],
            "exchangeNote": ["x", "y"],
        }
    )
    pq.write_table(table, str(path))

    loaded = read_snapshot_parquet(path, "TLV")
    assert [s.symbol for s in loaded] == ["TEVA", "ELAL"]
    assert loaded[0].market == "tlv"
    assert loaded[0].market_cap == 1.2e10
    assert loaded[0].growth_1m == 5.0
    assert loaded[1].growth_1m is None


def test_invalid_rows_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "nasdaq.parquet"
    pq.write_table(pa.table({"symbol": ["AAPL", "   "], "price": [1.0, 2.0]}), str(path))
    loaded = read_snapshot_parquet(path, "nasdaq")
    assert [s.symbol for s in loaded] == ["AAPL"]


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        read_snapshot_parquet(tmp_path / "nope.parquet", "nasdaq")


def test_source_reads_market_file(tmp_path: Path, make_snapshot) -> None:
    write_snapshot_parquet([make_snapshot("AAPL")], tmp_path / "nasdaq.parquet")
    source = ParquetSnapshotSource(tmp_path)

    assert source.path_for(" NASDAQ ") == tmp_path / "nasdaq.parquet"
    loaded = asyncio.run(source.get_snapshots("NASDAQ"))
    assert [s.symbol for s in loaded] == ["AAPL"]
