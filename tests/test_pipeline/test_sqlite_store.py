"""
End-to-end refresh against the real SQLite store and Parquet snapshot cache.

Checks that ``SqliteBadgeStore`` honours the same contract as the in-memory
fake: run upserts keep their id, badges survive re-runs, the formula-change
delta only generates new entrants, and the read path finds the result.
"""

from __future__ import annotations

import asyncio
from datetime import date

import pytest

from pulse_badges.config import AppConfig, DatabaseConfig, MarketsConfig, RefreshConfig
from pulse_badges.db.connection import ensure_database, open_database
from pulse_badges.db.repositories.daily_run_repo import DailyRunRepository
from pulse_badges.formulas.service import FormulaService
from pulse_badges.ingestion.snapshot_source import ParquetSnapshotSource, write_snapshot_parquet
from pulse_badges.pipeline.badge_reader import load_daily_badges
from pulse_badges.pipeline.daily_refresh import DailyRefreshOrchestrator
from pulse_badges.pipeline.stores import SqliteBadgeStore


@pytest.fixture
def sqlite_env(tmp_path, make_snapshot):
    db_config = DatabaseConfig(db_path=str(tmp_path / "db" / "badges.db"))
    ensure_database(db_config)

    write_snapshot_parquet(
        [
            make_snapshot("A", growth_1m=30.0, growth_6m=-1.0),
            make_snapshot("B", growth_1m=20.0, growth_6m=20.0),
            make_snapshot("C", growth_1m=10.0, growth_6m=30.0),
            make_snapshot("D", growth_1m=-1.0, growth_6m=40.0),
        ],
        tmp_path / "snapshots" / "nasdaq.parquet",
    )

    with open_database(db_config) as conn:
        service = FormulaService(conn)
        old = service.create("Short term", "g1m", publish=True)
        new = service.create("Long term", "g6m", publish=True)
        service.set_active("nasdaq", old.formula_id)

    config = AppConfig(
        database=db_config,
        refresh=RefreshConfig(concurrency=2),
        markets=MarketsConfig(defaults=["nasdaq"]),
    )
    return config, old.formula_id, new.formula_id, tmp_path


def test_periodic_then_formula_change(sqlite_env, generator, fixed_now):
    config, old_id, new_id, tmp_path = sqlite_env
    store = SqliteBadgeStore(config.database)
    orch = DailyRefreshOrchestrator(
        config=config,
        store=store,
        snapshots=ParquetSnapshotSource(tmp_path / "snapshots"),
        generator=generator,
    )

    first = asyncio.run(orch.refresh_periodic("nasdaq", now=fixed_now))
    assert first.added == ["A", "B", "C"]
    assert first.status == "ok"

    with open_database(config.database) as conn:
        FormulaService(conn).set_active("nasdaq", new_id)

    results = asyncio.run(
        orch.refresh_on_formula_change(old_id, new_id, ["nasdaq"], now=fixed_now)
    )
    delta = results["nasdaq"]
    assert delta.run_id == first.run_id
    assert delta.removed == ["A"]
    assert delta.added == ["D"]
    assert delta.skipped == ["C", "B"]
    assert generator.calls.count("D") == 1
    assert len(generator.calls) == 4

    view = asyncio.run(load_daily_badges(store, "nasdaq", now=fixed_now))
    assert sorted(view.badges) == ["B", "C", "D"]
    assert view.run.status == "ok"
    assert view.run.formula_id == new_id

    with open_database(config.database) as conn:
        run = DailyRunRepository(conn).get_for("nasdaq", date(2026, 3, 10))
    assert run.trigger == "formula-change"
    assert run.completed_at is not None


def test_missing_snapshot_file_fails_run(sqlite_env, generator, fixed_now):
    config, _, _, tmp_path = sqlite_env
    store = SqliteBadgeStore(config.database)
    orch = DailyRefreshOrchestrator(
        config=config,
        store=store,
        snapshots=ParquetSnapshotSource(tmp_path / "snapshots"),
        generator=generator,
    )

    with pytest.raises(FileNotFoundError):
        asyncio.run(orch.refresh_periodic("tlv", now=fixed_now))

    with open_database(config.database) as conn:
        run = DailyRunRepository(conn).get_for("tlv", date(2026, 3, 10))
    assert run.status == "failed"
    assert "Snapshot Parquet not found" in run.error


def test_store_reads_seeded_omit_rules(sqlite_env):
    config, _, _, _ = sqlite_env
    rules = asyncio.run(SqliteBadgeStore(config.database).get_omit_rules("nasdaq"))
    assert rules is not None
    assert rules.enabled is False
