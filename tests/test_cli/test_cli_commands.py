"""
CLI smoke tests via ``typer.testing.CliRunner``.

Each test writes a throwaway TOML config pointing every path into
``tmp_path`` so nothing touches the project's data directory.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from pulse_badges.cli import app
from pulse_badges.config import DatabaseConfig
from pulse_badges.db.connection import open_database
from pulse_badges.formulas.service import FormulaService
from pulse_badges.ingestion.snapshot_source import write_snapshot_parquet

runner = CliRunner()


@pytest.fixture
def cli_config(tmp_path: Path, monkeypatch) -> tuple[str, Path]:
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("PULSE_BADGES_DB_PATH", raising=False)
    db_path = tmp_path / "badges.db"
    cfg = tmp_path / "app.toml"
    cfg.write_text(
        "\n".join(
            [
                "[database]",
                f'db_path = "{db_path.as_posix()}"',
                "[data]",
                f'snapshots_dir = "{(tmp_path / "snapshots").as_posix()}"',
                f'reports_dir = "{(tmp_path / "reports").as_posix()}"',
                "[logging]",
                'log_file = ""',
                "",
            ]
        ),
        encoding="utf-8",
    )
    return str(cfg), db_path


def _invoke(*args: str):
    return runner.invoke(app, list(args))


def test_init_db(cli_config):
    cfg, db_path = cli_config
    result = _invoke("init-db", "--config", cfg)
    assert result.exit_code == 0, result.output
    assert "[OK] Database ready." in result.output
    assert db_path.exists()


def test_validate_config_full(cli_config):
    cfg, _ = cli_config
    result = _invoke("validate-config", "--config", cfg, "--full")
    assert result.exit_code == 0, result.output
    assert "[OK] Config valid." in result.output


def test_validate_formula():
    assert _invoke("validate-formula", "avg(g1m, g6m) - g5d").exit_code == 0
    assert _invoke("validate-formula", "g1m ** 2").exit_code == 1


def test_formula_lifecycle(cli_config):
    cfg, db_path = cli_config
    result = _invoke("create-formula", "--name", "Momentum", "--expression", "g6m - g1m",
                     "--config", cfg)
    assert result.exit_code == 0, result.output

    with open_database(DatabaseConfig(db_path=str(db_path))) as conn:
        (draft,) = FormulaService(conn).list_formulas("draft")

    # Drafts cannot be activated.
    assert _invoke("set-active-formula", "nasdaq", draft.formula_id, "--config", cfg).exit_code == 1
    assert _invoke("publish-formula", draft.formula_id, "--config", cfg).exit_code == 0
    assert _invoke("set-active-formula", "nasdaq", draft.formula_id, "--config", cfg).exit_code == 0
    assert _invoke("archive-formula", draft.formula_id, "--config", cfg).exit_code == 1

    listing = _invoke("list-formulas", "--config", cfg)
    assert "active: nasdaq" in listing.output


def test_create_formula_rejects_invalid(cli_config):
    cfg, _ = cli_config
    result = _invoke("create-formula", "--name", "Bad", "--expression", "bogus(g1m)",
                     "--config", cfg)
    assert result.exit_code == 1


def test_import_omit_rules(cli_config, tmp_path):
    cfg, _ = cli_config
    rules = tmp_path / "rules.json"
    rules.write_text(
        json.dumps({"enabled": True, "rules": {"nasdaq": [{"field": "price", "min": 1}]}}),
        encoding="utf-8",
    )
    result = _invoke("import-omit-rules", str(rules), "--config", cfg)
    assert result.exit_code == 0, result.output
    assert "1 rule(s)" in result.output

    rules.write_text('{"rules": {"nasdaq": [{"field": "volume"}]}}', encoding="utf-8")
    assert _invoke("import-omit-rules", str(rules), "--config", cfg).exit_code == 1


def test_top_symbols_writes_csv(cli_config, tmp_path, make_snapshot):
    cfg, _ = cli_config
    write_snapshot_parquet(
        [make_snapshot("AAPL"), make_snapshot("LAG", growth_5d=15.0)],
        tmp_path / "snapshots" / "nasdaq.parquet",
    )
    result = _invoke("top-symbols", "--market", "nasdaq", "--csv", "--config", cfg)
    assert result.exit_code == 0, result.output
    assert "1 recommended" in result.output
    assert "AAPL" in result.output
    assert list((tmp_path / "reports").glob("top_nasdaq_*.csv"))


def test_show_badges_empty(cli_config):
    cfg, _ = cli_config
    result = _invoke("show-badges", "--market", "tlv", "--config", cfg)
    assert result.exit_code == 0, result.output
    assert "No badges for tlv." in result.output


def test_refresh_requires_api_key(cli_config):
    cfg, _ = cli_config
    result = _invoke("refresh-daily", "--market", "nasdaq", "--config", cfg)
    assert result.exit_code == 1


def test_refresh_rejects_unknown_trigger(cli_config):
    cfg, _ = cli_config
    result = _invoke("refresh-daily", "--trigger", "formula-change", "--config", cfg)
    assert result.exit_code == 1
