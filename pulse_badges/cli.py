"""
pulse-badges — CLI entry point.

All commands follow this pattern:
  1. Load ``AppConfig`` via ``load_config()``.
  2. Configure logging.
  3. Validate inputs.
  4. Execute the action (DB init, formula lifecycle, refresh, report).
  5. Report the result to stdout; failures print ``[ERROR]`` and exit 1.

Install and run::

    pip install -e .
    pulse-badges --help
    pulse-badges init-db
    pulse-badges validate-formula "avg(g1m, g6m) - g5d"
    pulse-badges create-formula --name "Momentum" --expression "g6m - g1m" --publish
    pulse-badges set-active-formula nasdaq <formula-id> --refresh
    pulse-badges refresh-daily --market nasdaq
    pulse-badges show-badges --market tlv
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer

app = typer.Typer(
    name="pulse-badges",
    help="Formula-scored daily top-N recommendation badges.",
    add_completion=False,
)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _load_config_or_exit(config_path: Optional[str] = None):
    """Load AppConfig, printing a friendly error and exiting on failure."""
    from pulse_badges.config import load_config

    try:
        cfg_path = Path(config_path) if config_path else None
        return load_config(cfg_path)
    except FileNotFoundError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    except Exception as exc:
        typer.echo(f"[ERROR] Config validation failed: {exc}", err=True)
        raise typer.Exit(code=1)


def _configure_logging(config):
    from pulse_badges.utils.logging import configure_logging
    configure_logging(config.logging)


def _prepare(config_path: Optional[str], db_path: Optional[str]):
    """Load config, configure logging, ensure the DB. Returns (config, db_path)."""
    from pulse_badges.db.connection import ensure_database

    config = _load_config_or_exit(config_path)
    _configure_logging(config)
    target_db = db_path or config.database.db_path
    ensure_database(config.database, target_db)
    return config, target_db


def _build_orchestrator(config, db_path: str):
    from pulse_badges.analysis.gemini_client import GeminiAnalysisGenerator
    from pulse_badges.ingestion.snapshot_source import ParquetSnapshotSource
    from pulse_badges.pipeline.daily_refresh import DailyRefreshOrchestrator
    from pulse_badges.pipeline.stores import SqliteBadgeStore

    try:
        generator = GeminiAnalysisGenerator(config.analysis)
    except ValueError as exc:
        typer.echo(f"[ERROR] {exc} Set it in .env.", err=True)
        raise typer.Exit(code=1)

    return DailyRefreshOrchestrator(
        config=config,
        store=SqliteBadgeStore(config.database, db_path),
        snapshots=ParquetSnapshotSource(Path(config.data.snapshots_dir)),
        generator=generator,
    )


def _echo_result(result) -> None:
    typer.echo(
        f"  {result.market} {result.run_date} run={result.run_id} status={result.status}"
    )
    typer.echo(f"    added   ({len(result.added)}): {', '.join(result.added)}")
    typer.echo(f"    removed ({len(result.removed)}): {', '.join(result.removed)}")
    typer.echo(f"    skipped ({len(result.skipped)}): {', '.join(result.skipped)}")
    for failure in result.failed:
        typer.echo(f"    failed  {failure.symbol}: {failure.error}")


def _write_reports(config, results) -> None:
    from pulse_badges.recommendations.reporter import write_refresh_json

    for result in results:
        path = write_refresh_json(result, Path(config.data.reports_dir))
        typer.echo(f"  Report: {path}")


# ── Database & config ─────────────────────────────────────────────────────────

@app.command("init-db")
def init_db(
    db_path: Optional[str] = typer.Option(
        None, "--db-path", help="Override DB path from config."
    ),
    config_path: Optional[str] = typer.Option(
        None, "--config", help="Path to TOML config file."
    ),
) -> None:
    """Initialize the SQLite database and apply pending migrations.

    Safe to run multiple times.
    """
    from pulse_badges.db.connection import ensure_database
    from pulse_badges.db.schema import ALL_TABLE_NAMES

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    target_path = db_path or config.database.db_path
    typer.echo(f"Initializing database at: {target_path}")
    migrations_applied = ensure_database(config.database, target_path)

    typer.echo(f"  Tables: {len(ALL_TABLE_NAMES)} created/verified.")
    typer.echo(f"  Migrations applied: {migrations_applied}")
    typer.echo("[OK] Database ready.")


@app.command("validate-config")
def validate_config(
    config_path: Optional[str] = typer.Option(
        None, "--config", help="Path to TOML config file (default: config/default.toml)."
    ),
    show_full: bool = typer.Option(
        False, "--full", help="Print full config including all fields."
    ),
) -> None:
    """Validate the configuration file and print parsed values."""
    config = _load_config_or_exit(config_path)

    typer.echo("Configuration validated successfully.")
    typer.echo("")
    typer.echo(f"  Database path:    {config.database.db_path}")
    typer.echo(f"  Snapshots dir:    {config.data.snapshots_dir}")
    typer.echo(f"  Markets:          {', '.join(config.markets.defaults)}")
    typer.echo(f"  Top-N:            {config.refresh.top_n}")
    typer.echo(f"  Concurrency:      {config.refresh.concurrency}")
    typer.echo(f"  Time budget (s):  {config.refresh.time_budget_s}")
    typer.echo(f"  Reference TZ:     {config.refresh.reference_timezone}")
    typer.echo(f"  Analysis model:   {config.analysis.model_id}")
    typer.echo(f"  API key set:      {bool(config.analysis.api_key)}")
    typer.echo(f"  Log level:        {config.logging.level}")
    typer.echo(f"  Debug mode:       {config.debug}")

    if show_full:
        typer.echo("")
        typer.echo("Full config (JSON):")
        dumped = config.model_dump()
        if dumped["analysis"].get("api_key"):
            dumped["analysis"]["api_key"] = "***"
        typer.echo(json.dumps(dumped, indent=2, default=str))

    typer.echo("")
    typer.echo("[OK] Config valid.")


# ── Formulas ──────────────────────────────────────────────────────────────────

@app.command("validate-formula")
def validate_formula(
    expression: str = typer.Argument(..., help="Formula expression to check."),
) -> None:
    """Validate a formula expression without storing it."""
    from pulse_badges.formulas.engine import validate_expression

    result = validate_expression(expression)
    typer.echo(f"  Variables: {', '.join(result.variables) or '-'}")
    for warning in result.warnings:
        typer.echo(f"  [WARN] {warning}")
    if not result.valid:
        for error in result.errors:
            typer.echo(f"[ERROR] {error}", err=True)
        raise typer.Exit(code=1)
    typer.echo("[OK] Expression valid.")


@app.command("create-formula")
def create_formula(
    name: str = typer.Option(..., "--name", help="Display name."),
    expression: str = typer.Option(..., "--expression", help="Formula expression."),
    description: Optional[str] = typer.Option(None, "--description"),
    publish: bool = typer.Option(False, "--publish", help="Publish immediately."),
    created_by: Optional[str] = typer.Option(None, "--by", help="Actor recorded on the row."),
    db_path: Optional[str] = typer.Option(None, "--db-path"),
    config_path: Optional[str] = typer.Option(None, "--config"),
) -> None:
    """Create a formula (draft unless --publish)."""
    from pulse_badges.db.connection import open_database
    from pulse_badges.formulas.service import FormulaService, FormulaValidationError

    config, target_db = _prepare(config_path, db_path)
    try:
        with open_database(config.database, target_db) as conn:
            formula = FormulaService(conn).create(
                name, expression, description=description,
                publish=publish, created_by=created_by,
            )
    except FormulaValidationError as exc:
        for error in exc.errors:
            typer.echo(f"[ERROR] {error}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"[OK] Created {formula.formula_id} ({formula.name}) status={formula.status}")


@app.command("update-formula")
def update_formula(
    formula_id: str = typer.Argument(...),
    name: Optional[str] = typer.Option(None, "--name"),
    expression: Optional[str] = typer.Option(None, "--expression"),
    description: Optional[str] = typer.Option(None, "--description"),
    updated_by: Optional[str] = typer.Option(None, "--by"),
    db_path: Optional[str] = typer.Option(None, "--db-path"),
    config_path: Optional[str] = typer.Option(None, "--config"),
) -> None:
    """Edit a formula; changing the expression bumps its version."""
    from pulse_badges.db.connection import open_database
    from pulse_badges.formulas.service import FormulaService, FormulaValidationError

    config, target_db = _prepare(config_path, db_path)
    try:
        with open_database(config.database, target_db) as conn:
            formula = FormulaService(conn).update(
                formula_id, name=name, expression=expression,
                description=description, updated_by=updated_by,
            )
    except KeyError as exc:
        typer.echo(f"[ERROR] {exc.args[0]}", err=True)
        raise typer.Exit(code=1)
    except FormulaValidationError as exc:
        for error in exc.errors:
            typer.echo(f"[ERROR] {error}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"[OK] {formula.formula_id} is now v{formula.version}")


def _lifecycle(action: str, formula_id: str, updated_by, db_path, config_path) -> None:
    from pulse_badges.db.connection import open_database
    from pulse_badges.formulas.service import FormulaService, FormulaValidationError

    config, target_db = _prepare(config_path, db_path)
    try:
        with open_database(config.database, target_db) as conn:
            service = FormulaService(conn)
            formula = getattr(service, action)(formula_id, updated_by=updated_by)
    except KeyError as exc:
        typer.echo(f"[ERROR] {exc.args[0]}", err=True)
        raise typer.Exit(code=1)
    except FormulaValidationError as exc:
        for error in exc.errors:
            typer.echo(f"[ERROR] {error}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"[OK] {formula.formula_id} status={formula.status}")


@app.command("publish-formula")
def publish_formula(
    formula_id: str = typer.Argument(...),
    updated_by: Optional[str] = typer.Option(None, "--by"),
    db_path: Optional[str] = typer.Option(None, "--db-path"),
    config_path: Optional[str] = typer.Option(None, "--config"),
) -> None:
    """Re-validate and publish a formula."""
    _lifecycle("publish", formula_id, updated_by, db_path, config_path)


@app.command("archive-formula")
def archive_formula(
    formula_id: str = typer.Argument(...),
    updated_by: Optional[str] = typer.Option(None, "--by"),
    db_path: Optional[str] = typer.Option(None, "--db-path"),
    config_path: Optional[str] = typer.Option(None, "--config"),
) -> None:
    """Archive a formula that no market uses."""
    _lifecycle("archive", formula_id, updated_by, db_path, config_path)


@app.command("list-formulas")
def list_formulas(
    status: Optional[str] = typer.Option(
        None, "--status", help="Filter: draft, published or archived."
    ),
    db_path: Optional[str] = typer.Option(None, "--db-path"),
    config_path: Optional[str] = typer.Option(None, "--config"),
) -> None:
    """List stored formulas and which markets use them."""
    from pulse_badges.db.connection import open_database
    from pulse_badges.formulas.service import FormulaService
    from pulse_badges.models.formula import VALID_FORMULA_STATUSES

    if status is not None and status not in VALID_FORMULA_STATUSES:
        typer.echo(f"[ERROR] --status must be one of {sorted(VALID_FORMULA_STATUSES)}", err=True)
        raise typer.Exit(code=1)

    config, target_db = _prepare(config_path, db_path)
    with open_database(config.database, target_db) as conn:
        service = FormulaService(conn)
        formulas = service.list_formulas(status)
        active = service.settings.list_active()

    if not formulas:
        typer.echo("No formulas.")
        return
    for formula in formulas:
        markets = sorted(m for m, fid in active.items() if fid == formula.formula_id)
        suffix = f"  active: {', '.join(markets)}" if markets else ""
        typer.echo(
            f"{formula.formula_id}  v{formula.version}  {formula.status:<9}  "
            f"{formula.name}{suffix}"
        )
        typer.echo(f"    {formula.expression}")


@app.command("set-active-formula")
def set_active_formula(
    market: str = typer.Argument(..., help="Market, e.g. nasdaq."),
    formula_id: str = typer.Argument(..., help="Published formula id."),
    refresh: bool = typer.Option(
        False, "--refresh", help="Run a formula-change refresh for the market afterwards."
    ),
    updated_by: Optional[str] = typer.Option(None, "--by"),
    db_path: Optional[str] = typer.Option(None, "--db-path"),
    config_path: Optional[str] = typer.Option(None, "--config"),
) -> None:
    """Make a published formula active for a market."""
    from pulse_badges.db.connection import open_database
    from pulse_badges.formulas.service import FormulaService, FormulaValidationError

    config, target_db = _prepare(config_path, db_path)
    try:
        with open_database(config.database, target_db) as conn:
            service = FormulaService(conn)
            previous_id = service.active_formula_id(market)
            formula = service.set_active(market, formula_id, updated_by=updated_by)
    except KeyError as exc:
        typer.echo(f"[ERROR] {exc.args[0]}", err=True)
        raise typer.Exit(code=1)
    except FormulaValidationError as exc:
        for error in exc.errors:
            typer.echo(f"[ERROR] {error}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"[OK] {market.lower()} -> {formula.formula_id} v{formula.version}")
    if not refresh:
        return

    orchestrator = _build_orchestrator(config, target_db)
    try:
        results = asyncio.run(
            orchestrator.refresh_on_formula_change(previous_id, formula_id, [market])
        )
    except Exception as exc:
        typer.echo(f"[ERROR] Refresh failed: {exc}", err=True)
        raise typer.Exit(code=1)
    for result in results.values():
        _echo_result(result)


@app.command("import-omit-rules")
def import_omit_rules(
    rules_path: Path = typer.Argument(
        ..., help='JSON file: {"enabled": true, "rules": {"nasdaq": [{"field": ...}]}}'
    ),
    db_path: Optional[str] = typer.Option(None, "--db-path"),
    config_path: Optional[str] = typer.Option(None, "--config"),
) -> None:
    """Replace the stored omit-rule settings with the contents of a JSON file."""
    from pydantic import ValidationError

    from pulse_badges.db.connection import open_database
    from pulse_badges.db.repositories.formula_repo import OmitRuleSettingsRepository
    from pulse_badges.models.omit_rules import OmitRuleSet

    if not rules_path.exists():
        typer.echo(f"[ERROR] File not found: {rules_path}", err=True)
        raise typer.Exit(code=1)

    try:
        rule_set = OmitRuleSet.model_validate_json(rules_path.read_text(encoding="utf-8"))
    except ValidationError as exc:
        typer.echo(f"[ERROR] Invalid omit rules: {exc}", err=True)
        raise typer.Exit(code=1)

    config, target_db = _prepare(config_path, db_path)
    with open_database(config.database, target_db) as conn:
        OmitRuleSettingsRepository(conn).save(rule_set)

    total = sum(len(r) for r in rule_set.rules.values())
    typer.echo(
        f"[OK] Omit rules saved: enabled={rule_set.enabled}, "
        f"{total} rule(s) across {len(rule_set.rules)} market(s)."
    )


# ── Refresh ───────────────────────────────────────────────────────────────────

@app.command("refresh-daily")
def refresh_daily(
    markets: Optional[list[str]] = typer.Option(
        None, "--market", help="Market to refresh. Repeatable; uses config defaults if omitted."
    ),
    trigger: str = typer.Option(
        "periodic", "--trigger", help="Recorded trigger: periodic or manual."
    ),
    time_budget: Optional[float] = typer.Option(
        None, "--time-budget", help="Soft time budget in seconds."
    ),
    report: bool = typer.Option(True, "--report/--no-report", help="Write JSON reports."),
    db_path: Optional[str] = typer.Option(None, "--db-path"),
    config_path: Optional[str] = typer.Option(None, "--config"),
) -> None:
    """Refresh today's badges under each market's active formula.

    \b
    Per market:
      1. Rank the top-N under the active formula (omit rules applied).
      2. Remove badges that fell out; keep badges that stayed.
      3. Back new entrants with today's analysis, a fresh generation,
         or any historical analysis, in that order.
    """
    if trigger not in ("periodic", "manual"):
        typer.echo("[ERROR] --trigger must be periodic or manual.", err=True)
        raise typer.Exit(code=1)

    config, target_db = _prepare(config_path, db_path)
    targets = list(markets) if markets else list(config.markets.defaults)
    orchestrator = _build_orchestrator(config, target_db)

    typer.echo(f"refresh-daily | markets={', '.join(targets)} | db={target_db}")

    async def _run():
        results = []
        for market in targets:
            results.append(
                await orchestrator.refresh_periodic(
                    market, trigger=trigger, time_budget_s=time_budget
                )
            )
        return results

    try:
        results = asyncio.run(_run())
    except Exception as exc:
        typer.echo(f"[ERROR] Refresh failed: {exc}", err=True)
        raise typer.Exit(code=1)

    for result in results:
        _echo_result(result)
    if report:
        _write_reports(config, results)

    if any(r.status == "failed" for r in results):
        typer.echo("[ERROR] At least one market failed.", err=True)
        raise typer.Exit(code=1)
    typer.echo("[OK] Daily refresh complete.")


@app.command("refresh-formula-change")
def refresh_formula_change(
    previous_formula_id: Optional[str] = typer.Option(
        None, "--previous", help="Formula that was active before (default formula if omitted)."
    ),
    new_formula_id: str = typer.Option(..., "--new", help="Formula that is active now."),
    markets: Optional[list[str]] = typer.Option(
        None, "--market", help="Market to refresh. Repeatable; uses config defaults if omitted."
    ),
    time_budget: Optional[float] = typer.Option(None, "--time-budget"),
    report: bool = typer.Option(True, "--report/--no-report"),
    db_path: Optional[str] = typer.Option(None, "--db-path"),
    config_path: Optional[str] = typer.Option(None, "--config"),
) -> None:
    """Delta refresh: generate analyses only for symbols new to the top-N."""
    config, target_db = _prepare(config_path, db_path)
    orchestrator = _build_orchestrator(config, target_db)

    try:
        results = asyncio.run(
            orchestrator.refresh_on_formula_change(
                previous_formula_id, new_formula_id, markets or None,
                time_budget_s=time_budget,
            )
        )
    except Exception as exc:
        typer.echo(f"[ERROR] Refresh failed: {exc}", err=True)
        raise typer.Exit(code=1)

    for result in results.values():
        _echo_result(result)
    if report:
        _write_reports(config, results.values())
    typer.echo("[OK] Formula-change refresh complete.")


# ── Read-only views ───────────────────────────────────────────────────────────

@app.command("show-badges")
def show_badges(
    market: str = typer.Option(..., "--market"),
    db_path: Optional[str] = typer.Option(None, "--db-path"),
    config_path: Optional[str] = typer.Option(None, "--config"),
) -> None:
    """Show the badge set users currently see for a market."""
    from pulse_badges.pipeline.badge_reader import load_daily_badges
    from pulse_badges.pipeline.stores import SqliteBadgeStore

    config, target_db = _prepare(config_path, db_path)
    store = SqliteBadgeStore(config.database, target_db)
    view = asyncio.run(
        load_daily_badges(store, market, tz_name=config.refresh.reference_timezone)
    )

    if view.run is None:
        typer.echo(f"No badges for {view.market}.")
        return
    stale = " (from an earlier day)" if view.is_stale else ""
    typer.echo(
        f"{view.market} run={view.run.run_id} date={view.run.run_date} "
        f"status={view.run.status}{stale}"
    )
    for symbol in sorted(view.badges):
        badge = view.badges[symbol]
        typer.echo(f"  {symbol:<10} {badge.recommendation:<5} analysis={badge.analysis_id}")


@app.command("top-symbols")
def top_symbols_cmd(
    market: str = typer.Option(..., "--market"),
    formula_id: Optional[str] = typer.Option(
        None, "--formula-id", help="Formula to rank with (default: the market's active formula)."
    ),
    limit: Optional[int] = typer.Option(None, "--limit", help="Top-N (default from config)."),
    write_csv: bool = typer.Option(False, "--csv", help="Write the ranking to a CSV report."),
    db_path: Optional[str] = typer.Option(None, "--db-path"),
    config_path: Optional[str] = typer.Option(None, "--config"),
) -> None:
    """Rank a market's snapshots without touching badges."""
    from pulse_badges.db.connection import open_database
    from pulse_badges.db.repositories.formula_repo import OmitRuleSettingsRepository
    from pulse_badges.formulas.service import ActiveFormulaCache, FormulaService
    from pulse_badges.ingestion.snapshot_source import read_snapshot_parquet, ParquetSnapshotSource
    from pulse_badges.recommendations.omit_rules import apply_omit_rules
    from pulse_badges.recommendations.ranker import select_recommended
    from pulse_badges.recommendations.reporter import write_top_csv

    config, target_db = _prepare(config_path, db_path)
    market = market.strip().lower()
    n = limit or config.refresh.top_n

    with open_database(config.database, target_db) as conn:
        service = FormulaService(conn, ActiveFormulaCache(config.formulas.active_cache_ttl_s))
        formula = service.get(formula_id) if formula_id else service.get_active(market)
        omit_rules = OmitRuleSettingsRepository(conn).get()
    if formula is None:
        typer.echo(f"[ERROR] Unknown formula: {formula_id}", err=True)
        raise typer.Exit(code=1)

    source = ParquetSnapshotSource(Path(config.data.snapshots_dir))
    try:
        snapshots = read_snapshot_parquet(source.path_for(market), market)
    except FileNotFoundError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)

    prepared = apply_omit_rules(
        [s.with_derived_growth_3m() for s in snapshots], omit_rules, market
    )
    ranked = select_recommended(prepared, formula)[:n]

    typer.echo(f"{market} | {formula.name} v{formula.version} | {len(ranked)} recommended")
    for rank, scored in enumerate(ranked, start=1):
        typer.echo(f"  {rank:>2}. {scored.symbol:<10} {scored.score:>12.4f}")
    if write_csv:
        path = write_top_csv(ranked, Path(config.data.reports_dir), market)
        typer.echo(f"  Report: {path}")


# ── Scheduler ─────────────────────────────────────────────────────────────────

@app.command("start-scheduler")
def start_scheduler(
    daily_time: Optional[str] = typer.Option(
        None, "--daily-time", help="Local HH:MM to refresh (default from config)."
    ),
    run_now: bool = typer.Option(False, "--run-now", help="Refresh once immediately."),
    db_path: Optional[str] = typer.Option(None, "--db-path"),
    config_path: Optional[str] = typer.Option(None, "--config"),
) -> None:
    """Run the daily refresh for every configured market on a schedule (blocks)."""
    from pulse_badges.config import SchedulerConfig
    from pulse_badges.scheduler import SchedulerDaemon

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    try:
        when = SchedulerConfig(daily_time=daily_time).daily_time if daily_time else config.scheduler.daily_time
        daemon = SchedulerDaemon(
            markets=list(config.markets.defaults),
            db_path=db_path or config.database.db_path,
            daily_time=when,
            run_on_start=run_now,
            config_path=config_path,
        )
    except (ValueError, RuntimeError) as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)

    daemon.start()


# ── Entry point ───────────────────────────────────────────────────────────────

if __name__ == "__main__":
    app()
