"""
Application configuration management.

Load order (each layer overrides the previous):
  1. ``config/default.toml``      — committed static defaults
  2. ``config/local.toml``        — optional local overrides (gitignored)
  3. ``.env``                     — local secrets and env overrides (gitignored)
  4. Environment variables        — ``PULSE_BADGES_*`` prefix, plus ``GEMINI_API_KEY``

Entry point: ``load_config(config_path=None) -> AppConfig``

The CLI, the orchestrator and the scheduler all receive an ``AppConfig``
instance — never raw dicts or individual env var lookups scattered through
the codebase.
"""

from __future__ import annotations

import os
import re
import tomllib
from pathlib import Path
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, field_validator

# ── Sub-config models ─────────────────────────────────────────────────────────


class DatabaseConfig(BaseModel):
    """SQLite database connection settings."""

    model_config = ConfigDict(frozen=True)

    db_path: str = "data/db/pulse_badges.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000


class DataConfig(BaseModel):
    """Filesystem paths for the snapshot cache and report output."""

    model_config = ConfigDict(frozen=True)

    snapshots_dir: str = "data/snapshots"
    reports_dir: str = "data/outputs/badges"


class MarketsConfig(BaseModel):
    """Markets that get a daily badge run."""

    model_config = ConfigDict(frozen=True)

    defaults: list[str] = ["nasdaq", "tlv"]

    @field_validator("defaults")
    @classmethod
    def validate_defaults(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("markets.defaults must list at least one market.")
        return [m.strip().lower() for m in v]


class RefreshConfig(BaseModel):
    """Daily refresh orchestration parameters."""

    model_config = ConfigDict(frozen=True)

    top_n: int = 20
    concurrency: int = 4
    time_budget_s: Optional[float] = None
    reference_timezone: str = "UTC"

    @field_validator("top_n", "concurrency")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Value must be >= 1, got {v}.")
        return v

    @field_validator("reference_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone '{v}'.") from exc
        return v


class FormulasConfig(BaseModel):
    """Formula lookup settings."""

    model_config = ConfigDict(frozen=True)

    active_cache_ttl_s: float = 300.0


class AnalysisConfig(BaseModel):
    """Generative analysis client settings."""

    model_config = ConfigDict(frozen=True)

    model_id: str = "gemini-2.0-flash"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    timeout_s: float = 60.0
    use_search: bool = True
    api_key: Optional[str] = None


class LoggingConfig(BaseModel):
    """Logging output settings."""

    model_config = ConfigDict(frozen=True)

    level: str = "INFO"
    log_file: str = "data/logs/pulse_badges.log"
    json_format: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"Log level must be one of {sorted(valid)}, got '{v}'.")
        return v.upper()


class SchedulerConfig(BaseModel):
    """Daemon settings for the periodic refresh."""

    model_config = ConfigDict(frozen=True)

    daily_time: str = "21:45"

    @field_validator("daily_time")
    @classmethod
    def validate_daily_time(cls, v: str) -> str:
        if not re.fullmatch(r"([01]\d|2[0-3]):[0-5]\d", v):
            raise ValueError(f"daily_time must be HH:MM (24h), got '{v}'.")
        return v


class AppConfig(BaseModel):
    """Complete application configuration — the single source of truth.

    Constructed by ``load_config()`` which merges TOML + .env + environment.
    """

    model_config = ConfigDict(frozen=True)

    database: DatabaseConfig = DatabaseConfig()
    data: DataConfig = DataConfig()
    markets: MarketsConfig = MarketsConfig()
    refresh: RefreshConfig = RefreshConfig()
    formulas: FormulasConfig = FormulasConfig()
    analysis: AnalysisConfig = AnalysisConfig()
    logging: LoggingConfig = LoggingConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    debug: bool = False


# ── Loader ────────────────────────────────────────────────────────────────────

_PROJECT_ROOT = Path(__file__).parent.parent


def _find_project_root() -> Path:
    """Walk up from this file to find the project root (contains pyproject.toml)."""
    candidate = Path(__file__).parent
    for _ in range(5):
        if (candidate / "pyproject.toml").exists():
            return candidate
        candidate = candidate.parent
    return _PROJECT_ROOT


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Load and merge application configuration.

    Args:
        config_path: Explicit path to a TOML config file. Defaults to
            ``<project_root>/config/default.toml``.

    Returns:
        Fully validated ``AppConfig`` instance.

    Raises:
        FileNotFoundError: If the specified ``config_path`` does not exist.
        pydantic.ValidationError: If merged config values fail validation.
    """
    root = _find_project_root()

    # 1. Load .env file (silently skip if missing)
    load_dotenv(dotenv_path=root / ".env", override=False)

    # 2. Load TOML config
    if config_path is None:
        config_path = root / "config" / "default.toml"

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}\n"
            "Create config/default.toml or pass --config."
        )

    with open(config_path, "rb") as f:
        raw: dict[str, Any] = tomllib.load(f)

    local_config_path = config_path.parent / "local.toml"
    if local_config_path.exists():
        with open(local_config_path, "rb") as f:
            local_raw: dict[str, Any] = tomllib.load(f)
        raw = _deep_merge(raw, local_raw)

    # 3. Apply environment variable overrides
    raw = _apply_env_overrides(raw)

    # 4. Build and validate AppConfig
    return _build_app_config(raw)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into ``base``."""
    result = dict(base)
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


# Environment variable → (section, key) in the raw TOML dict.
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "PULSE_BADGES_DB_PATH": ("database", "db_path"),
    "PULSE_BADGES_LOG_LEVEL": ("logging", "level"),
    "GEMINI_API_KEY": ("analysis", "api_key"),
}


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    """Overlay ``_ENV_OVERRIDES`` and ``PULSE_BADGES_DEBUG`` onto ``raw``."""
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        if value := os.environ.get(env_name):
            raw.setdefault(section, {})[key] = value

    if debug := os.environ.get("PULSE_BADGES_DEBUG"):
        raw["debug"] = debug.lower() in ("1", "true", "yes")

    return raw


def _build_app_config(raw: dict[str, Any]) -> AppConfig:
    """Validate the merged dict; ``[project] debug`` is the TOML spelling of ``debug``."""
    project = raw.pop("project", {})
    raw.setdefault("debug", project.get("debug", False))
    return AppConfig.model_validate(raw)
