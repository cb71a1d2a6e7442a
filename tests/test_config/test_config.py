"""Tests for pulse_badges/config.py — layering, env overrides and validators."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from pulse_badges.config import (
    AppConfig,
    LoggingConfig,
    MarketsConfig,
    RefreshConfig,
    SchedulerConfig,
    load_config,
)

_ENV_VARS = (
    "PULSE_BADGES_DB_PATH",
    "PULSE_BADGES_LOG_LEVEL",
    "PULSE_BADGES_DEBUG",
    "GEMINI_API_KEY",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadConfig:
    def test_default_toml_loads(self):
        config = load_config()
        assert config.refresh.top_n == 20
        assert config.markets.defaults == ["nasdaq", "tlv"]
        assert config.scheduler.daily_time == "21:45"

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.toml")

    def test_local_toml_overrides(self, tmp_path):
        cfg = _write(tmp_path / "app.toml", "[refresh]\ntop_n = 10\nconcurrency = 3\n")
        _write(tmp_path / "local.toml", "[refresh]\ntop_n = 5\n")
        config = load_config(cfg)
        assert config.refresh.top_n == 5
        assert config.refresh.concurrency == 3

    def test_env_overrides(self, tmp_path, monkeypatch):
        cfg = _write(tmp_path / "app.toml", "[project]\ndebug = false\n")
        monkeypatch.setenv("PULSE_BADGES_DB_PATH", "/tmp/x.db")
        monkeypatch.setenv("PULSE_BADGES_LOG_LEVEL", "debug")
        monkeypatch.setenv("PULSE_BADGES_DEBUG", "yes")
        monkeypatch.setenv("GEMINI_API_KEY", "k")

        config = load_config(cfg)
        assert config.database.db_path == "/tmp/x.db"
        assert config.logging.level == "DEBUG"
        assert config.debug is True
        assert config.analysis.api_key == "k"

    def test_invalid_value_raises(self, tmp_path):
        cfg = _write(tmp_path / "app.toml", "[refresh]\nconcurrency = 0\n")
        with pytest.raises(ValidationError):
            load_config(cfg)


class TestValidators:
    def test_markets_lowercased(self):
        assert MarketsConfig(defaults=[" NASDAQ "]).defaults == ["nasdaq"]

    def test_markets_required(self):
        with pytest.raises(ValidationError):
            MarketsConfig(defaults=[])

    def test_unknown_timezone(self):
        with pytest.raises(ValidationError):
            RefreshConfig(reference_timezone="Mars/Olympus")

    def test_log_level(self):
        with pytest.raises(ValidationError):
            LoggingConfig(level="LOUD")

    @pytest.mark.parametrize("value", ["24:00", "9:30", "12:60", "noon"])
    def test_daily_time_format(self, value):
        with pytest.raises(ValidationError):
            SchedulerConfig(daily_time=value)

    def test_config_is_frozen(self):
        with pytest.raises(ValidationError):
            AppConfig().debug = True  # type: ignore[misc]
