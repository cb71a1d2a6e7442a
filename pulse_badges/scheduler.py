"""Scheduler daemon firing the periodic badge refresh once per day.

No external scheduler library is required; uses stdlib ``time``,
``signal``, and ``subprocess`` only.

Typical usage via the CLI::

    pulse-badges start-scheduler --daily-time 21:45

Or import directly::

    from pulse_badges.scheduler import SchedulerDaemon
    daemon = SchedulerDaemon(markets=["nasdaq", "tlv"], db_path="data/db/pulse_badges.db")
    daemon.start()  # blocks until Ctrl-C

At *daily_time* (local HH:MM clock) the daemon runs ``refresh-daily`` once
per market, each as a subprocess of the installed CLI, so every market gets
its own process, logging, and exit code. Markets run one after another,
which keeps two refreshes of the same market from overlapping. A failed
market is logged and does not stop the daemon or the remaining markets.
"""

from __future__ import annotations

import logging
import platform
import shutil
import signal
import subprocess
import sys
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

log = logging.getLogger(__name__)

_CLI_NAME = "pulse-badges"
_STEP_TIMEOUT_S = 3600


# ── Helpers ───────────────────────────────────────────────────────────────────


def _find_cli_exe() -> str:
    """Locate the ``pulse-badges`` executable next to the interpreter or on PATH.

    Raises:
        RuntimeError: If the executable cannot be found.
    """
    scripts_dir = Path(sys.executable).parent
    name = f"{_CLI_NAME}.exe" if platform.system() == "Windows" else _CLI_NAME
    candidate = scripts_dir / name
    if candidate.exists():
        return str(candidate)
    on_path = shutil.which(_CLI_NAME)
    if on_path:
        return on_path
    raise RuntimeError(
        f"Could not find {_CLI_NAME} executable in {scripts_dir}. Run: pip install -e ."
    )


def _next_daily_run(daily_time: str, now: Optional[datetime] = None) -> datetime:
    """Return the next local datetime matching *daily_time* (``HH:MM``)."""
    hour, minute = (int(p) for p in daily_time.split(":"))
    now = now or datetime.now()
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


# ── Daemon ────────────────────────────────────────────────────────────────────


class SchedulerDaemon:
    """Runs ``refresh-daily`` for every market once per day.

    Parameters
    ----------
    markets:
        Markets to refresh, in order.
    db_path:
        SQLite database path forwarded to every sub-command.
    daily_time:
        Local 24-hour ``HH:MM`` time to fire the refresh.
    run_on_start:
        When *True*, refresh immediately on start before waiting for
        *daily_time*.
    config_path:
        Optional TOML config forwarded as ``--config``.
    cli_exe:
        Full path to the CLI executable. Auto-detected when *None*.
    """

    def __init__(
        self,
        markets: list[str],
        db_path: str,
        daily_time: str = "21:45",
        run_on_start: bool = False,
        config_path: Optional[str] = None,
        cli_exe: Optional[str] = None,
    ) -> None:
        self.markets = markets
        self.db_path = db_path
        self.daily_time = daily_time
        self.run_on_start = run_on_start
        self.config_path = config_path
        self.cli_exe = cli_exe or _find_cli_exe()
        self._running = False

    def _run_cmd(self, args: list[str], label: str) -> bool:
        """Run a CLI sub-command. Returns ``True`` on exit code 0."""
        cmd = [self.cli_exe] + args
        log.info("[%s] Running: %s", label, " ".join(cmd))
        try:
            result = subprocess.run(cmd, timeout=_STEP_TIMEOUT_S)
        except subprocess.TimeoutExpired:
            log.error("[%s] Timed out after %d s.", label, _STEP_TIMEOUT_S)
            return False
        except OSError as exc:
            log.error("[%s] Could not start: %s", label, exc)
            return False
        if result.returncode == 0:
            log.info("[%s] Completed successfully (exit 0).", label)
            return True
        log.error("[%s] Exited with code %d.", label, result.returncode)
        return False

    def refresh_args(self, market: str) -> list[str]:
        args = ["refresh-daily", "--market", market, "--db-path", self.db_path]
        if self.config_path:
            args += ["--config", self.config_path]
        return args

    def run_daily(self) -> dict[str, bool]:
        """Refresh every market once. Returns ``{market: succeeded}``."""
        log.info(
            "=== Daily badge refresh starting at %s ===",
            datetime.now().isoformat(timespec="seconds"),
        )
        return {
            market: self._run_cmd(self.refresh_args(market), f"refresh-{market}")
            for market in self.markets
        }

    def start(self) -> None:
        """Start the daemon. Blocks until Ctrl-C (or SIGTERM on Linux/macOS)."""
        next_daily = datetime.now() if self.run_on_start else _next_daily_run(self.daily_time)
        log.info(
            "Scheduler started.  markets=%s  daily_time=%s  db=%s",
            self.markets, self.daily_time, self.db_path,
        )
        log.info("Next refresh: %s", next_daily.isoformat(timespec="seconds"))

        self._running = True

        def _shutdown(signum, frame):  # noqa: ANN001
            log.info("Signal %d received; stopping scheduler.", signum)
            self._running = False

        signal.signal(signal.SIGINT, _shutdown)
        if platform.system() != "Windows":
            signal.signal(signal.SIGTERM, _shutdown)

        while self._running:
            if datetime.now() >= next_daily:
                self.run_daily()
                next_daily = _next_daily_run(self.daily_time)
                log.info("Next refresh: %s", next_daily.isoformat(timespec="seconds"))
            time.sleep(30)

        log.info("Scheduler stopped.")
