"""
Logging setup for pulse-badges.

``configure_logging(config)`` is called once by each CLI command before any
refresh work starts. Library modules only ever do
``logging.getLogger(__name__)``.

Refresh code tags its records with ``extra={"market": ..., "run_id": ...}``.
The text format renders those as a ``[nasdaq#12]`` prefix; the JSON format
(``json_format = true`` under ``[logging]``) emits them as top-level keys::

    {"ts": "2026-03-10T21:45:03.120Z", "level": "INFO",
     "logger": "pulse_badges.pipeline.daily_refresh", "market": "nasdaq",
     "run_id": 12, "msg": "..."}
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from pulse_badges.config import LoggingConfig

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s:%(run_tag)s %(message)s"
TEXT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_CONTEXT_KEYS = ("market", "run_id")
_QUIET_LOGGERS = ("httpx", "httpcore", "pyarrow")

_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "run_tag"}


def _run_tag(record: logging.LogRecord) -> str:
    market = getattr(record, "market", None)
    if market is None:
        return ""
    run_id = getattr(record, "run_id", None)
    return f" [{market}#{run_id}]" if run_id is not None else f" [{market}]"


class RunContextFilter(logging.Filter):
    """Attach ``run_tag`` so the text format never hits a missing key."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_tag = _run_tag(record)
        return True


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record; ``extra=`` fields land at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: dict = {
            "ts": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
        }
        for key in _CONTEXT_KEYS:
            if getattr(record, key, None) is not None:
                payload[key] = getattr(record, key)
        payload["msg"] = record.getMessage()
        for key, val in record.__dict__.items():
            if key in payload or key in _RECORD_ATTRS or key.startswith("_"):
                continue
            payload[key] = val
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def build_formatter(json_format: bool) -> logging.Formatter:
    if json_format:
        return JsonLineFormatter()
    return logging.Formatter(TEXT_FORMAT, datefmt=TEXT_DATE_FORMAT)


def _handler(
    level: int, formatter: logging.Formatter, path: Optional[Path] = None
) -> logging.Handler:
    handler: logging.Handler
    if path is None:
        handler = logging.StreamHandler(sys.stdout)
    else:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(RunContextFilter())
    return handler


def configure_logging(config: "LoggingConfig") -> None:
    """Install stdout (and optionally file) handlers on the root logger.

    Args:
        config: ``AppConfig.logging``. An empty ``log_file`` disables the
            file handler.
    """
    level = logging.getLevelName(config.level)
    formatter = build_formatter(config.json_format)

    handlers = [_handler(level, formatter)]
    if config.log_file:
        handlers.append(_handler(level, formatter, Path(config.log_file)))

    logging.basicConfig(level=level, handlers=handlers, force=True)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
