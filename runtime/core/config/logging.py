"""Logging helpers.

Server and kernel workers log one JSON object per line to stderr. Worker
stderr is forwarded to stream subscribers as `job_stderr`, so records carry
the pid of the emitting process.
"""

from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from errors import ConfigurationError
from utils import format_rfc3339

STRUCTURED_EXTRAS = ("event", "run_id", "job_id", "task_id", "phase", "step", "mode", "code", "details")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        out: dict[str, Any] = {
            "ts": format_rfc3339(datetime.fromtimestamp(record.created, tz=timezone.utc)),
            "level": record.levelname,
            "logger": record.name,
            "pid": record.process,
            "msg": record.getMessage(),
        }
        out.update({k: getattr(record, k) for k in STRUCTURED_EXTRAS if getattr(record, k, None) is not None})
        if record.exc_info:
            out["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(out, ensure_ascii=True, sort_keys=True, default=str)


def load_logging_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Missing logging config: {path}")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse logging config: {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Invalid logging config YAML root object: {path}")
    return raw


def apply_logging_config(path: Path) -> None:
    logging.config.dictConfig(load_logging_config(path))
