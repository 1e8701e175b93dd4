"""Durable event log and tick history."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

LOGGER_NAME = "session_watchdog"
LOG_FORMAT = "[%(asctime)s] %(levelname)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_logger = logging.getLogger("session_watchdog.logs")


def configure_logging(log_file: Path | None, verbose: bool = False) -> logging.Logger:
    """Attach the durable file handler (and stderr when verbose) to the package logger.

    The file is opened lazily so a silent tick never touches it.
    """
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8", delay=True)
        except OSError as err:
            print(f"Cannot open log file {log_file}: {err}; logging to stderr", file=sys.stderr)
            verbose = True
        else:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    if verbose:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)
    return logger


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def append_history(path: Path, payload: dict[str, Any]) -> bool:
    """Append one NDJSON record; failures are logged and reported as False."""
    record = {"time": _now_iso(), **payload}
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, sort_keys=True))
            handle.write("\n")
    except OSError as err:
        _logger.error(f"Cannot append tick history to {path}: {err}")
        return False
    return True


def read_history(path: Path, limit: int = 20) -> list[dict[str, Any]]:
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return []
    except OSError as err:
        _logger.warning(f"Cannot read tick history {path}: {err}")
        return []
    rows: list[dict[str, Any]] = []
    for line in text.splitlines()[-limit:]:
        try:
            row = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(row, dict):
            rows.append(row)
    return rows
