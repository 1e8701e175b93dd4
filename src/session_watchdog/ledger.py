"""Sliding-window restart ledger and its on-disk store.

The ledger is an immutable value: every operation returns a new ledger, and
persistence is an explicit ``LedgerStore.load`` / ``LedgerStore.save`` cycle.
A record sitting exactly on the window cutoff is kept, so the admission
decision does not flap at the window edge.
"""

from __future__ import annotations

import contextlib
import fcntl
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator

from .errors import LedgerIOError

_logger = logging.getLogger("session_watchdog.ledger")


@dataclass(frozen=True)
class RestartLedger:
    records: tuple[int, ...] = ()

    def prune(self, now: int, window_seconds: int) -> "RestartLedger":
        cutoff = now - window_seconds
        return RestartLedger(tuple(ts for ts in self.records if ts >= cutoff))

    def count_in_window(self, now: int, window_seconds: int) -> int:
        return len(self.prune(now, window_seconds).records)

    def can_restart(self, now: int, window_seconds: int, max_restarts: int) -> bool:
        return self.count_in_window(now, window_seconds) < max_restarts

    def record(self, now: int) -> "RestartLedger":
        return RestartLedger(self.records + (int(now),))

    def __len__(self) -> int:
        return len(self.records)


def _parse_line(raw: str) -> int | None:
    value = raw.strip()
    if not value:
        return None
    try:
        return int(float(value))
    except (ValueError, OverflowError):
        return None


class LedgerStore:
    """One epoch timestamp per line, rewritten atomically."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> RestartLedger:
        """Read the ledger, treating a missing or unreadable file as empty."""
        try:
            text = self.path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return RestartLedger()
        except OSError as err:
            _logger.warning(f"Restart ledger {self.path} unreadable ({err}); treating as empty")
            return RestartLedger()

        records: list[int] = []
        skipped = 0
        for line in text.splitlines():
            if not line.strip():
                continue
            parsed = _parse_line(line)
            if parsed is None:
                skipped += 1
                continue
            records.append(parsed)
        if skipped:
            _logger.warning(f"Skipped {skipped} malformed line(s) in restart ledger {self.path}")
        return RestartLedger(tuple(records))

    def save(self, ledger: RestartLedger) -> None:
        payload = "".join(f"{ts}\n" for ts in ledger.records)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        except OSError as err:
            raise LedgerIOError(f"cannot write restart ledger {self.path}: {err}") from err
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, self.path)
        except OSError as err:
            raise LedgerIOError(f"cannot write restart ledger {self.path}: {err}") from err
        finally:
            if os.path.exists(temp_path):
                os.unlink(temp_path)

    def clear(self) -> None:
        self.save(RestartLedger())


def _acquire_lock(path: Path) -> IO[str] | None:
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = path.open("a+", encoding="utf-8")
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        return handle
    except OSError:
        handle.close()
        return None


def _release_lock(handle: IO[str]) -> None:
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    finally:
        handle.close()


@contextlib.contextmanager
def state_lock(path: Path) -> Iterator[bool]:
    """Hold an exclusive, non-blocking lock on ``path``.

    Yields True when the lock was taken and False when another tick holds it.
    """
    try:
        handle = _acquire_lock(path)
    except OSError as err:
        raise LedgerIOError(f"cannot open state lock {path}: {err}") from err
    if handle is None:
        yield False
        return
    try:
        yield True
    finally:
        _release_lock(handle)
