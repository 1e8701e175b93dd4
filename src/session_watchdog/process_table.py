"""Host process table snapshots and worker matching."""

from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from typing import Iterable

from .errors import ProbeError

PS_TIMEOUT_SEC = 5
# Multiplexer servers keep the creating client's argv, which repeats the worker command.
MULTIPLEXER_PROGRAMS = frozenset({"tmux", "screen", "SCREEN"})

_logger = logging.getLogger("session_watchdog.process_table")


@dataclass(frozen=True)
class ProcessEntry:
    pid: int
    ppid: int
    args: str


def _run_ps() -> str:
    try:
        proc = subprocess.run(
            ["ps", "-eo", "pid=,ppid=,args="],
            check=False,
            capture_output=True,
            text=True,
            timeout=PS_TIMEOUT_SEC,
        )
    except subprocess.TimeoutExpired as err:
        raise ProbeError(f"ps timed out after {PS_TIMEOUT_SEC}s") from err
    except OSError as err:
        raise ProbeError(f"ps failed to start: {err}") from err
    if proc.returncode != 0:
        raise ProbeError(f"ps exited with {proc.returncode}: {(proc.stderr or '').strip()}")
    return proc.stdout or ""


def parse_ps_output(text: str) -> list[ProcessEntry]:
    entries: list[ProcessEntry] = []
    for line in text.splitlines():
        parts = line.strip().split(None, 2)
        if len(parts) < 2:
            continue
        try:
            pid = int(parts[0])
            ppid = int(parts[1])
        except ValueError:
            continue
        entries.append(ProcessEntry(pid=pid, ppid=ppid, args=parts[2] if len(parts) > 2 else ""))
    return entries


def program_name(args: str) -> str:
    """Basename of argv[0], with the trailing colon of titles like `tmux: server` dropped."""
    head = args.split(None, 1)[0] if args.strip() else ""
    return os.path.basename(head).rstrip(":")


def snapshot() -> list[ProcessEntry]:
    """Read the host process table once."""
    return parse_ps_output(_run_ps())


def descendants(
    entries: Iterable[ProcessEntry],
    roots: Iterable[int],
    include_roots: bool = True,
) -> list[ProcessEntry]:
    """Return every process below ``roots`` (and the roots themselves by default), breadth-first."""
    rows = list(entries)
    by_pid = {entry.pid: entry for entry in rows}
    children: dict[int, list[ProcessEntry]] = {}
    for entry in rows:
        children.setdefault(entry.ppid, []).append(entry)

    found: list[ProcessEntry] = []
    seen: set[int] = set()
    root_pids = set(roots)
    queue = [by_pid[pid] for pid in sorted(root_pids) if pid in by_pid]
    while queue:
        entry = queue.pop(0)
        if entry.pid in seen:
            continue
        seen.add(entry.pid)
        if include_roots or entry.pid not in root_pids:
            found.append(entry)
        queue.extend(children.get(entry.pid, []))
    return found


class WorkerMatcher:
    """Decides whether a process command line belongs to the worker."""

    def __init__(self, signature: str, regex: str = "") -> None:
        self.signature = signature
        self._pattern = re.compile(regex) if regex else None

    def matches(self, args: str) -> bool:
        if self._pattern is not None:
            return bool(self._pattern.search(args))
        return bool(self.signature) and self.signature in args

    def find(self, entries: Iterable[ProcessEntry]) -> ProcessEntry | None:
        for entry in entries:
            if self.matches(entry.args):
                return entry
        return None


def find_worker(
    matcher: WorkerMatcher,
    roots: Iterable[int],
    scope: str = "descendant",
    entries: list[ProcessEntry] | None = None,
    include_roots: bool = True,
) -> ProcessEntry | None:
    """Locate the worker process.

    ``descendant`` only considers the session's controlling processes and their
    descendants. ``host`` considers every process on the host and can be fooled
    by an unrelated process with the same command line. Multiplexer server
    processes are never taken for the worker in that scope.
    """
    rows = snapshot() if entries is None else entries
    if scope == "host":
        _logger.debug("Host-wide worker matching in use; an unrelated process may satisfy the probe")
        return matcher.find(entry for entry in rows if program_name(entry.args) not in MULTIPLEXER_PROGRAMS)
    return matcher.find(descendants(rows, roots, include_roots=include_roots))
