"""Terminal-multiplexer session backends.

A backend answers "is the worker running in its session?" (``probe``) and
replaces the session with a fresh one running the worker (``relaunch``). The
tmux and GNU screen flavours share one relaunch sequence:

1. kill every session carrying the identifier until none is left;
2. wait ``kill_settle_sec`` so the multiplexer releases the name;
3. start a detached session running the worker with stdout and stderr
   appended to the log sink;
4. wait ``start_settle_sec`` so an immediate probe sees a started process.
"""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Sequence

from . import process_table
from .config import WatchdogConfig
from .errors import LaunchError, ProbeError

COMMAND_TIMEOUT_SEC = 15
MAX_KILL_ROUNDS = 5

_logger = logging.getLogger("session_watchdog.sessions")


class SessionState(str, Enum):
    MISSING = "missing"
    ALIVE_NO_WORKER = "alive_no_worker"
    ALIVE_WITH_WORKER = "alive_with_worker"


@dataclass(frozen=True)
class ProbeResult:
    session_id: str
    state: SessionState
    session_pids: tuple[int, ...] = ()
    worker_pid: int | None = None
    scope: str = "descendant"
    detail: str = ""

    @property
    def needs_restart(self) -> bool:
        return self.state is not SessionState.ALIVE_WITH_WORKER


@dataclass
class LaunchReport:
    session_id: str
    killed_rounds: int = 0
    command: list[str] = field(default_factory=list)


def _run(args: Sequence[str], timeout: int = COMMAND_TIMEOUT_SEC) -> subprocess.CompletedProcess:
    return subprocess.run(
        list(args),
        check=False,
        capture_output=True,
        text=True,
        timeout=timeout,
    )


def _combined_output(proc: subprocess.CompletedProcess) -> str:
    return "\n".join(part.strip() for part in [proc.stdout, proc.stderr] if part and part.strip())


def worker_shell_command(command: Sequence[str], log_sink: Path) -> str:
    """Shell line that replaces itself with the worker, appending output to ``log_sink``."""
    return f"exec {shlex.join(list(command))} >> {shlex.quote(str(log_sink))} 2>&1"


class SessionBackend(ABC):
    """Probe and relaunch one named multiplexer session."""

    name = "abstract"
    binary = ""
    # Whether the controlling processes themselves may be the worker.
    roots_can_be_worker = True

    def __init__(
        self,
        matcher: process_table.WorkerMatcher,
        *,
        scope: str = "descendant",
        kill_settle_sec: float = 2.0,
        start_settle_sec: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.matcher = matcher
        self.scope = scope
        self.kill_settle_sec = kill_settle_sec
        self.start_settle_sec = start_settle_sec
        self._sleep = sleep

    @abstractmethod
    def session_pids(self, session_id: str) -> list[int]:
        """Controlling pids of every live session named ``session_id``; empty when none exists."""
        raise NotImplementedError

    @abstractmethod
    def _kill(self, session_id: str, pids: list[int]) -> None:
        raise NotImplementedError

    @abstractmethod
    def _create_args(self, session_id: str, shell_command: str) -> list[str]:
        raise NotImplementedError

    def probe(self, session_id: str) -> ProbeResult:
        pids = self.session_pids(session_id)
        if not pids:
            return ProbeResult(
                session_id=session_id,
                state=SessionState.MISSING,
                scope=self.scope,
                detail=f"{self.name} session '{session_id}' not found",
            )
        try:
            worker = process_table.find_worker(
                self.matcher,
                pids,
                scope=self.scope,
                include_roots=self.roots_can_be_worker,
            )
        except ProbeError as err:
            raise ProbeError(
                f"{self.name} session '{session_id}' exists but the process table is unreadable: {err}",
                ambiguous=True,
            ) from err

        weaker = " (host-wide match)" if self.scope == "host" else ""
        if worker is None:
            return ProbeResult(
                session_id=session_id,
                state=SessionState.ALIVE_NO_WORKER,
                session_pids=tuple(pids),
                scope=self.scope,
                detail=f"{self.name} session '{session_id}' exists but worker process not found{weaker}",
            )
        return ProbeResult(
            session_id=session_id,
            state=SessionState.ALIVE_WITH_WORKER,
            session_pids=tuple(pids),
            worker_pid=worker.pid,
            scope=self.scope,
            detail=f"worker pid {worker.pid} running{weaker}",
        )

    def relaunch(self, session_id: str, command: Sequence[str], log_sink: Path) -> LaunchReport:
        report = LaunchReport(session_id=session_id, command=list(command))
        try:
            pids = self.session_pids(session_id)
            while pids:
                if report.killed_rounds >= MAX_KILL_ROUNDS:
                    raise LaunchError(
                        f"{self.name} session '{session_id}' survived {MAX_KILL_ROUNDS} kill attempts"
                    )
                self._kill(session_id, pids)
                report.killed_rounds += 1
                pids = self.session_pids(session_id)
        except ProbeError as err:
            raise LaunchError(f"cannot terminate stale {self.name} session '{session_id}': {err}") from err

        if report.killed_rounds:
            _logger.info(f"Terminated stale {self.name} session '{session_id}'")
        self._sleep(self.kill_settle_sec)

        try:
            log_sink.parent.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise LaunchError(f"cannot create worker log directory {log_sink.parent}: {err}") from err

        args = self._create_args(session_id, worker_shell_command(command, log_sink))
        try:
            proc = _run(args)
        except subprocess.TimeoutExpired as err:
            raise LaunchError(f"{self.binary} timed out after {COMMAND_TIMEOUT_SEC}s creating '{session_id}'") from err
        except OSError as err:
            raise LaunchError(f"{self.binary} failed to start: {err}") from err
        if proc.returncode != 0:
            output = _combined_output(proc)
            raise LaunchError(
                f"{self.binary} exited with {proc.returncode} creating session '{session_id}'",
                output=output,
            )

        self._sleep(self.start_settle_sec)
        return report


class TmuxBackend(SessionBackend):
    name = "tmux"
    binary = "tmux"

    @staticmethod
    def _target(session_id: str) -> str:
        # "=" forces an exact session-name match instead of tmux's prefix matching.
        return f"={session_id}"

    def _tmux(self, *args: str) -> subprocess.CompletedProcess:
        try:
            return _run([self.binary, *args])
        except subprocess.TimeoutExpired as err:
            raise ProbeError(f"tmux {args[0]} timed out after {COMMAND_TIMEOUT_SEC}s") from err
        except OSError as err:
            raise ProbeError(f"tmux failed to start: {err}") from err

    def session_pids(self, session_id: str) -> list[int]:
        if self._tmux("has-session", "-t", self._target(session_id)).returncode != 0:
            return []
        proc = self._tmux("list-panes", "-s", "-t", self._target(session_id), "-F", "#{pane_pid}")
        if proc.returncode != 0:
            raise ProbeError(
                f"tmux list-panes failed for '{session_id}': {_combined_output(proc)}",
                ambiguous=True,
            )
        pids: list[int] = []
        for line in (proc.stdout or "").splitlines():
            raw = line.strip()
            if raw.isdigit():
                pids.append(int(raw))
        if not pids:
            raise ProbeError(f"tmux session '{session_id}' reported no pane pids", ambiguous=True)
        return pids

    def _kill(self, session_id: str, pids: list[int]) -> None:
        self._tmux("kill-session", "-t", self._target(session_id))

    def _create_args(self, session_id: str, shell_command: str) -> list[str]:
        return [self.binary, "new-session", "-d", "-s", session_id, shell_command]


_SCREEN_LINE = re.compile(r"^\s*(\d+)\.(\S+)\s")


class ScreenBackend(SessionBackend):
    name = "screen"
    binary = "screen"
    # The SCREEN server's own command line repeats the worker command.
    roots_can_be_worker = False

    def session_pids(self, session_id: str) -> list[int]:
        try:
            # screen -ls exits non-zero on some builds even when sessions exist.
            proc = _run([self.binary, "-ls"])
        except subprocess.TimeoutExpired as err:
            raise ProbeError(f"screen -ls timed out after {COMMAND_TIMEOUT_SEC}s") from err
        except OSError as err:
            raise ProbeError(f"screen failed to start: {err}") from err
        pids: list[int] = []
        for line in (proc.stdout or "").splitlines():
            match = _SCREEN_LINE.match(line)
            if match and match.group(2) == session_id and "(Dead" not in line:
                pids.append(int(match.group(1)))
        return pids

    def _kill(self, session_id: str, pids: list[int]) -> None:
        for pid in pids:
            try:
                _run([self.binary, "-S", f"{pid}.{session_id}", "-X", "quit"])
            except subprocess.TimeoutExpired as err:
                raise ProbeError(f"screen quit timed out for {pid}.{session_id}") from err
            except OSError as err:
                raise ProbeError(f"screen failed to start: {err}") from err

    def _create_args(self, session_id: str, shell_command: str) -> list[str]:
        return [self.binary, "-dmS", session_id, "/bin/sh", "-c", shell_command]


BACKEND_CLASSES: dict[str, type[SessionBackend]] = {
    "tmux": TmuxBackend,
    "screen": ScreenBackend,
}


def build_backend(config: WatchdogConfig, sleep: Callable[[float], None] = time.sleep) -> SessionBackend:
    matcher = process_table.WorkerMatcher(config.worker_signature, config.match_regex)
    backend_cls = BACKEND_CLASSES[config.backend]
    return backend_cls(
        matcher,
        scope=config.match_scope,
        kill_settle_sec=config.kill_settle_sec,
        start_settle_sec=config.start_settle_sec,
        sleep=sleep,
    )
