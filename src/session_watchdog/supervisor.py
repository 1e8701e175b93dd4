"""One supervisory tick: probe, rate-check, relaunch or block, notify.

Each tick runs to completion under an exclusive lock on the state directory.
The steady state (worker present) writes nothing and sends nothing. Every
other transition writes to the durable log before any notification goes out.
"""

from __future__ import annotations

import logging
import socket
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from . import logs
from .config import WatchdogConfig
from .errors import LaunchError, LedgerIOError, ProbeError
from .ledger import LedgerStore, RestartLedger, state_lock
from .notifier import EventKind, NotificationEvent, Notifier
from .sessions import ProbeResult, SessionBackend, SessionState

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_TICK_FAILED = 2

_logger = logging.getLogger("session_watchdog.supervisor")


class TickAction(str, Enum):
    NOOP = "noop"
    RESTARTED = "restarted"
    BLOCKED = "blocked"
    LAUNCH_FAILED = "launch_failed"
    PROBE_FAILED = "probe_failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class TickOutcome:
    action: TickAction
    state: SessionState | None
    event: NotificationEvent
    exit_code: int
    restart_count: int = 0
    detail: str = ""


_STATE_MESSAGES = {
    SessionState.MISSING: "session '{session}' not found.",
    SessionState.ALIVE_NO_WORKER: "session '{session}' exists but worker process not found.",
}


class Supervisor:
    def __init__(
        self,
        config: WatchdogConfig,
        backend: SessionBackend,
        store: LedgerStore,
        notifier: Notifier,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.backend = backend
        self.store = store
        self.notifier = notifier
        self._clock = clock

    @property
    def host(self) -> str:
        return self.config.host_id or socket.gethostname().strip() or "host"

    def _event(self, kind: EventKind, now: int, **extra: Any) -> NotificationEvent:
        return NotificationEvent(kind=kind, host=self.host, timestamp=now, **extra)

    def _save(self, ledger: RestartLedger) -> None:
        try:
            self.store.save(ledger)
        except LedgerIOError as err:
            _logger.error(f"{err}; continuing without persisted restart history")

    def _finish(self, outcome: TickOutcome) -> TickOutcome:
        logs.append_history(
            self.config.history_file,
            {
                "session": self.config.session_id,
                "state": outcome.state.value if outcome.state else None,
                "action": outcome.action.value,
                "event": outcome.event.kind.value,
                "restart_count": outcome.restart_count,
                "max_restarts": self.config.max_restarts,
                "detail": outcome.detail,
            },
        )
        self.notifier.send(outcome.event)
        return outcome

    def tick(self) -> TickOutcome:
        try:
            with state_lock(self.config.lock_file) as acquired:
                if not acquired:
                    _logger.info("Another watchdog tick holds the state lock; skipping this tick.")
                    now = int(self._clock())
                    return TickOutcome(
                        action=TickAction.SKIPPED,
                        state=None,
                        event=self._event(EventKind.NONE, now),
                        exit_code=EXIT_OK,
                        detail="state lock busy",
                    )
                return self._tick_locked()
        except LedgerIOError as err:
            _logger.error(f"{err}; running tick without the state lock")
            return self._tick_locked()

    def _tick_locked(self) -> TickOutcome:
        cfg = self.config
        now = int(self._clock())
        probe_failed = False
        try:
            probe = self.backend.probe(cfg.session_id)
        except ProbeError as err:
            if err.ambiguous:
                _logger.warning(f"Probe inconclusive ({err}); treating worker as present.")
                return self._finish(
                    TickOutcome(
                        action=TickAction.PROBE_FAILED,
                        state=SessionState.ALIVE_WITH_WORKER,
                        event=self._event(EventKind.NONE, now),
                        exit_code=EXIT_TICK_FAILED,
                        detail=str(err),
                    )
                )
            _logger.error(f"Probe failed ({err}); treating session as missing.")
            probe = ProbeResult(cfg.session_id, SessionState.MISSING, detail=str(err))
            probe_failed = True
        if not probe.needs_restart:
            return TickOutcome(
                action=TickAction.NOOP,
                state=probe.state,
                event=self._event(EventKind.NONE, now),
                exit_code=EXIT_OK,
                detail=probe.detail,
            )

        exit_code = EXIT_TICK_FAILED if probe_failed else EXIT_OK
        if not probe_failed:
            _logger.info(_STATE_MESSAGES[probe.state].format(session=cfg.session_id))

        ledger = self.store.load().prune(now, cfg.window_seconds)
        if not ledger.can_restart(now, cfg.window_seconds, cfg.max_restarts):
            self._save(ledger)
            count = len(ledger)
            _logger.warning(
                f"Restart limit reached ({count}/{cfg.max_restarts} in {cfg.window_seconds}s). "
                "Worker will NOT be restarted."
            )
            return self._finish(
                TickOutcome(
                    action=TickAction.BLOCKED,
                    state=probe.state,
                    event=self._event(
                        EventKind.BLOCKED,
                        now,
                        session_id=cfg.session_id,
                        restart_count=count,
                        max_restarts=cfg.max_restarts,
                        window_seconds=cfg.window_seconds,
                        reason=probe.state.value,
                    ),
                    exit_code=exit_code,
                    restart_count=count,
                    detail=probe.detail,
                )
            )

        ledger = ledger.record(now)
        self._save(ledger)
        count = len(ledger)
        _logger.info(f"Restarting worker in {self.backend.name} session '{cfg.session_id}'...")
        try:
            self.backend.relaunch(cfg.session_id, cfg.worker_command, cfg.worker_log_file)
        except LaunchError as err:
            detail = f"{err}; {err.output}" if err.output else str(err)
            _logger.error(f"Worker launch failed: {detail}")
            return self._finish(
                TickOutcome(
                    action=TickAction.LAUNCH_FAILED,
                    state=probe.state,
                    event=self._event(EventKind.NONE, now),
                    exit_code=EXIT_TICK_FAILED,
                    restart_count=count,
                    detail=detail,
                )
            )

        _logger.info(
            f"Worker restarted in {self.backend.name} session '{cfg.session_id}' "
            f"({count}/{cfg.max_restarts} in {cfg.window_seconds}s)."
        )
        return self._finish(
            TickOutcome(
                action=TickAction.RESTARTED,
                state=probe.state,
                event=self._event(
                    EventKind.RESTARTED,
                    now,
                    session_id=cfg.session_id,
                    restart_count=count,
                    max_restarts=cfg.max_restarts,
                    window_seconds=cfg.window_seconds,
                    reason=probe.state.value,
                ),
                exit_code=exit_code,
                restart_count=count,
                detail=probe.detail,
            )
        )

    def status(self) -> dict[str, Any]:
        """Read-only snapshot: probe verdict and restart budget. Never mutates state."""
        cfg = self.config
        now = int(self._clock())
        payload: dict[str, Any] = {
            "session": cfg.session_id,
            "backend": self.backend.name,
            "match_scope": cfg.match_scope,
            "max_restarts": cfg.max_restarts,
            "window_seconds": cfg.window_seconds,
        }
        try:
            probe = self.backend.probe(cfg.session_id)
            payload["state"] = probe.state.value
            payload["worker_pid"] = probe.worker_pid
            payload["detail"] = probe.detail
        except ProbeError as err:
            payload["state"] = "unknown"
            payload["worker_pid"] = None
            payload["detail"] = str(err)
        ledger = self.store.load()
        payload["restart_count"] = ledger.count_in_window(now, cfg.window_seconds)
        payload["can_restart"] = ledger.can_restart(now, cfg.window_seconds, cfg.max_restarts)
        payload["recent"] = logs.read_history(cfg.history_file, limit=5)
        return payload

    def reset(self) -> None:
        """Clear the ledger under the state lock so a running tick cannot write it back."""
        with state_lock(self.config.lock_file) as acquired:
            if not acquired:
                raise LedgerIOError("another watchdog tick holds the state lock; retry the reset")
            self.store.clear()
        _logger.info(f"Restart ledger {self.store.path} cleared by operator.")
