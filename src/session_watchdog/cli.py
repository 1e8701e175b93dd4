"""CLI entrypoint for the session watchdog.

Run with no arguments from a periodic scheduler to perform one tick.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from .config import WatchdogConfig
from .errors import ConfigurationError, LedgerIOError
from .ledger import LedgerStore
from .logs import configure_logging
from .notifier import build_notifier
from .preflight import preflight
from .sessions import build_backend
from .supervisor import EXIT_CONFIG_ERROR, EXIT_OK, EXIT_TICK_FAILED, Supervisor

_logger = logging.getLogger("session_watchdog.cli")


def build_supervisor(config: WatchdogConfig) -> Supervisor:
    return Supervisor(
        config=config,
        backend=build_backend(config),
        store=LedgerStore(config.ledger_file),
        notifier=build_notifier(config),
    )


def _render_status(payload: dict) -> str:
    lines = [
        f"session: {payload['session']} ({payload['backend']}, match={payload['match_scope']})",
        f"state: {payload['state']}" + (f" pid={payload['worker_pid']}" if payload.get("worker_pid") else ""),
        f"detail: {payload['detail']}",
        (
            f"restarts: {payload['restart_count']}/{payload['max_restarts']} in {payload['window_seconds']}s"
            f" ({'allowed' if payload['can_restart'] else 'blocked'})"
        ),
    ]
    for row in payload.get("recent", []):
        lines.append(f"- {row.get('time', '')} {row.get('action', '')}: {row.get('detail', '')}")
    return "\n".join(lines)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="session-watchdog", description=__doc__)
    parser.add_argument("--config", default="", help="YAML/JSON config file")
    parser.add_argument("--env-file", default="", help="dotenv-style file with SESSION_WATCHDOG_* settings")
    parser.add_argument("--verbose", action="store_true", help="Also log to stderr")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("tick", help="Run one supervisory tick (default)")
    status = sub.add_parser("status", help="Show session state and restart budget")
    status.add_argument("--json", action="store_true")
    sub.add_parser("reset", help="Clear the restart ledger")
    args = parser.parse_args(argv)
    command = args.command or "tick"

    try:
        config = WatchdogConfig.load(
            config_file=Path(args.config) if args.config else None,
            env_file=Path(args.env_file) if args.env_file else None,
        )
    except ConfigurationError as err:
        print(f"Configuration error: {err}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    configure_logging(config.log_file, verbose=args.verbose)

    if command == "reset":
        supervisor = build_supervisor(config)
        try:
            supervisor.reset()
        except LedgerIOError as err:
            _logger.error(f"Reset failed: {err}")
            print(f"Reset failed: {err}", file=sys.stderr)
            return EXIT_TICK_FAILED
        print(f"Restart ledger cleared: {config.ledger_file}")
        return EXIT_OK

    try:
        preflight(config)
    except ConfigurationError as err:
        _logger.error(f"Preflight failed: {err}")
        print(f"Configuration error: {err}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    supervisor = build_supervisor(config)
    if command == "status":
        payload = supervisor.status()
        if args.json:
            print(json.dumps(payload, indent=2, sort_keys=True))
        else:
            print(_render_status(payload))
        return EXIT_OK

    return supervisor.tick().exit_code


if __name__ == "__main__":
    raise SystemExit(main())
