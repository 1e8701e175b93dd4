"""Layered configuration for the session watchdog.

Values are resolved from, in increasing precedence: built-in defaults, an
optional YAML/JSON config file, an optional dotenv-style env file, and
``SESSION_WATCHDOG_*`` process environment variables.
"""

from __future__ import annotations

import os
import re
import shlex
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

from .errors import ConfigurationError

ENV_PREFIX = "SESSION_WATCHDOG_"
DEFAULT_ENV_FILE = Path("/etc/session-watchdog.env")
DEFAULT_STATE_DIR = Path("/var/lib/session-watchdog")
DEFAULT_LOG_FILE = Path("/var/log/session-watchdog.log")

BACKENDS = ("tmux", "screen")
MATCH_SCOPES = ("descendant", "host")

OPTION_NAMES = (
    "session_id",
    "backend",
    "worker_path",
    "worker_args",
    "match_scope",
    "match_regex",
    "max_restarts",
    "window_seconds",
    "kill_settle_sec",
    "start_settle_sec",
    "state_dir",
    "log_file",
    "worker_log_file",
    "telegram_token",
    "telegram_chat_id",
    "webhook_url",
    "notify_timeout_sec",
    "host_id",
)


def _load_env_file(path: Path) -> dict[str, str]:
    if not path.exists():
        return {}
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as err:
        raise ConfigurationError(f"Cannot read env file {path}: {err}") from err
    data: dict[str, str] = {}
    for line in text.splitlines():
        raw = line.strip()
        if not raw or raw.startswith("#") or "=" not in raw:
            continue
        if raw.startswith("export "):
            raw = raw[len("export ") :].strip()
        key, value = raw.split("=", 1)
        data[key.strip()] = value.strip().strip("\"").strip("'")
    return data


def _load_config_file(path: Path) -> dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as err:
        raise ConfigurationError(f"Cannot read config file {path}: {err}") from err
    try:
        payload = yaml.safe_load(raw)
    except yaml.YAMLError as err:
        raise ConfigurationError(f"Invalid YAML/JSON at {path}: {err}") from err
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Config root must be a mapping: {path}")
    unknown = sorted(str(key) for key in payload if key not in OPTION_NAMES)
    if unknown:
        raise ConfigurationError(f"Unknown config option(s) in {path}: {', '.join(unknown)}")
    return dict(payload)


def _env_overrides(env: Mapping[str, str]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for name in OPTION_NAMES:
        key = ENV_PREFIX + name.upper()
        if key in env:
            overrides[name] = env[key]
    return overrides


def _int_option(merged: dict[str, Any], name: str, default: int, minimum: int) -> int:
    raw = merged.get(name)
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default
    if isinstance(raw, bool):
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    try:
        value = int(str(raw).strip())
    except ValueError as err:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from err
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float_option(merged: dict[str, Any], name: str, default: float) -> float:
    raw = merged.get(name)
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default
    try:
        value = float(str(raw).strip())
    except ValueError as err:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from err
    if value < 0:
        raise ConfigurationError(f"{name} must be >= 0, got {value}")
    return value


def _str_option(merged: dict[str, Any], name: str, default: str) -> str:
    raw = merged.get(name)
    if raw is None:
        return default
    return str(raw).strip()


def _args_option(merged: dict[str, Any], default: tuple[str, ...]) -> tuple[str, ...]:
    raw = merged.get("worker_args")
    if raw is None:
        return default
    if isinstance(raw, (list, tuple)):
        return tuple(str(item) for item in raw)
    return tuple(shlex.split(str(raw)))


@dataclass(frozen=True)
class WatchdogConfig:
    session_id: str = "o"
    backend: str = "tmux"
    worker_path: Path = Path("/usr/local/bin/optimai-cli")
    worker_args: tuple[str, ...] = ("node", "start")
    match_scope: str = "descendant"
    match_regex: str = ""
    max_restarts: int = 3
    window_seconds: int = 600
    kill_settle_sec: float = 2.0
    start_settle_sec: float = 1.0
    state_dir: Path = DEFAULT_STATE_DIR
    log_file: Path = DEFAULT_LOG_FILE
    worker_log_file: Path = DEFAULT_STATE_DIR / "worker.log"
    telegram_token: str = ""
    telegram_chat_id: str = ""
    webhook_url: str = ""
    notify_timeout_sec: int = 10
    host_id: str = ""

    @property
    def ledger_file(self) -> Path:
        return self.state_dir / "restarts.log"

    @property
    def history_file(self) -> Path:
        return self.state_dir / "history.ndjson"

    @property
    def lock_file(self) -> Path:
        return self.state_dir / "watchdog.lock"

    @property
    def worker_command(self) -> list[str]:
        return [str(self.worker_path), *self.worker_args]

    @property
    def worker_signature(self) -> str:
        """Command-line fragment that identifies the running worker."""
        return " ".join([self.worker_path.name, *self.worker_args])

    @classmethod
    def from_mapping(cls, merged: dict[str, Any]) -> "WatchdogConfig":
        defaults = cls()
        session_id = _str_option(merged, "session_id", defaults.session_id)
        if not session_id or any(ch in session_id for ch in ".:"):
            raise ConfigurationError(f"session_id must be non-empty and contain no '.' or ':': {session_id!r}")
        backend = _str_option(merged, "backend", defaults.backend).lower()
        if backend not in BACKENDS:
            raise ConfigurationError(f"backend must be one of {', '.join(BACKENDS)}, got {backend!r}")
        match_scope = _str_option(merged, "match_scope", defaults.match_scope).lower()
        if match_scope not in MATCH_SCOPES:
            raise ConfigurationError(f"match_scope must be one of {', '.join(MATCH_SCOPES)}, got {match_scope!r}")
        match_regex = _str_option(merged, "match_regex", "")
        if match_regex:
            try:
                re.compile(match_regex)
            except re.error as err:
                raise ConfigurationError(f"match_regex is not a valid regular expression: {err}") from err

        worker_raw = _str_option(merged, "worker_path", str(defaults.worker_path))
        if not worker_raw:
            raise ConfigurationError("worker_path must not be empty")
        state_dir = Path(_str_option(merged, "state_dir", str(defaults.state_dir))).expanduser()
        worker_log_raw = _str_option(merged, "worker_log_file", "")
        worker_log_file = Path(worker_log_raw).expanduser() if worker_log_raw else state_dir / "worker.log"

        return cls(
            session_id=session_id,
            backend=backend,
            worker_path=Path(worker_raw).expanduser(),
            worker_args=_args_option(merged, defaults.worker_args),
            match_scope=match_scope,
            match_regex=match_regex,
            max_restarts=_int_option(merged, "max_restarts", defaults.max_restarts, minimum=1),
            window_seconds=_int_option(merged, "window_seconds", defaults.window_seconds, minimum=1),
            kill_settle_sec=_float_option(merged, "kill_settle_sec", defaults.kill_settle_sec),
            start_settle_sec=_float_option(merged, "start_settle_sec", defaults.start_settle_sec),
            state_dir=state_dir,
            log_file=Path(_str_option(merged, "log_file", str(defaults.log_file))).expanduser(),
            worker_log_file=worker_log_file,
            telegram_token=_str_option(merged, "telegram_token", ""),
            telegram_chat_id=_str_option(merged, "telegram_chat_id", ""),
            webhook_url=_str_option(merged, "webhook_url", ""),
            notify_timeout_sec=_int_option(merged, "notify_timeout_sec", defaults.notify_timeout_sec, minimum=1),
            host_id=_str_option(merged, "host_id", "") or socket.gethostname().strip() or "host",
        )

    @classmethod
    def load(
        cls,
        config_file: Path | None = None,
        env_file: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> "WatchdogConfig":
        env = dict(os.environ if environ is None else environ)
        if config_file is None and env.get(ENV_PREFIX + "CONFIG", "").strip():
            config_file = Path(env[ENV_PREFIX + "CONFIG"].strip())
        if env_file is None:
            env_file = Path(env.get(ENV_PREFIX + "ENV_FILE", "").strip() or DEFAULT_ENV_FILE)

        merged: dict[str, Any] = {}
        if config_file is not None:
            merged.update(_load_config_file(config_file.expanduser()))
        merged.update(_env_overrides(_load_env_file(env_file.expanduser())))
        merged.update(_env_overrides(env))
        return cls.from_mapping(merged)
