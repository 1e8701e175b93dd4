"""Best-effort, fire-and-forget notifications for supervisory ticks."""

from __future__ import annotations

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib import error as urllib_error
from urllib import parse as urllib_parse
from urllib import request as urllib_request

from .config import WatchdogConfig
from .errors import NotifyError

TELEGRAM_API_BASE = "https://api.telegram.org"
USER_AGENT = "session-watchdog/notifier"

_logger = logging.getLogger("session_watchdog.notifier")

_SECRET_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\bbot\d+:[A-Za-z0-9_\-]+"), "bot****"),
    (re.compile(r"\b\d{6,}:[A-Za-z0-9_\-]{30,}\b"), "[REDACTED_BOT_TOKEN]"),
    (re.compile(r"(?i)\b(api[_-]?key|token|secret|password)\s*[:=]\s*\S+"), r"\1=****"),
]


def _redact_secrets(text: str) -> str:
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _local_ts(epoch: int) -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(epoch))


class EventKind(str, Enum):
    RESTARTED = "restarted"
    BLOCKED = "blocked"
    NONE = "none"


@dataclass(frozen=True)
class NotificationEvent:
    kind: EventKind
    host: str
    timestamp: int
    session_id: str | None = None
    restart_count: int | None = None
    max_restarts: int | None = None
    window_seconds: int | None = None
    reason: str = ""

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "event_kind": self.kind.value,
            "host_identifier": self.host,
            "timestamp": self.timestamp,
        }
        optional = {
            "session_id": self.session_id,
            "restart_count": self.restart_count,
            "max_restarts": self.max_restarts,
            "window_seconds": self.window_seconds,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        if self.reason:
            payload["reason"] = self.reason
        return payload


def render_text(event: NotificationEvent) -> str:
    """Human-readable alert body."""
    window_label = "current window"
    if event.window_seconds:
        window_label = f"last {max(1, event.window_seconds // 60)} min"
    if event.kind is EventKind.RESTARTED:
        return (
            "🔄 Session Watchdog restarted worker\n\n"
            f"Server: {event.host}\n"
            f"Time: {_local_ts(event.timestamp)}\n"
            f"Session: {event.session_id}\n"
            f"Reason: {event.reason or 'worker process/session missing'}\n\n"
            f"ℹ️ Restart count ({window_label}): {event.restart_count}/{event.max_restarts}"
        )
    if event.kind is EventKind.BLOCKED:
        return (
            "🚨 Session Watchdog ALERT\n\n"
            f"Server: {event.host}\n"
            f"Time: {_local_ts(event.timestamp)}\n"
            f"Status: Restart limit reached ({event.max_restarts} restarts / {event.window_seconds}s)\n"
            "Action: Worker restart BLOCKED\n\n"
            "👉 Please check logs manually."
        )
    return ""


class Notifier(ABC):
    """Delivers tick events. ``send`` never raises; its result may be ignored."""

    def send(self, event: NotificationEvent) -> bool:
        if event.kind is EventKind.NONE:
            return False
        try:
            self._deliver(event)
        except NotifyError as err:
            _logger.warning(f"Notification '{event.kind.value}' not delivered: {_redact_secrets(str(err))}")
            return False
        except Exception as err:  # noqa: BLE001
            _logger.warning(
                f"Notification '{event.kind.value}' failed unexpectedly: "
                f"{type(err).__name__}: {_redact_secrets(str(err))}"
            )
            return False
        return True

    @abstractmethod
    def _deliver(self, event: NotificationEvent) -> None:
        raise NotImplementedError


class NullNotifier(Notifier):
    def send(self, event: NotificationEvent) -> bool:
        return False

    def _deliver(self, event: NotificationEvent) -> None:
        return None


def _post(req: urllib_request.Request, timeout_sec: int) -> None:
    try:
        with urllib_request.urlopen(req, timeout=timeout_sec) as resp:  # nosec B310
            resp.read(1024)
    except urllib_error.HTTPError as exc:
        raise NotifyError(f"HTTP {exc.code}") from exc
    except (urllib_error.URLError, TimeoutError, OSError) as exc:
        raise NotifyError(str(exc)[:200]) from exc


class TelegramNotifier(Notifier):
    """Bot API ``sendMessage`` with a short timeout and no retries."""

    def __init__(self, token: str, chat_id: str, timeout_sec: int = 10, api_base: str = TELEGRAM_API_BASE) -> None:
        self.token = token
        self.chat_id = chat_id
        self.timeout_sec = timeout_sec
        self.api_base = api_base.rstrip("/")

    def build_request(self, event: NotificationEvent) -> urllib_request.Request:
        body = urllib_parse.urlencode(
            {
                "chat_id": self.chat_id,
                "text": render_text(event),
                "disable_web_page_preview": "true",
            }
        ).encode("utf-8")
        return urllib_request.Request(
            f"{self.api_base}/bot{self.token}/sendMessage",
            data=body,
            method="POST",
            headers={"User-Agent": USER_AGENT, "Content-Type": "application/x-www-form-urlencoded"},
        )

    def _deliver(self, event: NotificationEvent) -> None:
        try:
            _post(self.build_request(event), self.timeout_sec)
        except NotifyError as err:
            raise NotifyError(str(err).replace(self.token, "****")) from err


class WebhookNotifier(Notifier):
    """POSTs the event payload as JSON."""

    def __init__(self, url: str, timeout_sec: int = 10) -> None:
        self.url = url
        self.timeout_sec = timeout_sec

    def build_request(self, event: NotificationEvent) -> urllib_request.Request:
        payload = {**event.to_payload(), "text": render_text(event)}
        return urllib_request.Request(
            self.url,
            data=json.dumps(payload, sort_keys=True).encode("utf-8"),
            method="POST",
            headers={"User-Agent": USER_AGENT, "Content-Type": "application/json"},
        )

    def _deliver(self, event: NotificationEvent) -> None:
        _post(self.build_request(event), self.timeout_sec)


def build_notifier(config: WatchdogConfig) -> Notifier:
    if config.telegram_token and config.telegram_chat_id:
        return TelegramNotifier(config.telegram_token, config.telegram_chat_id, timeout_sec=config.notify_timeout_sec)
    if config.webhook_url:
        return WebhookNotifier(config.webhook_url, timeout_sec=config.notify_timeout_sec)
    return NullNotifier()
