"""Exceptions raised by the session watchdog."""


class WatchdogError(Exception):
    """Base exception for session watchdog errors."""
    pass


class ConfigurationError(WatchdogError):
    """Raised when the deployment is misconfigured (bad option, missing binary)."""
    pass


class ProbeError(WatchdogError):
    """Raised when host introspection fails.

    ``ambiguous`` is true when the session was confirmed present but the
    worker's presence could not be determined.
    """

    def __init__(self, message: str, *, ambiguous: bool = False) -> None:
        super().__init__(message)
        self.ambiguous = ambiguous


class LaunchError(WatchdogError):
    """Raised when a fresh session could not be created."""

    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class LedgerIOError(WatchdogError):
    """Raised when the restart ledger cannot be read or written."""
    pass


class NotifyError(WatchdogError):
    """Raised by notifier transports; always swallowed by ``Notifier.send``."""
    pass
