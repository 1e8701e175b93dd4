"""Environment checks that must pass before any probing."""

from __future__ import annotations

import os
import shutil

from .config import WatchdogConfig
from .errors import ConfigurationError


def preflight(config: WatchdogConfig) -> None:
    """Raise ConfigurationError when required host tooling or the worker is missing."""
    problems: list[str] = []
    if shutil.which(config.backend) is None:
        problems.append(f"{config.backend} not found on PATH")
    if shutil.which("ps") is None:
        problems.append("ps not found on PATH")
    worker = config.worker_path
    if not worker.is_file():
        problems.append(f"worker executable not found: {worker}")
    elif not os.access(worker, os.X_OK):
        problems.append(f"worker is not executable: {worker}")
    if problems:
        raise ConfigurationError("; ".join(problems))
