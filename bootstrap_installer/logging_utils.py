from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

DEFAULT_LOG_PATH = "/var/log/bootstrap-installer.log"
FALLBACK_LOG_NAME = "bootstrap-installer.log"

_FORMAT = logging.Formatter(
    fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S%z",
)


def _file_handler(path: str) -> logging.Handler:
    Path(os.path.dirname(path) or ".").mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setFormatter(_FORMAT)
    return handler


def configure_logging(
    log_path: str = DEFAULT_LOG_PATH,
    level: int = logging.DEBUG,
    console_level: int = logging.INFO,
    also_console: bool = True,
) -> str:
    """Configure root logging once per process.

    The file gets everything at ``level``, including optional-module failures
    logged at DEBUG. The console gets ``console_level`` and up.

    /var/log is often not writable for an unprivileged operator. In that case
    the log goes to ./bootstrap-installer.log and the returned path says so.
    """

    root = logging.getLogger()
    if getattr(root, "_bootstrap_configured", False):
        return getattr(root, "_bootstrap_log_path", log_path)

    root.setLevel(min(level, console_level))
    handlers: List[logging.Handler] = []

    chosen_path = log_path
    try:
        file_handler = _file_handler(log_path)
    except OSError:
        chosen_path = str(Path.cwd() / FALLBACK_LOG_NAME)
        file_handler = _file_handler(chosen_path)
    file_handler.setLevel(level)
    handlers.append(file_handler)

    if also_console:
        console = logging.StreamHandler()
        console.setFormatter(_FORMAT)
        console.setLevel(console_level)
        handlers.append(console)

    for h in handlers:
        root.addHandler(h)

    setattr(root, "_bootstrap_configured", True)
    setattr(root, "_bootstrap_log_path", chosen_path)
    setattr(root, "_bootstrap_handlers", handlers)

    logging.getLogger(__name__).info("Logging initialized (requested=%s, actual=%s)", log_path, chosen_path)
    return chosen_path


def reset_logging() -> Optional[str]:
    """Remove handlers installed by :func:`configure_logging`."""

    root = logging.getLogger()
    path = getattr(root, "_bootstrap_log_path", None)
    for h in getattr(root, "_bootstrap_handlers", []):
        root.removeHandler(h)
        h.close()
    for attr in ("_bootstrap_configured", "_bootstrap_log_path", "_bootstrap_handlers"):
        if hasattr(root, attr):
            delattr(root, attr)
    return path
