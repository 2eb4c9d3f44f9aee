"""Logging bootstrap for hosts embedding the sync engine.

// [LAW:single-enforcer] Handler wiring for the preview_sync logger tree happens here only.
// [LAW:one-source-of-truth] The resolved level and log file are returned as LoggingRuntime.

Library modules only ever call logging.getLogger(__name__); nothing is
emitted until the host calls configure().
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

ROOT_LOGGER = "preview_sync"
_MAX_BYTES = 20 * 1024 * 1024
_BACKUPS = 5


@dataclass(frozen=True)
class LoggingRuntime:
    level_name: str
    level: int
    file_path: str
    session_name: str


_RUNTIME: LoggingRuntime | None = None


def _parse_level(raw: str | None) -> tuple[str, int]:
    name = str(raw or "INFO").strip().upper()
    level = logging.getLevelName(name)
    if not isinstance(level, int):
        level = logging.INFO
    return logging.getLevelName(level), level


def _session_slug(session_name: str) -> str:
    slug = "".join(ch if ch.isalnum() or ch in "-_" else "-" for ch in session_name).strip("-_")
    return slug or "session"


def _log_file_for(session_name: str) -> Path:
    explicit = os.environ.get("PREVIEW_SYNC_LOG_FILE", "").strip()
    if explicit:
        return Path(explicit).expanduser()
    log_dir = Path(
        os.environ.get("PREVIEW_SYNC_LOG_DIR", "").strip()
        or os.path.expanduser("~/.local/share/preview-sync/logs")
    )
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return log_dir / f"{_session_slug(session_name)}-{stamp}-{os.getpid()}.log"


def _stderr_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("[%(name)s] %(levelname)s %(message)s"))
    return handler


def _rotating_handler(level: int, path: Path) -> logging.Handler:
    handler = RotatingFileHandler(path, maxBytes=_MAX_BYTES, backupCount=_BACKUPS, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    )
    return handler


def configure(session_name: str = "preview-sync") -> LoggingRuntime:
    """Attach stderr and rotating-file handlers to the preview_sync logger.

    Level comes from PREVIEW_SYNC_LOG_LEVEL, the file from PREVIEW_SYNC_LOG_FILE
    or a timestamped file under PREVIEW_SYNC_LOG_DIR. Only the first call
    configures; later calls return the same runtime.
    """
    global _RUNTIME
    if _RUNTIME is not None:
        return _RUNTIME

    level_name, level = _parse_level(os.environ.get("PREVIEW_SYNC_LOG_LEVEL"))
    path = _log_file_for(session_name)
    path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.addHandler(_stderr_handler(level))
    logger.addHandler(_rotating_handler(level, path))

    # Third-party libraries (requests, urllib3, bs4) stay at warning+.
    root = logging.getLogger()
    if root.level < logging.WARNING:
        root.setLevel(logging.WARNING)
    logging.captureWarnings(True)

    _RUNTIME = LoggingRuntime(
        level_name=level_name,
        level=level,
        file_path=str(path),
        session_name=session_name,
    )
    return _RUNTIME


def get_runtime() -> LoggingRuntime | None:
    return _RUNTIME


def reset() -> None:
    """Detach handlers and forget the runtime so configure() can run again."""
    global _RUNTIME
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
    logging.captureWarnings(False)
    _RUNTIME = None
