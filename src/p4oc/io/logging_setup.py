"""Logging for the p4oc runtime: one file per run, warnings on stderr.

Every record written by the "p4oc" logger tree is tagged with the session the
run is watching ("*" when it watches all sessions), so logs from several
clients pointed at one server can be told apart.

// [LAW:single-enforcer] Handler wiring for the p4oc logger tree happens here only.

Environment:
    P4OC_LOG_LEVEL  level name or number, default INFO
    P4OC_LOG_DIR    directory for per-run log files, default ~/.local/share/p4oc/logs
    P4OC_LOG_FILE   explicit log file path (overrides P4OC_LOG_DIR)
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

ROOT_LOGGER = "p4oc"
DEFAULT_LOG_DIR = "~/.local/share/p4oc/logs"

_FILE_FORMAT = "%(asctime)s %(levelname)-7s %(p4oc_session)s %(name)s [%(threadName)s] %(message)s"
_STDERR_FORMAT = "p4oc: %(levelname)s %(message)s"
_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")


@dataclass(frozen=True)
class LoggingRuntime:
    """Where this run logs, at what level, and for which session."""

    level: int
    file_path: str
    session_id: str
    stderr: bool

    @property
    def level_name(self) -> str:
        return logging.getLevelName(self.level)


_RUNTIME: LoggingRuntime | None = None


def resolve_level(raw: str | None) -> int:
    """Level from a name ("debug") or a number ("10"); anything else is INFO."""
    text = (raw or "").strip()
    if text.isdigit():
        return int(text)
    level = getattr(logging, text.upper(), None) if text else None
    return level if isinstance(level, int) else logging.INFO


def resolve_log_path(run_name: str, environ: Mapping[str, str] = os.environ) -> str:
    explicit = environ.get("P4OC_LOG_FILE")
    if explicit:
        return explicit
    log_dir = Path(os.path.expanduser(environ.get("P4OC_LOG_DIR") or DEFAULT_LOG_DIR))
    safe = _UNSAFE.sub("-", run_name).strip("-_") or "p4oc"
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return str(log_dir / f"{safe}-{stamp}-{os.getpid()}.log")


class _SessionTag(logging.Filter):
    """Stamps record.p4oc_session; never drops a record."""

    def __init__(self, session_id: str) -> None:
        super().__init__()
        self.tag = session_id or "*"

    def filter(self, record: logging.LogRecord) -> bool:
        record.p4oc_session = self.tag
        return True


def _file_handler(path: str, level: int, tag: _SessionTag) -> logging.Handler:
    handler = RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=3, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S"))
    handler.addFilter(tag)
    return handler


def _stderr_handler(level: int, tag: _SessionTag) -> logging.Handler:
    handler = logging.StreamHandler()
    # Chatter stays in the file; the terminal shows only problems.
    handler.setLevel(max(level, logging.WARNING))
    handler.setFormatter(logging.Formatter(_STDERR_FORMAT))
    handler.addFilter(tag)
    return handler


def configure(run_name: str = "p4oc", *, session_id: str = "", stderr: bool = True) -> LoggingRuntime:
    """Wire the "p4oc" logger tree to a per-run file and, optionally, stderr.

    Idempotent: repeated calls return the first runtime unchanged.

    Args:
        run_name: Prefix for the default log file name.
        session_id: Session this run watches; empty means all sessions.
        stderr: Set False while a live display owns the terminal.
    """
    global _RUNTIME
    if _RUNTIME is not None:
        return _RUNTIME

    level = resolve_level(os.environ.get("P4OC_LOG_LEVEL"))
    file_path = resolve_log_path(run_name)
    Path(file_path).parent.mkdir(parents=True, exist_ok=True)
    tag = _SessionTag(session_id)

    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)
    logger.propagate = False
    logger.addHandler(_file_handler(file_path, level, tag))
    if stderr:
        logger.addHandler(_stderr_handler(level, tag))

    _RUNTIME = LoggingRuntime(level=level, file_path=file_path, session_id=session_id, stderr=stderr)
    logger.info("p4oc logging at %s to %s", _RUNTIME.level_name, file_path)
    return _RUNTIME


def reset() -> None:
    """Detach p4oc handlers so configure() can run again (tests)."""
    global _RUNTIME
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
    _RUNTIME = None
