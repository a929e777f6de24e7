"""Always-on file logging for the task loop.

Every module logs through a child of the ``taskloop`` logger:

    from .logger import get_logger
    log = get_logger("engine")
    log.info("turn %d started", n)

Records go to ``<workspace>/.taskloop_output/taskloop.log`` (5 MB, 5
backups).  Until ``init_logging`` names a workspace the current directory
is used; calling it again with another workspace moves the file handler
there.  Set ``TASKLOOP_DEBUG`` to mirror records to stderr.
"""

import logging
import os
import sys
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

ROOT_LOGGER = "taskloop"
LOG_DIR_NAME = ".taskloop_output"
LOG_FILE_NAME = "taskloop.log"

_FORMAT = logging.Formatter(
    fmt="%(asctime)s.%(msecs)03d | %(levelname)-5s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

_file_handler: Optional[RotatingFileHandler] = None
_stderr_handler: Optional[logging.Handler] = None
_session_id: Optional[str] = None


def current_log_path() -> Optional[Path]:
    """Where records are written right now, or None before initialisation."""
    if _file_handler is None:
        return None
    return Path(_file_handler.baseFilename)


def _open_file_handler(log_path: Path, level: int) -> RotatingFileHandler:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(_FORMAT)
    return handler


def init_logging(
    workspace: Optional[str] = None,
    session_id: Optional[str] = None,
    level: int = logging.DEBUG,
) -> Path:
    """Point the file log at ``workspace`` (or the cwd) and tag the session.

    Safe to call repeatedly.  A call naming a different directory closes the
    old handler and opens a new one, so modules that logged at import time
    follow the move.  Returns the active log path.
    """
    global _file_handler, _stderr_handler, _session_id

    base = Path(workspace) if workspace else Path.cwd()
    log_path = Path(os.path.abspath(base / LOG_DIR_NAME / LOG_FILE_NAME))
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level)

    if _file_handler is not None and Path(_file_handler.baseFilename) != log_path:
        previous = Path(_file_handler.baseFilename)
        root.info("Log moving to %s", log_path)
        root.removeHandler(_file_handler)
        _file_handler.close()
        _file_handler = None
    else:
        previous = None

    opened = _file_handler is None
    if opened:
        _file_handler = _open_file_handler(log_path, level)
        root.addHandler(_file_handler)
    else:
        _file_handler.setLevel(level)

    if _stderr_handler is None and os.environ.get("TASKLOOP_DEBUG"):
        _stderr_handler = logging.StreamHandler(sys.stderr)
        _stderr_handler.setLevel(logging.DEBUG)
        _stderr_handler.setFormatter(_FORMAT)
        root.addHandler(_stderr_handler)

    session_changed = session_id is not None and session_id != _session_id
    if session_id is not None:
        _session_id = session_id

    if opened:
        root.info(
            "=== Logging initialised === pid=%d python=%s log=%s session=%s previous=%s",
            os.getpid(), sys.version.split()[0], log_path, _session_id or "-", previous or "-",
        )
    elif session_changed:
        root.info("=== Session %s ===", _session_id)
    return log_path


def get_logger(name: str) -> logging.Logger:
    """Return ``taskloop.<name>``, initialising logging on first use."""
    if _file_handler is None:
        init_logging()
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


# ── Convenience helpers ──────────────────────────────────────

def log_exception(logger: logging.Logger, msg: str, exc: BaseException) -> None:
    """Log an exception with full traceback."""
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("%s: %s\n%s", msg, exc, "".join(tb))


def truncate(text: str, max_len: int = 200) -> str:
    """Truncate a string for log readability."""
    if not text:
        return "(empty)"
    text = text.replace("\n", "\\n")
    if len(text) <= max_len:
        return text
    return text[:max_len] + f"...[{len(text)} chars]"
