"""Centralized observability logger for pondcode.

Every process (the supervisor and each tab worker) writes its own
structured log under ~/.pondcode/logs/ so that two processes never share
a rotating handler.  The log captures request starts/ends, tool calls,
IPC traffic and process lifecycle so a session can be reconstructed
after the fact.

Usage in any module:
    from .logger import get_logger
    log = get_logger(__name__)
    log.info("something happened")

The log file rotates at 5 MB and keeps the last 5 files.
"""

import logging
import os
import sys
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# ── Singleton state ──────────────────────────────────────────

_initialized = False
_configured_explicitly = False
_log_dir: Optional[Path] = None
_log_name = "pondcode"


def _ensure_log_dir() -> Path:
    """Return (and create) the log directory."""
    global _log_dir
    if _log_dir is not None:
        return _log_dir
    _log_dir = Path(os.environ.get("POND_LOG_DIR") or Path.home() / ".pondcode" / "logs")
    _log_dir.mkdir(parents=True, exist_ok=True)
    return _log_dir


def init_logging(
    process_name: Optional[str] = None,
    log_dir: Optional[str] = None,
    level: int = logging.DEBUG,
    stderr: bool = False,
) -> None:
    """Initialise the file logger for this process.  Safe to call more than once.

    ``process_name`` picks the file name (``supervisor``, ``worker-<tab>``).
    An explicit call replaces the handlers installed by the lazy default
    from get_logger(); after that, further calls are no-ops.
    """
    global _initialized, _configured_explicitly, _log_dir, _log_name

    explicit = process_name is not None or log_dir is not None
    if _configured_explicitly or (_initialized and not explicit):
        return
    _initialized = True
    _configured_explicitly = explicit

    if log_dir:
        _log_dir = Path(log_dir)
        _log_dir.mkdir(parents=True, exist_ok=True)
    else:
        _ensure_log_dir()
    if process_name:
        _log_name = process_name

    root = logging.getLogger("pondcode")
    root.setLevel(level)
    root.propagate = False

    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()

    log_path = _log_dir / f"{_log_name}.log"

    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=5 * 1024 * 1024,   # 5 MB per file
        backupCount=5,
        encoding="utf-8",
    )
    handler.setLevel(level)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d | %(levelname)-5s | %(process)d | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(fmt)
    root.addHandler(handler)

    # Worker stdio is detached, so the stderr mirror is only visible in the supervisor
    if stderr or os.environ.get("POND_DEBUG"):
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(logging.DEBUG)
        stderr_handler.setFormatter(fmt)
        root.addHandler(stderr_handler)

    root.info(
        "=== Logging initialised === pid=%d python=%s log=%s",
        os.getpid(),
        sys.version.split()[0],
        log_path,
    )


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the 'pondcode' namespace.

    Automatically initialises logging on first call so that even
    imports before init_logging() still get a working logger.
    """
    if not _initialized:
        init_logging()
    if name.startswith("pondcode."):
        name = name[len("pondcode."):]
    return logging.getLogger(f"pondcode.{name}")


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
