"""
Logging configuration — central setup for the CLI entrypoint.

Called by main.py: once at startup with the console level, and again
when the run's configuration (and so its installation log) is known.
Every module that does ``logger = logging.getLogger(__name__)``
inherits this config.

Console level precedence:
    CLI flag  >  OQS_LOG_LEVEL env var  >  WARNING (default)

The installation log file is opened in append mode and always gets
full timestamped lines, independent of the console level.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

# ── Format strings ──────────────────────────────────────────────

_CONSOLE_FORMATS: dict[int, tuple[str, str | None]] = {
    # DEBUG — file:line for diagnosis
    logging.DEBUG: ("%(asctime)s %(levelname)-5s %(name)s:%(lineno)d — %(message)s", "%H:%M:%S"),
    # INFO — step progress with a clock
    logging.INFO: ("%(asctime)s %(message)s", "%H:%M:%S"),
    # WARNING and above — message only
    logging.WARNING: ("%(message)s", None),
}

_FMT_FILE = "%(asctime)s %(levelname)-5s %(name)s — %(message)s"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"


def _console_handler(level: int) -> logging.Handler:
    for threshold in (logging.DEBUG, logging.INFO):
        if level <= threshold:
            fmt, datefmt = _CONSOLE_FORMATS[threshold]
            break
    else:
        fmt, datefmt = _CONSOLE_FORMATS[logging.WARNING]

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    return handler


def _install_log_handler(path: Path, level: int) -> logging.Handler:
    """Append-mode handler; raises OSError when the file can't be opened."""
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_FMT_FILE, datefmt=_DATEFMT_FILE))
    return handler


def setup_logging(
    level: str = "WARNING",
    log_file: str | Path | None = None,
    log_file_level: str | None = "DEBUG",
) -> Path | None:
    """Configure Python logging for the entire process.

    Replaces any handlers installed by a previous call.

    Args:
        level: Console log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Optional path to the append-only installation log.
        log_file_level: Level for the log file (default DEBUG).

    Returns:
        The log file path actually opened, or None.
    """
    console_level = _parse_level(level)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.addHandler(_console_handler(console_level))
    root.setLevel(console_level)

    opened: Path | None = None
    if log_file:
        path = Path(log_file)
        file_level = _parse_level(log_file_level) if log_file_level else console_level
        try:
            root.addHandler(_install_log_handler(path, file_level))
        except OSError as e:
            root.warning("Cannot open installation log %s: %s", path, e)
        else:
            root.setLevel(min(console_level, file_level))
            opened = path

    logging.raiseExceptions = False
    return opened


def _parse_level(level: str | None) -> int:
    """Convert a level name to its numeric constant (INFO if unknown)."""
    if not level:
        return logging.INFO
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return logging.INFO
    return numeric
