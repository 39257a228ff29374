"""
Logging setup for the kegworks CLI.

Operation logs (fetch, verify, install, supervisor transitions) go to
stderr at the level picked by the CLI flags, else ``KEG_LOG_LEVEL``,
else WARNING.  ``KEG_LOG_FILE`` adds a persistent operation log, with
its own level from ``KEG_LOG_FILE_LEVEL``.

A service's own stdout/stderr never pass through here; the supervisor
appends those straight to the service's log files.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from kegworks.core.errors import ConfigError

# WARNING and above: just the message, the CLI prints its own summary
_FMT_CONSOLE = "%(message)s"

# INFO: which stage said it
_FMT_VERBOSE = "%(asctime)s [%(name)s] %(message)s"
_DATEFMT_VERBOSE = "%H:%M:%S"

# DEBUG and the file: supervisor watchers log from keg-watch-<name> threads
_FMT_DETAIL = "%(asctime)s %(levelname)-5s %(threadName)s %(name)s:%(lineno)d  %(message)s"
_DATEFMT_DEBUG = "%H:%M:%S"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
) -> None:
    """Configure the root logger for one kegworks invocation.

    Args:
        level: Console level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Optional operation log path; ``~`` is expanded.
        log_file_level: Level for the file; defaults to ``level``.

    Raises:
        ConfigError: The log file cannot be opened for appending.
    """
    numeric_level = _parse_level(level)

    if numeric_level <= logging.DEBUG:
        fmt, datefmt = _FMT_DETAIL, _DATEFMT_DEBUG
    elif numeric_level <= logging.INFO:
        fmt, datefmt = _FMT_VERBOSE, _DATEFMT_VERBOSE
    else:
        fmt, datefmt = _FMT_CONSOLE, None

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(numeric_level)
    console.setFormatter(logging.Formatter(fmt, datefmt=datefmt))

    handlers: list[logging.Handler] = [console]
    effective_level = numeric_level
    if log_file:
        file_level = _parse_level(log_file_level) if log_file_level else numeric_level
        handlers.append(_operation_log(Path(log_file).expanduser(), file_level))
        effective_level = min(effective_level, file_level)

    root = logging.getLogger()
    root.handlers.clear()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(effective_level)

    logging.raiseExceptions = False


def _operation_log(path: Path, level: int) -> logging.Handler:
    """File handler for KEG_LOG_FILE; the parent directory must exist."""
    try:
        handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot open log file {path} (KEG_LOG_FILE): {e}") from e
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_FMT_DETAIL, datefmt=_DATEFMT_FILE))
    return handler


def _parse_level(level: str | None) -> int:
    """Convert a level name string to its numeric constant."""
    if not level:
        return logging.WARNING
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return logging.WARNING
    return numeric
