"""
Logging configuration — one root setup shared by the CLI and the engine.

main.py calls ``setup_logging`` once; modules only ever do
``logger = logging.getLogger(__name__)``.

Console level: --debug / -v / -q, else IC_LOG_LEVEL, else WARNING.
A second, file-backed handler is added when IC_LOG_FILE is set, with its
own threshold from IC_LOG_FILE_LEVEL.
"""

from __future__ import annotations

import logging
import os
import sys

# (max level, format, datefmt): the first row whose level covers the
# console threshold wins
_CONSOLE_FORMATS: tuple[tuple[int, str, str | None], ...] = (
    (logging.DEBUG, "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d %(message)s", "%H:%M:%S"),
    (logging.INFO, "%(asctime)s %(name)s: %(message)s", "%H:%M:%S"),
    (logging.CRITICAL, "%(message)s", None),
)

_FILE_FORMAT = "%(asctime)s %(levelname)-7s %(process)d %(name)s: %(message)s"
_FILE_DATEFMT = "%Y-%m-%dT%H:%M:%S"

_CHATTY = ("yaml", "concurrent.futures")


def resolve_level(debug: bool = False, verbose: bool = False, quiet: bool = False) -> str:
    """Pick the console level from CLI flags, falling back to IC_LOG_LEVEL."""
    for flag, name in ((debug, "DEBUG"), (verbose, "INFO"), (quiet, "ERROR")):
        if flag:
            return name
    return os.environ.get("IC_LOG_LEVEL", "WARNING")


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
    quiet_third_party: bool = True,
) -> None:
    """Replace the root logger's handlers with infracompose's.

    Safe to call repeatedly; each call starts from a clean root. The root
    level is the lowest of the console and file thresholds so neither
    handler is starved.
    """
    console_level = _to_level(level)
    handlers = [_console_handler(console_level)]
    if log_file:
        file_level = _to_level(log_file_level) if log_file_level else console_level
        handlers.append(_file_handler(log_file, file_level))

    root = logging.getLogger()
    for old in root.handlers[:]:
        root.removeHandler(old)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(min(h.level for h in handlers))

    if quiet_third_party and console_level > logging.DEBUG:
        for name in _CHATTY:
            logging.getLogger(name).setLevel(logging.WARNING)

    # A closed stderr during interpreter shutdown must not print tracebacks
    logging.raiseExceptions = False


def _console_handler(threshold: int) -> logging.Handler:
    fmt, datefmt = next((f, d) for limit, f, d in _CONSOLE_FORMATS if threshold <= limit)
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(threshold)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    return handler


def _file_handler(path: str, threshold: int) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(threshold)
    handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_FILE_DATEFMT))
    return handler


def _to_level(name: str | None) -> int:
    # Unknown names fall back to WARNING rather than failing startup
    value = logging.getLevelName(name.upper()) if name else None
    return value if isinstance(value, int) else logging.WARNING
