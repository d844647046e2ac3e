"""
Logging configuration — central setup for the CLI entrypoint.

Called once at startup by main.py. Two streams share the console:

    nixconverge.*        our own progress and warnings
    nixconverge.child    every line nix-build / nixos-rebuild / ssh /
                         hooks print, tagged stdout: or stderr:

They get separate levels so ``-v`` shows what nixconverge is doing
without flooding the terminal with build logs. Child output is shown
with ``--tool-output``, with ``--debug``, or via
NIXCONVERGE_CHILD_LOG_LEVEL=INFO.

Levels are resolved in precedence order:
    CLI flag  >  NIXCONVERGE_LOG_LEVEL env var  >  WARNING (default)

Optional file output via NIXCONVERGE_LOG_FILE / NIXCONVERGE_LOG_FILE_LEVEL.
The file always receives child output at the file level.
"""

from __future__ import annotations

import logging
import sys

from nixconverge.adapters.shell.command import CHILD_LOGGER

_FMT_MINIMAL = "%(message)s"
_FMT_VERBOSE = "%(asctime)s [%(name)s] %(message)s"
_FMT_DEBUG = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d — %(message)s"
_DATEFMT = "%H:%M:%S"

# Child lines are indented under the step that started the process
_FMT_CHILD = "    │ %(message)s"

_FMT_FILE = "%(asctime)s %(levelname)-5s %(name)s — %(message)s"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"


def _is_child(record: logging.LogRecord) -> bool:
    return record.name == CHILD_LOGGER or record.name.startswith(CHILD_LOGGER + ".")


class ConsoleFormatter(logging.Formatter):
    """Format our records by level, child output as an indented block."""

    def __init__(self, level: int):
        if level <= logging.DEBUG:
            super().__init__(_FMT_DEBUG, datefmt=_DATEFMT)
        elif level <= logging.INFO:
            super().__init__(_FMT_VERBOSE, datefmt=_DATEFMT)
        else:
            super().__init__(_FMT_MINIMAL)
        self._child = logging.Formatter(_FMT_CHILD)

    def format(self, record: logging.LogRecord) -> str:
        if _is_child(record):
            return self._child.format(record)
        return super().format(record)


class _SplitLevelFilter(logging.Filter):
    """Apply one level to our own records and another to child output."""

    def __init__(self, level: int, child_level: int):
        super().__init__()
        self.level = level
        self.child_level = child_level

    def filter(self, record: logging.LogRecord) -> bool:
        threshold = self.child_level if _is_child(record) else self.level
        return record.levelno >= threshold


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
    child_level: str | None = None,
) -> None:
    """Configure Python logging for the entire process.

    Args:
        level: Level for nixconverge's own messages on the console.
        log_file: Optional path to a log file.
        log_file_level: Level for the log file. Defaults to ``level``.
        child_level: Console level for child process output. Defaults
            to WARNING, which hides it (lines are logged at INFO).
    """
    numeric_level = _parse_level(level)
    numeric_child = _parse_level(child_level)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(min(numeric_level, numeric_child))
    console.setFormatter(ConsoleFormatter(numeric_level))
    console.addFilter(_SplitLevelFilter(numeric_level, numeric_child))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)

    effective_level = console.level

    if log_file:
        file_level = _parse_level(log_file_level) if log_file_level else numeric_level
        effective_level = min(effective_level, file_level)

        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(logging.Formatter(_FMT_FILE, datefmt=_DATEFMT_FILE))
        root.addHandler(fh)

    root.setLevel(effective_level)
    # Let the handlers decide; the child logger must not cut records early.
    logging.getLogger(CHILD_LOGGER).setLevel(logging.NOTSET)

    logging.raiseExceptions = False


def _parse_level(level: str | None) -> int:
    """Convert a level name string to its numeric constant."""
    if not level:
        return logging.WARNING
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return logging.WARNING
    return numeric
