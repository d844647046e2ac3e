"""
Filesystem helpers — owned artifacts and output links.

Expression files, NixOS config files and output links are the only
things nixconverge writes outside its state directory. Removal is
idempotent: a path that is already gone counts as removed.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


class FilesystemFailure(Exception):
    """An I/O error other than "not found" on an owned artifact."""


def write_owned(path: str | Path, content: str) -> None:
    """Write declared text to the file this system owns.

    Raises:
        FilesystemFailure: If the file cannot be written.
    """
    target = Path(path)
    try:
        target.write_text(content, encoding="utf-8")
    except OSError as e:
        raise FilesystemFailure(f"Cannot write {target}: {e}") from e
    logger.debug("Written %d bytes to %s", len(content), target)


def remove_owned(path: str | Path) -> bool:
    """Remove a file or symlink. Already absent is not an error.

    Returns:
        True if something was removed, False if it was already gone.

    Raises:
        FilesystemFailure: On any error other than "not found".
    """
    target = Path(path)
    try:
        target.unlink()
    except FileNotFoundError:
        logger.debug("Already absent: %s", target)
        return False
    except OSError as e:
        raise FilesystemFailure(f"Cannot remove {target}: {e}") from e
    logger.info("Removed %s", target)
    return True


def read_link(path: str | Path) -> str | None:
    """Return a symlink's target, or None if there is no link at ``path``.

    Raises:
        FilesystemFailure: If ``path`` exists but cannot be read as a link.
    """
    try:
        return os.readlink(path)
    except FileNotFoundError:
        return None
    except OSError as e:
        raise FilesystemFailure(f"Cannot read link {path}: {e}") from e
