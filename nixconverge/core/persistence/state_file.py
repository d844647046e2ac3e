"""
State file persistence — atomic read/write for StateDocument.

State is stored as JSON in .nixconverge/state.json next to the
declaration. Writes are atomic (write to temp file, then rename) so a
crash mid-write never corrupts the last known good state.
"""

from __future__ import annotations

import json
import logging
import tempfile
from pathlib import Path

from nixconverge.core.models.state import StateDocument

logger = logging.getLogger(__name__)

# Default state file path (relative to the declaration's directory)
DEFAULT_STATE_DIR = ".nixconverge"
DEFAULT_STATE_FILE = "state.json"


class StateError(Exception):
    """The state file exists but cannot be read or validated.

    Never replaced with a fresh document: that would regenerate every
    resource id and forget the artifacts the old records own.
    """


def default_state_path(root: Path) -> Path:
    """Get the default state file path for a declaration root."""
    return root / DEFAULT_STATE_DIR / DEFAULT_STATE_FILE


def load_state(path: Path) -> StateDocument:
    """Load state from a JSON file.

    Returns:
        StateDocument. If the file doesn't exist, returns a fresh document.

    Raises:
        StateError: If the file is unreadable, not JSON, or not a valid
            state document. The file is left untouched.
    """
    if not path.is_file():
        logger.info("No state file at %s — starting fresh", path)
        return StateDocument()

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise StateError(f"Cannot read state file {path}: {e}") from e

    try:
        state = StateDocument.model_validate(json.loads(raw))
    except ValueError as e:
        raise StateError(
            f"Corrupt state file {path}: {e}. Fix or move it aside; "
            "nixconverge will not overwrite it."
        ) from e

    logger.debug("Loaded state from %s (updated_at=%s)", path, state.updated_at)
    return state


def save_state(state: StateDocument, path: Path) -> None:
    """Save state to a JSON file (atomic write)."""
    state.touch()

    path.parent.mkdir(parents=True, exist_ok=True)

    data = state.model_dump(mode="json")
    content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"

    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=".state_",
            suffix=".tmp",
        )
        tmp = Path(tmp_path)
        try:
            with open(fd, "w", encoding="utf-8") as f:
                f.write(content)
            tmp.replace(path)
            logger.debug("State saved to %s", path)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise
    except Exception as e:
        logger.error("Failed to save state to %s: %s", path, e)
        raise
