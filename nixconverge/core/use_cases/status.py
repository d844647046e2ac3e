"""
Status use case — summarize declaration + recorded state.

Reads only; never runs a build or touches a remote.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from nixconverge.core.config.loader import ConfigError
from nixconverge.core.models.state import StateDocument
from nixconverge.core.persistence.state_file import StateError
from nixconverge.core.use_cases.reconcile import Workspace, open_workspace


@dataclass
class StatusResult:
    """Aggregated status."""

    root: Path | None = None
    state: StateDocument | None = None
    declared: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def untracked(self) -> list[str]:
        """Declared but never applied."""
        recorded = self.state.resources if self.state else {}
        return [n for n in self.declared if n not in recorded]

    @property
    def orphaned(self) -> list[str]:
        """Recorded but no longer declared."""
        recorded = self.state.resources if self.state else {}
        return [n for n in recorded if n not in self.declared]

    def to_dict(self) -> dict:
        result: dict = {}
        if self.error:
            result["error"] = self.error
            return result

        result["root"] = str(self.root)
        result["resources"] = {
            name: {
                "kind": rec.kind,
                "id": rec.id,
                "desired": rec.desired,
                "observed": rec.observed,
                "converged": bool(rec.desired) and rec.desired == rec.observed,
                "updated_at": rec.updated_at,
            }
            for name, rec in (self.state.resources.items() if self.state else [])
        }
        result["data"] = {
            name: rec.store_path
            for name, rec in (self.state.data.items() if self.state else [])
        }
        result["untracked"] = self.untracked
        result["orphaned"] = self.orphaned
        return result


def get_status(config_path: Path | None = None) -> StatusResult:
    """Get recorded state for the declaration at ``config_path``."""
    result = StatusResult()
    try:
        ws: Workspace = open_workspace(config_path)
    except (ConfigError, StateError) as e:
        result.error = str(e)
        return result

    result.root = ws.root
    result.state = ws.state
    result.declared = [t.name for t in ws.declaration.resources]
    return result
