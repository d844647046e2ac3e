"""
StateDocument — what nixconverge remembers between runs.

Serialized to .nixconverge/state.json next to the declaration file and
loaded on every operation. For each managed resource it records the
opaque resource id, the declaration that was last applied, the desired
store path and the last observed store path.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

UNKNOWN = "unknown"


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


def new_resource_id() -> str:
    """Random 32-byte hex token, assigned once per resource."""
    return secrets.token_hex(32)


class ResourceRecord(BaseModel):
    """Persisted state of one managed resource."""

    name: str
    kind: Literal["nix_build", "nixos"]
    id: str = Field(default_factory=new_resource_id)
    attributes: dict[str, Any] = Field(default_factory=dict)
    desired: str = ""       # store path the declaration builds to
    observed: str = ""      # store path found on the output link / remote
    updated_at: str = Field(default_factory=_now_iso)

    def attribute(self, key: str, default: Any = "") -> Any:
        return self.attributes.get(key, default)

    def changed(self, key: str, new: Any) -> bool:
        """Whether the recorded value of ``key`` differs from ``new``."""
        return self.attributes.get(key) != new


class DataRecord(BaseModel):
    """Persisted result of a read-only build."""

    name: str
    id: str = Field(default_factory=new_resource_id)
    expression_path: str = ""
    store_path: str = ""
    updated_at: str = Field(default_factory=_now_iso)


class StateDocument(BaseModel):
    """Root state model."""

    schema_version: int = 1
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    resources: dict[str, ResourceRecord] = Field(default_factory=dict)
    data: dict[str, DataRecord] = Field(default_factory=dict)

    def touch(self) -> None:
        """Update the updated_at timestamp."""
        self.updated_at = _now_iso()

    def record(self, rec: ResourceRecord) -> None:
        rec.updated_at = _now_iso()
        self.resources[rec.name] = rec

    def forget(self, name: str) -> ResourceRecord | None:
        return self.resources.pop(name, None)


@dataclass
class Preview:
    """Predicted outcome of an apply, computed without mutating anything.

    ``desired`` is None when the prediction could not be computed (for
    example the build failed); in that case a change is assumed.
    """

    pending: bool
    desired: str | None = None
    reason: str = ""

    def to_dict(self) -> dict:
        return {"pending": self.pending, "desired": self.desired, "reason": self.reason}
