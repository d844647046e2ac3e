"""
Targets — typed declarations of what nixconverge manages.

These are populated once at the configuration boundary and everything
downstream works on them; nothing reads raw attribute maps.

    BuildTarget    a local nix-build with a stable output link
    RebuildTarget  a remote NixOS machine converged with nixos-rebuild
    BuildQuery     a read-only build that only reports its store path
"""

from __future__ import annotations

import hashlib
from typing import Any, Literal

from pydantic import BaseModel, Field

DEFAULT_SSH_OPTS = "-o StrictHostKeyChecking=accept-new -o BatchMode=yes"
DEFAULT_SSH_TIMEOUT = 180


def _digest(text: str) -> str:
    """Stable fingerprint for values that must not be persisted in clear."""
    if not text:
        return ""
    return "sha256:" + hashlib.sha256(text.encode("utf-8")).hexdigest()


class BuildTarget(BaseModel):
    """A local build job.

    If ``expression`` is given, nixconverge owns ``expression_path``: it
    writes the file before building and removes it on delete. With only
    a path, the file belongs to someone else and is never touched.
    """

    kind: Literal["nix_build"] = "nix_build"
    name: str
    expression: str = ""
    expression_path: str
    nix_path: str = ""
    out_link: str

    @property
    def owns_expression(self) -> bool:
        return self.expression != ""

    def recorded_attributes(self) -> dict[str, Any]:
        """Declaration snapshot persisted alongside the resource state."""
        return {
            "expression": self.expression,
            "expression_path": self.expression_path,
            "nix_path": self.nix_path,
            "out_link": self.out_link,
        }


class RebuildTarget(BaseModel):
    """A remote NixOS machine whose running system must converge."""

    kind: Literal["nixos"] = "nixos"
    name: str
    target_host: str
    target_user: str = "root"
    build_host: str = "localhost"
    nixos_config: str = ""
    nixos_config_path: str
    ssh_opts: str = DEFAULT_SSH_OPTS
    nix_path: str = ""
    ssh_timeout: int = Field(default=DEFAULT_SSH_TIMEOUT, ge=0)
    collect_garbage: bool = True
    pre_switch_hook: str = Field(default="", repr=False)
    post_switch_hook: str = Field(default="", repr=False)

    @property
    def destination(self) -> str:
        """SSH destination, ``user@host``."""
        return f"{self.target_user}@{self.target_host}"

    @property
    def owns_config(self) -> bool:
        return self.nixos_config != ""

    def recorded_attributes(self) -> dict[str, Any]:
        """Declaration snapshot; hook scripts are kept only as digests."""
        return {
            "target_host": self.target_host,
            "target_user": self.target_user,
            "build_host": self.build_host,
            "nixos_config": self.nixos_config,
            "nixos_config_path": self.nixos_config_path,
            "ssh_opts": self.ssh_opts,
            "nix_path": self.nix_path,
            "ssh_timeout": self.ssh_timeout,
            "collect_garbage": self.collect_garbage,
            "pre_switch_hook": _digest(self.pre_switch_hook),
            "post_switch_hook": _digest(self.post_switch_hook),
        }


class BuildQuery(BaseModel):
    """A build evaluated for its store path only (no link, no ownership)."""

    name: str
    expression_path: str
    nix_path: str = ""
