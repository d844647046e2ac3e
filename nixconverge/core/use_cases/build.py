"""
Build use case — evaluate one expression outside any declaration.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from nixconverge.adapters.shell.command import ChildProcessFailure, ProcessRunner
from nixconverge.core.engine.reconciler import read_build_data
from nixconverge.core.models.target import BuildQuery


@dataclass
class BuildResult:
    expression_path: str = ""
    store_path: str = ""
    error: str | None = None

    def to_dict(self) -> dict:
        if self.error:
            return {"expression_path": self.expression_path, "error": self.error}
        return {"expression_path": self.expression_path, "store_path": self.store_path}


def build_once(
    expression_path: Path,
    nix_path: str | None = None,
    runner: ProcessRunner | None = None,
) -> BuildResult:
    """Build ``expression_path`` without linking and report its store path.

    ``nix_path`` defaults to the caller's NIX_PATH.
    """
    query = BuildQuery(
        name=expression_path.name,
        expression_path=os.path.abspath(expression_path),
        nix_path=os.environ.get("NIX_PATH", "") if nix_path is None else nix_path,
    )
    result = BuildResult(expression_path=query.expression_path)
    try:
        result.store_path = read_build_data(query, runner=runner).store_path
    except ChildProcessFailure as e:
        result.error = str(e)
    return result
