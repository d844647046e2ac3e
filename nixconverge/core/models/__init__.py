"""
Domain models — Pydantic types for nixconverge.

All models are re-exported here for convenient access:

    from nixconverge.core.models import BuildTarget, RebuildTarget, StateDocument
"""

from nixconverge.core.models.result import CapturedResult, ChildProcessFailure
from nixconverge.core.models.state import (
    UNKNOWN,
    DataRecord,
    Preview,
    ResourceRecord,
    StateDocument,
)
from nixconverge.core.models.target import BuildQuery, BuildTarget, RebuildTarget

__all__ = [
    # result.py
    "CapturedResult",
    "ChildProcessFailure",
    # state.py
    "DataRecord",
    "Preview",
    "ResourceRecord",
    "StateDocument",
    "UNKNOWN",
    # target.py
    "BuildQuery",
    "BuildTarget",
    "RebuildTarget",
]
