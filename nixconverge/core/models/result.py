"""
CapturedResult — the outcome of one child process invocation.

The process runner never raises for a failing child: exit status, the
captured stdout and a bounded stderr diagnostic all land here. Callers
that want exception semantics call ``check()``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class ChildProcessFailure(Exception):
    """A child process exited non-zero (or could not be started).

    The message is the bounded diagnostic, never the full stderr stream.
    """

    def __init__(self, message: str, result: CapturedResult | None = None):
        super().__init__(message)
        self.result = result


class CapturedResult(BaseModel):
    """Result of a process runner invocation."""

    argv: list[str] = Field(default_factory=list)
    status: Literal["ok", "failed"] = "ok"
    returncode: int | None = None

    started_at: str = Field(default_factory=_now_iso)
    ended_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0

    stdout: bytes = b""
    diagnostic: str = ""            # prefix/suffix view of stderr
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    @property
    def text(self) -> str:
        """Decoded stdout with surrounding whitespace removed."""
        return self.stdout.decode("utf-8", errors="replace").strip()

    def check(self, context: str = "") -> CapturedResult:
        """Return self on success, raise ChildProcessFailure otherwise.

        Args:
            context: Optional prefix for the error message
                (e.g. "building expression failed").
        """
        if self.ok:
            return self
        message = self.error or "command failed"
        if context:
            message = f"{context}: {message}"
        raise ChildProcessFailure(message, result=self)

    @classmethod
    def success(
        cls,
        argv: list[str],
        stdout: bytes = b"",
        **kwargs: Any,
    ) -> CapturedResult:
        """Create a success result."""
        return cls(argv=argv, status="ok", returncode=0, stdout=stdout, **kwargs)

    @classmethod
    def failure(
        cls,
        argv: list[str],
        error: str,
        **kwargs: Any,
    ) -> CapturedResult:
        """Create a failure result."""
        return cls(argv=argv, status="failed", error=error, **kwargs)
