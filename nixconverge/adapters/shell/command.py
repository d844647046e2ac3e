"""
Process runner — execute a child process with streamed, bounded capture.

Every external tool (nix-build, nixos-rebuild, ssh, hook scripts) goes
through ``ProcessRunner.run``. stdout and stderr are read concurrently
by two drain threads so neither pipe can fill up and stall the child:

    stdout ─► log sink ─► caller's output sink
    stderr ─► log sink ─► PrefixSuffixRecorder (diagnostic on failure)

The runner returns a CapturedResult and never raises for a failing child.
"""

from __future__ import annotations

import io
import logging
import os
import shutil
import subprocess
import threading
import time
from collections.abc import Mapping, Sequence
from typing import IO, Protocol

from nixconverge.adapters.shell.recorder import DEFAULT_LIMIT, PrefixSuffixRecorder
from nixconverge.core.models.result import CapturedResult, ChildProcessFailure

logger = logging.getLogger(__name__)

# Child process output is logged here unless a runner is given its own logger
CHILD_LOGGER = "nixconverge.child"

__all__ = ["ChildProcessFailure", "OutputSink", "ProcessRunner"]


class OutputSink(Protocol):
    def write(self, data: bytes, /) -> int: ...


class ProcessRunner:
    """Run child processes and capture their output.

    Args:
        logger: Where drained output lines are logged. Defaults to the
            shared child output logger (``nixconverge.child``).
        capture_limit: Prefix/suffix budget for the stderr diagnostic.
    """

    def __init__(
        self,
        logger: logging.Logger | None = None,
        capture_limit: int = DEFAULT_LIMIT,
    ):
        self.log = logger or logging.getLogger(CHILD_LOGGER)
        self.capture_limit = capture_limit

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: str | os.PathLike[str] | None = None,
        env: Mapping[str, str] | None = None,
        stdout: OutputSink | None = None,
        timeout: float | None = None,
    ) -> CapturedResult:
        """Run ``argv`` to completion.

        Args:
            argv: Program and arguments. The program is looked up on the
                caller's PATH, not the child's.
            cwd: Working directory for the child.
            env: Complete child environment. None inherits ours.
            stdout: Sink that receives a copy of everything written to
                stdout. The captured bytes are also on the result. If the
                sink raises, the pipe is still drained to EOF and the
                sink's exception is re-raised once the child has exited.
            timeout: Seconds before the child is killed. None waits forever.

        Returns:
            CapturedResult. On failure, ``error`` embeds the bounded stderr
            diagnostic rather than the raw stream.
        """
        argv = list(argv)
        executable = shutil.which(argv[0]) or argv[0]
        logger.info("running %s in env %s", argv, dict(env) if env is not None else "<inherited>")

        captured = io.BytesIO()
        sinks: list[OutputSink] = [captured]
        if stdout is not None:
            sinks.append(stdout)
        recorder = PrefixSuffixRecorder(self.capture_limit)

        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                [executable, *argv[1:]],
                cwd=cwd,
                env=dict(env) if env is not None else None,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            return CapturedResult.failure(
                argv=argv,
                error=f"{argv[0]}: {e}",
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        assert proc.stdout is not None and proc.stderr is not None
        sink_errors: list[Exception] = []
        drains = [
            threading.Thread(
                target=self._drain,
                args=(proc.stdout, "stdout", sinks, sink_errors),
                name=f"drain-stdout-{proc.pid}",
                daemon=True,
            ),
            threading.Thread(
                target=self._drain,
                args=(proc.stderr, "stderr", [recorder], sink_errors),
                name=f"drain-stderr-{proc.pid}",
                daemon=True,
            ),
        ]
        for t in drains:
            t.start()

        timed_out = False
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            proc.kill()
            proc.wait()
        finally:
            for t in drains:
                t.join()
            proc.stdout.close()
            proc.stderr.close()

        if sink_errors:
            raise sink_errors[0]

        elapsed_ms = int((time.monotonic() - start) * 1000)
        diagnostic = recorder.getvalue().decode("utf-8", errors="replace")

        if timed_out:
            return CapturedResult.failure(
                argv=argv,
                error=f"{argv[0]} timed out after {timeout}s: {diagnostic}",
                returncode=proc.returncode,
                stdout=captured.getvalue(),
                diagnostic=diagnostic,
                duration_ms=elapsed_ms,
            )

        if proc.returncode != 0:
            return CapturedResult.failure(
                argv=argv,
                error=f"{argv[0]} exited with status {proc.returncode}: {diagnostic}",
                returncode=proc.returncode,
                stdout=captured.getvalue(),
                diagnostic=diagnostic,
                duration_ms=elapsed_ms,
            )

        return CapturedResult.success(
            argv=argv,
            stdout=captured.getvalue(),
            diagnostic=diagnostic,
            duration_ms=elapsed_ms,
        )

    def _drain(
        self,
        pipe: IO[bytes],
        label: str,
        sinks: list[OutputSink],
        errors: list[Exception],
    ) -> None:
        """Read ``pipe`` line by line until EOF, logging and teeing each line.

        A sink that raises is dropped and its exception kept in ``errors``;
        reading continues so the child never blocks on a full pipe.
        """
        active = list(sinks)
        for line in iter(pipe.readline, b""):
            for sink in list(active):
                try:
                    sink.write(line)
                except Exception as e:
                    errors.append(e)
                    active.remove(sink)
            self.log.info("%s: %s", label, line.decode("utf-8", errors="replace").rstrip("\n"))
