"""Adapters — bindings for the external tools nixconverge drives.

Public re-exports for convenient access.
"""

from nixconverge.adapters.shell.command import ChildProcessFailure, ProcessRunner
from nixconverge.adapters.shell.recorder import PrefixSuffixRecorder
from nixconverge.adapters.shell.ssh import SSHProber

__all__ = [
    "ChildProcessFailure",
    "PrefixSuffixRecorder",
    "ProcessRunner",
    "SSHProber",
]
