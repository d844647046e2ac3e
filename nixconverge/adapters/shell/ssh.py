"""
SSH reachability — wait until a remote host accepts commands.

The effective endpoint is whatever the user's ssh configuration says,
not the nominal host (aliases, ProxyJump targets, non-default ports), so
we ask the ssh client itself with ``ssh -G`` before dialing.

Flow:
    ssh -G (resolve, fatal on error) → TCP poll until deadline → ssh -- true
"""

from __future__ import annotations

import logging
import shlex
import socket
import subprocess
import time
from collections.abc import Mapping
from dataclasses import dataclass

from nixconverge.adapters.shell.command import ProcessRunner

logger = logging.getLogger(__name__)

# Defaults
RETRY_INTERVAL = 2.0        # seconds between TCP dials
DIAL_TIMEOUT = 10.0         # seconds per TCP dial
LIVENESS_TIMEOUT = 10.0     # seconds for `ssh -- true`


class SSHConfigError(Exception):
    """``ssh -G`` failed or produced no usable endpoint. Not retried."""


class UnreachableTarget(Exception):
    """The remote did not accept a TCP connection before the deadline."""


@dataclass(frozen=True)
class SSHEndpoint:
    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


def ssh_argv(ssh: str, ssh_opts: str, destination: str, *args: str) -> list[str]:
    """Build an ssh command line. ``ssh_opts`` uses shell quoting rules."""
    return [ssh, *shlex.split(ssh_opts), destination, *args]


def parse_ssh_config(text: str) -> SSHEndpoint:
    """Extract hostname and port from ``ssh -G`` output.

    The first ``hostname`` and the first ``port`` directive win.

    Raises:
        SSHConfigError: If either directive is missing or the port is
            not a number.
    """
    host = ""
    port = ""
    for raw in text.splitlines():
        line = raw.strip()
        if not host and line.startswith("hostname"):
            host = line[len("hostname"):].strip()
        elif not port and line.startswith("port"):
            port = line[len("port"):].strip()

    if not host or not port:
        raise SSHConfigError("ssh -G output has no hostname/port")
    try:
        return SSHEndpoint(host=host, port=int(port))
    except ValueError as e:
        raise SSHConfigError(f"ssh -G reported an invalid port: {port!r}") from e


class SSHProber:
    """Probe remote hosts for reachability over SSH."""

    def __init__(
        self,
        runner: ProcessRunner | None = None,
        ssh: str = "ssh",
        retry_interval: float = RETRY_INTERVAL,
        dial_timeout: float = DIAL_TIMEOUT,
        liveness_timeout: float = LIVENESS_TIMEOUT,
    ):
        self.runner = runner or ProcessRunner()
        self.ssh = ssh
        self.retry_interval = retry_interval
        self.dial_timeout = dial_timeout
        self.liveness_timeout = liveness_timeout

    def resolve(
        self,
        user: str,
        host: str,
        ssh_opts: str,
        env: Mapping[str, str] | None = None,
    ) -> SSHEndpoint:
        """Ask the ssh client where it would actually connect."""
        argv = ssh_argv(self.ssh, ssh_opts, f"{user}@{host}", "-G")
        # Not interested in this in the logs, so no runner here.
        try:
            result = subprocess.run(
                argv,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                env=dict(env) if env is not None else None,
            )
        except OSError as e:
            raise SSHConfigError(f"Cannot run {self.ssh}: {e}") from e

        if result.returncode != 0:
            raise SSHConfigError(
                f"ssh -G for {user}@{host} exited with status "
                f"{result.returncode}: {result.stderr.strip()}"
            )
        return parse_ssh_config(result.stdout)

    def wait_for_port(self, endpoint: SSHEndpoint, timeout: float) -> None:
        """Dial ``endpoint`` every ``retry_interval`` until it answers.

        Raises:
            UnreachableTarget: Once ``timeout`` seconds have elapsed.
        """
        deadline = time.monotonic() + timeout
        attempts = 0
        while True:
            if time.monotonic() > deadline:
                raise UnreachableTarget(
                    f"ssh server down or not responsive: {endpoint} "
                    f"({attempts} attempts in {timeout}s)"
                )
            attempts += 1
            try:
                conn = socket.create_connection(
                    (endpoint.host, endpoint.port), timeout=self.dial_timeout
                )
            except OSError as e:
                logger.debug("Dial %s failed (attempt %d): %s", endpoint, attempts, e)
                time.sleep(self.retry_interval)
                continue
            conn.close()
            logger.debug("Dial %s succeeded after %d attempts", endpoint, attempts)
            return

    def check_liveness(
        self,
        user: str,
        host: str,
        ssh_opts: str,
        env: Mapping[str, str] | None = None,
    ) -> None:
        """Run ``true`` on the remote.

        Raises:
            ChildProcessFailure: If ssh cannot run the command.
        """
        argv = ssh_argv(self.ssh, ssh_opts, f"{user}@{host}", "--", "true")
        self.runner.run(argv, env=env, timeout=self.liveness_timeout).check()

    def wait_for_ssh(
        self,
        user: str,
        host: str,
        ssh_opts: str,
        timeout: float,
        env: Mapping[str, str] | None = None,
    ) -> None:
        """Block until ``user@host`` accepts commands or ``timeout`` expires."""
        logger.info("Waiting up to %ss for ssh on %s@%s", timeout, user, host)
        endpoint = self.resolve(user, host, ssh_opts, env)
        self.wait_for_port(endpoint, timeout)
        self.check_liveness(user, host, ssh_opts, env)
