"""
nixos-rebuild and remote system operations.

Each operation is a single process runner call:

    build_system     nixos-rebuild build   (local result link, no switch)
    current_system   ssh … readlink /run/current-system
    switch_system    pre-hook → nixos-rebuild switch → post-hook
    collect_garbage  ssh … nix-collect-garbage -d
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from nixconverge.adapters.nix.environment import rebuild_env
from nixconverge.adapters.shell.command import ProcessRunner
from nixconverge.adapters.shell.filesystem import FilesystemFailure, read_link
from nixconverge.adapters.shell.ssh import ssh_argv
from nixconverge.core.models.target import RebuildTarget

logger = logging.getLogger(__name__)

# Remote read of the active system must not hang a refresh
READ_TIMEOUT = 10.0


def build_system(target: RebuildTarget, runner: ProcessRunner | None = None) -> str:
    """Build the target's configuration and return its store path.

    Raises:
        ChildProcessFailure: If nixos-rebuild fails.
        FilesystemFailure: If the build left no result link.
    """
    runner = runner or ProcessRunner()
    with tempfile.TemporaryDirectory(prefix="nixconverge-system-") as tmp:
        out_link = Path(tmp).resolve() / "result"
        runner.run(
            ["nixos-rebuild", "build", "--build-host", target.build_host],
            cwd=tmp,
            env=rebuild_env(target),
        ).check()

        store_path = read_link(out_link)
        if store_path is None:
            raise FilesystemFailure(f"nixos-rebuild build produced no {out_link}")

    logger.info("Built system for %s → %s", target.name, store_path)
    return store_path


def current_system(
    target: RebuildTarget,
    runner: ProcessRunner | None = None,
    ssh: str = "ssh",
) -> str:
    """Store path of the system currently active on the target.

    ``ssh`` is the client binary; it should be the one used to probe
    the target.
    """
    runner = runner or ProcessRunner()
    result = runner.run(
        ssh_argv(ssh, target.ssh_opts, target.destination, "--", "readlink", "/run/current-system"),
        timeout=READ_TIMEOUT,
        env=rebuild_env(target),
    )
    return result.check().text


def switch_system(target: RebuildTarget, runner: ProcessRunner | None = None) -> None:
    """Make the declared configuration the running system on the target.

    Hooks run locally with the rebuild environment. An empty hook is
    skipped. The first failure aborts the remaining steps.

    Raises:
        ChildProcessFailure: If a hook or nixos-rebuild fails.
        FilesystemFailure: If a hook script cannot be written.
    """
    runner = runner or ProcessRunner()
    env = rebuild_env(target)

    with tempfile.TemporaryDirectory(prefix="nixconverge-switch-") as tmp:
        hook_path = Path(tmp) / "hook"

        def run_hook(label: str, script: str) -> None:
            if not script:
                return
            try:
                hook_path.write_text(script, encoding="utf-8")
                os.chmod(hook_path, 0o700)
            except OSError as e:
                raise FilesystemFailure(f"Cannot write {label}: {e}") from e
            logger.info("Running %s for %s", label, target.name)
            runner.run([str(hook_path)], cwd=tmp, env=env).check(label)

        run_hook("pre_switch_hook", target.pre_switch_hook)

        runner.run(
            [
                "nixos-rebuild", "switch",
                "--build-host", target.build_host,
                "--target-host", target.destination,
            ],
            env=env,
        ).check()

        run_hook("post_switch_hook", target.post_switch_hook)

    logger.info("Switched %s", target.destination)


def collect_garbage(
    target: RebuildTarget,
    runner: ProcessRunner | None = None,
    ssh: str = "ssh",
) -> None:
    """Delete old generations and unreferenced store paths on the target."""
    runner = runner or ProcessRunner()
    runner.run(
        ssh_argv(ssh, target.ssh_opts, target.destination, "--", "nix-collect-garbage", "-d"),
        env=rebuild_env(target),
    ).check()
