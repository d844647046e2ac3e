"""
Child environments for nix tooling.

Nix commands never inherit our environment wholesale: an ambient
NIX_PATH (or NIXOS_CONFIG) would silently select a different channel or
configuration. Children get a short allow-list of host variables that
tools need to run at all, plus the values configured for the target.
"""

from __future__ import annotations

import os
from collections.abc import Mapping

from nixconverge.core.models.target import RebuildTarget

# Host variables passed through unchanged when set
PASSTHROUGH = (
    "PATH",
    "HOME",
    "USER",
    "LOGNAME",
    "SSH_AUTH_SOCK",
    "TMPDIR",
    "LANG",
    "NIX_REMOTE",
    "NIX_SSL_CERT_FILE",
)


def child_env(
    explicit: Mapping[str, str],
    host_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Allow-listed host variables overlaid with ``explicit`` ones."""
    source = os.environ if host_env is None else host_env
    env = {key: source[key] for key in PASSTHROUGH if key in source}
    env.update(explicit)
    return env


def build_env(nix_path: str, host_env: Mapping[str, str] | None = None) -> dict[str, str]:
    """Environment for nix-build."""
    return child_env({"NIX_PATH": nix_path}, host_env)


def rebuild_env(
    target: RebuildTarget,
    host_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Environment for nixos-rebuild and switch hooks."""
    return child_env(
        {
            "NIX_PATH": target.nix_path,
            "NIX_TARGET_HOST": target.target_host,
            "NIX_TARGET_USER": target.target_user,
            "NIX_SSHOPTS": target.ssh_opts,
            "NIXOS_CONFIG": target.nixos_config_path,
        },
        host_env,
    )
