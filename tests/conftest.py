"""
Shared test fixtures and configuration.

External tools are replaced by small shell scripts placed first on PATH.
Child processes only see an allow-listed environment, so the scripts
have their log/store/remote paths baked in rather than read from env.
"""

import os
import socket
import stat
import textwrap
from dataclasses import dataclass
from pathlib import Path

import pytest


@pytest.fixture
def fake_bin(tmp_path: Path, monkeypatch):
    """Return an installer for executable scripts on a temporary PATH."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")

    def install(name: str, body: str) -> Path:
        script = bin_dir / name
        script.write_text("#!/bin/sh\n" + textwrap.dedent(body))
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return install


@pytest.fixture
def listener():
    """A listening TCP socket on localhost; yields its port."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(16)
    try:
        yield sock.getsockname()[1]
    finally:
        sock.close()


def _free_port() -> int:
    """A port nothing is listening on (right now)."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def free_port():
    """Return a factory for ports nothing is listening on."""
    return _free_port


@dataclass
class FakeNix:
    """Paths used by the fake nix toolchain."""

    log: Path
    store: Path
    remote: Path
    install_ssh: object

    def calls(self) -> list[str]:
        if not self.log.exists():
            return []
        return self.log.read_text().splitlines()

    def calls_to(self, tool: str) -> list[str]:
        return [c for c in self.calls() if c.startswith(tool + " ")]

    @property
    def current_system(self) -> Path:
        return self.remote / "current-system"


@pytest.fixture
def fake_nix(tmp_path: Path, fake_bin, listener) -> FakeNix:
    """Install fake nix-build, nixos-rebuild and ssh.

    - nix-build hashes the expression file into a store path; an
      expression containing FAIL fails to build.
    - nixos-rebuild builds/switches to a store path hashed from
      $NIXOS_CONFIG; "switch" repoints the fake remote's current-system.
    - ssh -G resolves to the test listener; remote commands act on the
      fake remote directory.
    """
    log = tmp_path / "calls.log"
    store = tmp_path / "store"
    remote = tmp_path / "remote"
    store.mkdir()
    remote.mkdir()

    fake_bin("nix-build", f"""\
        echo "nix-build $* NIX_PATH=$NIX_PATH" >> "{log}"
        link=""
        if [ "$1" = "--no-link" ]; then expr="$2"; else link="$2"; expr="$3"; fi
        if [ ! -f "$expr" ]; then
            echo "error: getting status of '$expr': No such file or directory" >&2
            exit 1
        fi
        if grep -q FAIL "$expr"; then
            echo "error: evaluation aborted with the following error message: 'FAIL'" >&2
            exit 1
        fi
        out="{store}/$(cksum < "$expr" | cut -d' ' -f1)-result"
        mkdir -p "$out"
        if [ -n "$link" ]; then ln -sfn "$out" "$link"; fi
        echo "$out"
    """)

    fake_bin("nixos-rebuild", f"""\
        echo "nixos-rebuild $* NIXOS_CONFIG=$NIXOS_CONFIG" >> "{log}"
        if grep -q FAIL "$NIXOS_CONFIG"; then
            echo "error: infinite recursion encountered" >&2
            exit 1
        fi
        out="{store}/$(cksum < "$NIXOS_CONFIG" | cut -d' ' -f1)-nixos-system"
        mkdir -p "$out"
        case "$1" in
            build) ln -sfn "$out" result ;;
            switch) ln -sfn "$out" "{remote}/current-system" ;;
            *) exit 2 ;;
        esac
    """)

    def install_ssh(port: int) -> None:
        fake_bin("ssh", f"""\
            echo "ssh $*" >> "{log}"
            for a in "$@"; do
                if [ "$a" = "-G" ]; then
                    printf 'user root\\nhostname 127.0.0.1\\nport %s\\nidentityfile ~/.ssh/id_ed25519\\n' {port}
                    exit 0
                fi
            done
            while [ $# -gt 0 ] && [ "$1" != "--" ]; do shift; done
            shift
            case "$1" in
                true) exit 0 ;;
                readlink) readlink "{remote}/current-system" ;;
                nix-collect-garbage) echo "0 store paths deleted" ;;
                *) echo "unexpected remote command: $*" >&2; exit 1 ;;
            esac
        """)

    install_ssh(listener)
    return FakeNix(log=log, store=store, remote=remote, install_ssh=install_ssh)
