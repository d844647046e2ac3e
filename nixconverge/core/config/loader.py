"""
Configuration loader — reads nixconverge.yml into typed targets.

This is the only place that reads raw declarations or the process
environment. Everything downstream works on the validated models.

Example::

    builds:
      - name: hello
        expression: "with import <nixpkgs> {}; hello"
        expression_path: hello.nix
        out_link: result-hello
    systems:
      - name: web1
        target_host: 10.0.0.5
        nixos_config_path: machines/web1.nix
    data:
      - name: toolchain
        expression_path: toolchain.nix
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from nixconverge.core.models.target import BuildQuery, BuildTarget, RebuildTarget

logger = logging.getLogger(__name__)

# Default config filename
CONFIG_FILE = "nixconverge.yml"


class ConfigError(Exception):
    """Raised when the declaration file is invalid or missing."""


class Declaration(BaseModel):
    """Everything declared in one nixconverge.yml."""

    builds: list[BuildTarget] = Field(default_factory=list)
    systems: list[RebuildTarget] = Field(default_factory=list)
    data: list[BuildQuery] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_names(self) -> Declaration:
        seen: set[str] = set()
        for name in [t.name for t in self.builds] + [t.name for t in self.systems]:
            if name in seen:
                raise ValueError(f"duplicate resource name: {name!r}")
            seen.add(name)
        data_names = [q.name for q in self.data]
        if len(data_names) != len(set(data_names)):
            raise ValueError("duplicate data source name")
        return self

    @property
    def resources(self) -> list[BuildTarget | RebuildTarget]:
        """Managed resources in apply order: local builds first."""
        return [*self.builds, *self.systems]

    def get(self, name: str) -> BuildTarget | RebuildTarget | None:
        for target in self.resources:
            if target.name == name:
                return target
        return None


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for nixconverge.yml starting from the given directory, walking up."""
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def _absolute(path: str, base: Path) -> str:
    p = Path(path).expanduser()
    if not p.is_absolute():
        p = base / p
    return os.path.abspath(p)


def _prepare_build(raw: dict[str, Any], base: Path, env: Mapping[str, str]) -> dict[str, Any]:
    raw = dict(raw)
    for key in ("expression_path", "out_link"):
        if raw.get(key):
            raw[key] = _absolute(str(raw[key]), base)
    if not raw.get("nix_path"):
        raw["nix_path"] = env.get("NIX_PATH", "")
    return raw


def _prepare_system(raw: dict[str, Any], base: Path, env: Mapping[str, str]) -> dict[str, Any]:
    raw = dict(raw)
    if raw.get("nixos_config_path"):
        raw["nixos_config_path"] = _absolute(str(raw["nixos_config_path"]), base)
    if not raw.get("nix_path"):
        raw["nix_path"] = env.get("NIX_PATH", "")
    # Omitted means the built-in default; explicitly empty defers to the env.
    if "ssh_opts" in raw and not raw["ssh_opts"]:
        raw["ssh_opts"] = env.get("NIX_SSHOPTS", "")
    for key in ("pre_switch_hook", "post_switch_hook", "nixos_config"):
        if raw.get(key) is None:
            raw.pop(key, None)
    return raw


def parse_declaration(
    data: Any,
    base_dir: Path,
    env: Mapping[str, str] | None = None,
) -> Declaration:
    """Validate a parsed YAML document.

    Args:
        data: The YAML document (must be a mapping).
        base_dir: Directory relative paths are resolved against.
        env: Environment for NIX_PATH / NIX_SSHOPTS fallbacks.

    Raises:
        ConfigError: If the document is not a valid declaration.
    """
    env = os.environ if env is None else env

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping, got {type(data).__name__}")

    unknown = set(data) - {"builds", "systems", "data"}
    if unknown:
        raise ConfigError(f"Unknown top-level keys: {', '.join(sorted(unknown))}")

    sections: dict[str, list[Any]] = {}
    for key in ("builds", "systems", "data"):
        entries = data.get(key) or []
        if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
            raise ConfigError(f"'{key}' must be a list of mappings")
        sections[key] = entries

    try:
        return Declaration.model_validate({
            "builds": [_prepare_build(e, base_dir, env) for e in sections["builds"]],
            "systems": [_prepare_system(e, base_dir, env) for e in sections["systems"]],
            "data": [_prepare_build(e, base_dir, env) for e in sections["data"]],
        })
    except ValidationError as e:
        raise ConfigError(f"Invalid declaration: {e}") from e


def load_declaration(path: Path | None = None) -> Declaration:
    """Load and validate the declaration file.

    Args:
        path: Explicit path to nixconverge.yml. If None, searches upward.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    if path is None:
        path = find_config_file()

    if path is None:
        raise ConfigError(f"No {CONFIG_FILE} found. Specify one with --config.")

    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    logger.debug("Loading declaration from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    declaration = parse_declaration(data, config_root(path))
    logger.info(
        "Loaded %d builds, %d systems, %d data sources from %s",
        len(declaration.builds), len(declaration.systems), len(declaration.data), path,
    )
    return declaration


def config_root(config_path: Path) -> Path:
    """Directory that holds the declaration (and its state directory)."""
    return config_path.parent.resolve()
