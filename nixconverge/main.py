"""
nixconverge — CLI entrypoint.

Usage:
    nixconverge --help
    nixconverge plan
    nixconverge apply -r web1
    nixconverge build ./hello.nix
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click

from nixconverge import __version__
from nixconverge.core.observability.logging_config import setup_logging

_MARKERS = {
    "create": ("+", "green"),
    "update": ("~", "yellow"),
    "delete": ("-", "red"),
    "forget": ("-", "red"),
    "noop": ("=", "white"),
    "read": ("✓", "green"),
    "skip": ("⊘", "yellow"),
}


@click.group()
@click.version_option(version=__version__, prog_name="nixconverge")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--tool-output", is_flag=True,
    help="Show the output of nix-build, nixos-rebuild, ssh and hooks.",
)
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to nixconverge.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    tool_output: bool,
    config_path: str | None,
) -> None:
    """nixconverge — converge nix builds and NixOS machines to their declarations."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = os.environ.get("NIXCONVERGE_LOG_LEVEL", "WARNING")

    if debug or tool_output:
        child_level = "INFO"
    else:
        child_level = os.environ.get("NIXCONVERGE_CHILD_LOG_LEVEL", "WARNING")

    setup_logging(
        level=level,
        log_file=os.environ.get("NIXCONVERGE_LOG_FILE"),
        log_file_level=os.environ.get("NIXCONVERGE_LOG_FILE_LEVEL"),
        child_level=child_level,
    )


def _resource_option(f):
    return click.option(
        "--resource", "-r", "names", multiple=True,
        help="Limit to the named resource (repeatable).",
    )(f)


def _json_option(f):
    return click.option(
        "--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.",
    )(f)


def _report(ctx: click.Context, result, as_json: bool, title: str) -> None:
    """Print a RunResult and exit non-zero if anything failed."""
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if result.status != "ok":
            sys.exit(1)
        return

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    if not ctx.obj.get("quiet"):
        click.secho(f"\n{title} — {result.root}", fg="cyan", bold=True)
        click.echo()

    for o in result.outcomes:
        marker, color = _MARKERS.get(o.action, ("?", "white"))
        if o.status == "failed":
            click.secho(f"   ✗ {o.name} ", fg="red", nl=False)
            click.echo(f"[{o.kind}] {o.action}")
            for line in (o.error or "").split("\n")[:8]:
                click.echo(f"     │ {line}")
            continue
        click.secho(f"   {marker} {o.name} ", fg=color, nl=False)
        detail = o.reason or o.action
        click.echo(f"[{o.kind}] {detail}")
        if o.observed or o.desired:
            if o.desired and o.desired != o.observed:
                click.echo(f"     {o.observed or '(none)'} → {o.desired}")
            elif o.observed:
                click.echo(f"     {o.observed}")

    for name, store_path in result.data.items():
        click.secho(f"   ✓ {name} ", fg="green", nl=False)
        click.echo(f"[data] {store_path}")

    click.echo()
    if result.status != "ok":
        click.secho(f"   {result.failed} failed", fg="red", bold=True)
        click.echo()
        sys.exit(1)


@cli.command()
@_json_option
@_resource_option
@click.pass_context
def plan(ctx: click.Context, as_json: bool, names: tuple[str, ...]) -> None:
    """Show what apply would change, without changing anything."""
    from nixconverge.core.use_cases.reconcile import plan as run_plan

    result = run_plan(config_path=ctx.obj.get("config_path"), names=list(names) or None)
    _report(ctx, result, as_json, "📋 Plan")
    if not as_json and not ctx.obj.get("quiet"):
        click.echo(f"   {result.pending} change(s) pending")
        click.echo()


@cli.command()
@_json_option
@_resource_option
@click.pass_context
def apply(ctx: click.Context, as_json: bool, names: tuple[str, ...]) -> None:
    """Build and switch resources until they match the declaration.

    Examples:

        nixconverge apply

        nixconverge apply -r web1 -r web2
    """
    from nixconverge.core.use_cases.reconcile import apply as run_apply

    result = run_apply(config_path=ctx.obj.get("config_path"), names=list(names) or None)
    _report(ctx, result, as_json, "⚡ Apply")


@cli.command()
@_json_option
@_resource_option
@click.pass_context
def refresh(ctx: click.Context, as_json: bool, names: tuple[str, ...]) -> None:
    """Re-read the observed store paths and evaluate data sources."""
    from nixconverge.core.use_cases.reconcile import refresh as run_refresh

    result = run_refresh(config_path=ctx.obj.get("config_path"), names=list(names) or None)
    _report(ctx, result, as_json, "🔄 Refresh")


@cli.command()
@_json_option
@_resource_option
@click.option("--yes", "-y", is_flag=True, help="Don't ask for confirmation.")
@click.pass_context
def destroy(ctx: click.Context, as_json: bool, names: tuple[str, ...], yes: bool) -> None:
    """Remove owned files and output links, then forget the resources.

    Remote machines keep running their current system.
    """
    from nixconverge.core.use_cases.reconcile import destroy as run_destroy

    if not yes and not as_json:
        target = ", ".join(names) if names else "all recorded resources"
        click.confirm(f"Destroy {target}?", abort=True)

    result = run_destroy(config_path=ctx.obj.get("config_path"), names=list(names) or None)
    _report(ctx, result, as_json, "🗑  Destroy")


@cli.command()
@click.argument("expression_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--nix-path", default=None, help="NIX_PATH for the build (default: $NIX_PATH).")
@_json_option
def build(expression_path: str, nix_path: str | None, as_json: bool) -> None:
    """Build an expression without linking it and print its store path."""
    from nixconverge.core.use_cases.build import build_once

    result = build_once(Path(expression_path), nix_path=nix_path)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    elif result.error:
        click.secho(f"❌ {result.error}", fg="red", err=True)
    else:
        click.echo(result.store_path)

    if result.error:
        sys.exit(1)


@cli.command()
@_json_option
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show recorded state for every resource."""
    from nixconverge.core.use_cases.status import get_status

    result = get_status(config_path=ctx.obj.get("config_path"))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if result.error:
            sys.exit(1)
        return

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    assert result.state is not None
    click.secho(f"\n📋 {result.root}", fg="cyan", bold=True)
    click.echo(f"   Resources: {len(result.state.resources)} recorded, "
               f"{len(result.declared)} declared")
    click.echo()

    for name, rec in result.state.resources.items():
        converged = rec.desired and rec.desired == rec.observed
        click.secho(f"   {'✓' if converged else '~'} {name} ",
                    fg="green" if converged else "yellow", nl=False)
        click.echo(f"[{rec.kind}] {rec.observed or '(none)'}")
        if ctx.obj.get("verbose"):
            click.echo(f"     id:      {rec.id}")
            click.echo(f"     desired: {rec.desired}")
            click.echo(f"     updated: {rec.updated_at}")

    for name in result.untracked:
        click.secho(f"   + {name} ", fg="green", nl=False)
        click.echo("(not applied yet)")
    for name in result.orphaned:
        click.secho(f"   - {name} ", fg="red", nl=False)
        click.echo("(no longer declared)")

    click.echo()


if __name__ == "__main__":
    cli()
