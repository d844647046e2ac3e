"""
Reconcile use cases — plan, apply, refresh and destroy.

These are the top-level orchestrators behind the CLI: load the
declaration and state, hand each resource to its controller, persist
what succeeded and write one audit entry per run.

State is saved after every successful resource, so a failure part way
through keeps the progress made so far and leaves the failed resource's
last known good record untouched.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from nixconverge.adapters.shell.command import ChildProcessFailure, ProcessRunner
from nixconverge.adapters.shell.filesystem import FilesystemFailure
from nixconverge.adapters.shell.ssh import SSHConfigError, UnreachableTarget
from nixconverge.core.config.loader import (
    ConfigError,
    Declaration,
    config_root,
    find_config_file,
    load_declaration,
)
from nixconverge.core.engine.reconciler import (
    BuildController,
    RebuildController,
    read_build_data,
)
from nixconverge.core.models.state import ResourceRecord, StateDocument
from nixconverge.core.models.target import BuildTarget, RebuildTarget
from nixconverge.core.persistence.audit import AuditEntry, AuditWriter
from nixconverge.core.persistence.state_file import (
    StateError,
    default_state_path,
    load_state,
    save_state,
)

logger = logging.getLogger(__name__)

# Everything a controller may raise for a single resource
RESOURCE_ERRORS = (
    ChildProcessFailure,
    FilesystemFailure,
    SSHConfigError,
    UnreachableTarget,
)

Target = BuildTarget | RebuildTarget


@dataclass
class ResourceOutcome:
    """What happened to one resource during a run."""

    name: str
    kind: str
    action: str                 # create, update, delete, noop, read, forget, skip
    status: str = "ok"          # ok, failed, skipped
    pending: bool | None = None
    desired: str = ""
    observed: str = ""
    reason: str = ""
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "kind": self.kind,
            "action": self.action,
            "status": self.status,
            "pending": self.pending,
            "desired": self.desired,
            "observed": self.observed,
            "reason": self.reason,
            "error": self.error,
        }


@dataclass
class RunResult:
    """Result of a plan/apply/refresh/destroy run."""

    operation: str = ""
    operation_id: str = ""
    root: Path | None = None
    outcomes: list[ResourceOutcome] = field(default_factory=list)
    data: dict[str, str] = field(default_factory=dict)
    error: str | None = None

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "failed")

    @property
    def pending(self) -> int:
        return sum(1 for o in self.outcomes if o.pending)

    @property
    def status(self) -> str:
        if self.error or self.failed:
            return "failed"
        return "ok"

    def to_dict(self) -> dict:
        result: dict = {"operation": self.operation, "status": self.status}
        if self.error:
            result["error"] = self.error
            return result
        result["operation_id"] = self.operation_id
        result["root"] = str(self.root)
        result["resources"] = [o.to_dict() for o in self.outcomes]
        if self.data:
            result["data"] = self.data
        return result


@dataclass
class Workspace:
    """Loaded declaration plus the state and ledger that go with it."""

    declaration: Declaration
    root: Path
    state_path: Path
    state: StateDocument
    audit: AuditWriter

    def save(self) -> None:
        save_state(self.state, self.state_path)


def generate_operation_id() -> str:
    """Generate a unique operation ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"op-{now}-{short}"


def open_workspace(config_path: Path | None = None) -> Workspace:
    """Load the declaration and its state.

    Raises:
        ConfigError: If no valid declaration can be loaded.
        StateError: If the state file exists but cannot be used.
    """
    if config_path is None:
        config_path = find_config_file()
    if config_path is None:
        raise ConfigError("No nixconverge.yml found.")

    declaration = load_declaration(config_path)
    root = config_root(config_path)
    state_path = default_state_path(root)
    return Workspace(
        declaration=declaration,
        root=root,
        state_path=state_path,
        state=load_state(state_path),
        audit=AuditWriter(root=root),
    )


class Reconciler:
    """Dispatch targets to the controller for their kind."""

    def __init__(self, runner: ProcessRunner | None = None):
        runner = runner or ProcessRunner()
        self.runner = runner
        self.builds = BuildController(runner=runner)
        self.systems = RebuildController(runner=runner)

    def controller(self, target: Target) -> BuildController | RebuildController:
        if isinstance(target, BuildTarget):
            return self.builds
        return self.systems


def target_from_record(record: ResourceRecord) -> Target:
    """Rebuild enough of a target from state to delete it.

    Used for resources that were removed from the declaration. Hooks are
    only recorded as digests and deleting never runs them.
    """
    attrs = {k: v for k, v in record.attributes.items()
             if k not in ("pre_switch_hook", "post_switch_hook")}
    if record.kind == "nix_build":
        return BuildTarget.model_validate({"name": record.name, **attrs})
    return RebuildTarget.model_validate({"name": record.name, **attrs})


def _select(
    ws: Workspace,
    names: list[str] | None,
) -> tuple[list[Target], list[ResourceRecord]]:
    """Declared targets and orphaned records.

    A record is orphaned when its name is no longer declared, or is now
    declared as a different kind: the old resource is deleted and the
    new one created from scratch, never converted in place.
    """
    declared = ws.declaration.resources
    orphans = []
    for name, record in ws.state.resources.items():
        target = ws.declaration.get(name)
        if target is None or target.kind != record.kind:
            orphans.append(record)

    if names:
        known = {t.name for t in declared} | {r.name for r in orphans}
        missing = [n for n in names if n not in known]
        if missing:
            raise ConfigError(f"Unknown resource(s): {', '.join(missing)}")
        declared = [t for t in declared if t.name in names]
        orphans = [r for r in orphans if r.name in names]

    return declared, orphans


def _recorded(ws: Workspace, target: Target) -> ResourceRecord | None:
    """The record for ``target``, unless it was recorded as another kind."""
    record = ws.state.resources.get(target.name)
    if record is None or record.kind != target.kind:
        return None
    return record


def _orphan_reason(ws: Workspace, record: ResourceRecord) -> str:
    if ws.declaration.get(record.name) is None:
        return "no longer declared"
    return "kind changed"


def _finish(ws: Workspace | None, result: RunResult, started: float) -> RunResult:
    if ws is None:
        return result
    ws.audit.write(AuditEntry(
        operation_id=result.operation_id,
        operation_type=result.operation,
        resources_affected=[o.name for o in result.outcomes if o.action not in ("noop", "skip")],
        status=result.status,
        duration_ms=int((time.monotonic() - started) * 1000),
        errors=[e for e in [result.error, *(o.error for o in result.outcomes)] if e],
    ))
    return result


def _skip_rest(result: RunResult, targets: list[Target], records: list[ResourceRecord]) -> None:
    for t in targets:
        result.outcomes.append(ResourceOutcome(name=t.name, kind=t.kind, action="skip",
                                               status="skipped"))
    for r in records:
        result.outcomes.append(ResourceOutcome(name=r.name, kind=r.kind, action="skip",
                                               status="skipped"))


# ── plan ────────────────────────────────────────────────────────────


def plan(
    config_path: Path | None = None,
    names: list[str] | None = None,
    runner: ProcessRunner | None = None,
) -> RunResult:
    """Preview every selected resource without changing anything."""
    result = RunResult(operation="plan", operation_id=generate_operation_id())
    started = time.monotonic()
    ws = None
    try:
        ws = open_workspace(config_path)
        result.root = ws.root
        declared, orphans = _select(ws, names)
    except (ConfigError, StateError) as e:
        result.error = str(e)
        return _finish(ws, result, started)

    reconciler = Reconciler(runner)
    for record in orphans:
        result.outcomes.append(ResourceOutcome(
            name=record.name, kind=record.kind, action="delete",
            pending=True, observed=record.observed, reason=_orphan_reason(ws, record),
        ))

    for target in declared:
        record = _recorded(ws, target)
        outcome = ResourceOutcome(
            name=target.name,
            kind=target.kind,
            action="create" if record is None else "update",
            observed=record.observed if record else "",
        )
        try:
            controller = reconciler.controller(target)
            preview = controller.preview(target, record)
            needed = controller.needs_apply(target, record, preview)
        except RESOURCE_ERRORS as e:
            outcome.status, outcome.error = "failed", str(e)
        else:
            outcome.pending = needed
            outcome.desired = preview.desired or ""
            outcome.reason = preview.reason
            if not needed:
                outcome.action = "noop"
        result.outcomes.append(outcome)

    return _finish(ws, result, started)


# ── apply ───────────────────────────────────────────────────────────


def apply(
    config_path: Path | None = None,
    names: list[str] | None = None,
    runner: ProcessRunner | None = None,
) -> RunResult:
    """Converge every selected resource; stop at the first failure."""
    result = RunResult(operation="apply", operation_id=generate_operation_id())
    started = time.monotonic()
    ws = None
    try:
        ws = open_workspace(config_path)
        result.root = ws.root
        declared, orphans = _select(ws, names)
    except (ConfigError, StateError) as e:
        result.error = str(e)
        return _finish(ws, result, started)

    reconciler = Reconciler(runner)

    # Orphans go first so a name re-declared as another kind is free again.
    for i, record in enumerate(orphans):
        outcome = ResourceOutcome(name=record.name, kind=record.kind, action="delete",
                                  reason=_orphan_reason(ws, record))
        result.outcomes.append(outcome)
        try:
            target = target_from_record(record)
            reconciler.controller(target).delete(target)
        except (*RESOURCE_ERRORS, ValueError) as e:
            outcome.status, outcome.error = "failed", str(e)
            _skip_rest(result, declared, orphans[i + 1:])
            return _finish(ws, result, started)
        ws.state.forget(record.name)
        ws.save()

    for i, target in enumerate(declared):
        controller = reconciler.controller(target)
        record = _recorded(ws, target)
        outcome = ResourceOutcome(
            name=target.name,
            kind=target.kind,
            action="create" if record is None else "update",
        )
        result.outcomes.append(outcome)
        try:
            preview = controller.preview(target, record)
            needed = controller.needs_apply(target, record, preview)
            if not needed:
                outcome.action = "noop"
            updated = controller.apply(target, record, preview)
        except RESOURCE_ERRORS as e:
            logger.error("%s: apply failed: %s", target.name, e)
            outcome.status, outcome.error = "failed", str(e)
            _skip_rest(result, declared[i + 1:], [])
            return _finish(ws, result, started)

        outcome.pending = needed
        outcome.reason = preview.reason
        outcome.desired = updated.desired
        outcome.observed = updated.observed
        ws.state.record(updated)
        ws.save()

    return _finish(ws, result, started)


# ── refresh ─────────────────────────────────────────────────────────


def refresh(
    config_path: Path | None = None,
    names: list[str] | None = None,
    runner: ProcessRunner | None = None,
) -> RunResult:
    """Re-read observed state for recorded resources and evaluate data sources."""
    result = RunResult(operation="refresh", operation_id=generate_operation_id())
    started = time.monotonic()
    ws = None
    try:
        ws = open_workspace(config_path)
        result.root = ws.root
        declared, _ = _select(ws, names)
    except (ConfigError, StateError) as e:
        result.error = str(e)
        return _finish(ws, result, started)

    reconciler = Reconciler(runner)
    for target in declared:
        record = _recorded(ws, target)
        if record is None:
            result.outcomes.append(ResourceOutcome(
                name=target.name, kind=target.kind, action="skip",
                status="skipped", reason="not created yet",
            ))
            continue

        outcome = ResourceOutcome(name=target.name, kind=target.kind, action="read")
        result.outcomes.append(outcome)
        try:
            if isinstance(target, BuildTarget) and not reconciler.builds.exists(target):
                # The output link is the only proof the build exists.
                ws.state.forget(target.name)
                outcome.action, outcome.reason = "forget", "output link is gone"
            else:
                updated = reconciler.controller(target).read(target, record)
                outcome.desired, outcome.observed = updated.desired, updated.observed
                ws.state.record(updated)
        except RESOURCE_ERRORS as e:
            outcome.status, outcome.error = "failed", str(e)
            continue
        ws.save()

    if not names:
        for query in ws.declaration.data:
            try:
                rec = read_build_data(query, ws.state.data.get(query.name), runner=reconciler.runner)
            except RESOURCE_ERRORS as e:
                result.outcomes.append(ResourceOutcome(
                    name=query.name, kind="data", action="read", status="failed", error=str(e),
                ))
                continue
            ws.state.data[query.name] = rec
            result.data[query.name] = rec.store_path
        if ws.declaration.data:
            ws.save()

    return _finish(ws, result, started)


# ── destroy ─────────────────────────────────────────────────────────


def destroy(
    config_path: Path | None = None,
    names: list[str] | None = None,
    runner: ProcessRunner | None = None,
) -> RunResult:
    """Delete owned artifacts for every selected recorded resource and forget it."""
    result = RunResult(operation="destroy", operation_id=generate_operation_id())
    started = time.monotonic()
    ws = None
    try:
        ws = open_workspace(config_path)
        result.root = ws.root
        declared, orphans = _select(ws, names)
    except (ConfigError, StateError) as e:
        result.error = str(e)
        return _finish(ws, result, started)

    reconciler = Reconciler(runner)
    # Reverse apply order: remote systems before the builds they may use.
    targets: list[Target] = [t for t in reversed(declared) if _recorded(ws, t) is not None]
    for record in orphans:
        try:
            targets.append(target_from_record(record))
        except ValueError as e:
            result.outcomes.append(ResourceOutcome(
                name=record.name, kind=record.kind, action="delete", status="failed", error=str(e),
            ))

    for target in targets:
        outcome = ResourceOutcome(name=target.name, kind=target.kind, action="delete")
        result.outcomes.append(outcome)
        try:
            reconciler.controller(target).delete(target)
        except RESOURCE_ERRORS as e:
            outcome.status, outcome.error = "failed", str(e)
            continue
        ws.state.forget(target.name)
        ws.save()

    return _finish(ws, result, started)
