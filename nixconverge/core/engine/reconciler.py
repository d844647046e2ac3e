"""
Reconciler — converge declared targets to their desired store paths.

Each controller owns the decision of *when* to run build/switch
operations for one kind of resource. The artifacts themselves live in
the nix store; the controllers only record which store path is desired
and which one is actually in place.

Per resource, an apply walks:

    write owned input → drop replaced inputs → probe (remote only)
        → decide necessity → build/switch (only if needed) → read back

``preview`` runs the same build step without persisting anything, so
a pending change can be shown before it is committed. A build failure
during preview is downgraded to "change pending": the same build runs
again at apply time and fails loudly there if it is real.

Controllers raise on failure and return updated records on success;
callers persist state only on success.
"""

from __future__ import annotations

import logging
import os

from nixconverge.adapters.nix import rebuild
from nixconverge.adapters.nix.build import build_expression
from nixconverge.adapters.nix.environment import rebuild_env
from nixconverge.adapters.shell.command import ChildProcessFailure, ProcessRunner
from nixconverge.adapters.shell.filesystem import (
    FilesystemFailure,
    read_link,
    remove_owned,
    write_owned,
)
from nixconverge.adapters.shell.ssh import SSHConfigError, SSHProber, UnreachableTarget
from nixconverge.core.models.state import UNKNOWN, DataRecord, Preview, ResourceRecord
from nixconverge.core.models.target import BuildQuery, BuildTarget, RebuildTarget

logger = logging.getLogger(__name__)

# Recorded attributes whose change forces a switch even if the system is the same
SWITCH_TRIGGERS = ("target_host", "pre_switch_hook", "post_switch_hook")


# ── Local builds ────────────────────────────────────────────────────


class BuildController:
    """Reconcile a BuildTarget: a nix-build with a persistent output link."""

    def __init__(self, runner: ProcessRunner | None = None):
        self.runner = runner or ProcessRunner()

    def realize(self, target: BuildTarget, persist: bool) -> str:
        """The shared build step.

        Args:
            target: What to build.
            persist: Create/update the output link. False only evaluates
                and builds (preview).

        Returns:
            The resulting store path.
        """
        if target.owns_expression:
            write_owned(target.expression_path, target.expression)
        return build_expression(
            target.nix_path,
            target.expression_path,
            out_link=target.out_link if persist else None,
            runner=self.runner,
        )

    def preview(self, target: BuildTarget, record: ResourceRecord | None) -> Preview:
        """Predict whether an apply would change the store path."""
        if record is None:
            return Preview(pending=True, reason="new resource")

        # Don't write a changed expression to disk before it is applied.
        if record.changed("expression", target.expression):
            return Preview(pending=True, reason="expression changed")

        try:
            desired = self.realize(target, persist=False)
        except (ChildProcessFailure, FilesystemFailure) as e:
            logger.warning(
                "%s: build failed, assuming this is because of a generated expression: %s",
                target.name, e,
            )
            return Preview(pending=True, reason="build failed during preview")

        if desired != record.desired:
            return Preview(pending=True, desired=desired, reason="store path changed")
        if record.changed("out_link", target.out_link):
            return Preview(pending=True, desired=desired, reason="output link moved")
        if not self.link_exists(target):
            return Preview(pending=True, desired=desired, reason="output link missing")
        return Preview(pending=False, desired=desired)

    def link_exists(self, target: BuildTarget) -> bool:
        """Output link present and pointing at something that still exists."""
        store_path = read_link(target.out_link)
        return store_path is not None and os.path.exists(target.out_link)

    def needs_apply(
        self,
        target: BuildTarget,
        record: ResourceRecord | None,
        preview: Preview,
    ) -> bool:
        """New or predicted to change; plan and apply both decide here."""
        return record is None or preview.pending

    def apply(
        self,
        target: BuildTarget,
        record: ResourceRecord | None,
        preview: Preview,
    ) -> ResourceRecord:
        """Converge the output link to the declared expression."""
        if record is not None:
            self._drop_replaced(target, record)

        if self.needs_apply(target, record, preview):
            logger.info("%s: building (%s)", target.name, preview.reason)
            desired = self.realize(target, persist=True)
        else:
            logger.info("%s: up to date", target.name)
            desired = record.desired

        fresh = ResourceRecord(
            name=target.name,
            kind="nix_build",
            attributes=target.recorded_attributes(),
            desired=desired,
        )
        if record is not None:
            fresh.id = record.id
        return self.read(target, fresh)

    def _drop_replaced(self, target: BuildTarget, record: ResourceRecord) -> None:
        old_link = record.attribute("out_link")
        if old_link and old_link != target.out_link:
            remove_owned(old_link)

        # Only expression files we wrote ourselves are ours to delete.
        old_path = record.attribute("expression_path")
        if old_path and old_path != target.expression_path and record.attribute("expression"):
            remove_owned(old_path)

    def read(self, target: BuildTarget, record: ResourceRecord) -> ResourceRecord:
        """Refresh the observed store path from the output link."""
        store_path = read_link(target.out_link)
        if store_path is None:
            raise FilesystemFailure(f"Output link {target.out_link} does not exist")
        updated = record.model_copy(update={"observed": store_path})
        if not updated.desired:
            updated.desired = store_path
        return updated

    def exists(self, target: BuildTarget) -> bool:
        return read_link(target.out_link) is not None

    def delete(self, target: BuildTarget) -> None:
        """Remove the output link and, if owned, the expression file."""
        if target.owns_expression:
            remove_owned(target.expression_path)
        remove_owned(target.out_link)


# ── Remote NixOS machines ───────────────────────────────────────────


class RebuildController:
    """Reconcile a RebuildTarget: the running system of a remote machine."""

    def __init__(
        self,
        runner: ProcessRunner | None = None,
        prober: SSHProber | None = None,
    ):
        self.runner = runner or ProcessRunner()
        self.prober = prober or SSHProber(runner=self.runner)

    def realize(self, target: RebuildTarget, persist: bool) -> str | None:
        """The shared build step.

        With ``persist`` the configuration is switched to on the target
        (hooks included) and None is returned; without it, the system is
        only built and its store path returned.
        """
        if target.owns_config:
            write_owned(target.nixos_config_path, target.nixos_config)
        if persist:
            rebuild.switch_system(target, runner=self.runner)
            return None
        return rebuild.build_system(target, runner=self.runner)

    def wait_for_ssh(self, target: RebuildTarget) -> None:
        self.prober.wait_for_ssh(
            target.target_user,
            target.target_host,
            target.ssh_opts,
            timeout=target.ssh_timeout,
            env=rebuild_env(target),
        )

    def preview(self, target: RebuildTarget, record: ResourceRecord | None) -> Preview:
        """Predict whether an apply would switch the target."""
        if record is None:
            return Preview(pending=True, reason="new resource")

        # Don't write a changed config to disk before it is applied.
        if record.changed("nixos_config", target.nixos_config):
            return Preview(pending=True, reason="configuration changed")

        try:
            desired = self.realize(target, persist=False)
        except (ChildProcessFailure, FilesystemFailure) as e:
            logger.warning(
                "%s: build failed, assuming this is because of generated configs: %s",
                target.name, e,
            )
            return Preview(pending=True, reason="build failed during preview")

        if desired != record.observed:
            return Preview(pending=True, desired=desired, reason="system changed")

        # Same system, but a new host or new hooks still need a switch.
        attributes = target.recorded_attributes()
        for key in SWITCH_TRIGGERS:
            if record.changed(key, attributes[key]):
                return Preview(pending=True, desired=desired, reason=f"{key} changed")
        return Preview(pending=False, desired=desired)

    def needs_apply(
        self,
        target: RebuildTarget,
        record: ResourceRecord | None,
        preview: Preview,
    ) -> bool:
        """New or predicted to change; plan and apply both decide here."""
        return record is None or preview.pending

    def apply(
        self,
        target: RebuildTarget,
        record: ResourceRecord | None,
        preview: Preview,
    ) -> ResourceRecord:
        """Converge the running system on the target."""
        if record is not None:
            self._drop_replaced(target, record)

        self.wait_for_ssh(target)

        if target.collect_garbage:
            logger.info("%s: collecting garbage on %s", target.name, target.destination)
            rebuild.collect_garbage(target, runner=self.runner, ssh=self.prober.ssh)

        needed = self.needs_apply(target, record, preview)
        if needed:
            logger.info("%s: switching %s (%s)", target.name, target.destination,
                        preview.reason)
            self.realize(target, persist=True)
        else:
            logger.info("%s: up to date", target.name)

        fresh = ResourceRecord(
            name=target.name,
            kind="nixos",
            attributes=target.recorded_attributes(),
        )
        if record is not None:
            fresh.id = record.id
            fresh.desired = record.desired
        fresh = self.read(target, fresh)

        if preview.desired is not None:
            fresh.desired = preview.desired
        elif needed and fresh.observed != UNKNOWN:
            # The prediction was unknown; what got switched to is the answer.
            fresh.desired = fresh.observed
        return fresh

    def _drop_replaced(self, target: RebuildTarget, record: ResourceRecord) -> None:
        old_path = record.attribute("nixos_config_path")
        if old_path and old_path != target.nixos_config_path and record.attribute("nixos_config"):
            remove_owned(old_path)

    def read(self, target: RebuildTarget, record: ResourceRecord) -> ResourceRecord:
        """Refresh the observed system; "unknown" if the target is unreachable."""
        try:
            self.wait_for_ssh(target)
        except (UnreachableTarget, SSHConfigError, ChildProcessFailure) as e:
            logger.warning("%s: cannot reach %s, system unknown: %s",
                           target.name, target.destination, e)
            return record.model_copy(update={"observed": UNKNOWN})

        current = rebuild.current_system(target, runner=self.runner, ssh=self.prober.ssh)
        return record.model_copy(update={"observed": current})

    def delete(self, target: RebuildTarget) -> None:
        """Forget the machine. Only an owned config file is removed."""
        if target.owns_config:
            remove_owned(target.nixos_config_path)


# ── Read-only builds ────────────────────────────────────────────────


def read_build_data(
    query: BuildQuery,
    record: DataRecord | None = None,
    runner: ProcessRunner | None = None,
) -> DataRecord:
    """Build an expression without linking it and report its store path."""
    store_path = build_expression(query.nix_path, query.expression_path, runner=runner)
    rec = record.model_copy() if record is not None else DataRecord(name=query.name)
    rec.expression_path = query.expression_path
    rec.store_path = store_path
    return rec
