"""
Tests for the build and NixOS controllers.
"""

import logging
import os
from pathlib import Path

import pytest

from nixconverge.adapters.shell.command import ChildProcessFailure
from nixconverge.adapters.shell.ssh import SSHProber, UnreachableTarget
from nixconverge.core.engine.reconciler import (
    BuildController,
    RebuildController,
    read_build_data,
)
from nixconverge.core.models.state import UNKNOWN
from nixconverge.core.models.target import BuildQuery, BuildTarget, RebuildTarget


def converge(controller, target, record=None):
    preview = controller.preview(target, record)
    return controller.apply(target, record, preview)


@pytest.fixture
def builds():
    return BuildController()


@pytest.fixture
def systems():
    return RebuildController(prober=SSHProber(retry_interval=0.05))


@pytest.fixture
def one(tmp_path: Path) -> BuildTarget:
    return BuildTarget(
        name="one",
        expression="1+1",
        expression_path=str(tmp_path / "one.nix"),
        out_link=str(tmp_path / "result-one"),
    )


@pytest.fixture
def web1(tmp_path: Path) -> RebuildTarget:
    return RebuildTarget(
        name="web1",
        target_host="web1.example",
        nixos_config="{ ... }: { networking.hostName = \"web1\"; }\n",
        nixos_config_path=str(tmp_path / "web1.nix"),
        ssh_timeout=5,
    )


def linking_builds(fake_nix) -> list[str]:
    return [c for c in fake_nix.calls_to("nix-build") if " -o " in c]


# ── BuildController ─────────────────────────────────────────────────


class TestBuildApply:
    def test_first_apply(self, fake_nix, builds, one):
        preview = builds.preview(one, None)
        assert preview.pending
        assert preview.reason == "new resource"

        record = builds.apply(one, None, preview)

        assert Path(one.expression_path).read_text() == "1+1"
        assert record.desired == record.observed == os.readlink(one.out_link)
        assert record.desired.startswith(str(fake_nix.store))
        assert len(record.id) == 64
        assert record.attribute("out_link") == one.out_link

    def test_second_apply_builds_nothing(self, fake_nix, builds, one):
        first = converge(builds, one)
        preview = builds.preview(one, first)
        assert not preview.pending
        assert preview.desired == first.desired

        second = builds.apply(one, first, preview)

        assert second.id == first.id
        assert second.observed == first.observed
        assert len(linking_builds(fake_nix)) == 1

    def test_changed_expression_is_pending_without_writing(self, fake_nix, builds, one):
        record = converge(builds, one)
        calls_before = fake_nix.calls()

        changed = one.model_copy(update={"expression": "2+2"})
        preview = builds.preview(changed, record)

        assert preview.pending
        assert preview.desired is None
        assert Path(one.expression_path).read_text() == "1+1"
        assert fake_nix.calls() == calls_before

    def test_changed_expression_applies(self, fake_nix, builds, one):
        record = converge(builds, one)
        changed = one.model_copy(update={"expression": "2+2"})
        updated = converge(builds, changed, record)
        assert updated.observed != record.observed
        assert updated.id == record.id

    def test_build_failure_during_preview_means_pending(self, fake_nix, builds, tmp_path: Path, caplog):
        expr = tmp_path / "external.nix"
        expr.write_text("1+1")
        target = BuildTarget(
            name="ext", expression_path=str(expr), out_link=str(tmp_path / "result-ext"),
        )
        record = converge(builds, target)

        expr.write_text("throw FAIL")
        with caplog.at_level(logging.WARNING):
            preview = builds.preview(target, record)

        assert preview.pending
        assert preview.desired is None
        assert "build failed" in caplog.text

    def test_build_failure_during_apply_raises(self, fake_nix, builds, one):
        broken = one.model_copy(update={"expression": "FAIL"})
        with pytest.raises(ChildProcessFailure, match="building expression failed"):
            converge(builds, broken)
        assert not os.path.lexists(one.out_link)

    def test_missing_link_is_rebuilt(self, fake_nix, builds, one):
        record = converge(builds, one)
        os.unlink(one.out_link)
        preview = builds.preview(one, record)
        assert preview.pending
        assert preview.reason == "output link missing"

        updated = converge(builds, one, record)
        assert os.readlink(one.out_link) == updated.observed
        assert len(linking_builds(fake_nix)) == 2

    def test_dangling_link_is_pending(self, fake_nix, builds, one, tmp_path: Path):
        record = converge(builds, one)
        os.unlink(one.out_link)
        os.symlink(tmp_path / "gone", one.out_link)
        preview = builds.preview(one, record)
        assert preview.pending
        assert preview.reason == "output link missing"

    def test_replaced_link_is_removed(self, fake_nix, builds, one, tmp_path: Path):
        record = converge(builds, one)
        moved = one.model_copy(update={"out_link": str(tmp_path / "result-moved")})
        preview = builds.preview(moved, record)
        assert preview.pending
        assert preview.reason == "output link moved"
        updated = builds.apply(moved, record, preview)
        assert not os.path.lexists(one.out_link)
        assert os.readlink(moved.out_link) == updated.observed

    def test_replaced_owned_expression_is_removed(self, fake_nix, builds, one, tmp_path: Path):
        record = converge(builds, one)
        moved = one.model_copy(update={"expression_path": str(tmp_path / "moved.nix")})
        converge(builds, moved, record)
        assert not Path(one.expression_path).exists()
        assert Path(moved.expression_path).read_text() == "1+1"

    def test_replaced_external_expression_is_kept(self, fake_nix, builds, tmp_path: Path):
        first = tmp_path / "a.nix"
        second = tmp_path / "b.nix"
        first.write_text("1+1")
        second.write_text("1+1")
        target = BuildTarget(name="ext", expression_path=str(first), out_link=str(tmp_path / "r"))
        record = converge(builds, target)
        converge(builds, target.model_copy(update={"expression_path": str(second)}), record)
        assert first.exists()


class TestBuildReadDelete:
    def test_read_without_link_fails(self, builds, one):
        from nixconverge.adapters.shell.filesystem import FilesystemFailure
        from nixconverge.core.models.state import ResourceRecord

        record = ResourceRecord(name="one", kind="nix_build")
        with pytest.raises(FilesystemFailure):
            builds.read(one, record)

    def test_exists(self, fake_nix, builds, one):
        assert not builds.exists(one)
        converge(builds, one)
        assert builds.exists(one)

    def test_delete_is_idempotent(self, fake_nix, builds, one):
        converge(builds, one)
        builds.delete(one)
        assert not os.path.lexists(one.out_link)
        assert not Path(one.expression_path).exists()
        builds.delete(one)

    def test_delete_keeps_external_expression(self, fake_nix, builds, tmp_path: Path):
        expr = tmp_path / "external.nix"
        expr.write_text("1+1")
        target = BuildTarget(name="ext", expression_path=str(expr), out_link=str(tmp_path / "r"))
        converge(builds, target)
        builds.delete(target)
        assert expr.exists()
        assert not os.path.lexists(target.out_link)


class TestReadBuildData:
    def test_reports_store_path_without_link(self, fake_nix, tmp_path: Path):
        expr = tmp_path / "tool.nix"
        expr.write_text("1+1")
        rec = read_build_data(BuildQuery(name="tool", expression_path=str(expr)))
        assert rec.store_path.startswith(str(fake_nix.store))
        assert rec.expression_path == str(expr)
        assert fake_nix.calls_to("nix-build")[0].startswith("nix-build --no-link ")

    def test_keeps_id_across_reads(self, fake_nix, tmp_path: Path):
        expr = tmp_path / "tool.nix"
        expr.write_text("1+1")
        query = BuildQuery(name="tool", expression_path=str(expr))
        first = read_build_data(query)
        assert read_build_data(query, first).id == first.id


# ── RebuildController ───────────────────────────────────────────────


class TestRebuildApply:
    def test_first_apply_switches(self, fake_nix, systems, web1):
        record = converge(systems, web1)

        assert Path(web1.nixos_config_path).read_text() == web1.nixos_config
        assert record.observed == os.readlink(fake_nix.current_system)
        assert record.desired == record.observed
        assert len(fake_nix.calls_to("nixos-rebuild switch")) == 1
        assert fake_nix.calls_to("ssh")[-1].endswith("-- readlink /run/current-system")

    def test_garbage_collected_before_switch(self, fake_nix, systems, web1):
        converge(systems, web1)
        calls = fake_nix.calls()
        gc = next(i for i, c in enumerate(calls) if "nix-collect-garbage" in c)
        switch = next(i for i, c in enumerate(calls) if c.startswith("nixos-rebuild switch"))
        assert gc < switch

    def test_garbage_collection_disabled(self, fake_nix, systems, web1):
        converge(systems, web1.model_copy(update={"collect_garbage": False}))
        assert not any("nix-collect-garbage" in c for c in fake_nix.calls())

    def test_converged_system_is_not_switched(self, fake_nix, systems, web1):
        first = converge(systems, web1)
        preview = systems.preview(web1, first)
        assert not preview.pending

        second = systems.apply(web1, first, preview)

        assert second.observed == first.observed
        assert second.id == first.id
        assert len(fake_nix.calls_to("nixos-rebuild switch")) == 1

    def test_changed_config_switches(self, fake_nix, systems, web1):
        first = converge(systems, web1)
        changed = web1.model_copy(update={"nixos_config": "{ ... }: { }\n"})
        preview = systems.preview(changed, first)
        assert preview.pending
        assert Path(web1.nixos_config_path).read_text() == web1.nixos_config

        second = systems.apply(changed, first, preview)
        assert second.observed != first.observed
        assert second.desired == second.observed
        assert len(fake_nix.calls_to("nixos-rebuild switch")) == 2

    def test_host_change_switches(self, fake_nix, systems, web1):
        first = converge(systems, web1)
        moved = web1.model_copy(update={"target_host": "web2.example"})
        preview = systems.preview(moved, first)
        assert preview.pending
        assert preview.reason == "target_host changed"
        assert preview.desired == first.observed
        assert systems.needs_apply(moved, first, preview)

        systems.apply(moved, first, preview)
        assert fake_nix.calls_to("nixos-rebuild switch")[-1].startswith(
            "nixos-rebuild switch --build-host localhost --target-host root@web2.example"
        )

    def test_hook_change_switches(self, fake_nix, systems, web1, tmp_path: Path):
        first = converge(systems, web1)
        marker = tmp_path / "hooked"
        hooked = web1.model_copy(update={"post_switch_hook": f"#!/bin/sh\ntouch {marker}\n"})
        preview = systems.preview(hooked, first)
        assert preview.pending
        assert preview.reason == "post_switch_hook changed"
        assert systems.needs_apply(hooked, first, preview)

        updated = systems.apply(hooked, first, preview)
        assert marker.exists()
        assert updated.attribute("post_switch_hook").startswith("sha256:")
        assert "touch" not in str(updated.attributes)

    def test_unreachable_apply_aborts_before_switch(self, fake_nix, systems, web1, free_port):
        fake_nix.install_ssh(free_port())
        unreachable = web1.model_copy(update={"ssh_timeout": 0})
        with pytest.raises(UnreachableTarget):
            converge(systems, unreachable)
        assert fake_nix.calls_to("nixos-rebuild switch") == []
        assert not any("nix-collect-garbage" in c for c in fake_nix.calls())

    def test_failed_switch_raises(self, fake_nix, systems, web1):
        broken = web1.model_copy(update={"nixos_config": "FAIL"})
        with pytest.raises(ChildProcessFailure, match="infinite recursion"):
            converge(systems, broken)
        assert not fake_nix.current_system.exists()


class TestRebuildReadDelete:
    def test_one_ssh_client_for_probe_and_commands(self, fake_nix, fake_bin, web1):
        fake_bin("ssh-wrapper", f"""\
            echo "ssh-wrapper $*" >> "{fake_nix.log}"
            exec ssh "$@"
        """)
        systems = RebuildController(prober=SSHProber(ssh="ssh-wrapper", retry_interval=0.05))

        converge(systems, web1)

        direct = fake_nix.calls_to("ssh")
        wrapped = fake_nix.calls_to("ssh-wrapper")
        # Every direct ssh call was made through the wrapper.
        assert len(direct) == len(wrapped)
        assert any(c.endswith("-- nix-collect-garbage -d") for c in wrapped)
        assert wrapped[-1].endswith("-- readlink /run/current-system")

    def test_read_unreachable_is_unknown(self, fake_nix, systems, web1, free_port):
        record = converge(systems, web1)
        fake_nix.install_ssh(free_port())

        updated = systems.read(web1.model_copy(update={"ssh_timeout": 0}), record)

        assert updated.observed == UNKNOWN
        assert updated.desired == record.desired

    def test_unknown_observed_means_pending(self, fake_nix, systems, web1, free_port):
        record = converge(systems, web1)
        fake_nix.install_ssh(free_port())
        record = systems.read(web1.model_copy(update={"ssh_timeout": 0}), record)
        assert systems.preview(web1, record).pending

    def test_read_picks_up_external_switch(self, fake_nix, systems, web1, tmp_path: Path):
        record = converge(systems, web1)
        elsewhere = tmp_path / "store" / "manual-nixos-system"
        elsewhere.mkdir()
        os.unlink(fake_nix.current_system)
        os.symlink(elsewhere, fake_nix.current_system)

        updated = systems.read(web1, record)
        assert updated.observed == str(elsewhere)
        assert systems.preview(web1, updated).pending

    def test_delete_removes_owned_config_only(self, fake_nix, systems, web1):
        converge(systems, web1)
        systems.delete(web1)
        systems.delete(web1)
        assert not Path(web1.nixos_config_path).exists()
        assert fake_nix.current_system.is_symlink()
