"""
test_relink — derived linker commands and their execution.

Invariants:
  - argument order of the captured command is preserved
  - the allocator shim is never substituted
  - the captured invocation itself is never modified
"""
from dataclasses import replace
from pathlib import Path

import pytest

from build_ci.core.link_parser import TargetKind, parse_link_invocations
from build_ci.core.relink import instrumented_binary_path, output_for, plan_relink, relink, remove_stale_binary
from build_ci.errors import ToolError


def _invocation(tree):
    return parse_link_invocations(tree.link_text).invocations[0]


@pytest.fixture
def app(tree):
    a0 = tree.add_unit("app", "1b1b", 0)[1]
    a1 = tree.add_unit("app", "1b1b", 1)[1]
    u0 = tree.add_unit("util", "0a0a", 0)[1]
    rlib = tree.add_rlib("util", "0a0a", [u0])
    tree.add_link("app", "1b1b", objects=[a0, a1], archives=[rlib], extra=["-lc"])
    return a0, a1, rlib


class TestPlan:

    def test_output_path_per_kind(self, tmp_path):
        assert instrumented_binary_path(tmp_path, "app", TargetKind.BINARY) == tmp_path / "bin" / "app-ci"
        assert instrumented_binary_path(tmp_path, "it", TargetKind.TEST) == tmp_path / "tests" / "it-ci"
        assert instrumented_binary_path(tmp_path, "demo", TargetKind.EXAMPLE) == tmp_path / "examples" / "demo-ci"
        assert instrumented_binary_path(tmp_path, "it", TargetKind.TEST, target_hash="5e5e") == \
            tmp_path / "tests" / "it-5e5e-ci"

    def test_test_harness_output_keeps_hash(self, tree, app):
        inv = replace(_invocation(tree), kind=TargetKind.TEST)
        assert output_for(inv, tree.ci_dir) == tree.ci_dir / "tests" / "app-1b1b-ci"
        assert plan_relink(inv, {}, {}, tree.ci_dir).output_path == tree.ci_dir / "tests" / "app-1b1b-ci"

    def test_hashed_binary_output(self, tree, app):
        inv = _invocation(tree)
        assert output_for(inv, tree.ci_dir) == tree.ci_dir / "bin" / "app-ci"
        assert output_for(inv, tree.ci_dir, hashed=True) == tree.ci_dir / "bin" / "app-1b1b-ci"

    def test_substitutions_keep_order(self, tree, app, tmp_path):
        a0, a1, rlib = app
        inv = _invocation(tree)
        ci_a0 = tmp_path / "objects" / "a0-ci.o"
        patched = tmp_path / "archives" / rlib.name

        plan = plan_relink(inv, {rlib: patched}, {a0: ci_a0}, tree.ci_dir)

        assert len(plan.args) == len(inv.args)
        expected = [
            str(ci_a0) if a == str(a0) else
            str(patched) if a == str(rlib) else
            str(plan.output_path) if a == str(inv.output_path) else a
            for a in inv.args
        ]
        assert list(plan.args) == expected
        assert str(a1) in plan.args
        assert plan.output_path == tree.ci_dir / "bin" / "app-ci"
        assert (str(inv.output_path), str(plan.output_path)) in plan.substitutions
        assert str(inv.output_path) not in plan.args

    def test_invocation_not_modified(self, tree, app, tmp_path):
        a0, _, rlib = app
        inv = _invocation(tree)
        before = inv.args
        plan_relink(inv, {rlib: tmp_path / "x.rlib"}, {a0: tmp_path / "x.o"}, tree.ci_dir)
        assert inv.args == before

    def test_unpatched_archive_kept(self, tree, app):
        _, _, rlib = app
        inv = _invocation(tree)
        plan = plan_relink(inv, {rlib: rlib}, {}, tree.ci_dir)
        assert str(rlib) in plan.args
        assert [s for s in plan.substitutions if s[0] == str(rlib)] == []

    def test_shim_never_substituted(self, tree, tmp_path):
        a0 = tree.add_unit("app", "1b1b", 0)[1]
        shim = tree.deps / "app-1b1b.shim.rcgu.o"
        shim.write_bytes(b"shim")
        tree.add_link("app", "1b1b", objects=[a0, shim])
        inv = _invocation(tree)
        inv = replace(inv, allocator_shim=shim)

        plan = plan_relink(inv, {}, {shim: tmp_path / "bogus.o", a0: tmp_path / "a0-ci.o"}, tree.ci_dir)
        assert str(shim) in plan.args
        assert str(tmp_path / "bogus.o") not in plan.args
        assert str(tmp_path / "a0-ci.o") in plan.args

    def test_paths_matched_after_normalisation(self, tree, app, tmp_path):
        a0, _, _ = app
        inv = _invocation(tree)
        messy = Path(str(a0.parent) + "/./" + a0.name)
        plan = plan_relink(inv, {}, {messy: tmp_path / "a0-ci.o"}, tree.ci_dir)
        assert str(tmp_path / "a0-ci.o") in plan.args


class TestRelink:

    def test_links_into_ci_dir(self, tree, app, tmp_path):
        a0, _, rlib = app
        ci_a0 = tmp_path / "a0-ci.o"
        ci_a0.write_bytes(b"instrumented")
        inv = _invocation(tree)

        out = relink(plan_relink(inv, {}, {a0: ci_a0}, tree.ci_dir))

        assert out == tree.ci_dir / "bin" / "app-ci"
        text = out.read_text()
        assert text.startswith("LINKED")
        assert str(ci_a0) in text
        assert str(a0) not in text
        assert not inv.output_path.exists()

    def test_linker_failure(self, tree, tmp_path):
        a0 = tree.add_unit("app", "1b1b", 0)[1]
        tree.add_link("app", "1b1b", objects=[a0], extra=["-lfail"])
        plan = plan_relink(_invocation(tree), {}, {}, tree.ci_dir)

        with pytest.raises(ToolError) as exc:
            relink(plan)
        assert exc.value.tool == "cc"
        assert "cannot find -lfail" in exc.value.stderr
        assert not plan.output_path.exists()

    def test_missing_input(self, tree, tmp_path):
        a0 = tree.add_unit("app", "1b1b", 0)[1]
        tree.add_link("app", "1b1b", objects=[a0])
        plan = plan_relink(_invocation(tree), {}, {a0: tmp_path / "gone-ci.o"}, tree.ci_dir)

        with pytest.raises(ToolError, match="No such file"):
            relink(plan)


def test_remove_stale_binary(tmp_path):
    stale = tmp_path / "bin" / "app-ci"
    stale.parent.mkdir()
    stale.write_text("old")
    assert remove_stale_binary(stale) is True
    assert not stale.exists()
    assert remove_stale_binary(stale) is False
