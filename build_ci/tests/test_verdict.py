"""
test_verdict — exclusion rules, failure reasons and stamp files.
"""
from pathlib import Path

import pytest

from build_ci.errors import (
    ArchiveFormatError,
    ArchiveMemberMissingError,
    InconsistentBuildError,
    ToolError,
    UnitFailedError,
)
from build_ci.io.schema import UnitStamp
from build_ci.io.writer import read_stamp, write_stamp
from build_ci.policy.verdict import ExclusionReason, TargetFailureReason, classify_exclusion, target_failure_reason


class TestExclusion:

    def test_plain_unit_instrumented(self):
        assert classify_exclusion(False, False) is None

    def test_skip_list_wins(self):
        assert classify_exclusion(True, True, True) == ExclusionReason.SKIP_LIST

    def test_shim_before_runtime(self):
        assert classify_exclusion(False, True, True) == ExclusionReason.ALLOCATOR_SHIM

    def test_runtime(self):
        assert classify_exclusion(False, True) == ExclusionReason.RUNTIME_CRATE


@pytest.mark.parametrize("exc, expected", [
    (UnitFailedError(["a"]), TargetFailureReason.UNIT_FAILED),
    (InconsistentBuildError([Path("/t/x.ll")]), TargetFailureReason.INCONSISTENT_BUILD),
    (ArchiveFormatError(Path("/t/l.rlib"), "bad"), TargetFailureReason.ARCHIVE_FORMAT),
    (ArchiveMemberMissingError(Path("/t/l.rlib"), "m.o"), TargetFailureReason.ARCHIVE_MEMBER_MISSING),
    (ToolError("cc", 1), TargetFailureReason.LINKER_FAILED),
    (OSError("disk full"), TargetFailureReason.INTERNAL_ERROR),
])
def test_target_failure_reason(exc, expected):
    assert target_failure_reason(exc) == expected


def test_inconsistent_build_lists_at_most_ten():
    orphans = [Path(f"/t/deps/c-00.c.{i:02d}-cgu.{i}.rcgu.ll") for i in range(14)]
    text = str(InconsistentBuildError(orphans))
    assert "... and 4 more" in text
    assert text.count(".rcgu.ll") == 10


class TestStamps:

    def _stamp(self, **kw):
        base = dict(
            ir_sha256="ab" * 32, library_path="/lib/libCI.so", pass_args=["-logicalclock", "-defclock=0"],
            opt="opt", llc="llc", llc_args=["-filetype=obj"],
        )
        base.update(kw)
        return UnitStamp(**base)

    def test_write_then_read(self, tmp_path):
        path = write_stamp(self._stamp(), tmp_path / "objects" / "u-ci.stamp.json")
        assert read_stamp(path) == self._stamp()
        assert read_stamp(path) != self._stamp(pass_args=["-logicalclock", "-defclock=1"])

    def test_missing_or_corrupt_is_absent(self, tmp_path):
        assert read_stamp(tmp_path / "nope.json") is None
        bad = tmp_path / "bad.json"
        bad.write_text("{not json")
        assert read_stamp(bad) is None
        bad.write_text('{"ir_sha256": "x"}')
        assert read_stamp(bad) is None
