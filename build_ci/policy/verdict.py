"""
Verdict — per-unit and per-target outcomes with reason enums.

Two layers:
  1. Unit-level   (classify_exclusion)     — is this unit instrumented at all?
  2. Target-level (target_failure_reason)  — why did a target not link?

Policy rules take facts as arguments and never run tools themselves.
"""
from enum import Enum, unique
from typing import Optional

from build_ci.errors import (
    ArchiveFormatError,
    ArchiveMemberMissingError,
    InconsistentBuildError,
    ToolError,
    UnitFailedError,
)


# ── Unit outcome ─────────────────────────────────────────────────────────────

@unique
class UnitStatus(str, Enum):
    INSTRUMENTED = "INSTRUMENTED"
    CACHED = "CACHED"
    EXCLUDED = "EXCLUDED"
    FAILED = "FAILED"


@unique
class ExclusionReason(str, Enum):
    SKIP_LIST = "SKIP_LIST"
    RUNTIME_CRATE = "RUNTIME_CRATE"
    ALLOCATOR_SHIM = "ALLOCATOR_SHIM"


# ── Target outcome ───────────────────────────────────────────────────────────

@unique
class TargetStatus(str, Enum):
    LINKED = "LINKED"
    FAILED = "FAILED"


@unique
class TargetFailureReason(str, Enum):
    UNIT_FAILED = "UNIT_FAILED"
    INCONSISTENT_BUILD = "INCONSISTENT_BUILD"
    ARCHIVE_FORMAT = "ARCHIVE_FORMAT"
    ARCHIVE_MEMBER_MISSING = "ARCHIVE_MEMBER_MISSING"
    LINKER_FAILED = "LINKER_FAILED"
    UNPARSABLE_LINK_LINE = "UNPARSABLE_LINK_LINE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# ── Unit classification ──────────────────────────────────────────────────────

def classify_exclusion(
    excluded_by_config: bool,
    defines_runtime_abi: bool,
    is_allocator_shim: bool = False,
) -> Optional[ExclusionReason]:
    """
    Decide whether a unit is passed through untouched.

    Returns None when the unit should be instrumented.  The skip list
    wins over the symbol checks so that the reported reason matches what
    the user asked for.
    """
    if excluded_by_config:
        return ExclusionReason.SKIP_LIST
    if is_allocator_shim:
        return ExclusionReason.ALLOCATOR_SHIM
    if defines_runtime_abi:
        return ExclusionReason.RUNTIME_CRATE
    return None


# ── Target classification ────────────────────────────────────────────────────

def target_failure_reason(exc: BaseException) -> TargetFailureReason:
    """Map the exception that stopped a target to a reason enum."""
    if isinstance(exc, UnitFailedError):
        return TargetFailureReason.UNIT_FAILED
    if isinstance(exc, InconsistentBuildError):
        return TargetFailureReason.INCONSISTENT_BUILD
    if isinstance(exc, ArchiveFormatError):
        return TargetFailureReason.ARCHIVE_FORMAT
    if isinstance(exc, ArchiveMemberMissingError):
        return TargetFailureReason.ARCHIVE_MEMBER_MISSING
    if isinstance(exc, ToolError):
        return TargetFailureReason.LINKER_FAILED
    return TargetFailureReason.INTERNAL_ERROR
