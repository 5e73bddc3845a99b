"""
Schema — Pydantic models for build_ci JSON outputs.

Two kinds of file:
  1. build_ci_report.json  — run-level summary, one per ``<mode>-ci`` dir.
  2. <stem>-ci.stamp.json  — per-unit sidecar recording what an
                             instrumented object was produced from.

Runtime contract fields (present in the report):
  package_name, integration_version, profile_id, schema_version.
"""
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field

from build_ci import INTEGRATION_VERSION, PACKAGE_NAME, SCHEMA_VERSION


# ── Unit stamp ───────────────────────────────────────────────────────────────

class UnitStamp(BaseModel):
    """Inputs of one instrumented object; equal stamps mean nothing to redo."""

    ir_sha256: str
    library_path: str
    pass_args: List[str] = Field(default_factory=list)
    opt: str
    llc: str
    llc_args: List[str] = Field(default_factory=list)


# ── Per-unit / per-target entries ────────────────────────────────────────────

class UnitRecord(BaseModel):
    unit_id: str
    crate_name: str
    cgu_name: str
    ir_path: str
    object_path: str
    instrumented_path: Optional[str] = None

    status: str                        # INSTRUMENTED | CACHED | EXCLUDED | FAILED
    reasons: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    log_path: Optional[str] = None


class TargetRecord(BaseModel):
    target_id: str                     # <name>-<hash> of the original output
    target_name: str
    kind: str                          # binary | test | example
    original_output: str
    instrumented_output: Optional[str] = None
    allocator_shim: Optional[str] = None
    patched_archives: List[str] = Field(default_factory=list)

    status: str                        # LINKED | FAILED
    reasons: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    log_path: Optional[str] = None


# ── Run-level report ─────────────────────────────────────────────────────────

class UnitCounts(BaseModel):
    total: int = 0
    instrumented: int = 0
    cached: int = 0
    excluded: int = 0
    failed: int = 0


class TargetCounts(BaseModel):
    total: int = 0
    linked: int = 0
    failed: int = 0


class RunReport(BaseModel):
    """Run-level summary — build_ci_report.json."""

    package_name: str = PACKAGE_NAME
    integration_version: str = INTEGRATION_VERSION
    schema_version: str = SCHEMA_VERSION
    profile_id: str

    build_dir: str
    ci_dir: str
    library_path: Optional[str] = None
    llvm_version: Optional[str] = None
    concurrency: int = 1

    unit_counts: UnitCounts = Field(default_factory=UnitCounts)
    target_counts: TargetCounts = Field(default_factory=TargetCounts)

    units: List[UnitRecord] = Field(default_factory=list)
    targets: List[TargetRecord] = Field(default_factory=list)
    parse_errors: List[str] = Field(default_factory=list)
    orphans: List[str] = Field(default_factory=list)

    elapsed_seconds: float = 0.0
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
