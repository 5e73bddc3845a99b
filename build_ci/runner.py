"""
build_ci runner — top-level orchestration: build log → instrumented binaries.

This module ties the build driver, core stages, policy verdicts and IO
together.  ``run_integration`` works on an existing build tree plus the
captured linker log, so it can be driven from the CLI below or from
tests with fake tools.

Stages:
  1. scan the build tree and parse the linker log (calling thread)
  2. instrument every unit some target needs (unit pool)
  3. per target, once its units resolve: patch archives, relink (target pool)
  4. write build_ci_report.json
"""
import argparse
import logging
import sys
import threading
import time
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from build_ci import __version__
from build_ci.config import (
    InstrumentationLibraryRef,
    IntegrationConfig,
    LibraryVariant,
    Settings,
)
from build_ci.core.cargo import CargoBuildOptions, cargo_metadata, run_cargo_build
from build_ci.core.catalog import ArtifactCatalog, CompilationUnit, parse_unit_name, scan_artifacts
from build_ci.core.instrument import InstrumentationRunner, UnitOutcome
from build_ci.core.link_parser import LinkInvocation, ParseResult, TargetKind, parse_link_invocations
from build_ci.core.patcher import ArchivePatcher, archive_crate_id, resolve_allocator_shim, units_in_archive
from build_ci.core.progress import EventKind, ProgressCoordinator, status_line, write_failure_log
from build_ci.core.relink import instrumented_binary_path, output_for, plan_relink, relink, remove_stale_binary
from build_ci.core.toolchain import Toolchain, resolve_toolchain
from build_ci.errors import InconsistentBuildError, IntegrationError, SetupError, ToolError, UnitFailedError
from build_ci.io.schema import RunReport, TargetCounts, TargetRecord, UnitCounts, UnitRecord
from build_ci.io.writer import write_report
from build_ci.policy.profile import IntegrationProfile
from build_ci.policy.verdict import TargetFailureReason, TargetStatus, UnitStatus, target_failure_reason

logger = logging.getLogger(__name__)


# ── Run result ───────────────────────────────────────────────────────────────

@dataclass
class RunResult:
    """
    Outcome of one run, filled in by worker threads under ``lock``.

    Targets are keyed by ``<name>-<hash>``: a bin and its unit-test
    harness share a name but never an output.
    """

    ci_dir: Path
    units: Dict[str, UnitRecord] = field(default_factory=dict)
    targets: Dict[str, TargetRecord] = field(default_factory=dict)
    parse_errors: List[str] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    report_path: Optional[Path] = None

    def record_unit(self, record: UnitRecord) -> None:
        with self.lock:
            self.units[record.unit_id] = record

    def record_target(self, record: TargetRecord) -> None:
        with self.lock:
            self.targets[record.target_id] = record

    def _units_with(self, status: UnitStatus) -> List[str]:
        return [u.unit_id for u in self.units.values() if u.status == status.value]

    @property
    def instrumented_units(self) -> List[str]:
        return self._units_with(UnitStatus.INSTRUMENTED)

    @property
    def cached_units(self) -> List[str]:
        return self._units_with(UnitStatus.CACHED)

    @property
    def excluded_units(self) -> List[str]:
        return self._units_with(UnitStatus.EXCLUDED)

    @property
    def failed_units(self) -> Dict[str, str]:
        return {u.unit_id: u.error or "" for u in self.units.values() if u.status == UnitStatus.FAILED.value}

    @property
    def linked_targets(self) -> Dict[str, Path]:
        return {
            t.target_id: Path(t.instrumented_output)
            for t in self.targets.values()
            if t.status == TargetStatus.LINKED.value
        }

    @property
    def failed_targets(self) -> Dict[str, str]:
        return {t.target_id: t.error or "" for t in self.targets.values() if t.status == TargetStatus.FAILED.value}

    @property
    def ok(self) -> bool:
        return not self.failed_targets

    def to_report(self, profile: IntegrationProfile, build_dir: Path, **extra) -> RunReport:
        units = list(self.units.values())
        targets = sorted(self.targets.values(), key=lambda t: (t.kind, t.target_name, t.target_id))
        return RunReport(
            profile_id=profile.profile_id,
            build_dir=str(build_dir),
            ci_dir=str(self.ci_dir),
            unit_counts=UnitCounts(
                total=len(units),
                instrumented=len(self.instrumented_units),
                cached=len(self.cached_units),
                excluded=len(self.excluded_units),
                failed=len(self.failed_units),
            ),
            target_counts=TargetCounts(
                total=len(targets),
                linked=len(self.linked_targets),
                failed=len(self.failed_targets),
            ),
            units=units,
            targets=targets,
            parse_errors=list(self.parse_errors),
            **extra,
        )


# ── Helpers ──────────────────────────────────────────────────────────────────

def default_ci_dir(build_dir: Path) -> Path:
    return build_dir.with_name(f"{build_dir.name}-ci")


def _unit_record(unit: CompilationUnit, future: Future) -> UnitRecord:
    base = dict(
        unit_id=unit.unit_id,
        crate_name=unit.crate_name,
        cgu_name=unit.cgu_name,
        ir_path=str(unit.ir_path),
        object_path=str(unit.object_path),
    )
    exc = future.exception()
    if exc is None:
        outcome: UnitOutcome = future.result()
        return UnitRecord(
            **base,
            instrumented_path=str(outcome.instrumented_path),
            status=outcome.status.value,
            reasons=[outcome.reason.value] if outcome.reason else [],
        )
    cause = exc.__cause__ if exc.__cause__ is not None else exc
    log_path = getattr(cause, "log_path", None)
    return UnitRecord(
        **base,
        status=UnitStatus.FAILED.value,
        reasons=[type(cause).__name__],
        error=str(cause),
        log_path=str(log_path) if log_path else None,
    )


def _select_archive_units(
    invocations: Iterable[LinkInvocation],
    catalog: ArtifactCatalog,
) -> Tuple[Dict[Path, List[CompilationUnit]], Dict[Path, Exception]]:
    """Units per referenced archive, read from each archive's member list once."""
    selected: Dict[Path, List[CompilationUnit]] = {}
    errors: Dict[Path, Exception] = {}
    for inv in invocations:
        for archive in inv.archives:
            if archive in selected or archive in errors:
                continue
            try:
                selected[archive] = units_in_archive(archive, catalog.units)
            except (IntegrationError, OSError) as e:
                logger.warning("archive %s cannot be patched: %s", archive.name, e)
                errors[archive] = e
    return selected, errors


class _TargetContext:
    """Everything a target task needs, computed once on the calling thread."""

    def __init__(
        self,
        inv: LinkInvocation,
        catalog: ArtifactCatalog,
        orphaned: Set[str],
        archive_units: Dict[Path, List[CompilationUnit]],
        archive_errors: Dict[Path, Exception],
    ):
        self.invocation = inv
        self.output: Optional[Path] = None
        by_path = catalog.by_object_path()
        self.direct_units = [by_path[o] for o in inv.objects if o in by_path]

        crate_ids = {u.crate_id for u in self.direct_units}
        for obj in inv.objects:
            parsed = parse_unit_name(obj.name)
            if parsed is not None:
                crate_ids.add(f"{parsed['crate']}-{parsed['hash']}")
        self.archive_units: Dict[Path, List[CompilationUnit]] = {}
        self.archive_error: Optional[Exception] = None
        for archive in inv.archives:
            crate_id = archive_crate_id(archive)
            if crate_id is None:
                continue
            crate_ids.add(crate_id)
            if archive in archive_errors:
                self.archive_error = self.archive_error or archive_errors[archive]
            else:
                self.archive_units[archive] = archive_units[archive]

        self.orphaned_crates = sorted(crate_ids & orphaned)
        self.orphans: List[Path] = []
        for path in catalog.orphans:
            parsed = parse_unit_name(path.name)
            if parsed is not None and f"{parsed['crate']}-{parsed['hash']}" in self.orphaned_crates:
                self.orphans.append(path)

    def units(self) -> List[CompilationUnit]:
        seen: Dict[str, CompilationUnit] = {u.unit_id: u for u in self.direct_units}
        for units in self.archive_units.values():
            for u in units:
                seen.setdefault(u.unit_id, u)
        return list(seen.values())


def _assign_outputs(contexts: List[_TargetContext], ci_dir: Path, suffix: str) -> None:
    """Pick each target's instrumented output; names shared by two targets keep their hash."""
    plain = Counter(output_for(ctx.invocation, ci_dir, suffix) for ctx in contexts)
    for ctx in contexts:
        ctx.output = output_for(ctx.invocation, ci_dir, suffix)
        if plain[ctx.output] > 1:
            ctx.output = output_for(ctx.invocation, ci_dir, suffix, hashed=True)


# ── Orchestration ────────────────────────────────────────────────────────────

def run_integration(
    link_text: str,
    build_dir: Path,
    config: IntegrationConfig,
    library: InstrumentationLibraryRef,
    toolchain: Toolchain,
    profile: Optional[IntegrationProfile] = None,
    test_targets: Iterable[str] = (),
    ci_dir: Optional[Path] = None,
    coordinator: Optional[ProgressCoordinator] = None,
) -> RunResult:
    """
    Instrument and relink every target found in *link_text*.

    Raises ``SetupError`` subclasses for problems that stop the whole run
    (no linker lines, library missing).  Per-unit and per-target failures
    are recorded in the returned ``RunResult`` instead.
    """
    started = time.monotonic()
    if profile is None:
        profile = IntegrationProfile.v1()
    build_dir = Path(build_dir)
    ci_dir = Path(ci_dir) if ci_dir else default_ci_dir(build_dir)
    for sub in ("objects", "archives", "logs"):
        (ci_dir / sub).mkdir(parents=True, exist_ok=True)

    # ── Step 1: catalog + parse ──────────────────────────────────────
    catalog = scan_artifacts(build_dir, profile)
    parsed: ParseResult = parse_link_invocations(link_text, profile.link_matcher, test_targets)
    invocations = [
        resolve_allocator_shim(inv, profile, catalog.allocator_shims)
        for inv in parsed.invocations
    ]
    orphaned = catalog.orphaned_crate_ids()
    archive_units, archive_errors = _select_archive_units(invocations, catalog)
    contexts = [
        _TargetContext(inv, catalog, orphaned, archive_units, archive_errors)
        for inv in invocations
    ]
    _assign_outputs(contexts, ci_dir, profile.instrumented_suffix)

    needed: Dict[str, CompilationUnit] = {}
    for ctx in contexts:
        for unit in ctx.units():
            needed.setdefault(unit.unit_id, unit)
    units = [u for u in catalog.units if u.unit_id in needed]
    logger.info("%d of %d unit(s) are linked into %d target(s)", len(units), len(catalog.units), len(contexts))

    result = RunResult(ci_dir=ci_dir)
    produced = {ctx.output for ctx in contexts}
    for err in parsed.errors:
        name = err.target_name or f"line-{err.line_number}"
        result.parse_errors.append(f"line {err.line_number}: {err.message}")
        result.record_target(TargetRecord(
            target_id=err.target_id or name,
            target_name=name,
            kind="unknown",
            original_output="",
            status=TargetStatus.FAILED.value,
            reasons=[TargetFailureReason.UNPARSABLE_LINK_LINE.value],
            error=err.message,
        ))
        if err.target_name:
            target_hash = err.target_id.rpartition("-")[2] if err.target_id else None
            for kind in TargetKind:
                for stale in {
                    instrumented_binary_path(ci_dir, err.target_name, kind, profile.instrumented_suffix),
                    instrumented_binary_path(ci_dir, err.target_name, kind, profile.instrumented_suffix, target_hash),
                } - produced:
                    remove_stale_binary(stale)

    owns_coordinator = coordinator is None
    if owns_coordinator:
        coordinator = ProgressCoordinator(verbosity=config.verbosity)
    try:
        coordinator.set_total(len(units) + len(contexts))
        instrumenter = InstrumentationRunner(
            config,
            library,
            toolchain,
            ci_dir,
            profile=profile,
            coordinator=coordinator,
            clock_crate_ids={inv.target_id for inv in invocations},
        )
        patcher = ArchivePatcher(ci_dir / "archives", profile)

        with ThreadPoolExecutor(max_workers=config.concurrency, thread_name_prefix="build-ci-unit") as unit_pool, \
                ThreadPoolExecutor(max_workers=config.concurrency, thread_name_prefix="build-ci-link") as link_pool:
            # ── Step 2: instrument units ─────────────────────────────
            unit_futures = instrumenter.run(units, unit_pool)

            # ── Step 3: per-target barrier, patch, relink ────────────
            target_futures = [
                link_pool.submit(
                    _link_target, ctx, unit_futures, patcher, config, profile, ci_dir, coordinator, result,
                )
                for ctx in contexts
            ]
            wait(list(unit_futures.values()) + target_futures)
    finally:
        if owns_coordinator:
            coordinator.close()

    for unit in units:
        result.record_unit(_unit_record(unit, unit_futures[unit.unit_id]))

    # ── Step 4: report ───────────────────────────────────────────────
    report = result.to_report(
        profile,
        build_dir,
        library_path=str(instrumenter.library_path),
        llvm_version=toolchain.llvm_version,
        concurrency=config.concurrency,
        orphans=[str(p) for p in catalog.orphans],
        elapsed_seconds=round(time.monotonic() - started, 3),
    )
    result.report_path = write_report(report, ci_dir)
    # target tasks record their own failures; anything left here is a bug
    for fut in target_futures:
        fut.result()
    logger.info(
        "run finished: %d target(s) linked, %d failed",
        len(result.linked_targets), len(result.failed_targets),
    )
    return result


def _link_target(
    ctx: _TargetContext,
    unit_futures: Dict[str, Future],
    patcher: ArchivePatcher,
    config: IntegrationConfig,
    profile: IntegrationProfile,
    ci_dir: Path,
    coordinator: ProgressCoordinator,
    result: RunResult,
) -> None:
    inv = ctx.invocation
    label = f"{inv.target_name}({inv.kind.dir_name})"
    output = ctx.output
    record = TargetRecord(
        target_id=inv.target_id,
        target_name=inv.target_name,
        kind=inv.kind.value,
        original_output=str(inv.output_path),
        allocator_shim=str(inv.allocator_shim) if inv.allocator_shim else None,
        status=TargetStatus.FAILED.value,
    )
    event, message = EventKind.FAILED, ""
    try:
        # barrier: every unit of this target has resolved
        units = ctx.units()
        wait([unit_futures[u.unit_id] for u in units])
        failed = [u.unit_id for u in units if unit_futures[u.unit_id].exception() is not None]
        if failed:
            raise UnitFailedError(failed)
        if ctx.orphaned_crates:
            raise InconsistentBuildError(ctx.orphans)
        if ctx.archive_error is not None:
            raise ctx.archive_error

        coordinator.post(EventKind.LINKING, label)
        archive_map = {}
        for archive, archive_units in ctx.archive_units.items():
            patched = patcher.patch(archive, archive_units)
            if patched.modified:
                archive_map[archive] = patched.patched_path
        object_map = {u.object_path: u.instrumented_path for u in ctx.direct_units if u.replaced}

        plan = plan_relink(
            inv, archive_map, object_map, ci_dir, profile.instrumented_suffix,
            profile.link_matcher.output_flag, output,
        )
        record.instrumented_output = str(relink(plan))
        record.patched_archives = sorted(str(p) for p in archive_map.values())
        record.status = TargetStatus.LINKED.value
        event = EventKind.FINISHED
    except Exception as e:
        record.reasons = [target_failure_reason(e).value]
        record.error = str(e)
        message = str(e)
        if isinstance(e, ToolError) and config.debug_ci:
            e.log_path = write_failure_log(ci_dir / "logs", " ".join(inv.args) + "\n" + e.output)
            record.log_path = str(e.log_path)
            message += f"\nPath to the log: {e.log_path}"
        if isinstance(e, (IntegrationError, OSError)):
            logger.error("target %s failed: %s", inv.target_id, e)
        else:
            logger.exception("target %s failed with an unexpected error", inv.target_id)
        remove_stale_binary(output)
    finally:
        result.record_target(record)
        coordinator.post(event, label, message)


# ── CLI ──────────────────────────────────────────────────────────────────────

def _split_crates(values: Optional[List[str]]) -> List[str]:
    crates: List[str] = []
    for value in values or []:
        crates.extend(c for c in value.replace(",", " ").split() if c)
    return crates


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="build-ci",
        description="Integrate Compiler Interrupts into a Cargo package's binaries",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--release", action="store_true", help="Build artifacts in release mode")
    parser.add_argument("--target", metavar="TRIPLE", help="Build for the target triple")
    parser.add_argument("--example", metavar="NAME", help="Build only the specified example")
    parser.add_argument("--tests", action="store_true", help="Build all test targets")
    parser.add_argument(
        "-s", "--skip-crates", action="append", metavar="CRATES",
        help='Crates to leave uninstrumented, e.g. "rand serde" (repeatable)',
    )
    parser.add_argument("-d", "--debug-ci", action="store_true",
                        help="Use the debug library and keep full tool output in log files")
    parser.add_argument("-j", "--jobs", type=int, metavar="N", help="Number of concurrent workers")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Verbose output (-vv for debug)")
    parser.add_argument("--no-build", action="store_true",
                        help="Do not run cargo; read linker lines from --link-log")
    parser.add_argument("--link-log", type=Path, metavar="PATH",
                        help="Captured cargo stderr containing linker lines")
    parser.add_argument("--manifest-dir", type=Path, metavar="DIR", help="Directory holding Cargo.toml")
    return parser


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING if verbosity <= 0 else logging.INFO if verbosity == 1 else logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
    )


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point.  Returns 0 on success, 1 if a target failed, 2 on setup errors."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.no_build and args.link_log is None:
        parser.error("--no-build requires --link-log")

    settings = Settings()
    verbosity = args.verbose or settings.VERBOSE
    _configure_logging(verbosity)

    profile = IntegrationProfile.v1()
    config = IntegrationConfig(
        concurrency=args.jobs or max(1, settings.CONCURRENCY),
        exclude_crates=frozenset(_split_crates(args.skip_crates) or settings.SKIP_CRATES),
        library_variant=LibraryVariant.DEBUG if (args.debug_ci or settings.DEBUG_CI) else LibraryVariant.RELEASE,
        verbosity=verbosity,
    )
    library = settings.library_ref()
    options = CargoBuildOptions(
        release=args.release or settings.RELEASE,
        target=args.target or settings.TARGET,
        example=args.example or settings.EXAMPLE,
        tests=args.tests or settings.TESTS,
        manifest_dir=args.manifest_dir,
    )

    started = time.monotonic()
    try:
        library.ensure_installed(config.library_variant)
        toolchain = resolve_toolchain(profile.min_llvm_version)
        metadata = cargo_metadata(options)
        target_dir = Path(settings.TARGET_DIR) if settings.TARGET_DIR else metadata.target_directory

        if config.debug_ci:
            print(status_line("Note", "Debugging mode is enabled"))
        if args.no_build:
            link_text = args.link_log.read_text()
        else:
            link_text = "\n".join(run_cargo_build(options, profile).link_lines)

        result = run_integration(
            link_text,
            options.build_dir(target_dir),
            config,
            library,
            toolchain,
            profile=profile,
            test_targets=metadata.test_targets(),
            ci_dir=options.ci_dir(target_dir),
        )
    except (SetupError, OSError) as e:
        print(status_line("error", str(e)), file=sys.stderr)
        return 2

    elapsed = time.monotonic() - started
    for name, path in sorted(result.linked_targets.items()):
        logger.info("instrumented binary for %s: %s", name, path)
    if not result.ok:
        for name, error in sorted(result.failed_targets.items()):
            print(status_line("Failed", f"{name}: {error.splitlines()[0] if error else ''}"), file=sys.stderr)
        print(
            status_line("Warning", "Compiler Interrupts integration has failed for some targets; "
                                   f"see {result.report_path}"),
            file=sys.stderr,
        )
        return 1

    print(status_line("Finished", f"integrated {len(result.linked_targets)} target(s) in {elapsed:.2f}s"))
    return 0


if __name__ == "__main__":
    sys.exit(main())
