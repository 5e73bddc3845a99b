"""
Instrument — run the transform pass and code generator over every unit.

Per unit:

    opt -S -load <library> -logicalclock [args] -defclock=<0|1> <unit>.ll -o <work>/objects/<stem>-ci.ll
    llc -filetype=obj [-code-model=large] <stem>-ci.ll -o <work>/objects/<stem>-ci.o

``-defclock=1`` goes to units of crates that are linked into an
executable (they define the thread-local clock); every other crate gets
``-defclock=0``.

Units are independent.  Each runs as one task on the caller's executor
and its result (or ``UnitFailedError``) lives in the task's future, so a
failing unit never stops its siblings.  A stamp file next to the
instrumented object records the inputs it was built from; a rerun with
an identical stamp and an existing object skips both tools.
"""
import hashlib
import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Union

from build_ci.config import InstrumentationLibraryRef, IntegrationConfig
from build_ci.core.catalog import CompilationUnit
from build_ci.core.progress import EventKind, ProgressCoordinator, write_failure_log
from build_ci.core.symbols import read_defined_symbols
from build_ci.core.toolchain import Toolchain, run_tool
from build_ci.errors import IntegrationError, ToolError, UnitFailedError
from build_ci.io.schema import UnitStamp
from build_ci.io.writer import read_stamp, write_stamp
from build_ci.policy.profile import IntegrationProfile
from build_ci.policy.verdict import ExclusionReason, UnitStatus, classify_exclusion

logger = logging.getLogger(__name__)

_EVENT_FOR_STATUS = {
    UnitStatus.INSTRUMENTED: EventKind.FINISHED,
    UnitStatus.CACHED: EventKind.CACHED,
    UnitStatus.EXCLUDED: EventKind.SKIPPED,
}


@dataclass
class UnitOutcome:
    unit: CompilationUnit
    status: UnitStatus
    instrumented_path: Path
    reason: Optional[ExclusionReason] = None


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            h.update(chunk)
    return h.hexdigest()


class InstrumentationRunner:
    """Instrument compilation units on a bounded pool."""

    def __init__(
        self,
        config: IntegrationConfig,
        library: InstrumentationLibraryRef,
        toolchain: Toolchain,
        work_dir: Path,
        profile: Optional[IntegrationProfile] = None,
        coordinator: Optional[ProgressCoordinator] = None,
        clock_crate_ids: Iterable[str] = (),
    ):
        self.config = config
        self.library = library
        self.library_path = library.ensure_installed(config.library_variant)
        self.toolchain = toolchain
        self.profile = profile or IntegrationProfile.v1()
        self.coordinator = coordinator
        self.objects_dir = Path(work_dir) / "objects"
        self.logs_dir = Path(work_dir) / "logs"
        self.clock_crate_ids = frozenset(clock_crate_ids)

    # ── paths ────────────────────────────────────────────────────────

    def _stem(self, unit: CompilationUnit) -> str:
        name = unit.object_path.name
        ext = "." + self.profile.object_extension
        if name.endswith(ext):
            name = name[:-len(ext)]
        return f"{name}-{self.profile.instrumented_suffix}"

    def instrumented_ir_path(self, unit: CompilationUnit) -> Path:
        return self.objects_dir / f"{self._stem(unit)}.{self.profile.ir_extension}"

    def instrumented_object_path(self, unit: CompilationUnit) -> Path:
        return self.objects_dir / f"{self._stem(unit)}.{self.profile.object_extension}"

    def stamp_path(self, unit: CompilationUnit) -> Path:
        return self.objects_dir / f"{self._stem(unit)}.stamp.json"

    # ── arguments ────────────────────────────────────────────────────

    def pass_args(self, unit: CompilationUnit) -> List[str]:
        defclock = 1 if unit.crate_id in self.clock_crate_ids else 0
        return [*self.library.pass_args, f"-defclock={defclock}"]

    def opt_command(self, unit: CompilationUnit) -> List[str]:
        return [
            self.toolchain.opt,
            *self.profile.opt_args,
            "-load", str(self.library_path),
            *self.pass_args(unit),
            str(unit.ir_path),
            "-o", str(self.instrumented_ir_path(unit)),
        ]

    def llc_command(self, unit: CompilationUnit) -> List[str]:
        return [
            self.toolchain.llc,
            *self.profile.llc_args,
            str(self.instrumented_ir_path(unit)),
            "-o", str(self.instrumented_object_path(unit)),
        ]

    def expected_stamp(self, unit: CompilationUnit) -> UnitStamp:
        return UnitStamp(
            ir_sha256=sha256_file(unit.ir_path),
            library_path=str(self.library_path),
            pass_args=self.pass_args(unit),
            opt=self.toolchain.opt,
            llc=self.toolchain.llc,
            llc_args=list(self.profile.llc_args),
        )

    # ── one unit ─────────────────────────────────────────────────────

    def exclusion_reason(self, unit: CompilationUnit) -> Optional[ExclusionReason]:
        if self.config.is_excluded(unit.crate_name):
            return ExclusionReason.SKIP_LIST
        symbols = set(read_defined_symbols(unit.object_path))
        return classify_exclusion(
            excluded_by_config=False,
            defines_runtime_abi=bool(symbols & set(self.library.abi_symbols)),
            is_allocator_shim=bool(symbols & set(self.profile.allocator_symbols)),
        )

    def process(self, unit: CompilationUnit) -> UnitOutcome:
        """
        Resolve one unit: exclude it, reuse a cached object, or run both tools.

        Sets ``unit.instrumented_path`` on every successful path.
        Raises ``UnitFailedError`` (chained to the tool error) on failure.
        """
        reason = self.exclusion_reason(unit)
        if reason is not None:
            logger.info("integration skipped (%s): %s", reason.value, unit.ir_path.name)
            unit.excluded = True
            unit.exclusion_reason = reason.value
            unit.instrumented_path = unit.object_path
            return UnitOutcome(unit, UnitStatus.EXCLUDED, unit.object_path, reason)

        ci_obj = self.instrumented_object_path(unit)
        stamp_path = self.stamp_path(unit)
        expected = self.expected_stamp(unit)
        if ci_obj.is_file() and read_stamp(stamp_path) == expected:
            logger.debug("up to date: %s", ci_obj.name)
            unit.instrumented_path = ci_obj
            return UnitOutcome(unit, UnitStatus.CACHED, ci_obj)

        self.objects_dir.mkdir(parents=True, exist_ok=True)
        stamp_path.unlink(missing_ok=True)
        self._post(EventKind.INTEGRATING, unit.crate_name)
        logger.info("integrating: %s", unit.ir_path)
        try:
            self._run_step("opt", self.opt_command(unit), self.instrumented_ir_path(unit))
            self._run_step("llc", self.llc_command(unit), ci_obj)
        except ToolError as e:
            raise UnitFailedError([unit.unit_id]) from e

        write_stamp(expected, stamp_path)
        unit.instrumented_path = ci_obj
        return UnitOutcome(unit, UnitStatus.INSTRUMENTED, ci_obj)

    def _run_step(self, tool: str, argv: Sequence[Union[str, Path]], output: Path) -> None:
        try:
            run_tool(argv, tool=tool)
        except ToolError as e:
            if self.config.debug_ci:
                e.log_path = write_failure_log(self.logs_dir, " ".join(map(str, argv)) + "\n" + e.output)
            raise
        if not output.is_file():
            raise ToolError(
                tool, 0,
                stderr=f"process returned success but output file does not exist\nexpected file: {output}",
            )

    def _run_unit(self, unit: CompilationUnit) -> UnitOutcome:
        kind, message = EventKind.FAILED, ""
        try:
            outcome = self.process(unit)
            kind = _EVENT_FOR_STATUS[outcome.status]
            return outcome
        except IntegrationError as e:
            cause = e.__cause__ if e.__cause__ is not None else e
            message = str(cause)
            if getattr(cause, "log_path", None):
                message += f"\nPath to the log: {cause.log_path}"
            elif isinstance(cause, ToolError):
                message += "\nRun with --debug-ci to enable full logging"
            logger.error("unit %s failed: %s", unit.unit_id, message)
            raise
        finally:
            self._post(kind, unit.crate_name, message)

    def _post(self, kind: EventKind, name: str, message: str = "") -> None:
        if self.coordinator is not None:
            self.coordinator.post(kind, name, message)

    # ── many units ───────────────────────────────────────────────────

    def run(self, units: Sequence[CompilationUnit], executor: Executor) -> Dict[str, Future]:
        """Submit every unit; return futures keyed by ``unit_id`` in catalog order."""
        return {unit.unit_id: executor.submit(self._run_unit, unit) for unit in units}

    def run_all(self, units: Sequence[CompilationUnit]) -> Dict[str, Future]:
        """Run every unit on a private pool and wait for all of them."""
        with ThreadPoolExecutor(max_workers=self.config.concurrency, thread_name_prefix="build-ci-unit") as pool:
            futures = self.run(units, pool)
            wait(futures.values())
        return futures
