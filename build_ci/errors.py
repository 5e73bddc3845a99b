"""
Errors raised by the integration.

Three families, matching how far a failure reaches:

  SetupError        — the environment is unusable; the whole run aborts.
  ConsistencyError  — the build tree or an archive is not what the
                      integration expects; only the affected target fails.
  ToolError         — an external tool exited non-zero; recorded against
                      the unit or target that ran it.
"""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional


class IntegrationError(Exception):
    """Base class for every error raised by build_ci."""


# ── Setup (fatal for the run) ────────────────────────────────────────────────

class SetupError(IntegrationError):
    """The environment cannot run the integration at all."""


class NoLinkerInvocationsError(SetupError):
    def __init__(self, lines_scanned: int):
        self.lines_scanned = lines_scanned
        super().__init__(
            f"No linker invocation found in {lines_scanned} line(s) of build output\n"
            "Linker logging was not captured: the build must run with "
            "RUSTC_LOG=rustc_codegen_ssa::back::link=info, and the targets must "
            "actually be re-linked (run `cargo clean -p <package>` if the build "
            "was fresh)"
        )


class ToolNotFoundError(SetupError):
    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(
            f"Unable to locate `{tool}`\n"
            "Check your $PATH variable or reinstall the LLVM toolchain"
        )


class LLVMVersionMismatchError(SetupError):
    def __init__(self, rustc_version: str, llvm_version: str):
        self.rustc_version = rustc_version
        self.llvm_version = llvm_version
        super().__init__(
            f"LLVM version from Rust toolchain ({rustc_version}) does not match "
            f"the LLVM version from LLVM toolchain ({llvm_version})"
        )


class LLVMNotSupportedError(SetupError):
    def __init__(self, version: str, minimum: int):
        super().__init__(
            f"LLVM version {version} is not supported. "
            f"Minimum supported LLVM version is {minimum}"
        )


class LibraryNotInstalledError(SetupError):
    def __init__(self, path: Optional[Path] = None):
        where = f" (expected at {path})" if path else ""
        super().__init__(
            f"Compiler Interrupts library is not installed{where}\n"
            "Install the library and set BUILD_CI_LIBRARY_PATH to its location"
        )


class BinaryNotFoundError(SetupError):
    def __init__(self):
        super().__init__("Package does not have any available binaries")


class BuildFailedError(SetupError):
    def __init__(self, returncode: int):
        self.returncode = returncode
        super().__init__(f"`cargo build` failed with exit code {returncode}")


# ── Consistency (fatal for one target) ───────────────────────────────────────

class ConsistencyError(IntegrationError):
    """The build tree or an archive does not match what was catalogued."""


class InconsistentBuildError(ConsistencyError):
    def __init__(self, orphans: Iterable[Path]):
        self.orphans: List[Path] = sorted(orphans)
        listing = "\n".join(f"  {p}" for p in self.orphans[:10])
        more = len(self.orphans) - 10
        if more > 0:
            listing += f"\n  ... and {more} more"
        super().__init__(
            "Inconsistent build: IR and object files do not pair up\n"
            f"{listing}\n"
            "Run `cargo clean` and build again"
        )


class ArchiveFormatError(ConsistencyError):
    def __init__(self, path: Path, reason: str):
        self.path = path
        super().__init__(f"Cannot parse archive {path}: {reason}")


class ArchiveMemberMissingError(ConsistencyError):
    def __init__(self, path: Path, member: str):
        self.path = path
        self.member = member
        super().__init__(f"Archive {path} has no member `{member}`")


# ── Tool failures (recorded per unit / target) ──────────────────────────────

class ToolError(IntegrationError):
    """An external tool returned a failure status."""

    def __init__(
        self,
        tool: str,
        returncode: int,
        stdout: str = "",
        stderr: str = "",
        log_path: Optional[Path] = None,
    ):
        self.tool = tool
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.log_path = log_path
        super().__init__(self._summary())

    @property
    def output(self) -> str:
        parts = []
        if self.stdout:
            parts.append(f"--- stdout\n{self.stdout.rstrip()}")
        if self.stderr:
            parts.append(f"--- stderr\n{self.stderr.rstrip()}")
        return "\n".join(parts)

    def _summary(self) -> str:
        # first two lines plus the last ten keep the terminal readable
        lines = self.output.splitlines()
        if len(lines) > 12:
            lines = lines[:2] + ["(truncated)"] + lines[-10:]
        head = f"`{self.tool}` returned exit code {self.returncode}"
        return "\n".join([head] + lines)


class UnitFailedError(IntegrationError):
    """A unit this target depends on could not be instrumented."""

    def __init__(self, unit_names: Iterable[str]):
        self.unit_names = sorted(unit_names)
        super().__init__(
            "Instrumentation failed for: " + ", ".join(self.unit_names)
        )
