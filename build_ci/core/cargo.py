"""
Cargo — drive ``cargo build`` so that it leaves behind what we need.

The build runs with:

    RUSTFLAGS="--emit=llvm-ir -Csave-temps -Cpasses=..."   per-unit IR + objects
    RUSTC_LOG=rustc_codegen_ssa::back::link=info          linker commands on stderr

Cargo's stdout is echoed as is.  Stderr lines carrying a linker command
are kept and not echoed; everything else on stderr is echoed.

``cargo metadata`` tells which targets are binaries, examples and tests.
"""
import json
import logging
import os
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, List, Mapping, Optional

from build_ci.config import normalize_crate_name
from build_ci.core.link_parser import strip_ansi
from build_ci.errors import BinaryNotFoundError, BuildFailedError, SetupError, ToolNotFoundError
from build_ci.policy.profile import IntegrationProfile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CargoBuildOptions:
    release: bool = False
    target: Optional[str] = None
    example: Optional[str] = None
    tests: bool = False
    manifest_dir: Optional[Path] = None
    cargo: str = "cargo"

    @property
    def mode(self) -> str:
        return "release" if self.release else "debug"

    def command(self) -> List[str]:
        cmd = [self.cargo, "build"]
        if self.example:
            cmd += ["--example", self.example]
        if self.release:
            cmd.append("--release")
        if self.target:
            cmd += ["--target", self.target]
        if self.tests:
            cmd.append("--tests")
        return cmd

    def build_dir(self, target_directory: Path) -> Path:
        """``target/[<triple>/]<mode>``."""
        base = Path(target_directory)
        if self.target:
            base = base / self.target
        return base / self.mode

    def ci_dir(self, target_directory: Path) -> Path:
        """``target/[<triple>/]<mode>-ci``."""
        build_dir = self.build_dir(target_directory)
        return build_dir.with_name(f"{build_dir.name}-ci")


@dataclass(frozen=True)
class CargoMetadata:
    target_directory: Path
    binaries: FrozenSet[str] = frozenset()
    examples: FrozenSet[str] = frozenset()
    tests: FrozenSet[str] = frozenset()
    libraries: FrozenSet[str] = frozenset()

    def test_targets(self) -> FrozenSet[str]:
        """
        Integration-test targets, classified as tests by name.

        Unit-test harnesses of libs and bins share their crate's name and
        are told apart by the libtest archive they link instead.
        """
        return self.tests


@dataclass
class CargoBuildOutput:
    returncode: int
    link_lines: List[str] = field(default_factory=list)


def build_environment(
    profile: IntegrationProfile,
    base: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    env = dict(os.environ if base is None else base)
    env["CARGO_TERM_COLOR"] = "always"
    env["RUSTC_LOG"] = f"{profile.link_log_target}=info"
    flags = " ".join(profile.rustflags)
    existing = env.get("RUSTFLAGS", "").strip()
    env["RUSTFLAGS"] = f"{existing} {flags}".strip()
    return env


def _pump(stream, sink) -> None:
    for line in stream:
        sink.write(line)
        sink.flush()


def run_cargo_build(
    options: CargoBuildOptions,
    profile: Optional[IntegrationProfile] = None,
) -> CargoBuildOutput:
    """
    Run ``cargo build`` with IR emission and linker logging.

    Raises ``BuildFailedError`` if cargo exits non-zero.
    """
    if profile is None:
        profile = IntegrationProfile.v1()
    matcher = profile.link_matcher
    cmd = options.command()
    logger.info("running %s", " ".join(cmd))
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=str(options.manifest_dir) if options.manifest_dir else None,
            env=build_environment(profile),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
        )
    except FileNotFoundError:
        raise ToolNotFoundError(options.cargo)

    out_thread = threading.Thread(target=_pump, args=(proc.stdout, sys.stdout), daemon=True)
    out_thread.start()

    output = CargoBuildOutput(returncode=0)
    for line in proc.stderr:
        line = line.rstrip("\n")
        if matcher.command_text(strip_ansi(line)) is not None:
            output.link_lines.append(line)
        elif line:
            sys.stderr.write(line + "\n")
    output.returncode = proc.wait()
    out_thread.join()

    logger.info("captured %d linker log line(s)", len(output.link_lines))
    if output.returncode != 0:
        raise BuildFailedError(output.returncode)
    return output


def parse_metadata(data: Mapping) -> CargoMetadata:
    """Collect target names from ``cargo metadata --format-version 1`` output."""
    groups: Dict[str, set] = {"bin": set(), "example": set(), "test": set(), "lib": set()}
    for package in data.get("packages", []):
        for target in package.get("targets", []):
            name = normalize_crate_name(target["name"])
            for kind in target.get("kind", []):
                if kind in groups:
                    groups[kind].add(name)
                elif kind in ("rlib", "dylib", "staticlib", "cdylib", "proc-macro"):
                    groups["lib"].add(name)
    return CargoMetadata(
        target_directory=Path(data["target_directory"]),
        binaries=frozenset(groups["bin"]),
        examples=frozenset(groups["example"]),
        tests=frozenset(groups["test"]),
        libraries=frozenset(groups["lib"]),
    )


def cargo_metadata(options: CargoBuildOptions, require_binary: bool = True) -> CargoMetadata:
    """
    Run ``cargo metadata --no-deps``.

    Raises ``BinaryNotFoundError`` when *require_binary* is set and the
    package has no binary, example or test target.
    """
    cmd = [options.cargo, "metadata", "--no-deps", "--format-version", "1"]
    logger.info("running %s", " ".join(cmd))
    try:
        proc = subprocess.run(
            cmd,
            cwd=str(options.manifest_dir) if options.manifest_dir else None,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        raise ToolNotFoundError(options.cargo)
    if proc.returncode != 0:
        raise SetupError(f"`cargo metadata` failed:\n{proc.stderr.strip()}")
    try:
        metadata = parse_metadata(json.loads(proc.stdout))
    except (ValueError, KeyError) as e:
        raise SetupError(f"cannot read `cargo metadata` output: {e}")

    logger.debug("binaries: %s", sorted(metadata.binaries))
    if require_binary and not (metadata.binaries or metadata.examples or metadata.tests):
        raise BinaryNotFoundError()
    return metadata
