"""
Toolchain — locate the LLVM tools that match rustc's LLVM.

``rustc -vV`` reports the LLVM it was built with.  ``opt`` and ``llc``
must come from the same major.minor release, either unsuffixed
(``llvm-config``) or with a version suffix (``llvm-config-15``), which is
how most Linux distributions install side-by-side LLVM releases.
"""
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple, Union

from build_ci.errors import (
    LLVMNotSupportedError,
    LLVMVersionMismatchError,
    SetupError,
    ToolError,
    ToolNotFoundError,
)

logger = logging.getLogger(__name__)

_VERSION = re.compile(r"(\d+)\.(\d+)(?:\.(\d+))?")


@dataclass(frozen=True)
class Toolchain:
    """Resolved tool names (or paths) for the transform and codegen steps."""

    opt: str = "opt"
    llc: str = "llc"
    llvm_version: Optional[str] = None

    @property
    def names(self) -> Tuple[str, str]:
        return (self.opt, self.llc)


def parse_version(text: str) -> Optional[Tuple[int, int, int]]:
    m = _VERSION.search(text)
    if m is None:
        return None
    return int(m.group(1)), int(m.group(2)), int(m.group(3) or 0)


def run_tool(
    args: Sequence[Union[str, Path]],
    tool: Optional[str] = None,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    check: bool = True,
) -> subprocess.CompletedProcess:
    """
    Run an external tool with captured output.

    Raises ``ToolNotFoundError`` if the program does not exist and
    ``ToolError`` on a non-zero exit status (when *check* is set).
    """
    argv = [str(a) for a in args]
    tool = tool or Path(argv[0]).name
    logger.debug("exec: %s", " ".join(argv))
    try:
        proc = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            env=env,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        raise ToolNotFoundError(argv[0])
    if check and proc.returncode != 0:
        raise ToolError(tool, proc.returncode, proc.stdout, proc.stderr)
    return proc


def _tool_version(program: str) -> Optional[Tuple[int, int, int]]:
    if shutil.which(program) is None:
        return None
    proc = run_tool([program, "--version"], check=False)
    if proc.returncode != 0:
        logger.debug("%s --version exited %d", program, proc.returncode)
        return None
    return parse_version(proc.stdout)


def rustc_llvm_version(rustc: str = "rustc") -> Tuple[int, int, int]:
    """LLVM version rustc was built with, from ``rustc -vV``."""
    if shutil.which(rustc) is None:
        raise ToolNotFoundError(rustc)
    proc = run_tool([rustc, "-vV"])
    for line in proc.stdout.splitlines():
        if line.startswith("LLVM version:"):
            version = parse_version(line)
            if version is not None:
                return version
    raise SetupError(f"`{rustc} -vV` does not report an LLVM version")


def resolve_toolchain(min_version: int = 9, rustc: str = "rustc") -> Toolchain:
    """
    Return the ``opt``/``llc`` pair matching rustc's LLVM.

    Tries ``llvm-config`` first, then ``llvm-config-<major>``; the first
    one whose major.minor equals rustc's wins.
    """
    wanted = rustc_llvm_version(rustc)
    wanted_text = ".".join(map(str, wanted))
    if wanted[0] < min_version:
        raise LLVMNotSupportedError(wanted_text, min_version)

    suffix = f"-{wanted[0]}"
    found = []
    for tool_suffix in ("", suffix):
        version = _tool_version(f"llvm-config{tool_suffix}")
        if version is None:
            continue
        found.append(version)
        if version[:2] == wanted[:2]:
            toolchain = Toolchain(
                opt=f"opt{tool_suffix}",
                llc=f"llc{tool_suffix}",
                llvm_version=wanted_text,
            )
            for program in toolchain.names:
                if shutil.which(program) is None:
                    raise ToolNotFoundError(program)
            logger.info("using LLVM %s (%s, %s)", wanted_text, toolchain.opt, toolchain.llc)
            return toolchain

    if not found:
        raise ToolNotFoundError("llvm-config")
    raise LLVMVersionMismatchError(wanted_text, ".".join(map(str, found[0])))
