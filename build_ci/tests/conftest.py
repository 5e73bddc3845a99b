"""
Shared pytest fixtures for build_ci tests.

No Rust or LLVM toolchain is needed.  The external tools are replaced by
small /bin/sh scripts:

  opt     copies the input IR to ``-o`` and appends "; instrumented"
          (fails when the IR contains FAIL_OPT)
  llc     writes "OBJ" + the input to ``-o``   (fails on FAIL_LLC)
  linker  checks that every .o/.rlib/.a input exists and writes the input
          list to ``-o``                       (fails on ``-lfail``)

Every call is appended to a log file so tests can count invocations.

Tests that need real ELF objects compile tiny C files with gcc and are
skipped when gcc is missing.
"""
import shutil
import stat
import struct
import subprocess
import tempfile
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from build_ci.config import InstrumentationLibraryRef, IntegrationConfig
from build_ci.core.toolchain import Toolchain

LINK_PREFIX = "INFO rustc_codegen_ssa::back::link "


# ── ar archives ──────────────────────────────────────────────────────────────

def _ar_header(name_field: str, size: int) -> bytes:
    header = (
        name_field.ljust(16)
        + "0".ljust(12)
        + "0".ljust(6)
        + "0".ljust(6)
        + "644".ljust(8)
        + str(size).ljust(10)
    ).encode("ascii") + b"`\n"
    assert len(header) == 60
    return header


def _ar_member(name_field: str, data: bytes) -> bytes:
    return _ar_header(name_field, len(data)) + data + (b"\n" if len(data) % 2 else b"")


def make_ar(
    members: Sequence[Tuple[str, bytes]],
    symbols: Optional[Dict[str, List[str]]] = None,
) -> bytes:
    """
    Build a GNU ar archive.

    Names longer than 15 characters go to the ``//`` table.  When
    *symbols* is given, a ``/`` symbol index is written mapping each
    listed symbol to its member.
    """
    longnames = b""
    name_fields = []
    for name, _ in members:
        if len(name) > 15:
            name_fields.append(f"/{len(longnames)}")
            longnames += name.encode("utf-8") + b"/\n"
        else:
            name_fields.append(name + "/")

    table = _ar_member("//", longnames) if longnames else b""
    chunks = [_ar_member(nf, data) for nf, (_, data) in zip(name_fields, members)]

    index = b""
    if symbols is not None:
        entries = [(i, s) for i, (name, _) in enumerate(members) for s in symbols.get(name, [])]
        size = 4 + 4 * len(entries) + sum(len(s) + 1 for _, s in entries)
        pos = 8 + 60 + size + (size % 2) + len(table)
        offsets = []
        for chunk in chunks:
            offsets.append(pos)
            pos += len(chunk)
        blob = struct.pack(">I", len(entries))
        blob += b"".join(struct.pack(">I", offsets[i]) for i, _ in entries)
        blob += b"".join(s.encode("utf-8") + b"\0" for _, s in entries)
        index = _ar_member("/", blob)

    return b"!<arch>\n" + index + table + b"".join(chunks)


# ── Fake tools ───────────────────────────────────────────────────────────────

FAKE_OPT = textwrap.dedent("""\
    #!/bin/sh
    echo "opt $*" >> "{log}"
    out=""; src=""
    while [ $# -gt 0 ]; do
      case "$1" in
        -o) out="$2"; shift 2; continue;;
        -load) shift 2; continue;;
        -*) ;;
        *) src="$1";;
      esac
      shift
    done
    if grep -q FAIL_OPT "$src"; then
      echo "error: opt crashed on $src" >&2
      exit 1
    fi
    cat "$src" > "$out"
    echo "; instrumented" >> "$out"
""")

FAKE_LLC = textwrap.dedent("""\
    #!/bin/sh
    echo "llc $*" >> "{log}"
    out=""; src=""
    while [ $# -gt 0 ]; do
      case "$1" in
        -o) out="$2"; shift 2; continue;;
        -*) ;;
        *) src="$1";;
      esac
      shift
    done
    if grep -q FAIL_LLC "$src"; then
      echo "LLVM ERROR: cannot select" >&2
      exit 1
    fi
    printf 'OBJ\\n' > "$out"
    cat "$src" >> "$out"
""")

FAKE_LINKER = textwrap.dedent("""\
    #!/bin/sh
    echo "ld $*" >> "{log}"
    out=""; inputs=""
    while [ $# -gt 0 ]; do
      case "$1" in
        -o) out="$2"; shift 2; continue;;
        -lfail) echo "ld: cannot find -lfail" >&2; exit 1;;
        *.o|*.rlib|*.a)
          if [ ! -f "$1" ]; then echo "ld: $1: No such file or directory" >&2; exit 1; fi
          inputs="$inputs
    $1";;
      esac
      shift
    done
    printf 'LINKED%s\\n' "$inputs" > "$out"
""")


def write_script(path: Path, body: str) -> Path:
    path.write_text(body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@dataclass
class FakeTools:
    opt: Path
    llc: Path
    linker: Path
    log: Path

    def calls(self, tool: Optional[str] = None) -> List[str]:
        if not self.log.is_file():
            return []
        lines = self.log.read_text().splitlines()
        if tool is None:
            return lines
        return [line for line in lines if line.startswith(tool + " ")]

    @property
    def toolchain(self) -> Toolchain:
        return Toolchain(opt=str(self.opt), llc=str(self.llc), llvm_version="15.0.0")


@pytest.fixture
def fake_tools(tmp_path) -> FakeTools:
    bin_dir = tmp_path / "fakebin"
    bin_dir.mkdir()
    log = tmp_path / "tool_calls.log"
    return FakeTools(
        opt=write_script(bin_dir / "opt", FAKE_OPT.format(log=log)),
        llc=write_script(bin_dir / "llc", FAKE_LLC.format(log=log)),
        linker=write_script(bin_dir / "cc", FAKE_LINKER.format(log=log)),
        log=log,
    )


@pytest.fixture
def library(tmp_path) -> InstrumentationLibraryRef:
    lib_dir = tmp_path / "lib"
    lib_dir.mkdir()
    release = lib_dir / "libCompilerInterrupt.so"
    debug = lib_dir / "libCompilerInterruptDebug.so"
    release.write_bytes(b"release library")
    debug.write_bytes(b"debug library")
    return InstrumentationLibraryRef(release_path=release, debug_path=debug)


@pytest.fixture
def config() -> IntegrationConfig:
    return IntegrationConfig(concurrency=4)


# ── Synthetic build tree ─────────────────────────────────────────────────────

class BuildTree:
    """A ``target/debug`` tree shaped like rustc's ``-Csave-temps`` output."""

    def __init__(self, root: Path, linker: Path):
        self.target_dir = root / "target"
        self.build_dir = self.target_dir / "debug"
        self.deps = self.build_dir / "deps"
        self.examples = self.build_dir / "examples"
        self.deps.mkdir(parents=True)
        self.examples.mkdir()
        self.linker = linker
        self.lines: List[str] = []

    @property
    def ci_dir(self) -> Path:
        return self.target_dir / "debug-ci"

    def add_unit(
        self,
        crate: str,
        crate_hash: str,
        index: int = 0,
        ir: str = "define void @f() {\n  ret void\n}\n",
        obj: Optional[bytes] = None,
        directory: Optional[Path] = None,
    ) -> Tuple[Path, Path]:
        d = directory or self.deps
        stem = f"{crate}-{crate_hash}.{crate}.{crate_hash}{index:02d}-cgu.{index}.rcgu"
        ll = d / f"{stem}.ll"
        o = d / f"{stem}.o"
        ll.write_text(ir)
        o.write_bytes(obj if obj is not None else f"ORIGINAL {stem}\n".encode())
        return ll, o

    def add_rlib(
        self,
        crate: str,
        crate_hash: str,
        objects: Sequence[Path],
        with_index: bool = True,
    ) -> Path:
        members = [(o.name, o.read_bytes()) for o in objects]
        members.append(("lib.rmeta", b"rust metadata\x00\x01\x02"))
        path = self.deps / f"lib{crate}-{crate_hash}.rlib"
        path.write_bytes(make_ar(members, symbols={} if with_index else None))
        return path

    def add_link(
        self,
        target: str,
        target_hash: str,
        objects: Sequence[Path] = (),
        archives: Sequence[Path] = (),
        extra: Sequence[str] = (),
        directory: Optional[Path] = None,
    ) -> Path:
        out = (directory or self.deps) / f"{target}-{target_hash}"
        args = [
            str(self.linker), "-m64",
            *map(str, objects),
            "-L", str(self.deps),
            *map(str, archives),
            *extra,
            "-o", str(out),
        ]
        self.lines.append(LINK_PREFIX + " ".join(f'"{a}"' for a in args))
        return out

    @property
    def link_text(self) -> str:
        return "\n".join([
            "   Compiling util v0.1.0 (/src/util)",
            *self.lines,
            "    Finished dev [unoptimized + debuginfo] target(s) in 1.02s",
        ])


@pytest.fixture
def tree(tmp_path, fake_tools) -> BuildTree:
    return BuildTree(tmp_path / "pkg", fake_tools.linker)


@pytest.fixture
def two_target_tree(tree) -> BuildTree:
    """
    Package with a shared library crate and two binaries:

      util  (lib, 2 units)   → libutil-0a0a.rlib
      app   (bin, 2 units)   links util
      tool  (bin, 1 unit)    links nothing else
    """
    u0 = tree.add_unit("util", "0a0a", 0)
    u1 = tree.add_unit("util", "0a0a", 1)
    rlib = tree.add_rlib("util", "0a0a", [u0[1], u1[1]])
    a0 = tree.add_unit("app", "1b1b", 0)
    a1 = tree.add_unit("app", "1b1b", 1)
    t0 = tree.add_unit("tool", "2c2c", 0)
    tree.add_link("app", "1b1b", objects=[a0[1], a1[1]], archives=[rlib])
    tree.add_link("tool", "2c2c", objects=[t0[1]])
    return tree


# ── gcc / ELF objects ────────────────────────────────────────────────────────

def _gcc_produces_elf() -> bool:
    if shutil.which("gcc") is None:
        return False
    with tempfile.TemporaryDirectory() as tmpdir:
        src = Path(tmpdir) / "check.c"
        src.write_text("int check(void) { return 0; }\n")
        out = Path(tmpdir) / "check.o"
        proc = subprocess.run(["gcc", "-c", str(src), "-o", str(out)], capture_output=True, timeout=30)
        return proc.returncode == 0 and out.is_file() and out.read_bytes()[:4] == b"\x7fELF"


@pytest.fixture(scope="session")
def gcc_ok():
    """Skip tests if gcc is not available or doesn't produce ELF objects."""
    if not _gcc_produces_elf():
        pytest.skip("gcc producing ELF objects is required for this test")


def compile_object(source: str, output: Path) -> Path:
    """Compile C source to an ELF relocatable object with gcc."""
    src = output.with_suffix(".c")
    src.write_text(source)
    subprocess.run(["gcc", "-c", "-O0", str(src), "-o", str(output)], check=True, capture_output=True, timeout=30)
    return output


ALLOCATOR_SHIM_C = textwrap.dedent("""\
    void *__rust_alloc(unsigned long size, unsigned long align) { return 0; }
    void __rust_dealloc(void *p, unsigned long size, unsigned long align) {}
""")

RUNTIME_CRATE_C = textwrap.dedent("""\
    void intvActionHook(long ic) {}
""")

PLAIN_C = textwrap.dedent("""\
    int helper_value = 7;
    static int hidden(int x) { return x + helper_value; }
    int exported_add(int a, int b) { return hidden(a) + b; }
    extern int undefined_elsewhere(void);
    int calls_out(void) { return undefined_elsewhere(); }
""")
