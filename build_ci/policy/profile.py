"""
Profile — naming conventions, matcher rules and tool flags.

The profile encapsulates every convention the integration relies on
(compiler file naming, linker-log shape, allocator symbols, codegen
flags) so that core logic contains no hard-coded opinions.  Adapting to
a new rustc log format or LLVM release is a profile change, not a code
change.
"""
import re
import sys
from dataclasses import dataclass, field
from typing import Optional, Tuple


@dataclass(frozen=True)
class LinkLineMatcher:
    """Recognises linker-invocation lines in captured build diagnostics.

    A line matches when ``marker`` is found in it; everything after the
    marker (including any ``::link_natively``-style span suffix) is the
    command.  Leading ``NAME=value`` environment tokens and
    ``label_tokens`` are dropped before the linker program.
    """

    marker: str = r"\brustc_codegen_ssa::back::link\S*"
    label_tokens: Tuple[str, ...] = ("linker:",)
    output_flag: str = "-o"
    input_suffixes: Tuple[str, ...] = (".o", ".rlib", ".a")
    archive_suffixes: Tuple[str, ...] = (".rlib", ".a")
    search_path_prefix: str = "-L"
    # libtest is linked only into `--test` harnesses
    test_harness_archive: str = r"^libtest-[0-9a-f]+\.rlib$"

    def command_text(self, line: str) -> Optional[str]:
        """Return the command portion of *line*, or None if it is not a link line."""
        m = re.search(self.marker, line)
        if m is None:
            return None
        return line[m.end():]

    def is_input(self, token: str) -> bool:
        return token.endswith(self.input_suffixes)

    def is_archive(self, token: str) -> bool:
        return token.endswith(self.archive_suffixes)

    def is_test_harness(self, archive: str) -> bool:
        return re.match(self.test_harness_archive, archive.rsplit("/", 1)[-1]) is not None


@dataclass(frozen=True)
class IntegrationProfile:
    """Everything the integration assumes about the toolchain."""

    # Identity
    profile_id: str

    # Codegen-unit naming: <crate>-<hash>.<cgu>.rcgu.{ll,o}
    unit_marker: str = "rcgu"
    ir_extension: str = "ll"
    object_extension: str = "o"
    scan_subdirs: Tuple[str, ...] = ("deps", "examples")

    # Output naming
    instrumented_suffix: str = "ci"

    # Symbols defined only by the compiler-generated allocator shim
    allocator_symbols: Tuple[str, ...] = (
        "__rust_alloc",
        "__rust_dealloc",
        "__rust_realloc",
        "__rust_alloc_zeroed",
        "__rg_alloc",
        "__rust_alloc_error_handler",
        "__rg_oom",
    )

    # External tools
    opt_args: Tuple[str, ...] = ("-S",)
    llc_args: Tuple[str, ...] = ("-filetype=obj",)
    min_llvm_version: int = 9

    # Build-tool capture
    link_log_target: str = "rustc_codegen_ssa::back::link"
    rustflags: Tuple[str, ...] = ()
    link_matcher: LinkLineMatcher = field(default_factory=LinkLineMatcher)

    @classmethod
    def v1(cls) -> "IntegrationProfile":
        """Profile for rustc + LLVM >= 9 producing ELF objects."""
        llc_args = ("-filetype=obj",)
        # `-code-model=large` fixes mismatched relocation symbols on Linux
        if sys.platform.startswith("linux"):
            llc_args += ("-code-model=large",)
        return cls(
            profile_id="cargo-rcgu-llvm-v1",
            llc_args=llc_args,
            rustflags=(
                "--emit=llvm-ir",
                "-Csave-temps",
                "-Cpasses=postdomtree",
                "-Cpasses=mem2reg",
                "-Cpasses=indvars",
                "-Cpasses=loop-simplify",
                "-Cpasses=branch-prob",
                "-Cpasses=scalar-evolution",
            ),
        )
