"""
Configuration for build_ci.

``Settings`` loads user-facing knobs from ``BUILD_CI_*`` environment
variables (or a ``.env`` file).  The core never reads ``Settings``
directly; it receives the frozen value objects built from it:

  IntegrationConfig          — concurrency, exclusions, library variant, verbosity
  InstrumentationLibraryRef  — resolved library paths and ABI symbol names
"""
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import FrozenSet, List, Optional, Tuple

from pydantic_settings import BaseSettings

from build_ci.errors import LibraryNotInstalledError


class LibraryVariant(str, Enum):
    """Which build of the instrumentation library ``opt`` loads."""
    RELEASE = "release"
    DEBUG = "debug"


def normalize_crate_name(name: str) -> str:
    """Cargo package names use ``-``; crate names on disk use ``_``."""
    return name.strip().replace("-", "_")


@dataclass(frozen=True)
class IntegrationConfig:
    """Validated run configuration consumed by the core."""

    concurrency: int
    exclude_crates: FrozenSet[str] = frozenset()
    library_variant: LibraryVariant = LibraryVariant.RELEASE
    verbosity: int = 0

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")
        object.__setattr__(
            self,
            "exclude_crates",
            frozenset(normalize_crate_name(c) for c in self.exclude_crates if c.strip()),
        )

    @property
    def debug_ci(self) -> bool:
        """Debug mode: debug library, full tool output written to log files."""
        return self.library_variant == LibraryVariant.DEBUG

    def is_excluded(self, crate_name: str) -> bool:
        return normalize_crate_name(crate_name) in self.exclude_crates


@dataclass(frozen=True)
class InstrumentationLibraryRef:
    """Resolved instrumentation runtime, as handed over by the library manager."""

    release_path: Path
    debug_path: Path
    abi_symbols: Tuple[str, ...] = ("intvActionHook",)
    pass_args: Tuple[str, ...] = ("-logicalclock",)

    def path_for(self, variant: LibraryVariant) -> Path:
        return self.debug_path if variant == LibraryVariant.DEBUG else self.release_path

    def ensure_installed(self, variant: LibraryVariant) -> Path:
        """Return the library path for *variant*, or raise if it is missing."""
        path = self.path_for(variant)
        if not path.is_file():
            raise LibraryNotInstalledError(path)
        return path


class Settings(BaseSettings):
    """build_ci settings"""

    # Integration
    CONCURRENCY: int = os.cpu_count() or 4
    SKIP_CRATES: List[str] = []
    DEBUG_CI: bool = False
    VERBOSE: int = 0

    # Cargo build
    RELEASE: bool = False
    TARGET: Optional[str] = None
    EXAMPLE: Optional[str] = None
    TESTS: bool = False
    TARGET_DIR: Optional[str] = None

    # Instrumentation library
    LIBRARY_PATH: str = "~/.local/share/compiler-interrupts/libCompilerInterrupt.so"
    LIBRARY_DEBUG_PATH: str = "~/.local/share/compiler-interrupts/libCompilerInterruptDebug.so"
    LIBRARY_ARGS: List[str] = []
    ABI_SYMBOLS: List[str] = ["intvActionHook"]

    def integration_config(self) -> IntegrationConfig:
        return IntegrationConfig(
            concurrency=max(1, self.CONCURRENCY),
            exclude_crates=frozenset(self.SKIP_CRATES),
            library_variant=LibraryVariant.DEBUG if self.DEBUG_CI else LibraryVariant.RELEASE,
            verbosity=self.VERBOSE,
        )

    def library_ref(self) -> InstrumentationLibraryRef:
        return InstrumentationLibraryRef(
            release_path=Path(self.LIBRARY_PATH).expanduser(),
            debug_path=Path(self.LIBRARY_DEBUG_PATH).expanduser(),
            abi_symbols=tuple(self.ABI_SYMBOLS),
            pass_args=("-logicalclock", *self.LIBRARY_ARGS),
        )

    class Config:
        env_prefix = "BUILD_CI_"
        env_file = ".env"
        case_sensitive = True
