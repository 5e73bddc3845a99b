"""
Artifact catalog — index every codegen unit left behind by a build.

rustc with ``--emit=llvm-ir -Csave-temps`` leaves one IR file and one
object file per codegen unit next to the crate's other outputs:

    deps/<crate>-<hash>.<cgu-name>.rcgu.ll
    deps/<crate>-<hash>.<cgu-name>.rcgu.o

The object file name is also the member name inside the crate's rlib.

This module only reads the directory.  Exclusion and instrumentation
state is filled in later by the instrumentation runner.
"""
import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from build_ci.core.symbols import is_allocator_shim
from build_ci.errors import InconsistentBuildError
from build_ci.policy.profile import IntegrationProfile

logger = logging.getLogger(__name__)


@dataclass
class CompilationUnit:
    """One codegen unit: its IR, its object and (once produced) its instrumented object."""

    crate_name: str
    crate_hash: str
    cgu_name: str
    unit_index: int
    ir_path: Path
    object_path: Path
    instrumented_path: Optional[Path] = None
    excluded: bool = False
    exclusion_reason: Optional[str] = None

    @property
    def crate_id(self) -> str:
        """``<crate>-<hash>``; distinguishes a bin and a lib of the same package."""
        return f"{self.crate_name}-{self.crate_hash}"

    @property
    def unit_id(self) -> str:
        return f"{self.crate_id}.{self.cgu_name}"

    @property
    def object_name(self) -> str:
        """Name of this unit's member inside the crate's archive."""
        return self.object_path.name

    @property
    def resolved(self) -> bool:
        return self.instrumented_path is not None

    @property
    def replaced(self) -> bool:
        """True if the linked binary should use different bytes than the original object."""
        return self.instrumented_path is not None and self.instrumented_path != self.object_path


@dataclass
class ArtifactCatalog:
    """Result of a scan: paired units plus anything that failed to pair."""

    build_dir: Path
    units: List[CompilationUnit] = field(default_factory=list)
    orphans: List[Path] = field(default_factory=list)
    allocator_shims: List[Path] = field(default_factory=list)

    def require_consistent(self) -> None:
        """Raise if any IR file lacks its object file or vice versa."""
        if self.orphans:
            raise InconsistentBuildError(self.orphans)

    def orphaned_crate_ids(self) -> Set[str]:
        ids = set()
        for path in self.orphans:
            parsed = parse_unit_name(path.name)
            if parsed is not None:
                ids.add(f"{parsed['crate']}-{parsed['hash']}")
        return ids

    def by_object_path(self) -> Dict[Path, CompilationUnit]:
        return {u.object_path: u for u in self.units}


_UNIT_NAME = re.compile(
    r"^(?P<crate>[A-Za-z0-9_]+)-(?P<hash>[0-9a-f]+)\."
    r"(?P<cgu>.+)\.(?P<marker>[a-z]+)\.(?P<ext>[A-Za-z]+)$"
)
_TRAILING_INDEX = re.compile(r"(\d+)$")


def parse_unit_name(file_name: str, marker: str = "rcgu") -> Optional[Dict[str, str]]:
    """
    Split a codegen-unit file name into crate, hash, cgu and extension.

    >>> parse_unit_name("serde-1a2b.serde.3c4d-cgu.07.rcgu.o")["cgu"]
    'serde.3c4d-cgu.07'
    """
    m = _UNIT_NAME.match(file_name)
    if m is None or m.group("marker") != marker:
        return None
    return m.groupdict()


def crate_name_from_path(path) -> str:
    """Crate name of a build output: ``deps/foo_bar-1a2b3c`` → ``foo_bar``."""
    stem = Path(path).name
    if stem.startswith("lib") and stem.endswith((".rlib", ".a")):
        stem = stem[3:]
    return stem.split(".")[0].split("-")[0]


def _unit_index(cgu_name: str) -> int:
    m = _TRAILING_INDEX.search(cgu_name)
    return int(m.group(1)) if m else 0


def _iter_candidates(directories: Iterable[Path]) -> Iterable[Path]:
    for directory in directories:
        if not directory.is_dir():
            logger.debug("skipping missing directory: %s", directory)
            continue
        logger.debug("scanning directory: %s", directory)
        for path in sorted(directory.iterdir()):
            if path.is_file():
                yield path


def scan_artifacts(
    build_dir: Path,
    profile: Optional[IntegrationProfile] = None,
) -> ArtifactCatalog:
    """
    Scan ``build_dir`` (``target/[<triple>/]<mode>``) for codegen units.

    Returns an ``ArtifactCatalog`` whose units are ordered by
    (crate, hash, unit index, cgu name).  IR files without an object and
    objects without IR are collected in ``catalog.orphans``, except the
    allocator shim, which rustc emits as an object only.
    """
    if profile is None:
        profile = IntegrationProfile.v1()

    build_dir = Path(build_dir)
    directories = [build_dir / sub for sub in profile.scan_subdirs]

    # (crate, hash, cgu, directory) -> {"ll": path, "o": path}
    groups: Dict[tuple, Dict[str, Path]] = defaultdict(dict)
    for path in _iter_candidates(directories):
        parsed = parse_unit_name(path.name, profile.unit_marker)
        if parsed is None:
            continue
        ext = parsed["ext"]
        if ext not in (profile.ir_extension, profile.object_extension):
            continue
        key = (parsed["crate"], parsed["hash"], parsed["cgu"], path.parent)
        groups[key][ext] = path

    catalog = ArtifactCatalog(build_dir=build_dir)
    for (crate, crate_hash, cgu, _), files in groups.items():
        ir = files.get(profile.ir_extension)
        obj = files.get(profile.object_extension)
        if ir is not None and obj is not None:
            catalog.units.append(CompilationUnit(
                crate_name=crate,
                crate_hash=crate_hash,
                cgu_name=cgu,
                unit_index=_unit_index(cgu),
                ir_path=ir,
                object_path=obj,
            ))
        elif obj is not None and is_allocator_shim(obj, profile.allocator_symbols):
            logger.debug("found allocator shim: %s", obj)
            catalog.allocator_shims.append(obj)
        else:
            orphan = ir if ir is not None else obj
            logger.warning("unpaired codegen unit file: %s", orphan)
            catalog.orphans.append(orphan)

    catalog.units.sort(key=lambda u: (u.crate_name, u.crate_hash, u.unit_index, u.cgu_name))
    catalog.orphans.sort()
    catalog.allocator_shims.sort()

    logger.info(
        "catalogued %d unit(s) in %d crate(s), %d orphan(s)",
        len(catalog.units),
        len({u.crate_id for u in catalog.units}),
        len(catalog.orphans),
    )
    return catalog
