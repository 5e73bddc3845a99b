"""
Patcher — splice instrumented objects into working copies of archives.

The original archive is never modified.  For each referenced archive the
patcher writes ``<archives_dir>/<archive name>`` with every member whose
unit was instrumented replaced by the instrumented object.  An archive is
patched at most once per run, even when several targets link against it;
later callers get the cached ``PatchedArchive``.

Archives that contain nothing to replace (the standard library, native
static libraries) are not copied; the link step keeps the original path.
"""
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from build_ci.core.archive import Archive
from build_ci.core.catalog import CompilationUnit
from build_ci.core.link_parser import LinkInvocation
from build_ci.core.symbols import is_allocator_shim
from build_ci.errors import ArchiveMemberMissingError, IntegrationError
from build_ci.policy.profile import IntegrationProfile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PatchedArchive:
    original_path: Path
    patched_path: Path
    replaced_members: Tuple[str, ...] = ()

    @property
    def modified(self) -> bool:
        return self.patched_path != self.original_path


def archive_crate_id(path: Union[str, Path]) -> Optional[str]:
    """``libfoo_bar-1a2b.rlib`` → ``foo_bar-1a2b``; None for other names."""
    name = Path(path).name
    if not (name.startswith("lib") and name.endswith(".rlib")):
        return None
    return name[len("lib"):-len(".rlib")]


def find_allocator_shim(objects: Iterable[Path], allocator_symbols: Sequence[str]) -> Optional[Path]:
    """Return the first object in *objects* that defines an allocator symbol."""
    for obj in objects:
        if obj.is_file() and is_allocator_shim(obj, allocator_symbols):
            logger.debug("found allocator shim: %s", obj)
            return obj
    return None


def resolve_allocator_shim(
    invocation: LinkInvocation,
    profile: IntegrationProfile,
    known_shims: Iterable[Path] = (),
) -> LinkInvocation:
    """Return a copy of *invocation* with ``allocator_shim`` filled in."""
    shims = set(known_shims)
    shim = next((o for o in invocation.objects if o in shims), None)
    if shim is None:
        shim = find_allocator_shim(invocation.objects, profile.allocator_symbols)
    return replace(invocation, allocator_shim=shim)


def units_in_archive(archive_path: Path, units: Iterable[CompilationUnit]) -> List[CompilationUnit]:
    """
    Return the units among *units* whose object file is a member of *archive_path*.

    Units of the archive's crate that are not members are codegen units
    left over from an earlier build (the crate now has fewer of them)
    and are skipped when their object is older than the archive.  A
    non-member written after the archive means the archive is out of
    date, and ``ArchiveMemberMissingError`` is raised.
    """
    archive_path = Path(archive_path)
    owner = archive_crate_id(archive_path)
    candidates = [u for u in units if owner is not None and u.crate_id == owner]
    if not candidates:
        return []

    members: Set[str] = set(Archive.read(archive_path).member_names())
    archive_mtime = archive_path.stat().st_mtime_ns
    selected = []
    for unit in candidates:
        if unit.object_name in members:
            selected.append(unit)
        elif unit.object_path.stat().st_mtime_ns > archive_mtime:
            raise ArchiveMemberMissingError(archive_path, unit.object_name)
        else:
            logger.info("stale codegen unit %s is not in %s, ignored", unit.unit_id, archive_path.name)
    return selected


class ArchivePatcher:
    """Thread-safe, once-per-run archive patching keyed by archive path."""

    def __init__(self, archives_dir: Path, profile: Optional[IntegrationProfile] = None):
        self.archives_dir = Path(archives_dir)
        self.profile = profile or IntegrationProfile.v1()
        self._table_lock = threading.Lock()
        self._locks: Dict[Path, threading.Lock] = {}
        self._done: Dict[Path, PatchedArchive] = {}
        self._failed: Dict[Path, IntegrationError] = {}

    def _lock_for(self, path: Path) -> threading.Lock:
        with self._table_lock:
            lock = self._locks.get(path)
            if lock is None:
                lock = self._locks[path] = threading.Lock()
            return lock

    def patch(self, archive_path: Path, units: Sequence[CompilationUnit]) -> PatchedArchive:
        """
        Patch *archive_path* with every replaced unit among *units*.

        Every unit of the crate that owns the archive must be a member of
        it; ``units_in_archive`` selects them.  Otherwise
        ``ArchiveMemberMissingError`` is raised.  A failure is
        remembered and re-raised for every later caller of the same path.
        """
        archive_path = Path(archive_path)
        with self._lock_for(archive_path):
            if archive_path in self._done:
                return self._done[archive_path]
            if archive_path in self._failed:
                raise self._failed[archive_path]
            try:
                result = self._patch(archive_path, units)
            except IntegrationError as e:
                self._failed[archive_path] = e
                raise
            self._done[archive_path] = result
            return result

    def _patch(self, archive_path: Path, units: Sequence[CompilationUnit]) -> PatchedArchive:
        owner = archive_crate_id(archive_path)
        owned = [u for u in units if owner is not None and u.crate_id == owner]
        if not owned:
            logger.debug("no catalogued units in %s, left untouched", archive_path.name)
            return PatchedArchive(archive_path, archive_path)

        archive = Archive.read(archive_path)
        members = set(archive.member_names())
        for unit in owned:
            if unit.object_name not in members:
                raise ArchiveMemberMissingError(archive_path, unit.object_name)

        replacements: Dict[str, bytes] = {}
        for unit in owned:
            if unit.replaced:
                replacements[unit.object_name] = unit.instrumented_path.read_bytes()
        if not replacements:
            logger.debug("every unit of %s is excluded, left untouched", archive_path.name)
            return PatchedArchive(archive_path, archive_path)

        data = archive.rewrite(replacements)
        out = self.archives_dir / archive_path.name
        _atomic_write(out, data)
        logger.info("patched %s: %d member(s) replaced", archive_path.name, len(replacements))
        return PatchedArchive(archive_path, out, tuple(sorted(replacements)))


def _atomic_write(path: Path, data: bytes) -> None:
    """Write *data* to *path* through a temp file in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
