"""
Archive — read and rewrite GNU/SysV ``ar`` archives (rlibs, static libs).

Layout:

    "!<arch>\\n"
    repeated:  60-byte header | data | "\\n" pad to even offset

    header:  name[16] date[12] uid[6] gid[6] mode[8] size[10] "`\\n"

Special members: ``/`` (32-bit symbol index), ``/SYM64/`` (64-bit symbol
index), ``//`` (long-name table; ``/123`` names refer into it).

Rewriting never re-encodes a member it does not replace: headers, data
and padding of untouched members are copied as raw byte slices, and the
long-name table is kept as is.  Only the replaced member's size field
and the symbol index (if the archive has one) are regenerated.

Thin archives and BSD-style names (``#1/<len>``) are not supported.
"""
import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from build_ci.core.symbols import defined_global_symbols
from build_ci.errors import ArchiveFormatError, ArchiveMemberMissingError

logger = logging.getLogger(__name__)

GLOBAL_MAGIC = b"!<arch>\n"
THIN_MAGIC = b"!<thin>\n"
HEADER_SIZE = 60
HEADER_MAGIC = b"`\n"

SYMTAB_NAME = "/"
SYMTAB64_NAME = "/SYM64/"
LONGNAMES_NAME = "//"

_SIZE_FIELD = slice(48, 58)


@dataclass(frozen=True)
class ArchiveMember:
    """One member of an archive, addressed by byte offsets into the file."""

    archive_path: Path
    name: str
    header_offset: int
    data_offset: int
    size: int
    header: bytes

    @property
    def is_symbol_index(self) -> bool:
        return self.name in (SYMTAB_NAME, SYMTAB64_NAME)

    @property
    def is_special(self) -> bool:
        return self.is_symbol_index or self.name == LONGNAMES_NAME

    @property
    def end_offset(self) -> int:
        """Offset just past this member's data and padding."""
        return self.data_offset + self.size + (self.size & 1)


class Archive:
    """An archive loaded into memory."""

    def __init__(self, path: Path, data: bytes, members: List[ArchiveMember]):
        self.path = path
        self.data = data
        self.members = members

    @classmethod
    def read(cls, path: Path) -> "Archive":
        path = Path(path)
        return cls.parse(path, path.read_bytes())

    @classmethod
    def parse(cls, path: Path, data: bytes) -> "Archive":
        if data.startswith(THIN_MAGIC):
            raise ArchiveFormatError(path, "thin archives are not supported")
        if not data.startswith(GLOBAL_MAGIC):
            raise ArchiveFormatError(path, "missing !<arch> magic")

        members: List[ArchiveMember] = []
        longnames: Optional[bytes] = None
        offset = len(GLOBAL_MAGIC)
        while offset < len(data):
            # a trailing pad byte after the last member is tolerated
            if len(data) - offset == 1 and data[offset:] == b"\n":
                break
            header = data[offset:offset + HEADER_SIZE]
            if len(header) < HEADER_SIZE or header[58:60] != HEADER_MAGIC:
                raise ArchiveFormatError(path, f"bad member header at offset {offset}")
            try:
                size = int(header[_SIZE_FIELD].decode("ascii").strip())
            except ValueError:
                raise ArchiveFormatError(path, f"bad size field at offset {offset}")
            data_offset = offset + HEADER_SIZE
            if data_offset + size > len(data):
                raise ArchiveFormatError(path, f"member at offset {offset} is truncated")

            raw_name = header[:16].decode("ascii", errors="replace").rstrip(" ")
            name = _resolve_name(path, raw_name, longnames, offset)
            member = ArchiveMember(
                archive_path=path,
                name=name,
                header_offset=offset,
                data_offset=data_offset,
                size=size,
                header=header,
            )
            if name == LONGNAMES_NAME:
                longnames = data[data_offset:data_offset + size]
            members.append(member)
            offset = member.end_offset

        return cls(path, data, members)

    # ── accessors ────────────────────────────────────────────────────

    def member_bytes(self, member: ArchiveMember) -> bytes:
        return self.data[member.data_offset:member.data_offset + member.size]

    def regular_members(self) -> List[ArchiveMember]:
        return [m for m in self.members if not m.is_special]

    def member_names(self) -> List[str]:
        return [m.name for m in self.regular_members()]

    def find(self, name: str) -> Optional[ArchiveMember]:
        for m in self.members:
            if m.name == name and not m.is_special:
                return m
        return None

    @property
    def symbol_index_member(self) -> Optional[ArchiveMember]:
        for m in self.members:
            if m.is_symbol_index:
                return m
        return None

    def symbol_index(self) -> List[Tuple[str, str]]:
        """Decode the symbol index into ``(symbol, member name)`` pairs."""
        idx = self.symbol_index_member
        if idx is None:
            return []
        blob = self.member_bytes(idx)
        width, fmt = (8, ">Q") if idx.name == SYMTAB64_NAME else (4, ">I")
        (count,) = struct.unpack(fmt, blob[:width])
        offsets = [
            struct.unpack(fmt, blob[width + i * width: width + (i + 1) * width])[0]
            for i in range(count)
        ]
        names = blob[width + count * width:].split(b"\0")
        by_offset = {m.header_offset: m.name for m in self.members}
        return [
            (names[i].decode("utf-8", errors="replace"), by_offset.get(offsets[i], "?"))
            for i in range(count)
        ]

    # ── rewriting ────────────────────────────────────────────────────

    def rewrite(self, replacements: Dict[str, bytes]) -> bytes:
        """
        Return the archive bytes with each named member's data replaced.

        Every member not named in *replacements* is copied verbatim, in
        its original position.  Raises ``ArchiveMemberMissingError`` if a
        name in *replacements* is not a member of this archive.
        """
        for name in replacements:
            if self.find(name) is None:
                raise ArchiveMemberMissingError(self.path, name)

        names = [m.name for m in self.regular_members()]
        for name in replacements:
            if names.count(name) > 1:
                logger.warning("%s has %d members named %s; replacing the first",
                               self.path.name, names.count(name), name)

        # Encode every non-index member; remember which ones are replaced.
        pending = dict(replacements)
        chunks: List[Tuple[Optional[ArchiveMember], bytes, bytes]] = []
        for m in self.members:
            if m.is_symbol_index:
                continue
            if m.name in pending and not m.is_special:
                new_data = pending.pop(m.name)
                header = _with_size(self.path, m.header, len(new_data))
                chunks.append((m, header + new_data + _pad(new_data), new_data))
            else:
                raw = self.data[m.header_offset:m.end_offset]
                if m.end_offset > len(self.data):
                    # last member with odd size and no trailing pad byte
                    raw = self.data[m.header_offset:] + b"\n"
                chunks.append((m, raw, self.member_bytes(m)))

        index_member = self.symbol_index_member
        if index_member is None:
            body = b"".join(raw for _, raw, _ in chunks)
            return GLOBAL_MAGIC + body

        # Symbol index: offsets depend on the index's own size, which
        # depends only on symbol names, so compute names first.
        entries: List[Tuple[int, str]] = []  # (chunk position, symbol)
        for pos, (m, _, member_data) in enumerate(chunks):
            if m is not None and m.is_special:
                continue
            for sym in defined_global_symbols(member_data):
                entries.append((pos, sym))

        use64 = index_member.name == SYMTAB64_NAME
        index_size = _index_size(entries, use64)
        if not use64 and len(self.data) + index_size > 0xFFFFFFFF:
            use64 = True
            index_size = _index_size(entries, use64)

        start = len(GLOBAL_MAGIC) + HEADER_SIZE + index_size + (index_size & 1)
        chunk_offsets = []
        for _, raw, _ in chunks:
            chunk_offsets.append(start)
            start += len(raw)

        width, fmt = (8, ">Q") if use64 else (4, ">I")
        blob = struct.pack(fmt, len(entries))
        blob += b"".join(struct.pack(fmt, chunk_offsets[pos]) for pos, _ in entries)
        blob += b"".join(sym.encode("utf-8") + b"\0" for _, sym in entries)

        index_name = SYMTAB64_NAME if use64 else SYMTAB_NAME
        index_header = _with_size(
            self.path,
            index_name.encode("ascii").ljust(16) + index_member.header[16:],
            len(blob),
        )
        logger.debug("regenerated symbol index of %s: %d symbol(s)", self.path.name, len(entries))
        return (
            GLOBAL_MAGIC
            + index_header + blob + _pad(blob)
            + b"".join(raw for _, raw, _ in chunks)
        )


def _resolve_name(path: Path, raw: str, longnames: Optional[bytes], offset: int) -> str:
    if raw in (SYMTAB_NAME, SYMTAB64_NAME, LONGNAMES_NAME):
        return raw
    if raw.startswith("#1/"):
        raise ArchiveFormatError(path, "BSD-style archives are not supported")
    if raw.startswith("/") and raw[1:].isdigit():
        if longnames is None:
            raise ArchiveFormatError(path, f"long name at offset {offset} without a // table")
        start = int(raw[1:])
        end = longnames.find(b"\n", start)
        if end < 0:
            end = len(longnames)
        return longnames[start:end].decode("utf-8", errors="replace").rstrip("/")
    return raw.rstrip("/")


def _with_size(path: Path, header: bytes, size: int) -> bytes:
    field = str(size).encode("ascii")
    if len(field) > 10:
        raise ArchiveFormatError(path, f"member too large ({size} bytes)")
    return header[:48] + field.ljust(10) + header[58:]


def _pad(data: bytes) -> bytes:
    return b"\n" if len(data) & 1 else b""


def _index_size(entries: List[Tuple[int, str]], use64: bool) -> int:
    width = 8 if use64 else 4
    return width + width * len(entries) + sum(len(sym.encode("utf-8")) + 1 for _, sym in entries)
