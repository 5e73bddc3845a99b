"""
Symbols — defined-symbol inspection for ELF objects.

Used for three decisions:
  - is this object the compiler-generated allocator shim?
  - does this object belong to the instrumentation runtime crate?
  - which symbols does an archive member export (archive symbol index)?

Objects that are not ELF (rlib metadata members, test fixtures) simply
define no symbols.
"""
import io
import logging
from pathlib import Path
from typing import Iterable, List, Union

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile
from elftools.elf.sections import SymbolTableSection

logger = logging.getLogger(__name__)

_EXPORTED_BINDS = ("STB_GLOBAL", "STB_WEAK", "STB_GNU_UNIQUE")


def defined_global_symbols(data: bytes) -> List[str]:
    """
    Return the names of global/weak symbols defined by the ELF object *data*,
    in symbol-table order.  Returns ``[]`` for anything that is not ELF.
    """
    if not data.startswith(b"\x7fELF"):
        return []
    try:
        elf = ELFFile(io.BytesIO(data))
        names: List[str] = []
        for section in elf.iter_sections():
            if not isinstance(section, SymbolTableSection) or section.name != ".symtab":
                continue
            for sym in section.iter_symbols():
                if not sym.name:
                    continue
                if sym["st_shndx"] == "SHN_UNDEF":
                    continue
                if sym["st_info"]["bind"] not in _EXPORTED_BINDS:
                    continue
                names.append(sym.name)
        return names
    except ELFError as e:
        logger.debug("not a readable ELF object: %s", e)
        return []


def read_defined_symbols(path: Union[str, Path]) -> List[str]:
    return defined_global_symbols(Path(path).read_bytes())


def defines_any(path: Union[str, Path], names: Iterable[str]) -> bool:
    """True if the object at *path* defines at least one of *names*."""
    wanted = set(names)
    if not wanted:
        return False
    return any(sym in wanted for sym in read_defined_symbols(path))


def is_allocator_shim(path: Union[str, Path], allocator_symbols: Iterable[str]) -> bool:
    return defines_any(path, allocator_symbols)
