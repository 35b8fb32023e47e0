from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from peprobe.cursor import ByteCursor
from peprobe.errors import err
from peprobe.headers import OptionalHeaderLayout
from peprobe.sections import SectionTable

logger = logging.getLogger(__name__)

IMPORT_DESCRIPTOR_SIZE = 20


@dataclass(frozen=True)
class ImportedFunction:
    name: Optional[str]
    ordinal: Optional[int]
    hint: Optional[int] = None

    @property
    def by_ordinal(self) -> bool:
        return self.name is None


@dataclass(frozen=True)
class ImportedDll:
    dll_name: str
    functions: Tuple[ImportedFunction, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dll": self.dll_name,
            "functions": [f.name for f in self.functions if f.name is not None],
            "ordinals": [f.ordinal for f in self.functions if f.ordinal is not None],
        }


class ImportTable:
    """Imported DLLs in descriptor order, with case-insensitive lookup."""

    def __init__(self, dlls: List[ImportedDll]) -> None:
        self.dlls: Tuple[ImportedDll, ...] = tuple(dlls)

    def __len__(self) -> int:
        return len(self.dlls)

    def __iter__(self):
        return iter(self.dlls)

    @property
    def number_of_functions(self) -> int:
        return sum(len(d.functions) for d in self.dlls)

    def imports(self, dll: str, function: Union[str, int, None] = None) -> bool:
        dll_key = dll.lower()
        func_key = function.lower() if isinstance(function, str) else function
        for d in self.dlls:
            if d.dll_name.lower() != dll_key:
                continue
            if function is None:
                return True
            for f in d.functions:
                if isinstance(func_key, str):
                    if f.name is not None and f.name.lower() == func_key:
                        return True
                elif f.ordinal is not None and f.ordinal == func_key:
                    return True
        return False


def parse_imports(
    cur: ByteCursor,
    *,
    layout: OptionalHeaderLayout,
    sections: SectionTable,
    import_rva: int,
    max_dlls: int = 256,
    max_funcs_per_dll: int = 4096,
    max_name_len: int = 512,
) -> Tuple[ImportTable, List[Dict[str, Any]]]:
    errors: List[Dict[str, Any]] = []
    dlls: List[ImportedDll] = []

    base_off = sections.rva_to_offset(import_rva)
    if base_off is None:
        return ImportTable([]), [
            err(
                "E_PE_IMPORT_RVA_UNMAPPABLE",
                "Import directory RVA could not be mapped to file offset.",
                import_rva=import_rva,
            )
        ]

    desc_off = base_off
    for dll_index in range(max_dlls + 1):
        if dll_index == max_dlls:
            errors.append(
                err(
                    "E_PE_IMPORT_TOO_MANY_DLLS",
                    f"Import DLL count exceeded max_dlls={max_dlls}.",
                    max_dlls=max_dlls,
                )
            )
            break

        desc = cur.read(desc_off, IMPORT_DESCRIPTOR_SIZE)
        if desc is None:
            errors.append(err("E_PE_IMPORT_DESC_TRUNCATED", "Import descriptor table truncated.", desc_off=desc_off))
            break
        if desc == b"\x00" * IMPORT_DESCRIPTOR_SIZE:
            break

        original_first_thunk = cur.u32(desc_off + 0)
        name_rva = cur.u32(desc_off + 12)
        first_thunk = cur.u32(desc_off + 16)
        desc_off += IMPORT_DESCRIPTOR_SIZE

        dll_name = cur.c_string(sections.rva_to_offset(name_rva), max_len=max_name_len)
        if not dll_name:
            errors.append(
                err(
                    "E_PE_IMPORT_DLL_NAME_UNREADABLE",
                    "Import DLL name could not be mapped or read.",
                    name_rva=name_rva,
                )
            )
            continue

        funcs, thunk_errs = _parse_thunks(
            cur,
            layout=layout,
            sections=sections,
            dll_name=dll_name,
            thunk_rva=original_first_thunk or first_thunk,
            max_funcs=max_funcs_per_dll,
            max_name_len=max_name_len,
        )
        errors.extend(thunk_errs)
        dlls.append(ImportedDll(dll_name=dll_name, functions=tuple(funcs)))

    return ImportTable(dlls), errors


def _parse_thunks(
    cur: ByteCursor,
    *,
    layout: OptionalHeaderLayout,
    sections: SectionTable,
    dll_name: str,
    thunk_rva: int,
    max_funcs: int,
    max_name_len: int,
) -> Tuple[List[ImportedFunction], List[Dict[str, Any]]]:
    errors: List[Dict[str, Any]] = []
    funcs: List[ImportedFunction] = []

    thunk_off = sections.rva_to_offset(thunk_rva)
    if thunk_off is None:
        return [], [
            err(
                "E_PE_IMPORT_THUNK_UNMAPPABLE",
                "Import thunk RVA could not be mapped.",
                thunk_rva=thunk_rva,
                dll=dll_name,
            )
        ]

    entry_size = layout.thunk_size
    read_thunk = cur.u64 if entry_size == 8 else cur.u32

    for idx in range(max_funcs + 1):
        if idx == max_funcs:
            errors.append(
                err(
                    "E_PE_IMPORT_TOO_MANY_FUNCTIONS",
                    f"Import function count exceeded max_funcs={max_funcs}.",
                    dll=dll_name,
                )
            )
            break

        val = read_thunk(thunk_off + idx * entry_size)
        if val is None:
            # Thunk array runs off the buffer: keep what was read for this DLL.
            errors.append(
                err(
                    "E_PE_IMPORT_THUNK_TRUNCATED",
                    "Import thunk table truncated.",
                    dll=dll_name,
                    thunk_off=thunk_off,
                )
            )
            break
        if val == 0:
            break

        if val & layout.ordinal_flag:
            funcs.append(ImportedFunction(name=None, ordinal=int(val & 0xFFFF)))
            continue

        ibn_off = sections.rva_to_offset(int(val & 0x7FFFFFFF))
        hint = cur.u16(ibn_off)
        name = cur.c_string(ibn_off + 2, max_len=max_name_len) if hint is not None else None
        if not name:
            logger.debug("unreadable import-by-name %#x in %s", val, dll_name)
            errors.append(
                err(
                    "E_PE_IMPORT_BY_NAME_UNREADABLE",
                    "Imported function name could not be mapped or read.",
                    dll=dll_name,
                    ibn_rva=int(val),
                )
            )
            continue

        funcs.append(ImportedFunction(name=name, ordinal=None, hint=hint))

    return funcs, errors
