from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from peprobe.cursor import ByteCursor
from peprobe.errors import err
from peprobe.sections import SectionTable

EXPORT_DIRECTORY_SIZE = 40


@dataclass(frozen=True)
class ExportTable:
    present: bool = False
    dll_name: Optional[str] = None
    timestamp: Optional[int] = None
    ordinal_base: int = 0
    function_count: int = 0
    names: Tuple[str, ...] = ()
    ordinals: Tuple[int, ...] = ()
    _lower_names: frozenset = field(default=frozenset(), repr=False, compare=False)

    def exports(self, function: Union[str, int]) -> bool:
        if isinstance(function, str):
            return function.lower() in self._lower_names
        return function in self.ordinals

    def to_dict(self) -> Dict[str, Any]:
        return {
            "present": self.present,
            "dll_name": self.dll_name,
            "timestamp": self.timestamp,
            "ordinal_base": self.ordinal_base,
            "function_count": self.function_count,
            "name_count": len(self.names),
            "names": list(self.names),
            "ordinals": list(self.ordinals),
        }


def parse_exports(
    cur: ByteCursor,
    *,
    sections: SectionTable,
    export_rva: int,
    max_exports: int = 65536,
    max_name_len: int = 512,
) -> Tuple[ExportTable, List[Dict[str, Any]]]:
    errors: List[Dict[str, Any]] = []

    base_off = sections.rva_to_offset(export_rva)
    if base_off is None:
        return ExportTable(), [
            err(
                "E_PE_EXPORT_RVA_UNMAPPABLE",
                "Export directory RVA could not be mapped to file offset.",
                export_rva=export_rva,
            )
        ]

    if not cur.in_bounds(base_off, EXPORT_DIRECTORY_SIZE):
        return ExportTable(), [err("E_PE_EXPORT_DIR_TRUNCATED", "Export directory truncated.", export_off=base_off)]

    timestamp = cur.u32(base_off + 4)
    name_rva = cur.u32(base_off + 12)
    ordinal_base = cur.u32(base_off + 16)
    num_funcs = cur.u32(base_off + 20)
    num_names = cur.u32(base_off + 24)
    addr_funcs_rva = cur.u32(base_off + 28)
    addr_names_rva = cur.u32(base_off + 32)
    addr_ord_rva = cur.u32(base_off + 36)

    dll_name = None
    if name_rva:
        dll_name = cur.c_string(sections.rva_to_offset(name_rva), max_len=max_name_len)
        if not dll_name:
            errors.append(err("E_PE_EXPORT_DLLNAME_UNREADABLE", "Export DLL name unmappable or unreadable.", name_rva=name_rva))

    ordinals: List[int] = []
    if num_funcs:
        count = num_funcs
        if count > max_exports:
            errors.append(err("E_PE_EXPORT_TOO_MANY_FUNCTIONS", f"Export function count exceeded max_exports={max_exports}.", num_funcs=num_funcs))
            count = max_exports
        funcs_off = sections.rva_to_offset(addr_funcs_rva) if addr_funcs_rva else None
        if funcs_off is None:
            errors.append(err("E_PE_EXPORT_FUNCTIONS_UNMAPPABLE", "Export address table unmappable.", addr_funcs_rva=addr_funcs_rva))
        else:
            for i in range(count):
                func_rva = cur.u32(funcs_off + i * 4)
                if func_rva is None:
                    errors.append(err("E_PE_EXPORT_FUNCTIONS_TRUNCATED", "Export address table truncated.", index=i))
                    break
                if func_rva:
                    ordinals.append(ordinal_base + i)

    names: List[str] = []
    if num_names:
        count = num_names
        if count > max_exports:
            errors.append(err("E_PE_EXPORT_TOO_MANY_NAMES", f"Export name count exceeded max_exports={max_exports}.", num_names=num_names))
            count = max_exports

        names_off = sections.rva_to_offset(addr_names_rva) if addr_names_rva else None
        if names_off is None:
            errors.append(
                err(
                    "E_PE_EXPORT_TABLES_UNMAPPABLE",
                    "Export name table unmappable.",
                    addr_names_rva=addr_names_rva,
                    addr_ord_rva=addr_ord_rva,
                )
            )
        else:
            for i in range(count):
                ptr_rva = cur.u32(names_off + i * 4)
                if ptr_rva is None:
                    errors.append(err("E_PE_EXPORT_NAMES_TRUNCATED", "Export name table truncated.", index=i))
                    break
                s = cur.c_string(sections.rva_to_offset(ptr_rva), max_len=max_name_len)
                if not s:
                    errors.append(err("E_PE_EXPORT_NAME_UNREADABLE", "Export name unmappable or unreadable.", name_rva=ptr_rva))
                    continue
                names.append(s)

    table = ExportTable(
        present=True,
        dll_name=dll_name,
        timestamp=timestamp,
        ordinal_base=ordinal_base,
        function_count=num_funcs,
        names=tuple(names),
        ordinals=tuple(ordinals),
        _lower_names=frozenset(n.lower() for n in names),
    )
    return table, errors
