from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from peprobe.constants import IMAGE_DEBUG_TYPE_CODEVIEW
from peprobe.cursor import ByteCursor
from peprobe.errors import err
from peprobe.sections import SectionTable

DEBUG_DIRECTORY_SIZE = 28
_MAX_DEBUG_ENTRIES = 64


def _codeview_path(cur: ByteCursor, off: int, *, max_len: int) -> Optional[str]:
    sig = cur.read(off, 4)
    if sig == b"RSDS":
        # signature, GUID(16), age(4), path
        return cur.c_string(off + 24, max_len=max_len)
    if sig == b"NB10":
        # signature, offset(4), timestamp(4), age(4), path
        return cur.c_string(off + 16, max_len=max_len)
    return None


def parse_pdb_path(
    cur: ByteCursor,
    *,
    sections: SectionTable,
    debug_rva: int,
    debug_size: int,
    mapped: bool = False,
    max_name_len: int = 512,
) -> Tuple[Optional[str], List[Dict[str, Any]]]:
    """Return the PDB path of the first CodeView debug record."""
    base_off = sections.rva_to_offset(debug_rva)
    if base_off is None:
        return None, [err("E_PE_DEBUG_RVA_UNMAPPABLE", "Debug directory RVA could not be mapped.", debug_rva=debug_rva)]

    count = min(debug_size // DEBUG_DIRECTORY_SIZE, _MAX_DEBUG_ENTRIES)
    for i in range(count):
        ent = base_off + i * DEBUG_DIRECTORY_SIZE
        dbg_type = cur.u32(ent + 12)
        if dbg_type is None:
            return None, [err("E_PE_DEBUG_DIR_TRUNCATED", "Debug directory truncated.", index=i)]
        if dbg_type != IMAGE_DEBUG_TYPE_CODEVIEW:
            continue
        # File images locate the record by PointerToRawData, mapped ones by AddressOfRawData.
        data_off = cur.u32(ent + 20) if mapped else cur.u32(ent + 24)
        path = _codeview_path(cur, data_off, max_len=max_name_len)
        if path:
            return path, []
    return None, []
