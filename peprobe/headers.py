from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from peprobe.constants import (
    IMAGE_DOS_SIGNATURE,
    IMAGE_NT_SIGNATURE,
    IMAGE_NUMBEROF_DIRECTORY_ENTRIES,
    MACHINES_64BIT,
    PE32_MAGIC,
    PE32P_MAGIC,
    PEConstants,
)
from peprobe.cursor import ByteCursor
from peprobe.errors import AMBIGUOUS_LAYOUT, NOT_PE, err

logger = logging.getLogger(__name__)

DOS_HEADER_SIZE = 64
E_LFANEW_OFFSET = 0x3C
COFF_HEADER_SIZE = 20


class VersionPair(NamedTuple):
    major: int
    minor: int

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}"


class DataDirectory(NamedTuple):
    virtual_address: int
    size: int


@dataclass(frozen=True)
class OptionalHeaderLayout:
    """Field placement that differs between PE32 and PE32+ optional headers."""

    name: str
    magic: int
    image_base_offset: int
    image_base_size: int
    number_of_rva_offset: int
    data_directory_offset: int
    thunk_size: int
    ordinal_flag: int

    @property
    def is_64bit(self) -> bool:
        return self.magic == PE32P_MAGIC


PE32_LAYOUT = OptionalHeaderLayout(
    name="PE32",
    magic=PE32_MAGIC,
    image_base_offset=0x1C,
    image_base_size=4,
    number_of_rva_offset=0x5C,
    data_directory_offset=0x60,
    thunk_size=4,
    ordinal_flag=0x80000000,
)

PE32PLUS_LAYOUT = OptionalHeaderLayout(
    name="PE32+",
    magic=PE32P_MAGIC,
    image_base_offset=0x18,
    image_base_size=8,
    number_of_rva_offset=0x6C,
    data_directory_offset=0x70,
    thunk_size=8,
    ordinal_flag=0x8000000000000000,
)

CHECKSUM_FIELD_OFFSET = 0x40


@dataclass(frozen=True)
class HeaderRecord:
    e_lfanew: int
    machine: int
    number_of_sections: int
    timestamp: int
    pointer_to_symbol_table: int
    number_of_symbols: int
    size_of_optional_header: int
    characteristics: int

    layout: OptionalHeaderLayout
    optional_header_offset: int
    magic: int
    linker_version: VersionPair
    entry_point: int
    image_base: int
    section_alignment: int
    file_alignment: int
    os_version: VersionPair
    image_version: VersionPair
    subsystem_version: VersionPair
    size_of_image: int
    size_of_headers: int
    checksum: int
    subsystem: int
    dll_characteristics: int
    number_of_rva_and_sizes: int
    data_directories: Tuple[DataDirectory, ...]

    @property
    def checksum_offset(self) -> int:
        return self.optional_header_offset + CHECKSUM_FIELD_OFFSET

    @property
    def section_table_offset(self) -> int:
        return self.optional_header_offset + self.size_of_optional_header

    def directory(self, index: int) -> DataDirectory:
        if 0 <= index < len(self.data_directories):
            return self.data_directories[index]
        return DataDirectory(0, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "e_lfanew": self.e_lfanew,
            "machine": self.machine,
            "number_of_sections": self.number_of_sections,
            "timestamp": self.timestamp,
            "size_of_optional_header": self.size_of_optional_header,
            "characteristics": self.characteristics,
            "magic": self.magic,
            "format": self.layout.name,
            "linker_version": str(self.linker_version),
            "address_of_entry_point": self.entry_point,
            "image_base": self.image_base,
            "section_alignment": self.section_alignment,
            "file_alignment": self.file_alignment,
            "os_version": str(self.os_version),
            "image_version": str(self.image_version),
            "subsystem_version": str(self.subsystem_version),
            "size_of_image": self.size_of_image,
            "size_of_headers": self.size_of_headers,
            "checksum": self.checksum,
            "subsystem": self.subsystem,
            "dll_characteristics": self.dll_characteristics,
            "number_of_rva_and_sizes": self.number_of_rva_and_sizes,
            "data_directories": [
                {"index": i, "virtual_address": d.virtual_address, "size": d.size}
                for i, d in enumerate(self.data_directories)
            ],
        }


def _resolve_layout(magic: int, machine: int, errors: List[Dict[str, Any]]) -> OptionalHeaderLayout:
    """
    The optional-header magic alone decides the layout.
    Disagreeing indicators are reported, never used to override it.
    """
    layout = PE32PLUS_LAYOUT if magic == PE32P_MAGIC else PE32_LAYOUT

    if magic not in (PE32_MAGIC, PE32P_MAGIC):
        errors.append(
            err(
                "E_PE_OPT_BAD_MAGIC",
                "Optional header magic not PE32/PE32+; using PE32 layout.",
                kind=AMBIGUOUS_LAYOUT,
                opt_magic=magic,
            )
        )
    elif layout.is_64bit and machine == PEConstants.MACHINE_I386:
        errors.append(
            err(
                "E_PE_LAYOUT_MACHINE_MISMATCH",
                "PE32+ optional header on a 32-bit machine type.",
                kind=AMBIGUOUS_LAYOUT,
                machine=machine,
                opt_magic=magic,
            )
        )
    elif not layout.is_64bit and machine in MACHINES_64BIT:
        errors.append(
            err(
                "E_PE_LAYOUT_MACHINE_MISMATCH",
                "PE32 optional header on a 64-bit machine type.",
                kind=AMBIGUOUS_LAYOUT,
                machine=machine,
                opt_magic=magic,
            )
        )
    return layout


def _version(cur: ByteCursor, off: int, *, width: int = 2) -> VersionPair:
    if width == 1:
        return VersionPair(cur.u8(off) or 0, cur.u8(off + 1) or 0)
    return VersionPair(cur.u16(off) or 0, cur.u16(off + 2) or 0)


def parse_headers(cur: ByteCursor) -> Tuple[Optional[HeaderRecord], List[Dict[str, Any]]]:
    """
    Parse DOS, COFF and optional headers.
    Returns (None, errors) when the buffer is not a PE image.
    """
    errors: List[Dict[str, Any]] = []

    if len(cur) < DOS_HEADER_SIZE or cur.read(0, 2) != IMAGE_DOS_SIGNATURE:
        return None, [err("E_PE_NO_DOS_SIGNATURE", "Missing MZ signature or DOS header truncated.", kind=NOT_PE)]

    e_lfanew = cur.u32(E_LFANEW_OFFSET)
    if e_lfanew is None or not cur.in_bounds(e_lfanew, 4):
        return None, [err("E_PE_E_LFANEW_OOB", "e_lfanew points outside file.", kind=NOT_PE, e_lfanew=e_lfanew)]

    if cur.read(e_lfanew, 4) != IMAGE_NT_SIGNATURE:
        return None, [err("E_PE_BAD_NT_SIGNATURE", "Missing PE\\0\\0 signature.", kind=NOT_PE, e_lfanew=e_lfanew)]

    coff_off = e_lfanew + 4
    if not cur.in_bounds(coff_off, COFF_HEADER_SIZE):
        return None, [err("E_PE_COFF_TRUNCATED", "COFF header truncated.", kind=NOT_PE, coff_off=coff_off)]

    machine = cur.u16(coff_off + 0)
    number_of_sections = cur.u16(coff_off + 2)
    time_date_stamp = cur.u32(coff_off + 4)
    ptr_symbols = cur.u32(coff_off + 8)
    num_symbols = cur.u32(coff_off + 12)
    size_of_optional_header = cur.u16(coff_off + 16)
    characteristics = cur.u16(coff_off + 18)

    opt_off = coff_off + COFF_HEADER_SIZE
    magic = cur.u16(opt_off)
    if magic is None:
        return None, [err("E_PE_OPT_TRUNCATED", "Optional header missing.", kind=NOT_PE, opt_off=opt_off)]

    layout = _resolve_layout(magic, machine, errors)

    # The fixed part up to the data directory table must be readable.
    if not cur.in_bounds(opt_off, layout.data_directory_offset):
        return None, [
            err(
                "E_PE_OPT_TRUNCATED",
                "Optional header truncated before the data directory table.",
                kind=NOT_PE,
                opt_off=opt_off,
                layout=layout.name,
            )
        ]

    if layout.image_base_size == 8:
        image_base = cur.u64(opt_off + layout.image_base_offset)
    else:
        image_base = cur.u32(opt_off + layout.image_base_offset)

    num_rva_and_sizes = cur.u32(opt_off + layout.number_of_rva_offset) or 0

    if opt_off + size_of_optional_header > len(cur):
        errors.append(
            err(
                "E_PE_OPT_SIZE_EXCEEDS_FILE",
                "SizeOfOptionalHeader extends beyond end of file.",
                opt_off=opt_off,
                size_of_optional_header=size_of_optional_header,
            )
        )

    dd_off = opt_off + layout.data_directory_offset
    dd_end = min(opt_off + size_of_optional_header, len(cur))
    dirs: List[DataDirectory] = []
    for idx in range(min(num_rva_and_sizes, IMAGE_NUMBEROF_DIRECTORY_ENTRIES)):
        ent = dd_off + idx * 8
        if ent + 8 > dd_end:
            break
        dirs.append(DataDirectory(cur.u32(ent) or 0, cur.u32(ent + 4) or 0))

    if num_rva_and_sizes > IMAGE_NUMBEROF_DIRECTORY_ENTRIES:
        logger.debug("NumberOfRvaAndSizes=%d clamped to %d", num_rva_and_sizes, IMAGE_NUMBEROF_DIRECTORY_ENTRIES)

    header = HeaderRecord(
        e_lfanew=e_lfanew,
        machine=machine,
        number_of_sections=number_of_sections,
        timestamp=time_date_stamp,
        pointer_to_symbol_table=ptr_symbols,
        number_of_symbols=num_symbols,
        size_of_optional_header=size_of_optional_header,
        characteristics=characteristics,
        layout=layout,
        optional_header_offset=opt_off,
        magic=magic,
        linker_version=_version(cur, opt_off + 0x02, width=1),
        entry_point=cur.u32(opt_off + 0x10) or 0,
        image_base=image_base or 0,
        section_alignment=cur.u32(opt_off + 0x20) or 0,
        file_alignment=cur.u32(opt_off + 0x24) or 0,
        os_version=_version(cur, opt_off + 0x28),
        image_version=_version(cur, opt_off + 0x2C),
        subsystem_version=_version(cur, opt_off + 0x30),
        size_of_image=cur.u32(opt_off + 0x38) or 0,
        size_of_headers=cur.u32(opt_off + 0x3C) or 0,
        checksum=cur.u32(opt_off + CHECKSUM_FIELD_OFFSET) or 0,
        subsystem=cur.u16(opt_off + 0x44) or 0,
        dll_characteristics=cur.u16(opt_off + 0x46) or 0,
        number_of_rva_and_sizes=num_rva_and_sizes,
        data_directories=tuple(dirs),
    )
    return header, errors
