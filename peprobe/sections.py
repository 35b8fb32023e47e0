from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from peprobe.cursor import ByteCursor, checked_add
from peprobe.errors import err
from peprobe.headers import HeaderRecord

logger = logging.getLogger(__name__)

SECTION_HEADER_SIZE = 40


@dataclass(frozen=True)
class SectionRecord:
    index: int
    name: str
    virtual_size: int
    virtual_address: int
    raw_data_size: int
    raw_data_offset: int
    characteristics: int
    raw_data_in_bounds: bool

    @property
    def mapped_size(self) -> int:
        # Some linkers leave VirtualSize zero; the raw size is the mapped span then.
        return self.virtual_size or self.raw_data_size

    def contains_rva(self, rva: int) -> bool:
        end = checked_add(self.virtual_address, self.mapped_size)
        return end is not None and self.virtual_address <= rva < end

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "name": self.name,
            "virtual_size": self.virtual_size,
            "virtual_address": self.virtual_address,
            "raw_data_size": self.raw_data_size,
            "raw_data_offset": self.raw_data_offset,
            "characteristics": self.characteristics,
            "raw_data_in_bounds": self.raw_data_in_bounds,
        }


def _section_name(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("ascii", errors="replace")


def parse_section_headers(
    cur: ByteCursor,
    header: HeaderRecord,
    *,
    max_sections: int = 96,
) -> Tuple[List[SectionRecord], List[Dict[str, Any]]]:
    errors: List[Dict[str, Any]] = []
    sect_off = header.section_table_offset

    num_sections = header.number_of_sections
    if num_sections > max_sections:
        errors.append(
            err(
                "E_PE_SECTION_COUNT_CLAMPED",
                f"Section count too large; clamped to max_sections={max_sections}.",
                number_of_sections=num_sections,
                max_sections=max_sections,
            )
        )
        num_sections = max_sections

    sections: List[SectionRecord] = []
    for i in range(num_sections):
        sh_off = sect_off + i * SECTION_HEADER_SIZE
        raw_header = cur.read(sh_off, SECTION_HEADER_SIZE)
        if raw_header is None:
            errors.append(err("E_PE_SECTION_HEADER_TRUNCATED", "Section header truncated.", section_index=i, sh_off=sh_off))
            break

        raw_size = cur.u32(sh_off + 16)
        raw_ptr = cur.u32(sh_off + 20)
        end = checked_add(raw_ptr, raw_size)
        in_bounds = end is not None and end <= len(cur)
        if not in_bounds:
            logger.debug("section %d raw data [%#x, +%#x) outside buffer", i, raw_ptr, raw_size)

        sections.append(
            SectionRecord(
                index=i,
                name=_section_name(raw_header[0:8]),
                virtual_size=cur.u32(sh_off + 8),
                virtual_address=cur.u32(sh_off + 12),
                raw_data_size=raw_size,
                raw_data_offset=raw_ptr,
                characteristics=cur.u32(sh_off + 36),
                raw_data_in_bounds=in_bounds,
            )
        )

    return sections, errors


class SectionTable:
    """
    Ordered section headers plus RVA -> file offset translation.

    In a mapped (process memory) image an RVA is already a buffer offset.
    """

    def __init__(self, sections: Sequence[SectionRecord], buffer_length: int, *, mapped: bool = False) -> None:
        self._sections = tuple(sections)
        self._buffer_length = buffer_length
        self._mapped = mapped
        self._cache: Dict[int, Optional[int]] = {}

    def __len__(self) -> int:
        return len(self._sections)

    def __iter__(self):
        return iter(self._sections)

    def __getitem__(self, index: int) -> SectionRecord:
        return self._sections[index]

    @property
    def records(self) -> Tuple[SectionRecord, ...]:
        return self._sections

    def rva_to_offset(self, rva: Optional[int]) -> Optional[int]:
        if rva is None or rva < 0:
            return None
        if rva in self._cache:
            return self._cache[rva]
        off = self._translate(rva)
        self._cache[rva] = off
        return off

    def _translate(self, rva: int) -> Optional[int]:
        if self._mapped:
            return rva if rva < self._buffer_length else None

        for s in self._sections:
            if not s.contains_rva(rva):
                continue
            off = checked_add(s.raw_data_offset, rva - s.virtual_address)
            raw_end = checked_add(s.raw_data_offset, s.raw_data_size)
            if off is None or raw_end is None or off >= raw_end:
                return None
            if off >= self._buffer_length:
                return None
            return off
        return None

    def section_for_rva(self, rva: int) -> Optional[SectionRecord]:
        for s in self._sections:
            if s.contains_rva(rva):
                return s
        return None

    def index_of(self, name: str) -> Optional[int]:
        for s in self._sections:
            if s.name == name:
                return s.index
        return None

    def raw_end(self) -> int:
        """End of the furthest file-backed section data, clamped to the buffer."""
        end = 0
        for s in self._sections:
            if not s.raw_data_size:
                continue
            e = checked_add(s.raw_data_offset, s.raw_data_size)
            if e is not None:
                end = max(end, min(e, self._buffer_length))
        return end
