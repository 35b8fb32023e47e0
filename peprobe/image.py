from __future__ import annotations

import logging
from enum import Enum
from functools import cached_property
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from peprobe.checksum import calculate_checksum
from peprobe.config import ParseLimits
from peprobe.constants import (
    DIR_DEBUG,
    DIR_EXPORT,
    DIR_IMPORT,
    DIR_RESOURCE,
    DIR_SECURITY,
    MACHINE_NAMES,
    SUBSYSTEM_NAMES,
    PEConstants,
)
from peprobe.cursor import ByteCursor
from peprobe.debug import parse_pdb_path
from peprobe.exports import ExportTable, parse_exports
from peprobe.headers import DataDirectory, HeaderRecord, VersionPair, parse_headers
from peprobe.imphash import compute_imphash
from peprobe.imports import ImportTable, parse_imports
from peprobe.resources import ResourceEntry, ResourceIndex, extract_version_info, parse_resources
from peprobe.rich_header import RichSignature, decode_rich_header
from peprobe.sections import SectionRecord, SectionTable, parse_section_headers
from peprobe.signatures import SignatureRecord, parse_certificate_table

logger = logging.getLogger(__name__)


class ScanMode(str, Enum):
    FILE = "file"
    PROCESS_MEMORY = "process_memory"


class PEImage(PEConstants):
    """
    Read-only view of one PE image.

    Headers and the section table are parsed on construction; every data
    directory is parsed on first access and cached, so repeated queries
    always observe the same values. Nothing here raises on malformed input:
    missing facts read as None / False / empty and the reason is recorded
    in ``errors``.
    """

    def __init__(
        self,
        data: bytes,
        *,
        mode: Union[ScanMode, str] = ScanMode.FILE,
        limits: Optional[ParseLimits] = None,
    ) -> None:
        self._cur = ByteCursor(data)
        self.mode = ScanMode(mode)
        self.limits = limits or ParseLimits()
        self._errors: List[Dict[str, Any]] = []

        header, errs = parse_headers(self._cur)
        self._record(errs)
        self.header: Optional[HeaderRecord] = header

        records: List[SectionRecord] = []
        if header is not None:
            records, errs = parse_section_headers(self._cur, header, max_sections=self.limits.max_sections)
            self._record(errs)
        self._sections = SectionTable(records, len(self._cur), mapped=self.is_mapped)

        if header is None:
            logger.debug("not a PE image (%d bytes)", len(self._cur))

    @classmethod
    def from_file(cls, path: Union[str, Path], **kwargs: Any) -> "PEImage":
        return cls(Path(path).read_bytes(), **kwargs)

    # ------------------------------------------------------------------
    # Scan state

    @property
    def is_pe(self) -> bool:
        return self.header is not None

    @property
    def is_mapped(self) -> bool:
        return self.mode == ScanMode.PROCESS_MEMORY

    @property
    def data(self) -> bytes:
        return self._cur.data

    @property
    def errors(self) -> List[Dict[str, Any]]:
        """Problems recorded so far; directory problems appear once that directory is read."""
        return list(self._errors)

    def _record(self, errs: List[Dict[str, Any]]) -> None:
        for e in errs:
            logger.debug("%s: %s", e["code"], e["message"])
        self._errors.extend(errs)

    def analyze(self) -> "PEImage":
        """Force every lazily parsed fact."""
        self.import_table
        self.export_table
        self.resource_index
        self.version_info
        self.signatures
        self.rich_signature
        self.pdb_path
        return self

    # ------------------------------------------------------------------
    # Header facts

    def _header_field(self, name: str) -> Any:
        return getattr(self.header, name) if self.header is not None else None

    @property
    def machine(self) -> Optional[int]:
        return self._header_field("machine")

    @property
    def subsystem(self) -> Optional[int]:
        return self._header_field("subsystem")

    @property
    def timestamp(self) -> Optional[int]:
        return self._header_field("timestamp")

    @property
    def image_base(self) -> Optional[int]:
        return self._header_field("image_base")

    @property
    def characteristics(self) -> Optional[int]:
        return self._header_field("characteristics")

    @property
    def dll_characteristics(self) -> Optional[int]:
        return self._header_field("dll_characteristics")

    @property
    def linker_version(self) -> Optional[VersionPair]:
        return self._header_field("linker_version")

    @property
    def os_version(self) -> Optional[VersionPair]:
        return self._header_field("os_version")

    @property
    def image_version(self) -> Optional[VersionPair]:
        return self._header_field("image_version")

    @property
    def subsystem_version(self) -> Optional[VersionPair]:
        return self._header_field("subsystem_version")

    @property
    def size_of_image(self) -> Optional[int]:
        return self._header_field("size_of_image")

    @property
    def size_of_headers(self) -> Optional[int]:
        return self._header_field("size_of_headers")

    @property
    def checksum(self) -> Optional[int]:
        return self._header_field("checksum")

    @property
    def number_of_rva_and_sizes(self) -> Optional[int]:
        return self._header_field("number_of_rva_and_sizes")

    @property
    def data_directories(self) -> Tuple[DataDirectory, ...]:
        return self.header.data_directories if self.header is not None else ()

    @property
    def entry_point(self) -> Optional[int]:
        """
        File offset of the entry point when scanning a file; virtual address
        (image_base + AddressOfEntryPoint) when scanning process memory.
        """
        if self.header is None:
            return None
        if self.is_mapped:
            return self.header.image_base + self.header.entry_point
        return self._sections.rva_to_offset(self.header.entry_point)

    @property
    def entry_point_raw(self) -> Optional[int]:
        return self._header_field("entry_point")

    def is_dll(self) -> bool:
        return self.header is not None and bool(self.header.characteristics & self.DLL)

    def is_32bit(self) -> bool:
        return self.header is not None and not self.header.layout.is_64bit

    def is_64bit(self) -> bool:
        return self.header is not None and self.header.layout.is_64bit

    # ------------------------------------------------------------------
    # Sections

    @property
    def number_of_sections(self) -> Optional[int]:
        return self._header_field("number_of_sections")

    @property
    def sections(self) -> Tuple[SectionRecord, ...]:
        return self._sections.records

    def section_index(self, key: Union[str, int]) -> Optional[int]:
        """Index of the first section with this name, or containing this RVA."""
        if isinstance(key, str):
            return self._sections.index_of(key)
        s = self._sections.section_for_rva(key)
        return s.index if s is not None else None

    def rva_to_offset(self, rva: int) -> Optional[int]:
        if self.header is None:
            return None
        return self._sections.rva_to_offset(rva)

    @property
    def overlay(self) -> Optional[Tuple[int, int]]:
        """(offset, size) of data after the last section; (0, 0) when there is none."""
        if self.header is None or self.is_mapped:
            return None
        end = self._sections.raw_end()
        if end == 0 or end >= len(self._cur):
            return 0, 0
        return end, len(self._cur) - end

    def calculate_checksum(self) -> Optional[int]:
        if self.header is None:
            return None
        return calculate_checksum(self._cur.data, self.header.checksum_offset)

    # ------------------------------------------------------------------
    # Data directories (lazy, cached)

    def _directory(self, index: int) -> DataDirectory:
        if self.header is None:
            return DataDirectory(0, 0)
        return self.header.directory(index)

    @cached_property
    def import_table(self) -> ImportTable:
        rva = self._directory(DIR_IMPORT).virtual_address
        if not rva:
            return ImportTable([])
        table, errs = parse_imports(
            self._cur,
            layout=self.header.layout,
            sections=self._sections,
            import_rva=rva,
            max_dlls=self.limits.max_import_dlls,
            max_funcs_per_dll=self.limits.max_import_functions,
            max_name_len=self.limits.max_name_length,
        )
        self._record(errs)
        return table

    @cached_property
    def export_table(self) -> ExportTable:
        rva = self._directory(DIR_EXPORT).virtual_address
        if not rva:
            return ExportTable()
        table, errs = parse_exports(
            self._cur,
            sections=self._sections,
            export_rva=rva,
            max_exports=self.limits.max_exports,
            max_name_len=self.limits.max_name_length,
        )
        self._record(errs)
        return table

    @cached_property
    def resource_index(self) -> ResourceIndex:
        rva = self._directory(DIR_RESOURCE).virtual_address
        if not rva:
            return ResourceIndex([])
        index, errs = parse_resources(
            self._cur,
            sections=self._sections,
            resource_rva=rva,
            max_nodes=self.limits.max_resource_nodes,
            max_depth=self.limits.max_resource_depth,
            max_name_len=self.limits.max_name_length,
        )
        self._record(errs)
        return index

    @cached_property
    def version_info(self) -> Mapping[str, str]:
        if self.header is None:
            return MappingProxyType({})
        kv, errs = extract_version_info(self._cur, self.resource_index, max_size=self.limits.max_version_info_size)
        self._record(errs)
        return MappingProxyType(kv)

    @cached_property
    def signatures(self) -> Tuple[SignatureRecord, ...]:
        # The certificate table is not mapped into memory images.
        security = self._directory(DIR_SECURITY)
        if self.is_mapped or not security.virtual_address or not security.size:
            return ()
        records, errs = parse_certificate_table(
            self._cur,
            security_offset=security.virtual_address,
            security_size=security.size,
            max_certificates=self.limits.max_certificates,
            max_depth=self.limits.max_signature_depth,
        )
        self._record(errs)
        return tuple(records)

    @cached_property
    def rich_signature(self) -> Optional[RichSignature]:
        if self.header is None:
            return None
        sig, errs = decode_rich_header(self._cur, self.header.e_lfanew, max_search=self.limits.max_rich_search)
        self._record(errs)
        return sig

    @cached_property
    def pdb_path(self) -> Optional[str]:
        debug = self._directory(DIR_DEBUG)
        if not debug.virtual_address or not debug.size:
            return None
        path, errs = parse_pdb_path(
            self._cur,
            sections=self._sections,
            debug_rva=debug.virtual_address,
            debug_size=debug.size,
            mapped=self.is_mapped,
            max_name_len=self.limits.max_name_length,
        )
        self._record(errs)
        return path

    # ------------------------------------------------------------------
    # Rule-facing queries

    def exports(self, function: Union[str, int]) -> bool:
        return self.export_table.exports(function)

    def imports(self, dll: str, function: Union[str, int, None] = None) -> bool:
        return self.import_table.imports(dll, function)

    def locale(self, locale_id: int) -> bool:
        return self.resource_index.locale(locale_id)

    def language(self, language_id: int) -> bool:
        return self.resource_index.language(language_id)

    def imphash(self) -> str:
        return compute_imphash(self.import_table)

    @property
    def number_of_imports(self) -> int:
        return len(self.import_table)

    @property
    def number_of_imported_functions(self) -> int:
        return self.import_table.number_of_functions

    @property
    def number_of_exports(self) -> int:
        return self.export_table.function_count

    @property
    def dll_name(self) -> Optional[str]:
        return self.export_table.dll_name

    @property
    def export_timestamp(self) -> Optional[int]:
        return self.export_table.timestamp

    @property
    def resources(self) -> Tuple[ResourceEntry, ...]:
        return self.resource_index.entries

    @property
    def number_of_resources(self) -> int:
        return len(self.resource_index)

    @property
    def number_of_signatures(self) -> int:
        return len(self.signatures)

    @property
    def is_signed(self) -> bool:
        return bool(self.signatures)

    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe snapshot of every fact (forces all lazy parsing)."""
        if self.header is None:
            return {"present": False, "mode": self.mode.value}

        self.analyze()
        overlay = self.overlay
        return {
            "present": True,
            "mode": self.mode.value,
            "header": self.header.to_dict(),
            "machine_name": MACHINE_NAMES.get(self.header.machine),
            "subsystem_name": SUBSYSTEM_NAMES.get(self.header.subsystem),
            "entry_point": self.entry_point,
            "is_dll": self.is_dll(),
            "is_64bit": self.is_64bit(),
            "sections": [s.to_dict() for s in self.sections],
            "imports": [d.to_dict() for d in self.import_table],
            "imphash": self.imphash(),
            "exports": self.export_table.to_dict(),
            "resources": [r.to_dict() for r in self.resources],
            "version_info": dict(self.version_info),
            "signatures": [s.to_dict() for s in self.signatures],
            "rich_signature": self.rich_signature.to_dict() if self.rich_signature else None,
            "pdb_path": self.pdb_path,
            "overlay": {"offset": overlay[0], "size": overlay[1]} if overlay else None,
            "checksum": self.header.checksum,
            "calculated_checksum": self.calculate_checksum(),
        }
