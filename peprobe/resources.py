"""
Resource directory walker.

The resource tree is type -> name -> language. Offsets inside it are
relative to the start of the resource directory and fully attacker
controlled, so the walk is iterative, refuses to enter a directory twice,
and stops at a fixed depth and node budget. A bad branch is pruned and
reported; the rest of the tree is still indexed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from peprobe.constants import RT_VERSION
from peprobe.cursor import ByteCursor
from peprobe.errors import err
from peprobe.sections import SectionTable
from peprobe.versioninfo import parse_version_info

logger = logging.getLogger(__name__)

RESOURCE_DIRECTORY_SIZE = 16
RESOURCE_ENTRY_SIZE = 8
RESOURCE_DATA_ENTRY_SIZE = 16
_HIGH_BIT = 0x80000000

LEVEL_TYPE = 0
LEVEL_NAME = 1
LEVEL_LANGUAGE = 2

Key = Union[int, str, None]


@dataclass(frozen=True)
class ResourceEntry:
    type_id: Optional[int]
    type_name: Optional[str]
    name_id: Optional[int]
    name_string: Optional[str]
    language: Optional[int]
    rva: int
    size: int
    codepage: int
    offset: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type_id,
            "type_string": self.type_name,
            "id": self.name_id,
            "name_string": self.name_string,
            "language": self.language,
            "rva": self.rva,
            "offset": self.offset,
            "length": self.size,
            "codepage": self.codepage,
        }


class ResourceIndex:
    def __init__(
        self,
        entries: List[ResourceEntry],
        *,
        timestamp: Optional[int] = None,
        major_version: Optional[int] = None,
        minor_version: Optional[int] = None,
    ) -> None:
        self.entries: Tuple[ResourceEntry, ...] = tuple(entries)
        self.timestamp = timestamp
        self.major_version = major_version
        self.minor_version = minor_version
        self._locales = frozenset(e.language for e in self.entries if e.language is not None)
        self._languages = frozenset(loc & 0xFF for loc in self._locales)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    @property
    def locales(self) -> frozenset:
        return self._locales

    @property
    def languages(self) -> frozenset:
        return self._languages

    def locale(self, locale_id: int) -> bool:
        return locale_id in self._locales

    def language(self, language_id: int) -> bool:
        return language_id in self._languages

    def first_of_type(self, type_id: int) -> Optional[ResourceEntry]:
        for e in self.entries:
            if e.type_id == type_id:
                return e
        return None


def _split_key(cur: ByteCursor, base_off: int, raw_name: int, *, max_name_len: int) -> Tuple[Optional[int], Optional[str]]:
    if raw_name & _HIGH_BIT:
        return None, cur.utf16_counted(base_off + (raw_name & 0x7FFFFFFF), max_chars=max_name_len)
    return raw_name & 0xFFFF, None


def parse_resources(
    cur: ByteCursor,
    *,
    sections: SectionTable,
    resource_rva: int,
    max_nodes: int = 4096,
    max_depth: int = 3,
    max_name_len: int = 512,
) -> Tuple[ResourceIndex, List[Dict[str, Any]]]:
    errors: List[Dict[str, Any]] = []

    base_off = sections.rva_to_offset(resource_rva)
    if base_off is None or not cur.in_bounds(base_off, RESOURCE_DIRECTORY_SIZE):
        return ResourceIndex([]), [
            err(
                "E_PE_RSRC_RVA_UNMAPPABLE",
                "Resource directory RVA could not be mapped or is truncated.",
                resource_rva=resource_rva,
            )
        ]

    leaves: List[ResourceEntry] = []
    visited: Set[int] = set()
    nodes = 0
    exhausted = False

    # (dir_rel, level, type key, name key)
    stack: List[Tuple[int, int, Tuple[Optional[int], Optional[str]], Tuple[Optional[int], Optional[str]]]] = [
        (0, LEVEL_TYPE, (None, None), (None, None))
    ]

    while stack:
        dir_rel, level, type_key, name_key = stack.pop()

        if dir_rel in visited:
            errors.append(err("E_PE_RSRC_CYCLE", "Resource directory revisited; branch skipped.", dir_rel=dir_rel))
            continue
        if level >= max_depth:
            errors.append(err("E_PE_RSRC_TOO_DEEP", f"Resource tree deeper than max_depth={max_depth}.", dir_rel=dir_rel))
            continue
        visited.add(dir_rel)

        dir_off = base_off + dir_rel
        if not cur.in_bounds(dir_off, RESOURCE_DIRECTORY_SIZE):
            errors.append(err("E_PE_RSRC_DIR_OOB", "Resource directory out of bounds.", dir_rel=dir_rel))
            continue

        n_entries = (cur.u16(dir_off + 12) or 0) + (cur.u16(dir_off + 14) or 0)
        subdirs = []
        for i in range(n_entries):
            nodes += 1
            if nodes > max_nodes:
                errors.append(err("E_PE_RSRC_TOO_MANY_NODES", f"Resource nodes exceeded max_nodes={max_nodes}.", max_nodes=max_nodes))
                exhausted = True
                break

            eoff = dir_off + RESOURCE_DIRECTORY_SIZE + i * RESOURCE_ENTRY_SIZE
            raw_name = cur.u32(eoff)
            off_to = cur.u32(eoff + 4)
            if raw_name is None or off_to is None:
                errors.append(err("E_PE_RSRC_ENTRY_OOB", "Resource directory entry out of bounds.", dir_rel=dir_rel, index=i))
                break

            key = _split_key(cur, base_off, raw_name, max_name_len=max_name_len)
            target_rel = off_to & 0x7FFFFFFF

            if off_to & _HIGH_BIT:
                if level == LEVEL_TYPE:
                    subdirs.append((target_rel, level + 1, key, (None, None)))
                else:
                    subdirs.append((target_rel, level + 1, type_key, key))
                continue

            if level != LEVEL_LANGUAGE:
                errors.append(
                    err(
                        "E_PE_RSRC_BAD_TREE",
                        "Resource data entry found above the language level.",
                        dir_rel=dir_rel,
                        level=level,
                    )
                )
                continue

            data_off = base_off + target_rel
            data_rva = cur.u32(data_off)
            data_size = cur.u32(data_off + 4)
            codepage = cur.u32(data_off + 8)
            if data_rva is None or data_size is None or codepage is None:
                errors.append(err("E_PE_RSRC_DATA_ENTRY_OOB", "Resource data entry out of bounds.", data_rel=target_rel))
                continue

            leaves.append(
                ResourceEntry(
                    type_id=type_key[0],
                    type_name=type_key[1],
                    name_id=name_key[0],
                    name_string=name_key[1],
                    language=key[0],
                    rva=data_rva,
                    size=data_size,
                    codepage=codepage,
                    offset=sections.rva_to_offset(data_rva),
                )
            )

        if exhausted:
            break
        # Depth-first in declaration order.
        stack.extend(reversed(subdirs))

    if errors:
        logger.debug("resource tree: %d leaves, %d problems", len(leaves), len(errors))

    index = ResourceIndex(
        leaves,
        timestamp=cur.u32(base_off + 4),
        major_version=cur.u16(base_off + 8),
        minor_version=cur.u16(base_off + 10),
    )
    return index, errors


def extract_version_info(
    cur: ByteCursor,
    resources: ResourceIndex,
    *,
    max_size: int = 2_000_000,
) -> Tuple[Dict[str, str], List[Dict[str, Any]]]:
    """Locate the RT_VERSION leaf and parse its VS_VERSIONINFO block."""
    leaf = resources.first_of_type(RT_VERSION)
    if leaf is None or leaf.size == 0:
        return {}, []

    if leaf.offset is None:
        return {}, [err("E_PE_RSRC_DATA_RVA_UNMAPPABLE", "Resource data RVA could not be mapped.", data_rva=leaf.rva)]

    errors: List[Dict[str, Any]] = []
    size = leaf.size
    if size > max_size:
        errors.append(
            err(
                "E_PE_RSRC_VS_TOO_LARGE",
                f"VersionInfo size exceeds max_size={max_size}.",
                data_size=size,
                max_size=max_size,
            )
        )
        size = max_size

    blob = cur.read_clamped(leaf.offset, size)
    if len(blob) < size:
        errors.append(err("E_PE_RSRC_DATA_TRUNCATED", "Resource data extends beyond file.", data_off=leaf.offset, data_size=size))

    kv, vi_errs = parse_version_info(blob)
    errors.extend(vi_errs)
    return kv, errors
