"""
Rich header decoding.

Microsoft linkers place an XOR-masked table of toolchain ids between the DOS
stub and the PE header::

    DanS ^ key, key, key, key,
    compid_0 ^ key, count_0 ^ key,
    ...
    "Rich", key

compid is (tool id << 16) | build number. The key doubles as a checksum over
the DOS header and the table itself.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from peprobe.cursor import ByteCursor
from peprobe.errors import err
from peprobe.headers import DOS_HEADER_SIZE, E_LFANEW_OFFSET

RICH_MARKER = b"Rich"
DANS_MARKER = 0x536E6144  # "DanS" little-endian
_HEADER_WORDS = 4  # DanS + three padding words


class RichEntry(NamedTuple):
    toolid: int
    version: int
    count: int


def _rol32(value: int, shift: int) -> int:
    shift %= 32
    value &= 0xFFFFFFFF
    return ((value << shift) | (value >> (32 - shift))) & 0xFFFFFFFF


def xor_words(data: bytes, key: int) -> bytes:
    """XOR every little-endian 32-bit word of data with key."""
    n = len(data) // 4
    words = struct.unpack_from(f"<{n}I", data)
    out = struct.pack(f"<{n}I", *(w ^ key for w in words))
    return out + data[n * 4 :]


@dataclass(frozen=True)
class RichSignature:
    offset: int
    length: int
    key: int
    raw_data: bytes
    clear_data: bytes
    checksum_valid: bool = False

    @property
    def entries(self) -> Tuple[RichEntry, ...]:
        body = self.clear_data[_HEADER_WORDS * 4 :]
        out = []
        for i in range(0, len(body) - 7, 8):
            compid, count = struct.unpack_from("<II", body, i)
            out.append(RichEntry(toolid=compid >> 16, version=compid & 0xFFFF, count=count))
        return tuple(out)

    def version(self, version: int, toolid: Optional[int] = None) -> int:
        """Total count of entries built with this build number (and tool id, if given)."""
        return sum(
            e.count for e in self.entries if e.version == version and (toolid is None or e.toolid == toolid)
        )

    def toolid(self, toolid: int, version: Optional[int] = None) -> int:
        """Total count of entries for this tool id (and build number, if given)."""
        return sum(
            e.count for e in self.entries if e.toolid == toolid and (version is None or e.version == version)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "offset": self.offset,
            "length": self.length,
            "key": self.key,
            "raw_data": self.raw_data.hex(),
            "clear_data": self.clear_data.hex(),
            "checksum_valid": self.checksum_valid,
            "entries": [e._asdict() for e in self.entries],
        }


def _checksum(cur: ByteCursor, start: int, entries: Tuple[RichEntry, ...]) -> int:
    csum = start
    for i, b in enumerate(cur.read_clamped(0, start)):
        if E_LFANEW_OFFSET <= i < E_LFANEW_OFFSET + 4:
            continue
        csum = (csum + _rol32(b, i)) & 0xFFFFFFFF
    for e in entries:
        compid = (e.toolid << 16) | e.version
        csum = (csum + _rol32(compid, e.count)) & 0xFFFFFFFF
    return csum


def _find_marker(cur: ByteCursor, start: int, end: int) -> Optional[int]:
    pos = cur.find(RICH_MARKER, start, end)
    while pos != -1:
        if (pos - DOS_HEADER_SIZE) % 4 == 0:
            return pos
        pos = cur.find(RICH_MARKER, pos + 1, end)
    return None


def decode_rich_header(
    cur: ByteCursor, e_lfanew: int, *, max_search: int = 0x1000
) -> Tuple[Optional[RichSignature], List[Dict[str, Any]]]:
    """
    Find and decode the Rich header in [end of DOS header, e_lfanew).

    At most max_search bytes past the DOS header are searched; the backward
    walk for "DanS" never leaves that window either. Returns (None, errors)
    when there is no well-formed header.
    """
    errors: List[Dict[str, Any]] = []
    end = min(e_lfanew, len(cur))
    window_end = DOS_HEADER_SIZE + max_search
    clamped = end > window_end
    end = min(end, window_end)

    # Marker plus key must fit before the NT header.
    marker = _find_marker(cur, DOS_HEADER_SIZE, end - 4)
    if marker is None:
        if clamped:
            errors.append(
                err(
                    "E_PE_RICH_SEARCH_CLAMPED",
                    f"No Rich marker within max_rich_search={max_search} bytes of the DOS header.",
                    e_lfanew=e_lfanew,
                )
            )
        return None, errors

    key = cur.u32(marker + 4)
    if key is None:
        return None, errors

    start = None
    off = marker - 4
    while off >= DOS_HEADER_SIZE:
        word = cur.u32(off)
        if word is not None and word ^ key == DANS_MARKER:
            start = off
            break
        off -= 4
    if start is None:
        return None, errors

    raw = cur.read(start, marker - start) or b""
    clear = xor_words(raw, key)
    sig = RichSignature(offset=start, length=len(raw), key=key, raw_data=raw, clear_data=clear)
    valid = _checksum(cur, start, sig.entries) == key
    return (
        RichSignature(
            offset=start,
            length=len(raw),
            key=key,
            raw_data=raw,
            clear_data=clear,
            checksum_valid=valid,
        ),
        errors,
    )
