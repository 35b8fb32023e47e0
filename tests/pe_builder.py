from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

FILE_ALIGN = 0x200
SECTION_ALIGN = 0x1000
DANS = 0x536E6144


def align(x: int, a: int) -> int:
    return (x + a - 1) // a * a


@dataclass
class Section:
    name: bytes
    virtual_address: int
    data: bytes
    virtual_size: Optional[int] = None
    characteristics: int = 0x40000040
    raw_size: Optional[int] = None
    raw_ptr: Optional[int] = None


class SectionData:
    """Growable section body addressed by RVA."""

    def __init__(self, va: int) -> None:
        self.va = va
        self.buf = bytearray()
        self._next = va

    @property
    def size(self) -> int:
        return len(self.buf)

    def put(self, rva: int, data: bytes) -> None:
        off = rva - self.va
        if off + len(data) > len(self.buf):
            self.buf += b"\x00" * (off + len(data) - len(self.buf))
        self.buf[off : off + len(data)] = data

    def u16(self, rva: int, v: int) -> None:
        self.put(rva, struct.pack("<H", v))

    def u32(self, rva: int, v: int) -> None:
        self.put(rva, struct.pack("<I", v))

    def u64(self, rva: int, v: int) -> None:
        self.put(rva, struct.pack("<Q", v))

    def alloc(self, n: int) -> int:
        rva = align(self._next, 4)
        self._next = rva + n
        self.put(rva, b"\x00" * n)
        return rva

    def alloc_bytes(self, data: bytes) -> int:
        rva = self.alloc(len(data))
        self.put(rva, data)
        return rva

    def section(self, name: bytes, **kw) -> Section:
        return Section(name=name, virtual_address=self.va, data=bytes(self.buf), **kw)


def build_pe(
    sections: Sequence[Section] = (),
    *,
    directories: Optional[Dict[int, Tuple[int, int]]] = None,
    machine: int = 0x14C,
    characteristics: int = 0x0002,
    pe32_plus: bool = False,
    magic: Optional[int] = None,
    timestamp: int = 0x5F3759DF,
    entry_point: int = 0x1000,
    image_base: Optional[int] = None,
    subsystem: int = 2,
    dll_characteristics: int = 0x8140,
    linker_version: Tuple[int, int] = (14, 0),
    os_version: Tuple[int, int] = (6, 0),
    image_version: Tuple[int, int] = (1, 2),
    subsystem_version: Tuple[int, int] = (6, 1),
    number_of_rva_and_sizes: int = 16,
    number_of_sections: Optional[int] = None,
    dos_stub: bytes = b"",
    overlay: bytes = b"",
    certificate: Optional[bytes] = None,
    certificate_type: int = 2,
) -> bytes:
    directories = dict(directories or {})
    size_opt = 0xF0 if pe32_plus else 0xE0
    e_lfanew = max(0x80, align(0x40 + len(dos_stub), 8))

    header_end = e_lfanew + 4 + 20 + size_opt + 40 * len(sections)
    headers_size = align(header_end, FILE_ALIGN)

    # Section headers and raw data
    sh = bytearray()
    body = bytearray()
    raw_ptr = headers_size
    image_end = SECTION_ALIGN
    for s in sections:
        raw_size = align(len(s.data), FILE_ALIGN) if s.data else 0
        vsize = s.virtual_size if s.virtual_size is not None else len(s.data)
        hdr = bytearray(40)
        hdr[0:8] = s.name.ljust(8, b"\x00")[:8]
        struct.pack_into(
            "<IIII",
            hdr,
            8,
            vsize,
            s.virtual_address,
            s.raw_size if s.raw_size is not None else raw_size,
            s.raw_ptr if s.raw_ptr is not None else (raw_ptr if raw_size else 0),
        )
        struct.pack_into("<I", hdr, 36, s.characteristics)
        sh += hdr
        body += s.data.ljust(raw_size, b"\x00")
        raw_ptr += raw_size
        image_end = max(image_end, align(s.virtual_address + max(vsize, len(s.data)), SECTION_ALIGN))

    cert_blob = b""
    if certificate is not None:
        cert_off = align(headers_size + len(body) + len(overlay), 8)
        win_cert = struct.pack("<IHH", 8 + len(certificate), 0x0200, certificate_type) + certificate
        cert_blob = win_cert.ljust(align(len(win_cert), 8), b"\x00")
        directories[4] = (cert_off, len(cert_blob))

    dos = bytearray(e_lfanew)
    dos[0:2] = b"MZ"
    struct.pack_into("<I", dos, 0x3C, e_lfanew)
    dos[0x40 : 0x40 + len(dos_stub)] = dos_stub

    coff = struct.pack(
        "<HHIIIHH",
        machine,
        len(sections) if number_of_sections is None else number_of_sections,
        timestamp,
        0,
        0,
        size_opt,
        characteristics,
    )

    opt = bytearray(size_opt)
    struct.pack_into("<H", opt, 0x00, magic if magic is not None else (0x20B if pe32_plus else 0x10B))
    opt[2], opt[3] = linker_version
    struct.pack_into("<I", opt, 0x10, entry_point)
    if pe32_plus:
        struct.pack_into("<Q", opt, 0x18, image_base if image_base is not None else 0x140000000)
    else:
        struct.pack_into("<I", opt, 0x1C, image_base if image_base is not None else 0x400000)
    struct.pack_into("<II", opt, 0x20, SECTION_ALIGN, FILE_ALIGN)
    struct.pack_into("<HHHHHH", opt, 0x28, *os_version, *image_version, *subsystem_version)
    struct.pack_into("<II", opt, 0x38, image_end & 0xFFFFFFFF, headers_size)
    struct.pack_into("<HH", opt, 0x44, subsystem, dll_characteristics)
    nrva_off = 0x6C if pe32_plus else 0x5C
    struct.pack_into("<I", opt, nrva_off, number_of_rva_and_sizes)
    for idx, (rva, size) in directories.items():
        struct.pack_into("<II", opt, nrva_off + 4 + idx * 8, rva, size)

    blob = bytes(dos) + b"PE\x00\x00" + coff + bytes(opt) + bytes(sh)
    blob = blob.ljust(headers_size, b"\x00") + bytes(body) + overlay
    if cert_blob:
        blob = blob.ljust(directories[4][0], b"\x00") + cert_blob
    return blob


def import_section(
    va: int,
    dlls: Sequence[Tuple[str, Sequence[Union[str, int]]]],
    *,
    pe32_plus: bool = False,
) -> Tuple[SectionData, Tuple[int, int]]:
    """Import descriptors, thunk arrays and names; ints in a function list import by ordinal."""
    entry = 8 if pe32_plus else 4
    flag = (1 << 63) if pe32_plus else (1 << 31)
    sd = SectionData(va)
    desc_size = 20 * (len(dlls) + 1)
    desc_rva = sd.alloc(desc_size)

    for i, (dll, funcs) in enumerate(dlls):
        thunk_rva = sd.alloc(entry * (len(funcs) + 1))
        name_rva = sd.alloc_bytes(dll.encode("ascii") + b"\x00")
        for j, f in enumerate(funcs):
            if isinstance(f, int):
                val = flag | f
            else:
                val = sd.alloc_bytes(struct.pack("<H", j) + f.encode("ascii") + b"\x00")
            if pe32_plus:
                sd.u64(thunk_rva + j * entry, val)
            else:
                sd.u32(thunk_rva + j * entry, val)
        d = desc_rva + 20 * i
        sd.u32(d + 0, thunk_rva)
        sd.u32(d + 12, name_rva)
        sd.u32(d + 16, thunk_rva)

    return sd, (desc_rva, desc_size)


def export_section(
    va: int,
    dll_name: str,
    names: Sequence[str],
    *,
    ordinal_base: int = 1,
    ordinal_only: int = 0,
    timestamp: int = 0x33333333,
) -> Tuple[SectionData, Tuple[int, int]]:
    """Export directory; the last `ordinal_only` functions have no name."""
    sd = SectionData(va)
    dir_rva = sd.alloc(40)
    n_funcs = len(names) + ordinal_only
    funcs_rva = sd.alloc(4 * n_funcs)
    names_rva = sd.alloc(4 * len(names))
    ords_rva = sd.alloc(2 * len(names))
    dll_rva = sd.alloc_bytes(dll_name.encode("ascii") + b"\x00")

    for i in range(n_funcs):
        sd.u32(funcs_rva + 4 * i, 0x1000 + 0x10 * i)
    for i, n in enumerate(names):
        sd.u32(names_rva + 4 * i, sd.alloc_bytes(n.encode("ascii") + b"\x00"))
        sd.u16(ords_rva + 2 * i, i)

    sd.u32(dir_rva + 4, timestamp)
    sd.u32(dir_rva + 12, dll_rva)
    sd.u32(dir_rva + 16, ordinal_base)
    sd.u32(dir_rva + 20, n_funcs)
    sd.u32(dir_rva + 24, len(names))
    sd.u32(dir_rva + 28, funcs_rva)
    sd.u32(dir_rva + 32, names_rva)
    sd.u32(dir_rva + 36, ords_rva)
    return sd, (dir_rva, sd.size)


ResKey = Union[int, str]


def resource_section(
    va: int,
    leaves: Sequence[Tuple[ResKey, ResKey, int, bytes]],
) -> Tuple[SectionData, Tuple[int, int]]:
    """Resource tree from (type, name, language, data) leaves."""
    tree: Dict[ResKey, Dict[ResKey, List[Tuple[int, bytes]]]] = {}
    for t, n, lang, data in leaves:
        tree.setdefault(t, {}).setdefault(n, []).append((lang, data))

    sd = SectionData(va)

    def new_dir(n_entries: int) -> int:
        d = sd.alloc(16 + 8 * n_entries)
        sd.u16(d + 14, n_entries)
        return d

    def put_entry(entry_rva: int, key: ResKey, target: int) -> None:
        if isinstance(key, str):
            s = sd.alloc_bytes(struct.pack("<H", len(key)) + key.encode("utf-16le"))
            sd.u32(entry_rva, 0x80000000 | (s - va))
        else:
            sd.u32(entry_rva, key)
        sd.u32(entry_rva + 4, target)

    root = new_dir(len(tree))
    for i, (t, names) in enumerate(tree.items()):
        tdir = new_dir(len(names))
        put_entry(root + 16 + 8 * i, t, 0x80000000 | (tdir - va))
        for j, (n, langs) in enumerate(names.items()):
            ndir = new_dir(len(langs))
            put_entry(tdir + 16 + 8 * j, n, 0x80000000 | (ndir - va))
            for k, (lang, data) in enumerate(langs):
                de = sd.alloc(16)
                put_entry(ndir + 16 + 8 * k, lang, de - va)
                data_rva = sd.alloc_bytes(data)
                sd.u32(de, data_rva)
                sd.u32(de + 4, len(data))

    return sd, (root, sd.size)


def _u16z(s: str) -> bytes:
    return s.encode("utf-16le") + b"\x00\x00"


def _align4(b: bytes) -> bytes:
    return b + b"\x00" * ((-len(b)) & 3)


def _vs_block(key: str, value: bytes, children: bytes, *, wtype: int) -> bytes:
    wvlen = len(value) // 2 if wtype == 1 else len(value)
    body = struct.pack("<HHH", 0, wvlen, wtype) + _u16z(key)
    body = _align4(body) + value
    body = _align4(body) + children
    body = _align4(body)
    return struct.pack("<H", len(body)) + body[2:]


def version_info_blob(pairs: Dict[str, str], *, table: str = "040904B0") -> bytes:
    strings = b"".join(_vs_block(k, _u16z(v), b"", wtype=1) for k, v in pairs.items())
    string_table = _vs_block(table, b"", strings, wtype=1)
    sfi = _vs_block("StringFileInfo", b"", string_table, wtype=1)
    translation = _vs_block("Translation", struct.pack("<HH", 0x0409, 0x04B0), b"", wtype=0)
    vfi = _vs_block("VarFileInfo", b"", translation, wtype=1)
    fixed = struct.pack("<I", 0xFEEF04BD) + b"\x00" * 48
    return _vs_block("VS_VERSION_INFO", fixed, sfi + vfi, wtype=0)


def _rol32(v: int, n: int) -> int:
    n %= 32
    v &= 0xFFFFFFFF
    return ((v << n) | (v >> (32 - n))) & 0xFFFFFFFF


def rich_stub(entries: Sequence[Tuple[int, int, int]], *, key: Optional[int] = None, pad: bytes = b"") -> bytes:
    """
    Rich header placed right after the 64-byte DOS header (optionally after
    `pad`). With key=None the key is the correct checksum for build_pe's DOS header.
    """
    start = 0x40 + len(pad)
    if key is None:
        dos = b"MZ" + b"\x00" * 62 + pad
        csum = start
        for i, b in enumerate(dos[:start]):
            if 0x3C <= i < 0x40:
                continue
            csum = (csum + _rol32(b, i)) & 0xFFFFFFFF
        for toolid, version, count in entries:
            csum = (csum + _rol32((toolid << 16) | version, count)) & 0xFFFFFFFF
        key = csum

    words = [DANS, 0, 0, 0]
    for toolid, version, count in entries:
        words += [(toolid << 16) | version, count]
    raw = struct.pack(f"<{len(words)}I", *(w ^ key for w in words))
    return pad + raw + b"Rich" + struct.pack("<I", key)


def map_image(data: bytes) -> bytes:
    """Lay a file image out the way the loader would."""
    from peprobe.image import PEImage

    pe = PEImage(data)
    mapped = bytearray(pe.size_of_image)
    mapped[: pe.size_of_headers] = data[: pe.size_of_headers]
    for s in pe.sections:
        raw = data[s.raw_data_offset : s.raw_data_offset + s.raw_data_size]
        mapped[s.virtual_address : s.virtual_address + len(raw)] = raw
    return bytes(mapped)
