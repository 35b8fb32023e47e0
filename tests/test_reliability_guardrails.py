import random
import struct

import pytest
from pe_builder import Section, build_pe, export_section, import_section, resource_section, rich_stub, version_info_blob

from peprobe.config import ParseLimits
from peprobe.image import PEImage, ScanMode


def _rich_sample() -> bytes:
    text = Section(b".text", 0x1000, b"\xC3" * 0x10, characteristics=0x60000020)
    imp, imp_dir = import_section(0x2000, [("kernel32.dll", ["ExitProcess", 7]), ("user32.dll", ["MessageBoxW"])])
    exp, exp_dir = export_section(0x3000, "x.dll", ["A", "B"], ordinal_only=1)
    rsrc, rsrc_dir = resource_section(0x4000, [(16, 1, 0x0409, version_info_blob({"CompanyName": "ACME"}))])
    return build_pe(
        [text, imp.section(b".idata"), exp.section(b".edata"), rsrc.section(b".rsrc")],
        directories={0: exp_dir, 1: imp_dir, 2: rsrc_dir},
        dos_stub=rich_stub([(0x0104, 30795, 12)]),
        overlay=b"tail",
    )


@pytest.mark.parametrize("mode", [ScanMode.FILE, ScanMode.PROCESS_MEMORY])
def test_every_truncation_is_handled(mode):
    data = _rich_sample()
    for n in range(0, len(data), 7):
        pe = PEImage(data[:n], mode=mode)
        d = pe.to_dict()
        assert isinstance(d["present"], bool)
        assert all("code" in e and "kind" in e for e in pe.errors)


def test_random_mutations_never_raise():
    rng = random.Random(0x5EED)
    base = _rich_sample()
    for _ in range(300):
        data = bytearray(base)
        for _ in range(rng.randint(1, 16)):
            data[rng.randrange(len(data))] = rng.randrange(256)
        pe = PEImage(bytes(data))
        pe.to_dict()
        pe.imports("kernel32.dll", "ExitProcess")
        pe.exports(3)
        pe.imphash()


def test_random_bytes_are_not_pe():
    rng = random.Random(1)
    for size in (0, 1, 63, 64, 65, 4096):
        pe = PEImage(bytes(rng.randrange(256) for _ in range(size)))
        assert pe.is_pe is False


def test_import_dll_limit():
    text = Section(b".text", 0x1000, b"\xC3")
    imp, imp_dir = import_section(0x2000, [(f"d{i}.dll", ["F"]) for i in range(10)])
    pe = PEImage(build_pe([text, imp.section(b".idata")], directories={1: imp_dir}), limits=ParseLimits(max_import_dlls=4))

    assert pe.number_of_imports == 4
    assert any(e["code"] == "E_PE_IMPORT_TOO_MANY_DLLS" for e in pe.errors)


def test_resource_node_budget():
    text = Section(b".text", 0x1000, b"\xC3")
    leaves = [(10, i + 1, 0x0409, b"x") for i in range(20)]
    rsrc, rsrc_dir = resource_section(0x2000, leaves)
    pe = PEImage(build_pe([text, rsrc.section(b".rsrc")], directories={2: rsrc_dir}), limits=ParseLimits(max_resource_nodes=8))

    assert pe.number_of_resources < 20
    assert any(e["code"] == "E_PE_RSRC_TOO_MANY_NODES" for e in pe.errors)


def test_resource_depth_limit():
    text = Section(b".text", 0x1000, b"\xC3")
    rsrc, rsrc_dir = resource_section(0x2000, [(10, 1, 0x0409, b"x")])
    pe = PEImage(build_pe([text, rsrc.section(b".rsrc")], directories={2: rsrc_dir}), limits=ParseLimits(max_resource_depth=2))

    assert pe.number_of_resources == 0
    assert any(e["code"] == "E_PE_RSRC_TOO_DEEP" for e in pe.errors)


def test_wrapping_section_address_is_rejected():
    # VirtualAddress + VirtualSize overflows 32 bits
    text = Section(b".text", 0xFFFFF000, b"\xC3" * 0x10, virtual_size=0x2000)
    pe = PEImage(build_pe([text], entry_point=0xFFFFF010))

    assert pe.is_pe
    assert pe.entry_point is None
    assert pe.rva_to_offset(0xFFFFF010) is None


def test_huge_e_lfanew_in_header():
    dos = bytearray(0x40)
    dos[0:2] = b"MZ"
    struct.pack_into("<I", dos, 0x3C, 0xFFFFFFFF)
    assert PEImage(bytes(dos)).is_pe is False
