from __future__ import annotations

from pe_builder import Section, build_pe

from peprobe.image import PEImage


def _text() -> Section:
    return Section(b".text", 0x1000, b"\x1f\x20\x03\xd5" * 8, characteristics=0x60000020)


def test_parse_arm64_pe32plus():
    data = build_pe([_text()], machine=0xAA64, pe32_plus=True, image_base=0x180000000)
    pe = PEImage(data)

    assert pe.is_pe
    assert pe.errors == []
    assert pe.machine == pe.MACHINE_ARM64
    assert pe.is_64bit() is True
    assert pe.is_32bit() is False
    assert pe.image_base == 0x180000000
    assert pe.header.layout.name == "PE32+"
    assert pe.header.size_of_optional_header == 0xF0
    assert pe.sections[0].name == ".text"
    assert pe.to_dict()["machine_name"] == "ARM64"


def test_layout_follows_magic_when_machine_disagrees():
    # PE32 optional header on an AMD64 machine type
    pe = PEImage(build_pe([_text()], machine=0x8664, pe32_plus=False))

    assert pe.is_pe
    assert pe.is_32bit() is True
    assert pe.image_base == 0x400000
    assert any(e["code"] == "E_PE_LAYOUT_MACHINE_MISMATCH" and e["kind"] == "ambiguous_layout" for e in pe.errors)


def test_pe32plus_on_i386_is_reported():
    pe = PEImage(build_pe([_text()], machine=0x14C, pe32_plus=True))
    assert pe.is_64bit() is True
    assert any(e["code"] == "E_PE_LAYOUT_MACHINE_MISMATCH" for e in pe.errors)


def test_unknown_magic_uses_pe32_layout():
    pe = PEImage(build_pe([_text()], magic=0x107))
    assert pe.is_pe
    assert pe.is_32bit() is True
    assert pe.sections[0].name == ".text"
    assert any(e["code"] == "E_PE_OPT_BAD_MAGIC" for e in pe.errors)


def test_number_of_rva_and_sizes_limits_directories():
    pe = PEImage(build_pe([_text()], directories={1: (0x1000, 0x28)}, number_of_rva_and_sizes=1))
    assert len(pe.data_directories) == 1
    # import directory is beyond NumberOfRvaAndSizes and therefore absent
    assert pe.imports("kernel32.dll") is False
    assert pe.number_of_imports == 0
