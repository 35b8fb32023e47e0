from __future__ import annotations

import hashlib
import struct

from pe_builder import Section, build_pe, export_section

from peprobe.image import PEImage

EMPTY_MD5 = hashlib.md5(b"").hexdigest()


def _build_minimal_pe() -> bytes:
    text = Section(b".text", 0x1000, b"\x90" * 0x100, characteristics=0x60000020)
    return build_pe([text], timestamp=0x5F3759DF, entry_point=0x1000)


def test_parse_minimal_pe_success():
    pe = PEImage(_build_minimal_pe())

    assert pe.is_pe is True
    assert pe.errors == []
    assert pe.machine == 0x14C
    assert pe.timestamp == 0x5F3759DF
    assert pe.number_of_sections == 1
    assert pe.is_32bit() is True
    assert pe.is_64bit() is False
    assert pe.is_dll() is False
    assert pe.image_base == 0x400000
    assert pe.subsystem == pe.SUBSYSTEM_WINDOWS_GUI
    assert str(pe.linker_version) == "14.0"
    assert pe.subsystem_version == (6, 1)
    assert pe.number_of_rva_and_sizes == 16
    assert len(pe.data_directories) == 16

    s = pe.sections[0]
    assert s.name == ".text"
    assert s.virtual_address == 0x1000
    assert s.raw_data_offset == 0x200
    assert s.raw_data_size == 0x200
    assert s.raw_data_in_bounds is True
    assert pe.section_index(".text") == 0
    assert pe.section_index(0x1010) == 0
    assert pe.section_index(".data") is None


def test_entry_point_is_file_offset():
    pe = PEImage(_build_minimal_pe())
    assert pe.entry_point_raw == 0x1000
    assert pe.entry_point == 0x200


def test_entry_point_outside_sections_is_undefined():
    text = Section(b".text", 0x1000, b"\x90" * 0x100)
    pe = PEImage(build_pe([text], entry_point=0x8000))
    assert pe.is_pe
    assert pe.entry_point is None


def test_parse_non_pe_bytes_not_present():
    pe = PEImage(b"hello world")
    assert pe.is_pe is False
    assert pe.sections == ()
    assert pe.errors[0]["kind"] == "not_pe"
    assert pe.to_dict() == {"present": False, "mode": "file"}


def test_ten_zero_bytes_answer_every_query_negatively():
    pe = PEImage(b"\x00" * 10)

    assert pe.is_pe is False
    assert pe.machine is None
    assert pe.entry_point is None
    assert pe.number_of_sections is None
    assert pe.exports("CPlApplet") is False
    assert pe.imports("kernel32.dll") is False
    assert pe.locale(0x0409) is False
    assert pe.language(0x09) is False
    assert pe.number_of_signatures == 0
    assert pe.rich_signature is None
    assert pe.version_info == {}
    assert pe.imphash() == EMPTY_MD5


def test_bad_e_lfanew_is_not_pe():
    dos = bytearray(0x40)
    dos[0:2] = b"MZ"
    struct.pack_into("<I", dos, 0x3C, 0x10000)
    pe = PEImage(bytes(dos))
    assert pe.is_pe is False
    assert pe.errors[0]["code"] == "E_PE_E_LFANEW_OOB"


def test_missing_nt_signature_is_not_pe():
    data = bytearray(_build_minimal_pe())
    data[0x80:0x84] = b"NE\x00\x00"
    pe = PEImage(bytes(data))
    assert pe.is_pe is False
    assert pe.errors[0]["code"] == "E_PE_BAD_NT_SIGNATURE"


def test_truncated_optional_header_is_not_pe():
    data = build_pe()
    # e_lfanew(0x80) + signature + COFF, then only 0x40 bytes of optional header
    pe = PEImage(data[: 0x80 + 24 + 0x40])
    assert pe.is_pe is False
    assert pe.errors[0]["code"] == "E_PE_OPT_TRUNCATED"


def test_control_panel_dll_exports_cplapplet():
    # Export directory lives inside the only section.
    exp, exp_dir = export_section(0x1000, "applet.cpl", ["CPlApplet"])
    data = build_pe([exp.section(b".text", characteristics=0x60000020)], directories={0: exp_dir}, characteristics=0x2102)

    pe = PEImage(data)
    assert pe.number_of_sections == 1
    assert pe.characteristics & pe.DLL
    assert pe.is_dll() is True
    assert pe.sections[0].name == ".text"
    assert pe.exports("CPlApplet") is True
    assert pe.exports("Other") is False
    assert pe.dll_name == "applet.cpl"
    assert pe.number_of_exports == 1


def test_queries_are_stable_across_calls():
    text = Section(b".text", 0x1000, b"\xC3" * 0x20)
    exp, exp_dir = export_section(0x2000, "x.dll", ["Run"])
    pe = PEImage(build_pe([text, exp.section(b".edata")], directories={0: exp_dir}))

    first = pe.to_dict()
    assert pe.exports("Run") is True
    assert pe.to_dict() == first
    assert pe.imphash() == pe.imphash()
