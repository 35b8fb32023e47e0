from __future__ import annotations

import struct


def calculate_checksum(data: bytes, checksum_offset: int) -> int:
    """
    PE image checksum: 32-bit words summed with end-around carry, folded to
    16 bits, plus the file length. The stored CheckSum field is skipped.
    """
    remainder = len(data) % 4
    padded = data + b"\x00" * ((4 - remainder) % 4)
    skip = checksum_offset // 4

    checksum = 0
    for i, (dword,) in enumerate(struct.iter_unpack("<I", padded)):
        if i == skip:
            continue
        checksum += dword
        if checksum > 0xFFFFFFFF:
            checksum = (checksum & 0xFFFFFFFF) + (checksum >> 32)

    checksum = (checksum & 0xFFFF) + (checksum >> 16)
    checksum = checksum + (checksum >> 16)
    checksum &= 0xFFFF
    return (checksum + len(data)) & 0xFFFFFFFF
