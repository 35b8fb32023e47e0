from __future__ import annotations

import struct
from typing import Optional, Tuple

U32_MAX = 0xFFFFFFFF


def checked_add(*values: Optional[int], limit: int = U32_MAX) -> Optional[int]:
    """
    Add address components without wrapping.
    Returns None if any component is undefined/negative or the sum exceeds limit.
    """
    total = 0
    for v in values:
        if v is None or v < 0:
            return None
        total += v
    if total > limit:
        return None
    return total


def align4(x: int) -> int:
    return (x + 3) & ~3


class ByteCursor:
    """
    Bounds-checked random access over an immutable buffer.

    Every accessor returns None instead of raising when the requested span
    is not fully inside [0, len(data)).
    """

    __slots__ = ("_data", "_len")

    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        self._len = len(self._data)

    def __len__(self) -> int:
        return self._len

    @property
    def data(self) -> bytes:
        return self._data

    def in_bounds(self, off: Optional[int], size: int = 1) -> bool:
        if off is None or off < 0 or size < 0:
            return False
        return off + size <= self._len

    def read(self, off: Optional[int], size: int) -> Optional[bytes]:
        if not self.in_bounds(off, size):
            return None
        return self._data[off : off + size]

    def read_clamped(self, off: Optional[int], size: int) -> bytes:
        """Read up to size bytes, stopping at the end of the buffer."""
        if off is None or off < 0 or size <= 0 or off >= self._len:
            return b""
        return self._data[off : min(self._len, off + size)]

    def _unpack(self, fmt: str, off: Optional[int], size: int) -> Optional[int]:
        if not self.in_bounds(off, size):
            return None
        return struct.unpack_from(fmt, self._data, off)[0]

    def u8(self, off: Optional[int]) -> Optional[int]:
        return self._unpack("<B", off, 1)

    def u16(self, off: Optional[int]) -> Optional[int]:
        return self._unpack("<H", off, 2)

    def u32(self, off: Optional[int]) -> Optional[int]:
        return self._unpack("<I", off, 4)

    def u64(self, off: Optional[int]) -> Optional[int]:
        return self._unpack("<Q", off, 8)

    def find(self, needle: bytes, start: int = 0, end: Optional[int] = None) -> int:
        end = self._len if end is None else min(end, self._len)
        return self._data.find(needle, max(0, start), end)

    def c_string(self, off: Optional[int], *, max_len: int = 512) -> Optional[str]:
        """Read a NUL-terminated ASCII string; None if no NUL within max_len."""
        if off is None or off < 0 or off >= self._len:
            return None
        end = min(self._len, off + max_len)
        chunk = self._data[off:end]
        nul = chunk.find(b"\x00")
        if nul == -1:
            return None
        return chunk[:nul].decode("ascii", errors="replace")

    def utf16_zstring(self, off: Optional[int], *, max_chars: int = 512, limit: Optional[int] = None) -> Tuple[Optional[str], int]:
        """
        Read UTF-16LE null-terminated string starting at off.
        Returns (string_without_null, bytes_consumed_including_null).
        """
        if off is None or off < 0 or off >= self._len:
            return None, 0
        end = min(self._len if limit is None else min(limit, self._len), off + max_chars * 2)
        i = off
        while i + 1 < end:
            if self._data[i] == 0 and self._data[i + 1] == 0:
                raw = self._data[off:i]
                return raw.decode("utf-16le", errors="replace"), (i + 2) - off
            i += 2
        return None, 0

    def utf16_counted(self, off: Optional[int], *, max_chars: int = 512) -> Optional[str]:
        """Read a u16 length-prefixed UTF-16LE string (resource directory names)."""
        n = self.u16(off)
        if n is None or n > max_chars:
            return None
        raw = self.read(off + 2, n * 2)
        if raw is None:
            return None
        return raw.decode("utf-16le", errors="replace")
