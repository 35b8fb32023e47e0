from __future__ import annotations

from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from peprobe.cursor import ByteCursor, align4
from peprobe.errors import err

VS_VERSION_INFO = "VS_VERSION_INFO"
_CONTAINER_KEYS = {VS_VERSION_INFO, "StringFileInfo", "VarFileInfo"}
_MAX_NESTING = 8


class _Block(NamedTuple):
    length: int
    value_length: int
    type: int
    key: str
    header_end: int
    end: int


def _read_block(vs: ByteCursor, off: int, limit: int, *, max_key_chars: int) -> Optional[_Block]:
    if off < 0 or off + 6 > limit:
        return None
    wlen = vs.u16(off)
    wvlen = vs.u16(off + 2)
    wtype = vs.u16(off + 4)
    if wlen is None or wvlen is None or wtype is None or wlen < 6:
        return None
    end = off + wlen
    if end > limit:
        return None
    key, consumed = vs.utf16_zstring(off + 6, max_chars=max_key_chars, limit=end)
    if key is None:
        return None
    return _Block(wlen, wvlen, wtype, key, off + 6 + consumed, end)


def _value_bytes(block: _Block) -> int:
    # wValueLength counts WCHARs for text values, bytes for binary ones.
    return block.value_length * 2 if block.type == 1 else block.value_length


def parse_version_info(
    blob: bytes,
    *,
    max_pairs: int = 200,
    max_key_chars: int = 200,
    max_val_chars: int = 2000,
) -> Tuple[Dict[str, str], List[Dict[str, Any]]]:
    """
    Parse VS_VERSIONINFO / StringFileInfo / StringTable / String blocks.
    Returns (kv_pairs, errors). The first occurrence of a key wins.
    """
    errors: List[Dict[str, Any]] = []
    pairs: Dict[str, str] = {}
    vs = ByteCursor(blob)

    def parse_children(children_off: int, block_end: int, depth: int) -> None:
        if depth > _MAX_NESTING:
            errors.append(err("E_PE_VI_TOO_DEEP", "VersionInfo nesting too deep.", depth=depth))
            return
        cur = align4(children_off)
        while cur + 6 <= block_end:
            blk = _read_block(vs, cur, block_end, max_key_chars=max_key_chars)
            if blk is None:
                break

            val_off = align4(blk.header_end)
            if blk.key not in _CONTAINER_KEYS and blk.type == 1 and blk.value_length > 0 and len(pairs) < max_pairs:
                val_len = min(blk.value_length * 2, max_val_chars * 2)
                raw = vs.read_clamped(val_off, min(val_len, blk.end - val_off))
                if blk.key not in pairs:
                    pairs[blk.key] = raw.decode("utf-16le", errors="replace").rstrip("\x00")

            child_off = align4(val_off + _value_bytes(blk))
            if child_off < blk.end:
                parse_children(child_off, blk.end, depth + 1)

            cur = align4(blk.end)

    root = _read_block(vs, 0, len(vs), max_key_chars=max_key_chars)
    if root is None:
        return {}, [err("E_PE_VI_PARSE_FAILED", "Failed to parse VS_VERSIONINFO root.")]
    if root.key != VS_VERSION_INFO:
        return {}, [err("E_PE_VI_BAD_ROOT", "Root key is not VS_VERSION_INFO.", root_key=root.key)]

    # Skip VS_FIXEDFILEINFO
    child_off = align4(align4(root.header_end) + _value_bytes(root))
    if child_off < root.end:
        parse_children(child_off, root.end, 0)

    return {k: pairs[k] for k in sorted(pairs)}, errors
