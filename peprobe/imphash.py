from __future__ import annotations

import hashlib
from typing import Dict, Iterable, List, Optional

from peprobe.imports import ImportedDll, ImportedFunction

_STRIPPED_EXTENSIONS = ("dll", "ocx", "sys")

# Winsock 1.1 ordinals shared by ws2_32 and wsock32. Ordinal imports from
# these DLLs hash by name, matching the common imphash implementations.
_WINSOCK_ORDINALS: Dict[int, str] = {
    1: "accept",
    2: "bind",
    3: "closesocket",
    4: "connect",
    5: "getpeername",
    6: "getsockname",
    7: "getsockopt",
    8: "htonl",
    9: "htons",
    10: "ioctlsocket",
    11: "inet_addr",
    12: "inet_ntoa",
    13: "listen",
    14: "ntohl",
    15: "ntohs",
    16: "recv",
    17: "recvfrom",
    18: "select",
    19: "send",
    20: "sendto",
    21: "setsockopt",
    22: "shutdown",
    23: "socket",
    51: "gethostbyaddr",
    52: "gethostbyname",
    53: "getprotobyname",
    54: "getprotobynumber",
    55: "getservbyname",
    56: "getservbyport",
    57: "gethostname",
    101: "WSAAsyncSelect",
    102: "WSAAsyncGetHostByAddr",
    103: "WSAAsyncGetHostByName",
    104: "WSAAsyncGetProtoByNumber",
    105: "WSAAsyncGetProtoByName",
    106: "WSAAsyncGetServByPort",
    107: "WSAAsyncGetServByName",
    108: "WSACancelAsyncRequest",
    109: "WSASetBlockingHook",
    110: "WSAUnhookBlockingHook",
    111: "WSAGetLastError",
    112: "WSASetLastError",
    113: "WSACancelBlockingCall",
    114: "WSAIsBlocking",
    115: "WSAStartup",
    116: "WSACleanup",
    151: "__WSAFDIsSet",
    500: "WEP",
}

ORDINAL_NAMES: Dict[str, Dict[int, str]] = {
    "ws2_32": _WINSOCK_ORDINALS,
    "wsock32": _WINSOCK_ORDINALS,
}


def normalize_dll_name(dll_name: str) -> str:
    """Lowercase and drop a trailing .dll/.ocx/.sys extension."""
    name = dll_name.lower()
    stem, dot, ext = name.rpartition(".")
    if dot and ext in _STRIPPED_EXTENSIONS:
        return stem
    return name


def _function_token(dll: str, func: ImportedFunction) -> Optional[str]:
    if func.name is not None:
        return func.name.lower()
    if func.ordinal is None:
        return None
    known = ORDINAL_NAMES.get(dll, {}).get(func.ordinal)
    if known is not None:
        return known.lower()
    return f"ord{func.ordinal}"


def imphash_tokens(dlls: Iterable[ImportedDll]) -> List[str]:
    tokens: List[str] = []
    for d in dlls:
        dll = normalize_dll_name(d.dll_name)
        for f in d.functions:
            tok = _function_token(dll, f)
            if tok is not None:
                tokens.append(f"{dll}.{tok}")
    return tokens


def compute_imphash(dlls: Iterable[ImportedDll]) -> str:
    """
    MD5 over "dll.function" tokens joined by commas, in import order.
    No imports hash the empty string.
    """
    canonical = ",".join(imphash_tokens(dlls))
    return hashlib.md5(canonical.encode("ascii", errors="replace")).hexdigest()
