from __future__ import annotations

from typing import Any, Dict

# Error kinds. Parse problems are reported, never raised.
NOT_PE = "not_pe"
MALFORMED_DIRECTORY = "malformed_directory"
AMBIGUOUS_LAYOUT = "ambiguous_layout"


def err(code: str, message: str, *, kind: str = MALFORMED_DIRECTORY, **extra: Any) -> Dict[str, Any]:
    d = {"code": code, "message": message, "kind": kind}
    d.update(extra)
    return d
