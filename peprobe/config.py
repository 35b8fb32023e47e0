from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel


class ParseLimits(BaseModel):
    # Headers
    max_sections: int = 96
    max_name_length: int = 512

    # Import / export tables
    max_import_dlls: int = 256
    max_import_functions: int = 4096
    max_exports: int = 65536

    # Resource tree (type -> name -> language)
    max_resource_nodes: int = 4096
    max_resource_depth: int = 3
    max_version_info_size: int = 2_000_000

    # Certificate table
    max_certificates: int = 16
    max_signature_depth: int = 4

    # Rich header search window past the DOS header
    max_rich_search: int = 0x1000


class AppConfig(BaseModel):
    schema_version: str = "1.0"
    max_file_size_bytes: int = 200_000_000
    log_level: str = "WARNING"
    limits: ParseLimits = ParseLimits()


def load_config(path: Optional[str]) -> AppConfig:
    if not path:
        return AppConfig()
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    return AppConfig.model_validate(data or {})


def config_to_snapshot(cfg: AppConfig) -> Dict[str, Any]:
    return cfg.model_dump()
