from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Optional

from peprobe.config import AppConfig, config_to_snapshot
from peprobe.image import PEImage, ScanMode
from peprobe.model import InputEvidence, Report

logger = logging.getLogger(__name__)


def file_hashes(path: Path) -> tuple[str, str]:
    sha256 = hashlib.sha256()
    md5 = hashlib.md5()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            sha256.update(chunk)
            md5.update(chunk)
    return sha256.hexdigest(), md5.hexdigest()


def read_file_bytes(path: Path, *, max_bytes: int) -> tuple[bytes, bool]:
    with path.open("rb") as f:
        data = f.read(max_bytes + 1)
    if len(data) > max_bytes:
        return data[:max_bytes], True
    return data, False


def scan_file(
    path: Path,
    *,
    mode: ScanMode = ScanMode.FILE,
    config: Optional[AppConfig] = None,
    tool_version: str = "0.1.0",
) -> Report:
    """Read one file, parse it and return a report of every extracted fact."""
    cfg = config or AppConfig()
    data, truncated = read_file_bytes(path, max_bytes=cfg.max_file_size_bytes)
    if truncated:
        logger.warning("%s truncated to %d bytes", path, cfg.max_file_size_bytes)
    sha256, md5 = file_hashes(path)

    image = PEImage(data, mode=mode, limits=cfg.limits)
    pe = image.to_dict()

    return Report(
        tool={"name": "peprobe", "version": tool_version},
        config_snapshot=config_to_snapshot(cfg),
        input=InputEvidence(
            input_path=str(path),
            file_size=path.stat().st_size,
            sha256=sha256,
            md5=md5,
            truncated=truncated,
        ),
        mode=image.mode.value,
        pe=pe,
        errors=image.errors,
    )
