from __future__ import annotations

import logging
from typing import Union

from rich.console import Console
from rich.logging import RichHandler

_ROOT = "peprobe"


def configure_logging(level: Union[int, str] = logging.WARNING) -> logging.Logger:
    """
    Attach a RichHandler (stderr) to the package logger.
    Library modules only create loggers; the CLI decides where they go.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.WARNING

    logger = logging.getLogger(_ROOT)
    logger.setLevel(level)

    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=False,
        )
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        logger.addHandler(handler)
    logger.propagate = False
    return logger
