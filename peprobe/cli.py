from __future__ import annotations

import logging
from importlib import metadata
from pathlib import Path
from typing import List, Optional

import typer

from peprobe.config import load_config
from peprobe.image import PEImage, ScanMode
from peprobe.log import configure_logging
from peprobe.reporters.console import render_console
from peprobe.reporters.json_report import to_json, write_json
from peprobe.scanner import read_file_bytes, scan_file

app = typer.Typer(add_completion=False)
logger = logging.getLogger(__name__)


def _tool_version() -> str:
    try:
        return metadata.version("peprobe")
    except metadata.PackageNotFoundError:
        return "0.1.0-dev"


def version_callback(value: bool):
    if value:
        typer.echo(f"peprobe version: {_tool_version()}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", callback=version_callback, is_eager=True, help="Show version and exit."
    ),
):
    """
    Read-only PE structure inspector. Never executes input.
    """
    pass


@app.command()
def inspect(
    path: str = typer.Argument(..., help="PE file to inspect."),
    config: str = typer.Option(None, "--config", help="Path to YAML config."),
    memory: bool = typer.Option(False, "--memory", help="Treat input as a mapped process-memory image."),
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON."),
    out: str = typer.Option(None, "--out", help="Also write the JSON report to this file."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log parse problems."),
):
    cfg = load_config(config)
    configure_logging("DEBUG" if verbose else cfg.log_level)

    p = Path(path).expanduser().resolve()
    if not p.is_file():
        raise typer.BadParameter(f"Not a file: {p}")

    report = scan_file(
        p,
        mode=ScanMode.PROCESS_MEMORY if memory else ScanMode.FILE,
        config=cfg,
        tool_version=_tool_version(),
    )
    data = report.model_dump()

    if out:
        write_json(Path(out), data)
    if as_json:
        typer.echo(to_json(data))
    else:
        render_console(data)


@app.command()
def imphash(
    paths: List[str] = typer.Argument(..., help="One or more files."),
    config: str = typer.Option(None, "--config", help="Path to YAML config."),
):
    """
    Print "<imphash>  <path>" for each file.
    """
    cfg = load_config(config)
    configure_logging(cfg.log_level)

    for raw in paths:
        p = Path(raw).expanduser()
        try:
            data, truncated = read_file_bytes(p, max_bytes=cfg.max_file_size_bytes)
        except OSError as e:
            typer.secho(f"Error reading {p}: {type(e).__name__}: {e}", fg=typer.colors.RED, err=True)
            continue
        if truncated:
            logger.warning("%s truncated to %d bytes", p, cfg.max_file_size_bytes)
        image = PEImage(data, limits=cfg.limits)
        typer.echo(f"{image.imphash()}  {raw}")


if __name__ == "__main__":
    app()
