from __future__ import annotations

from typing import Any, Dict

from rich.console import Console
from rich.markup import escape
from rich.table import Table

console = Console()


def _hex(v: Any) -> str:
    return f"{v:#x}" if isinstance(v, int) else str(v)


def render_console(report: Dict[str, Any]) -> None:
    inp = report.get("input", {})
    pe = report.get("pe", {})

    t = Table(title="peprobe: PE summary (static, read-only)")
    t.add_column("Field")
    t.add_column("Value", overflow="fold")
    t.add_row("input", str(inp.get("input_path", "")))
    t.add_row("size", str(inp.get("file_size", "")))
    t.add_row("sha256", str(inp.get("sha256", "")))
    t.add_row("mode", str(report.get("mode", "")))

    if not pe.get("present"):
        t.add_row("pe", "[yellow]not a PE image[/yellow]")
        console.print(t)
        return

    hdr = pe.get("header", {})
    t.add_row("format", str(hdr.get("format", "")))
    t.add_row("machine", f"{_hex(hdr.get('machine'))} ({pe.get('machine_name')})")
    t.add_row("subsystem", f"{hdr.get('subsystem')} ({pe.get('subsystem_name')})")
    t.add_row("timestamp", str(hdr.get("timestamp", "")))
    t.add_row("characteristics", _hex(hdr.get("characteristics")))
    t.add_row("image_base", _hex(hdr.get("image_base")))
    t.add_row("entry_point", _hex(pe.get("entry_point")))
    t.add_row("linker_version", str(hdr.get("linker_version", "")))
    t.add_row("imphash", str(pe.get("imphash", "")))
    t.add_row("pdb_path", escape(pe.get("pdb_path") or ""))
    rich_sig = pe.get("rich_signature")
    t.add_row("rich_signature", f"key={_hex(rich_sig['key'])} entries={len(rich_sig['entries'])}" if rich_sig else "-")
    console.print(t)

    st = Table(title="Sections")
    for col in ("#", "name", "virtual_address", "virtual_size", "raw_offset", "raw_size", "characteristics"):
        st.add_column(col)
    for s in pe.get("sections", []):
        st.add_row(
            str(s["index"]),
            escape(s["name"]),
            _hex(s["virtual_address"]),
            _hex(s["virtual_size"]),
            _hex(s["raw_data_offset"]),
            _hex(s["raw_data_size"]),
            _hex(s["characteristics"]),
        )
    console.print(st)

    imports = pe.get("imports", [])
    if imports:
        it = Table(title="Imports")
        it.add_column("dll")
        it.add_column("functions", overflow="fold")
        for imp in imports:
            names = list(imp.get("functions", [])) + [f"ord{o}" for o in imp.get("ordinals", [])]
            it.add_row(escape(imp["dll"]), escape(", ".join(names)))
        console.print(it)

    sigs = pe.get("signatures", [])
    if sigs:
        sg = Table(title="Signatures")
        for col in ("kind", "subject", "issuer", "serial", "not_before", "not_after"):
            sg.add_column(col, overflow="fold")
        for s in sigs:
            sg.add_row(s["kind"], escape(s["subject"]), escape(s["issuer"]), s["serial"], str(s["not_before"]), str(s["not_after"]))
        console.print(sg)

    vi = pe.get("version_info", {})
    if vi:
        vt = Table(title="Version info")
        vt.add_column("key")
        vt.add_column("value", overflow="fold")
        for k, v in vi.items():
            vt.add_row(escape(k), escape(v))
        console.print(vt)

    errors = report.get("errors", [])
    if errors:
        console.print(f"[yellow]{len(errors)} parse problem(s) recorded[/yellow]")
