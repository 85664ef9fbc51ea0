from __future__ import annotations

import json
import sys
from pathlib import Path

from . import events as ev
from .codec import iter_macros, parse_or_fail, serialize
from .diagrams import MermaidCliRenderer
from .errors import ReplacementNotFound
from .formatter import format_storage
from .session import EditSession
from .snapshot import VersionSnapshot


def read_text(path: Path) -> str:
    return Path(path).read_text(encoding="utf-8")


def emit_text(text: str, output_path: Path | None = None) -> None:
    if output_path is None:
        sys.stdout.write(text)
        if text and not text.endswith("\n"):
            sys.stdout.write("\n")
        return
    Path(output_path).write_text(text, encoding="utf-8")
    print(f"wrote {output_path}", file=sys.stderr)


def emit_json(value, output_path: Path | None = None) -> None:
    emit_text(json.dumps(value, indent=2, ensure_ascii=False) + "\n", output_path)


def load_session(input_path: Path, title: str = "") -> EditSession:
    return EditSession(read_text(input_path), title=title or Path(input_path).stem)


def run_parse(input_path: Path, output_path: Path | None = None):
    session = load_session(input_path)
    macro_counts = {}
    for _, segment in iter_macros(session.segments):
        macro_counts[segment.macro_type] = macro_counts.get(segment.macro_type, 0) + 1
    emit_json(
        {
            "plain_only": session.plain_only,
            "segment_count": len(session.segments),
            "macro_counts": macro_counts,
            "segments": [segment.to_dict() for segment in session.segments],
        },
        output_path,
    )
    return 0


def run_diagrams(input_path: Path, output_path: Path | None = None):
    session = load_session(input_path)
    emit_json([record.to_dict() for record in session.diagrams], output_path)
    return 0


def run_surface(input_path: Path, mode: str, output_path: Path | None = None, render: bool = False, renderer=None):
    session = load_session(input_path)
    if render:
        if renderer is None:
            renderer = MermaidCliRenderer()
            renderer.check_available()
        session.render_diagrams(renderer)
    emit_text(session.to_surface(mode), output_path)
    return 0


def run_commit(input_path: Path, surface_path: Path, mode: str, output_path: Path | None = None):
    session = load_session(input_path)
    session.to_surface(mode)
    session.commit(mode, read_text(surface_path))
    emit_text(session.storage_text, output_path)
    return 1 if ev.DIAGRAM_MISMATCH in session.events.kinds() else 0


def run_set_diagram(input_path: Path, diagram_id: str, code: str, output_path: Path | None = None):
    session = load_session(input_path)
    if diagram_id not in session.registry:
        raise ValueError(f"unknown diagram id {diagram_id!r}; known ids: {', '.join(r.id for r in session.diagrams) or 'none'}")
    applied = session.update_diagram(diagram_id, code)
    if not applied:
        return 1
    emit_text(session.storage_text, output_path)
    return 0


def run_replace(
    input_path: Path,
    select_text: str,
    fragment: str,
    mode: str = "preview",
    occurrence: int = 0,
    output_path: Path | None = None,
):
    session = load_session(input_path)
    replacer = session.replacer(mode)
    if replacer.select(select_text, occurrence=occurrence) is None:
        print(f"selection not found or too short: {select_text!r}", file=sys.stderr)
        return 1
    replacer.propose(fragment)
    try:
        replacer.apply()
    except ReplacementNotFound:
        return 1
    emit_text(session.storage_text, output_path)
    return 0


def run_check(input_path: Path):
    text = read_text(input_path)
    segments = parse_or_fail(text)
    rebuilt = serialize(segments)
    macros = sum(1 for _ in iter_macros(segments))
    if rebuilt != text:
        print(f"round-trip drift: {len(text)} chars in, {len(rebuilt)} chars out", file=sys.stderr)
        return 1
    print(f"ok: {len(segments)} segments, {macros} macros round-trip unchanged")
    return 0


def run_format(input_path: Path, output_path: Path | None = None):
    emit_text(format_storage(read_text(input_path)), output_path)
    return 0


def run_snapshot(input_path: Path, title: str | None = None, output_path: Path | None = None):
    session = load_session(input_path, title=title or "")
    emit_text(session.snapshot().to_json() + "\n", output_path)
    return 0


def run_restore(snapshot_path: Path, output_path: Path | None = None):
    snapshot = VersionSnapshot.from_json(read_text(snapshot_path))
    emit_text(EditSession.from_snapshot(snapshot).storage_text, output_path)
    return 0
