from __future__ import annotations

import asyncio
import html
import inspect
import logging
import re
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path

from .codec import MacroSegment, iter_macros, replace_at, segment_at
from .config import MERMAID_CLI, log_event
from .errors import DiagramMismatch, RenderFailure

DIAGRAM_ID_PREFIX = "diagram-"
DIAGRAM_ID_RE = re.compile(r"^diagram-(\d+)$")

# Ordered: "flowchart" and "stateDiagram-v2" must win over their shorter prefixes.
KIND_PATTERNS = [
    ("flowchart", re.compile(r"^flowchart\b")),
    ("graph", re.compile(r"^graph\b")),
    ("sequence", re.compile(r"^sequenceDiagram\b")),
    ("class", re.compile(r"^classDiagram\b")),
    ("state", re.compile(r"^stateDiagram(?:-v2)?\b")),
    ("er", re.compile(r"^erDiagram\b")),
    ("gantt", re.compile(r"^gantt\b")),
    ("pie", re.compile(r"^pie\b")),
    ("journey", re.compile(r"^journey\b")),
]
KIND_TITLES = {
    "graph": "Graph",
    "flowchart": "Flowchart",
    "sequence": "Sequence",
    "class": "Class",
    "state": "State",
    "er": "ER",
    "gantt": "Gantt",
    "pie": "Pie",
    "journey": "Journey",
}
KNOWN_KEYWORDS = frozenset(
    {
        "graph",
        "flowchart",
        "sequenceDiagram",
        "classDiagram",
        "stateDiagram",
        "stateDiagram-v2",
        "erDiagram",
        "gantt",
        "pie",
        "journey",
        "gitGraph",
        "mindmap",
        "timeline",
        "quadrantChart",
        "requirementDiagram",
        "C4Context",
    }
)


def _first_statement(code: str) -> str:
    for line in (code or "").splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("%%"):
            return stripped
    return ""


def detect_diagram_kind(code: str) -> str:
    first = _first_statement(code)
    for kind, pattern in KIND_PATTERNS:
        if pattern.match(first):
            return kind
    return "graph"


def validate_diagram_source(code: str):
    first = _first_statement(code)
    if not first:
        return False, "diagram source is empty"
    keyword = re.split(r"[\s;:]", first, maxsplit=1)[0]
    if keyword not in KNOWN_KEYWORDS:
        return False, f"unknown diagram type {keyword!r}"
    return True, None


def diagram_ordinal(diagram_id: str) -> int:
    match = DIAGRAM_ID_RE.match(diagram_id or "")
    return int(match.group(1)) if match else -1


@dataclass
class DiagramRecord:
    id: str
    code: str
    original_code: str
    macro_type: str
    owner_path: tuple

    @property
    def owner_segment_index(self) -> int:
        return self.owner_path[0]

    @property
    def modified(self) -> bool:
        return self.code != self.original_code

    @property
    def kind(self) -> str:
        return detect_diagram_kind(self.code)

    @property
    def title(self) -> str:
        return f"{KIND_TITLES.get(self.kind, 'Graph')} Diagram {diagram_ordinal(self.id) + 1}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "macro_type": self.macro_type,
            "kind": self.kind,
            "title": self.title,
            "owner_path": list(self.owner_path),
            "code": self.code,
            "modified": self.modified,
        }


def _is_diagram(segment) -> bool:
    return isinstance(segment, MacroSegment) and segment.is_diagram


def register(segments: list) -> list:
    """Assign ``diagram-<n>`` ids depth-first and return one record per diagram.

    The ids are written onto the given segments (``segment.macro_id``), nested
    ones included; surfaces read them from there. The list itself is not rebuilt.
    """
    records = []
    for owner_path, segment in iter_macros(segments):
        if not segment.is_diagram:
            continue
        diagram_id = f"{DIAGRAM_ID_PREFIX}{len(records)}"
        segment.macro_id = diagram_id
        body = segment.body or ""
        records.append(
            DiagramRecord(
                id=diagram_id,
                code=body,
                original_code=body,
                macro_type=segment.macro_type,
                owner_path=owner_path,
            )
        )
    return records


def locate(segments: list, record: DiagramRecord) -> tuple:
    """Find the owner path of ``record`` in ``segments``, re-deriving it if the path went stale."""
    target = segment_at(segments, record.owner_path)
    if _is_diagram(target):
        if target.body in (record.code, record.original_code):
            return record.owner_path
        raise DiagramMismatch(record.id, "diagram was changed by another edit; update skipped")

    candidates = [
        owner_path
        for owner_path, segment in iter_macros(segments)
        if segment.is_diagram and segment.body == record.original_code
    ]
    if len(candidates) == 1:
        log_event(logging.INFO, "diagram_relocated", diagram_id=record.id, owner_path=candidates[0])
        return candidates[0]
    if not candidates:
        raise DiagramMismatch(record.id, "no diagram with the registered source remains")
    raise DiagramMismatch(record.id, f"{len(candidates)} diagrams share the registered source")


def apply(segments: list, record: DiagramRecord) -> list:
    owner_path = locate(segments, record)
    target = segment_at(segments, owner_path)
    if target.body == record.code:
        return list(segments)
    return replace_at(segments, owner_path, target.with_body(record.code))


class DiagramRegistry:
    def __init__(self):
        self._records = {}

    def register(self, segments: list) -> list:
        records = register(segments)
        self._records = {record.id: record for record in records}
        return records

    def records(self) -> list:
        return list(self._records.values())

    def __len__(self):
        return len(self._records)

    def __iter__(self):
        return iter(self._records.values())

    def __contains__(self, diagram_id):
        return diagram_id in self._records

    def get(self, diagram_id: str):
        return self._records.get(diagram_id)

    def require(self, diagram_id: str) -> DiagramRecord:
        record = self._records.get(diagram_id)
        if record is None:
            raise KeyError(f"unknown diagram id: {diagram_id}")
        return record

    def update_code(self, diagram_id: str, code: str) -> DiagramRecord:
        record = self.require(diagram_id)
        record.code = code
        return record

    def apply(self, segments: list, diagram_id: str) -> list:
        record = self.require(diagram_id)
        updated = apply(segments, record)
        record.owner_path = locate(updated, record)
        return updated

    def apply_all(self, segments: list):
        """Apply every modified record. Returns (segments, mismatches)."""
        mismatches = []
        for record in self._records.values():
            if not record.modified:
                continue
            try:
                segments = self.apply(segments, record.id)
            except DiagramMismatch as exc:
                mismatches.append(exc)
        return segments, mismatches


@dataclass(frozen=True)
class RenderResult:
    diagram_id: str
    output: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {"diagram_id": self.diagram_id, "ok": self.ok, "output": self.output, "error": self.error}


def _render_failed(record: DiagramRecord, exc: Exception, events=None) -> RenderResult:
    message = str(exc) or exc.__class__.__name__
    if events is not None:
        events.emit("render-failure", message, diagram_id=record.id)
    else:
        log_event(logging.WARNING, "render_failed", diagram_id=record.id, error=message)
    return RenderResult(record.id, error=message)


def render_diagram(record: DiagramRecord, renderer, events=None) -> RenderResult:
    try:
        output = renderer(record.code)
    except Exception as exc:
        return _render_failed(record, exc, events)
    return RenderResult(record.id, output=output)


def render_diagrams(records, renderer, events=None) -> dict:
    return {record.id: render_diagram(record, renderer, events) for record in records}


async def render_diagrams_async(records, renderer, events=None) -> dict:
    """Render all diagrams concurrently; ``renderer`` may return a value or an awaitable."""

    async def _render_one(record):
        try:
            output = renderer(record.code)
            if inspect.isawaitable(output):
                output = await output
        except Exception as exc:
            return _render_failed(record, exc, events)
        return RenderResult(record.id, output=output)

    records = list(records)
    results = await asyncio.gather(*(_render_one(record) for record in records))
    return {result.diagram_id: result for result in results}


def render_error_html(code: str, message: str) -> str:
    return (
        '<div class="wst-render-error" role="alert">'
        "<strong>Diagram render failed</strong>"
        f"<p>{html.escape(message or 'unknown error')}</p>"
        "<details open><summary>Diagram source</summary>"
        f"<pre>{html.escape(code or '')}</pre>"
        "</details></div>"
    )


class MermaidCliRenderer:
    """Render mermaid source to SVG with the mermaid CLI (``mmdc``)."""

    def __init__(self, executable: str | None = None, timeout: float | None = 60, extra_args=None):
        self.executable = executable or MERMAID_CLI
        self.timeout = timeout
        self.extra_args = list(extra_args or [])

    def check_available(self) -> str:
        resolved = shutil.which(self.executable)
        if resolved is None:
            raise RenderFailure(f"mermaid CLI not found on PATH: {self.executable}")
        return resolved

    def __call__(self, code: str) -> str:
        executable = self.check_available()
        with tempfile.TemporaryDirectory(prefix="wst-mermaid-") as tmp:
            source_path = Path(tmp) / "diagram.mmd"
            output_path = Path(tmp) / "diagram.svg"
            source_path.write_text(code, encoding="utf-8")
            cmd = [executable, "-i", str(source_path), "-o", str(output_path), *self.extra_args]
            try:
                proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
            except subprocess.TimeoutExpired as exc:
                raise RenderFailure(f"mermaid CLI timed out after {exc.timeout}s") from exc
            if proc.returncode != 0 or not output_path.exists():
                detail = (proc.stderr or proc.stdout or "").strip().splitlines()
                reason = detail[-1] if detail else f"exit {proc.returncode}"
                raise RenderFailure(f"mermaid CLI failed: {reason}")
            return output_path.read_text(encoding="utf-8")
