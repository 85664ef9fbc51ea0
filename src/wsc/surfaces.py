from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass
from urllib.parse import quote, unquote

import lxml.html
from lxml import etree

from .codec import (
    _ATTRS,
    CDATA_RE,
    MacroSegment,
    MarkupSegment,
    build_diagram_macro,
    merge_markup,
    parse,
    parse_attrs,
    parse_macro,
    segment_at,
    serialize_segment,
)
from .config import log_event
from .diagrams import DiagramRegistry, KIND_TITLES, detect_diagram_kind, diagram_ordinal, render_error_html
from .errors import ParseFailure

KIND_ATTR = "data-wst-kind"
PLACEHOLDER_OPEN_RE = re.compile(r"<(?P<tag>div|span)\b(?P<attrs>" + _ATTRS + r")(?P<selfclose>/)?>", re.IGNORECASE | re.DOTALL)
SLOT_TAG = "wst-slot"
SLOT_RE = re.compile(r'<wst-slot n="(\d+)"\s*(?:/>|>\s*</wst-slot>)')
FOREIGN_TAG_RE = re.compile(
    r"<!\[CDATA\[.*?\]\]>|<!--.*?-->|<(?P<close>/)?(?P<tag>(?:ac|ri):[A-Za-z][-A-Za-z0-9_.]*)" + _ATTRS + r"(?P<selfclose>/)?>",
    re.DOTALL,
)
SELF_CLOSED_RE = re.compile(r"<(?P<tag>[A-Za-z][-A-Za-z0-9_:.]*)(?P<attrs>" + _ATTRS + r")\s*/>", re.DOTALL)
TAG_STRIP_RE = re.compile(r"<[^>]+>")
PLAIN_MARKER_RE = re.compile(r"<!--wst:diagram(?P<attrs>[^>]*?)-->(?P<code>.*?)<!--/wst:diagram-->", re.DOTALL)
VOID_TAGS = frozenset(
    {"area", "base", "br", "col", "embed", "hr", "img", "input", "link", "meta", "source", "track", "wbr"}
)
DIV_TAG_RE = re.compile(r"<(/?)div\b" + _ATTRS + r"(/?)>", re.IGNORECASE | re.DOTALL)
SPAN_TAG_RE = re.compile(r"<(/?)span\b" + _ATTRS + r"(/?)>", re.IGNORECASE | re.DOTALL)


def encode_attr(text: str) -> str:
    return quote(text or "", safe="")


def decode_attr(text: str) -> str:
    return unquote(text or "")


@dataclass(frozen=True)
class Placeholder:
    start: int
    end: int
    kind: str
    attrs: dict

    @property
    def diagram_id(self):
        return self.attrs.get("data-diagram-id")


def _element_end(text: str, tag: str, pos: int) -> int:
    depth = 1
    scanner = SPAN_TAG_RE if tag.lower() == "span" else DIV_TAG_RE
    for match in scanner.finditer(text, pos):
        if match.group(2):
            continue
        depth += -1 if match.group(1) else 1
        if depth == 0:
            return match.end()
    raise ParseFailure(f"placeholder <{tag}> is never closed", pos)


def find_placeholders(text: str) -> list:
    """Locate top-level macro placeholders in surface HTML without parsing it."""
    found = []
    pos = 0
    while True:
        match = PLACEHOLDER_OPEN_RE.search(text, pos)
        if match is None:
            return found
        attrs = parse_attrs(match.group("attrs"))
        kind = attrs.get(KIND_ATTR)
        if kind is None:
            pos = match.end()
            continue
        if match.group("selfclose"):
            end = match.end()
        else:
            end = _element_end(text, match.group("tag"), match.end())
        found.append(Placeholder(match.start(), end, kind, attrs))
        pos = end


def protect_placeholders(text: str):
    """Swap every placeholder for an empty slot element. Returns (text, placeholders)."""
    placeholders = find_placeholders(text)
    out = []
    pos = 0
    for index, placeholder in enumerate(placeholders):
        out.append(text[pos:placeholder.start])
        out.append(f'<{SLOT_TAG} n="{index}"></{SLOT_TAG}>')
        pos = placeholder.end
    out.append(text[pos:])
    return "".join(out), placeholders


def restore_placeholders(text: str, originals: list) -> str:
    """Inverse of protect_placeholders, given the original placeholder markup strings."""
    return SLOT_RE.sub(lambda match: originals[int(match.group(1))], text)


def split_slots(text: str) -> list:
    """Markup runs around the slots of protected text; one more run than slots."""
    return SLOT_RE.split(text)[::2]


def find_foreign_spans(text: str) -> list:
    """Top-level spans of ac:/ri: elements that sit outside macros (links, images, emoticons)."""
    spans = []
    depth = 0
    start = 0
    for match in FOREIGN_TAG_RE.finditer(text):
        if match.group("tag") is None:
            continue
        if match.group("selfclose"):
            if depth == 0:
                spans.append((match.start(), match.end()))
            continue
        if match.group("close"):
            if depth == 0:
                return []
            depth -= 1
            if depth == 0:
                spans.append((start, match.end()))
            continue
        if depth == 0:
            start = match.start()
        depth += 1
    if depth:
        return []
    return spans


def visible_text(markup: str) -> str:
    text = CDATA_RE.sub(lambda match: match.group(1), markup)
    return html.unescape(TAG_STRIP_RE.sub("", text)).strip()


def serialize_children(element) -> str:
    parts = [html.escape(element.text or "", quote=False)]
    for child in element:
        parts.append(etree.tostring(child, encoding="unicode", method="xml", with_tail=True))
    return "".join(parts)


def _expand_non_void(match) -> str:
    tag = match.group("tag")
    if tag.lower() in VOID_TAGS or tag == SLOT_TAG:
        return match.group(0)
    return f"<{tag}{match.group('attrs')}></{tag}>"


def normalize_markup(text: str) -> str:
    """Macro-unaware cleanup of editor HTML back towards storage XHTML."""
    if not text.strip():
        return text
    container = lxml.html.fragment_fromstring(text, create_parent="div")
    for paragraph in list(container.iter("p")):
        if len(paragraph) or (paragraph.text or "").replace("\xa0", "").strip():
            continue
        parent = paragraph.getparent()
        if paragraph.tail:
            previous = paragraph.getprevious()
            if previous is not None:
                previous.tail = (previous.tail or "") + paragraph.tail
            else:
                parent.text = (parent.text or "") + paragraph.tail
        parent.remove(paragraph)
    return serialize_markup(container)


def serialize_markup(container) -> str:
    """Children of ``container`` as storage XHTML: explicit close tags, ``&nbsp;`` kept."""
    serialized = SELF_CLOSED_RE.sub(_expand_non_void, serialize_children(container))
    return serialized.replace("\xa0", "&nbsp;")


class SurfaceAdapter:
    """Maps a segment list to one editing surface and back."""

    mode = None

    def __init__(self, registry: DiagramRegistry | None = None, events=None):
        self.registry = registry if registry is not None else DiagramRegistry()
        self.events = events
        self._last_surface = None
        self._last_segments = None

    def to_surface(self, segments: list) -> str:
        surface = self._render(segments)
        self._last_surface = surface
        self._last_segments = list(segments)
        return surface

    def from_surface(self, content: str) -> list:
        if self._last_surface is not None and content == self._last_surface:
            return list(self._last_segments)
        return merge_markup(self._parse_surface(content))

    def _render(self, segments: list) -> str:
        raise NotImplementedError

    def _parse_surface(self, content: str) -> list:
        raise NotImplementedError

    def _live_code(self, segment: MacroSegment) -> str:
        record = self.registry.get(segment.macro_id) if segment.macro_id else None
        if record is not None:
            return record.code
        return segment.body or ""

    def _original_code(self, segment: MacroSegment) -> str:
        record = self.registry.get(segment.macro_id) if segment.macro_id else None
        if record is not None:
            return record.original_code
        return segment.source_body or ""

    def _origin_segment(self, diagram_id, original_code: str):
        """Segment a placeholder was drawn from, when its record still matches."""
        record = self.registry.get(diagram_id) if diagram_id else None
        if record is None or record.original_code != original_code:
            return None, None
        segment = segment_at(self._last_segments or [], record.owner_path)
        if not isinstance(segment, MacroSegment) or not segment.is_diagram:
            return record, None
        return record, segment


class HtmlSurfaceAdapter(SurfaceAdapter):
    """Shared HTML dialect of the rich-text and preview surfaces."""

    def __init__(self, registry: DiagramRegistry | None = None, events=None):
        super().__init__(registry, events)
        # Markup run as rendered (and as normalized) -> its storage text.
        self._stored_runs = {}

    def to_surface(self, segments: list) -> str:
        surface = super().to_surface(segments)
        self._remember_runs(surface)
        return surface

    def _remember_runs(self, surface: str) -> None:
        protected, _ = protect_placeholders(surface)
        runs = split_slots(protected)
        for run in runs:
            self._stored_runs[run] = run
        normalized = split_slots(normalize_markup(protected))
        if len(normalized) == len(runs):
            for key, run in zip(normalized, runs):
                if key.strip() or not run.strip():
                    self._stored_runs.setdefault(key, run)

    def _stored_run(self, raw: str, normalized: str) -> str:
        """Storage text of an untouched run; edited runs come out normalized."""
        if raw in self._stored_runs:
            return self._stored_runs[raw]
        return self._stored_runs.get(normalized, normalized)

    def _render(self, segments: list) -> str:
        return "".join(self._render_segment(segment) for segment in segments)

    def _render_segment(self, segment) -> str:
        if isinstance(segment, MarkupSegment):
            return self._render_markup(segment.text)
        if segment.is_diagram:
            return self._render_diagram(segment)
        return self._render_macro(segment)

    def _render_markup(self, text: str) -> str:
        out = []
        pos = 0
        for start, end in find_foreign_spans(text):
            out.append(text[pos:start])
            raw = text[start:end]
            tag = raw[1:].split(None, 1)[0].rstrip("/>")
            label = html.escape(visible_text(raw) or tag)
            out.append(
                f'<span class="wst-inline" {KIND_ATTR}="inline" data-markup="{encode_attr(raw)}"'
                f' contenteditable="false">{label}</span>'
            )
            pos = end
        out.append(text[pos:])
        return "".join(out)

    def _diagram_title(self, segment: MacroSegment, code: str) -> str:
        label = KIND_TITLES.get(detect_diagram_kind(code), "Graph")
        return f"{label} Diagram {diagram_ordinal(segment.macro_id or '') + 1}"

    def _diagram_body(self, segment: MacroSegment, code: str) -> str:
        return f'<pre class="wst-diagram-source">{html.escape(code)}</pre>'

    def _render_diagram(self, segment: MacroSegment) -> str:
        code = self._live_code(segment)
        attrs = [
            'class="wst-macro wst-diagram"',
            f'{KIND_ATTR}="diagram"',
            f'data-diagram-id="{html.escape(segment.macro_id or "")}"',
            f'data-original-code="{encode_attr(self._original_code(segment))}"',
            f'data-macro="{encode_attr(serialize_segment(segment))}"',
            f'title="{html.escape(self._diagram_title(segment, code))}"',
            'contenteditable="false"',
        ]
        return f"<div {' '.join(attrs)}>{self._diagram_body(segment, code)}</div>"

    def _macro_body(self, segment: MacroSegment) -> str:
        if segment.macro_type == "code":
            return f'<pre class="wst-code">{html.escape(segment.body or "")}</pre>'
        return ""

    def _render_macro(self, segment: MacroSegment) -> str:
        name = html.escape(segment.name or "macro")
        attrs = [
            f'class="wst-macro wst-{segment.macro_type}"',
            f'{KIND_ATTR}="macro"',
            f'data-macro-name="{name}"',
            f'data-macro="{encode_attr(serialize_segment(segment))}"',
            'contenteditable="false"',
        ]
        label = f'<span class="wst-macro-label">{name} macro</span>'
        return f"<div {' '.join(attrs)}>{label}{self._macro_body(segment)}</div>"

    def _parse_surface(self, content: str) -> list:
        protected, placeholders = protect_placeholders(content)
        pieces = SLOT_RE.split(normalize_markup(protected))
        runs = pieces[::2]
        raw_runs = split_slots(protected)
        if len(raw_runs) != len(runs):
            raw_runs = runs
        segments = [MarkupSegment(self._stored_run(raw_runs[0], runs[0]))]
        for index in range(1, len(runs)):
            segments.append(self._reunite(placeholders[int(pieces[2 * index - 1])]))
            segments.append(MarkupSegment(self._stored_run(raw_runs[index], runs[index])))
        return segments

    def _reunite(self, placeholder: Placeholder):
        attrs = placeholder.attrs
        if placeholder.kind == "inline":
            return MarkupSegment(decode_attr(attrs.get("data-markup")))
        raw = decode_attr(attrs.get("data-macro"))
        if placeholder.kind != "diagram":
            try:
                return parse_macro(raw)
            except ParseFailure:
                return MarkupSegment(raw)

        original = decode_attr(attrs.get("data-original-code"))
        try:
            segment = parse_macro(raw)
        except ParseFailure:
            segment = build_diagram_macro(original)
        record, _ = self._origin_segment(placeholder.diagram_id, original)
        if record is not None:
            segment.macro_id = record.id
            if segment.body != record.code:
                segment = segment.with_body(record.code)
        elif placeholder.diagram_id and placeholder.diagram_id in self.registry:
            log_event(logging.INFO, "placeholder_record_stale", diagram_id=placeholder.diagram_id)
        return segment


class RichTextAdapter(HtmlSurfaceAdapter):
    mode = "rich"


class PreviewAdapter(HtmlSurfaceAdapter):
    """Read-only surface; diagram placeholders carry a render slot."""

    mode = "preview"

    def __init__(self, registry: DiagramRegistry | None = None, events=None, renders=None):
        super().__init__(registry, events)
        self.renders = dict(renders or {})

    def set_renders(self, renders) -> None:
        self.renders = dict(renders or {})

    def _diagram_body(self, segment: MacroSegment, code: str) -> str:
        result = self.renders.get(segment.macro_id)
        if result is None:
            slot = f'<pre class="wst-diagram-source">{html.escape(code)}</pre>'
        elif result.ok:
            slot = result.output or ""
        else:
            slot = render_error_html(code, result.error)
        return f'<div class="wst-diagram-render">{slot}</div>'

    def _macro_body(self, segment: MacroSegment) -> str:
        if segment.children is not None:
            inner = "".join(self._render_segment(child) for child in segment.children)
            return f'<div class="wst-callout-body">{inner}</div>'
        return super()._macro_body(segment)


class PlainTextAdapter(SurfaceAdapter):
    """Storage text with diagram sources wrapped in comment markers."""

    mode = "plain"

    def _render(self, segments: list) -> str:
        return "".join(self._render_segment(segment) for segment in segments)

    def _render_segment(self, segment) -> str:
        if isinstance(segment, MarkupSegment):
            return segment.text
        if segment.is_diagram:
            return (
                f'<!--wst:diagram id="{segment.macro_id or ""}"'
                f' original="{encode_attr(self._original_code(segment))}"-->'
                f"{self._live_code(segment)}<!--/wst:diagram-->"
            )
        if segment.children is None or segment.inner_span is None or segment.body_modified:
            return serialize_segment(segment)
        # Nested diagrams stay editable inside their container.
        start, end = segment.inner_span
        inner = "".join(self._render_segment(child) for child in segment.children)
        return segment.raw[:start] + inner + segment.raw[end:]

    def _parse_surface(self, content: str) -> list:
        out = []
        pos = 0
        for match in PLAIN_MARKER_RE.finditer(content):
            out.append(content[pos:match.start()])
            out.append(self._reunite(match))
            pos = match.end()
        out.append(content[pos:])
        return parse("".join(out), self.events)

    def _reunite(self, match) -> str:
        attrs = parse_attrs(match.group("attrs"))
        original = decode_attr(attrs.get("original"))
        code = match.group("code")
        _, segment = self._origin_segment(attrs.get("id"), original)
        if segment is None:
            segment = build_diagram_macro(original)
        if segment.body == code:
            return serialize_segment(segment)
        return serialize_segment(segment.with_body(code))


ADAPTERS = {
    RichTextAdapter.mode: RichTextAdapter,
    PlainTextAdapter.mode: PlainTextAdapter,
    PreviewAdapter.mode: PreviewAdapter,
}


def make_adapter(mode: str, registry: DiagramRegistry | None = None, events=None) -> SurfaceAdapter:
    try:
        adapter_cls = ADAPTERS[mode]
    except KeyError:
        raise ValueError(f"unknown surface mode: {mode!r} (expected one of {', '.join(sorted(ADAPTERS))})")
    return adapter_cls(registry=registry, events=events)
