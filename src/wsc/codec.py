from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass, field, replace

from .config import DIAGRAM_MACRO_NAMES, log_event
from .errors import ParseFailure

MACRO_TAG = "ac:structured-macro"
CALLOUT_MACRO_NAMES = frozenset({"info", "note", "tip", "warning", "panel", "expand"})
CODE_MACRO_NAME = "code"
DIAGRAM_LANGUAGE = "mermaid"

# Attribute run that tolerates ">" and "/" inside quoted values.
_ATTRS = r"(?:[^>\"']|\"[^\"]*\"|'[^']*')*?"

TOKEN_RE = re.compile(
    r"(?P<cdata><!\[CDATA\[.*?\]\]>)"
    r"|(?P<cdata_open><!\[CDATA\[)"
    r"|(?P<comment><!--.*?-->)"
    r"|(?P<comment_open><!--)"
    r"|(?P<open><ac:structured-macro(?=[\s/>])" + _ATTRS + r"(?P<selfclose>/)?>)"
    r"|(?P<close></ac:structured-macro\s*>)",
    re.DOTALL,
)
OPEN_TAG_RE = re.compile(r"<ac:structured-macro(?=[\s/>])(?P<attrs>" + _ATTRS + r")(?P<selfclose>/)?>", re.DOTALL)
CLOSE_TAG_RE = re.compile(r"</ac:structured-macro\s*>\Z")
ATTR_RE = re.compile(r"([A-Za-z_:][-A-Za-z0-9_:.]*)\s*=\s*(?:\"([^\"]*)\"|'([^']*)')")
PARAM_RE = re.compile(
    r"<ac:parameter(?=[\s/>])(?P<attrs>" + _ATTRS + r")(?:/>|>(?P<value>.*?)</ac:parameter\s*>)",
    re.DOTALL,
)
PLAIN_BODY_RE = re.compile(
    r"<ac:plain-text-body(?=[\s/>])" + _ATTRS + r"(?:/>|>(?P<value>.*?)</ac:plain-text-body\s*>)",
    re.DOTALL,
)
RICH_BODY_RE = re.compile(
    r"<ac:rich-text-body(?=[\s/>])" + _ATTRS + r"(?:/>|>(?P<value>.*?)</ac:rich-text-body\s*>)",
    re.DOTALL,
)
CDATA_RE = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.DOTALL)


@dataclass
class MarkupSegment:
    text: str

    @property
    def kind(self) -> str:
        return "markup"

    def to_dict(self) -> dict:
        return {"kind": "markup", "text": self.text}


@dataclass
class MacroSegment:
    name: str
    macro_type: str
    raw: str
    parameters: dict = field(default_factory=dict)
    body: str | None = None
    source_body: str | None = None
    body_span: tuple | None = None
    body_wrapper: tuple | None = None
    children: list | None = None
    inner_span: tuple | None = None
    macro_id: str | None = None

    @property
    def kind(self) -> str:
        return "macro"

    @property
    def is_diagram(self) -> bool:
        return self.macro_type in {"diagram", "code-diagram"}

    @property
    def body_modified(self) -> bool:
        return self.body != self.source_body

    def with_body(self, body: str) -> "MacroSegment":
        return replace(self, body=body)

    def with_children(self, children: list) -> "MacroSegment":
        return replace(self, children=children)

    def to_dict(self) -> dict:
        data = {
            "kind": "macro",
            "name": self.name,
            "macro_type": self.macro_type,
            "macro_id": self.macro_id,
            "parameters": dict(self.parameters),
            "body": self.body,
        }
        if self.children is not None:
            data["children"] = [child.to_dict() for child in self.children]
        return data


def local_attr(attrs: dict, name: str) -> str | None:
    if name in attrs:
        return attrs[name]
    for key, value in attrs.items():
        if key.split(":")[-1] == name:
            return value
    return None


def parse_attrs(attr_text: str) -> dict:
    attrs = {}
    for match in ATTR_RE.finditer(attr_text or ""):
        value = match.group(2) if match.group(2) is not None else match.group(3)
        attrs[match.group(1)] = html.unescape(value)
    return attrs


def classify_macro(name: str, parameters: dict) -> str:
    lname = (name or "").strip().lower()
    if lname in DIAGRAM_MACRO_NAMES:
        return "diagram"
    if lname == CODE_MACRO_NAME:
        language = (parameters.get("language") or "").strip().lower()
        return "code-diagram" if language == DIAGRAM_LANGUAGE else "code"
    if lname in CALLOUT_MACRO_NAMES:
        return "callout"
    return "opaque"


def decode_payload(raw_value: str) -> str:
    """Normalize a CDATA or literal payload to its text value."""
    out = []
    pos = 0
    for match in CDATA_RE.finditer(raw_value):
        out.append(html.unescape(raw_value[pos:match.start()]))
        out.append(match.group(1))
        pos = match.end()
    out.append(html.unescape(raw_value[pos:]))
    return "".join(out)


def encode_cdata(text: str) -> str:
    return "<![CDATA[" + text.replace("]]>", "]]]]><![CDATA[>") + "]]>"


def _tokenize(text: str):
    """Return top-level macro spans and the spans of CDATA/comment content outside them."""
    macro_spans = []
    opaque_spans = []
    depth = 0
    start = 0
    for match in TOKEN_RE.finditer(text):
        if match.group("cdata_open") is not None:
            raise ParseFailure("unterminated CDATA section", match.start())
        if match.group("comment_open") is not None:
            raise ParseFailure("unterminated comment", match.start())
        if match.group("cdata") is not None:
            if depth == 0:
                opaque_spans.append((match.start() + 9, match.end() - 3))
            continue
        if match.group("comment") is not None:
            if depth == 0:
                opaque_spans.append((match.start(), match.end()))
            continue
        if match.group("open") is not None:
            if match.group("selfclose"):
                if depth == 0:
                    macro_spans.append((match.start(), match.end()))
                continue
            if depth == 0:
                start = match.start()
            depth += 1
            continue
        if depth == 0:
            raise ParseFailure("closing macro tag without an opening tag", match.start())
        depth -= 1
        if depth == 0:
            macro_spans.append((start, match.end()))
    if depth:
        raise ParseFailure("macro is never closed", start)
    return macro_spans, opaque_spans


def find_macro_spans(text: str) -> list:
    return _tokenize(text)[0]


def _mask(text: str) -> str:
    macro_spans, opaque_spans = _tokenize(text)
    chars = list(text)
    for start, end in macro_spans + opaque_spans:
        chars[start:end] = " " * (end - start)
    return "".join(chars)


def parse_macro(raw: str) -> MacroSegment:
    open_match = OPEN_TAG_RE.match(raw)
    if open_match is None:
        raise ParseFailure("not a structured macro", 0)
    attrs = parse_attrs(open_match.group("attrs"))
    name = local_attr(attrs, "name") or ""

    if open_match.group("selfclose"):
        macro_type = classify_macro(name, {})
        segment = MacroSegment(name=name, macro_type=macro_type, raw=raw)
        if segment.is_diagram:
            segment.body = segment.source_body = ""
            segment.body_wrapper = _payload_wrapper(macro_type)
        return segment

    close_match = CLOSE_TAG_RE.search(raw)
    if close_match is None:
        raise ParseFailure("macro is never closed", 0)
    inner_start = open_match.end()
    inner_end = close_match.start()
    inner = raw[inner_start:inner_end]
    masked = _mask(inner)

    parameters = {}
    param_spans = {}
    for match in PARAM_RE.finditer(masked):
        param_name = local_attr(parse_attrs(match.group("attrs")), "name")
        if param_name is None or param_name in parameters:
            continue
        if match.group("value") is None:
            parameters[param_name] = ""
            continue
        value_start, value_end = match.span("value")
        parameters[param_name] = decode_payload(inner[value_start:value_end])
        param_spans[param_name] = (inner_start + value_start, inner_start + value_end)

    plain_span = None
    plain_match = PLAIN_BODY_RE.search(masked)
    if plain_match is not None and plain_match.group("value") is not None:
        value_start, value_end = plain_match.span("value")
        plain_span = (inner_start + value_start, inner_start + value_end)

    macro_type = classify_macro(name, parameters)
    segment = MacroSegment(name=name, macro_type=macro_type, raw=raw, parameters=parameters)

    if macro_type == "diagram":
        if "code" in param_spans:
            segment.body_span = param_spans["code"]
            segment.body = parameters["code"]
        elif plain_span is not None:
            segment.body_span = plain_span
            segment.body = decode_payload(raw[plain_span[0]:plain_span[1]])
        else:
            segment.body = ""
            segment.body_span = (inner_end, inner_end)
            segment.body_wrapper = _payload_wrapper(macro_type)
    elif macro_type in {"code", "code-diagram"}:
        if plain_span is not None:
            segment.body_span = plain_span
            segment.body = decode_payload(raw[plain_span[0]:plain_span[1]])
        else:
            segment.body = ""
            segment.body_span = (inner_end, inner_end)
            segment.body_wrapper = _payload_wrapper(macro_type)
    segment.source_body = segment.body

    rich_match = RICH_BODY_RE.search(masked)
    if rich_match is not None and rich_match.group("value") is not None:
        value_start, value_end = rich_match.span("value")
        segment.inner_span = (inner_start + value_start, inner_start + value_end)
        try:
            segment.children = parse_or_fail(raw[segment.inner_span[0]:segment.inner_span[1]])
        except ParseFailure as exc:
            log_event(logging.WARNING, "nested_parse_failed", macro=name, error=exc)
            segment.children = None
            segment.inner_span = None
    return segment


def _payload_wrapper(macro_type: str) -> tuple:
    if macro_type == "diagram":
        return ('<ac:parameter ac:name="code">', "</ac:parameter>")
    return ("<ac:plain-text-body>", "</ac:plain-text-body>")


def parse_or_fail(storage_text: str) -> list:
    """Split storage text into markup and macro segments; raise ParseFailure when unbalanced."""
    segments = []
    pos = 0
    for start, end in find_macro_spans(storage_text):
        if start > pos:
            segments.append(MarkupSegment(storage_text[pos:start]))
        segments.append(parse_macro(storage_text[start:end]))
        pos = end
    if pos < len(storage_text):
        segments.append(MarkupSegment(storage_text[pos:]))
    return segments


def parse(storage_text: str, events=None) -> list:
    try:
        return parse_or_fail(storage_text)
    except ParseFailure as exc:
        log_event(logging.WARNING, "parse_failed", position=exc.position, error=exc)
        if events is not None:
            events.report(exc, position=exc.position)
        return [MarkupSegment(storage_text)] if storage_text else []


def serialize_segment(segment) -> str:
    if isinstance(segment, MarkupSegment):
        return segment.text
    raw = segment.raw
    edits = []
    if segment.body is not None and segment.body_modified and segment.body_span is not None:
        payload = encode_cdata(segment.body)
        if segment.body_wrapper is not None:
            payload = segment.body_wrapper[0] + payload + segment.body_wrapper[1]
        edits.append((segment.body_span, payload))
    if segment.children is not None and segment.inner_span is not None:
        start, end = segment.inner_span
        inner = serialize(segment.children)
        if inner != raw[start:end]:
            edits.append((segment.inner_span, inner))
    if not edits and segment.body_modified and segment.body_wrapper is not None:
        # Self-closing macro gaining a payload.
        open_match = OPEN_TAG_RE.match(raw)
        payload = segment.body_wrapper[0] + encode_cdata(segment.body or "") + segment.body_wrapper[1]
        return f"<{MACRO_TAG}{open_match.group('attrs').rstrip()}>{payload}</{MACRO_TAG}>"
    for (start, end), text in sorted(edits, key=lambda item: item[0][0], reverse=True):
        raw = raw[:start] + text + raw[end:]
    return raw


def serialize(segments: list) -> str:
    return "".join(serialize_segment(segment) for segment in segments)


def merge_markup(segments: list) -> list:
    merged = []
    for segment in segments:
        if isinstance(segment, MarkupSegment):
            if not segment.text:
                continue
            if merged and isinstance(merged[-1], MarkupSegment):
                merged[-1] = MarkupSegment(merged[-1].text + segment.text)
                continue
        merged.append(segment)
    return merged


def iter_macros(segments: list, path: tuple = ()):
    """Yield (owner_path, segment) for every macro, depth first in document order."""
    for index, segment in enumerate(segments):
        if not isinstance(segment, MacroSegment):
            continue
        owner_path = path + (index,)
        yield owner_path, segment
        if segment.children:
            yield from iter_macros(segment.children, owner_path)


def segment_at(segments: list, owner_path: tuple):
    current = None
    items = segments
    for index in owner_path:
        if items is None or index < 0 or index >= len(items):
            return None
        current = items[index]
        items = current.children if isinstance(current, MacroSegment) else None
    return current


def replace_at(segments: list, owner_path: tuple, new_segment) -> list:
    """Return a copy of ``segments`` with the segment at ``owner_path`` swapped out."""
    head, rest = owner_path[0], owner_path[1:]
    updated = list(segments)
    if not rest:
        updated[head] = new_segment
        return updated
    owner = updated[head]
    updated[head] = owner.with_children(replace_at(owner.children, rest, new_segment))
    return updated


def build_diagram_macro(code: str, name: str = "mermaid") -> MacroSegment:
    raw = (
        f'<{MACRO_TAG} ac:name="{name}" ac:schema-version="1">'
        f'<ac:parameter ac:name="code">{encode_cdata(code)}</ac:parameter>'
        f"</{MACRO_TAG}>"
    )
    return parse_macro(raw)
