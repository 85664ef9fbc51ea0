from __future__ import annotations

import logging
import re
from html.entities import name2codepoint

from lxml import etree

from .codec import find_macro_spans
from .config import log_event
from .errors import ParseFailure

STORAGE_NAMESPACES = {
    "ac": "http://atlassian.com/content",
    "ri": "http://atlassian.com/resource/identifier",
    "at": "http://atlassian.com/template",
}
_WRAPPER_OPEN = "<wst-root " + " ".join(f'xmlns:{prefix}="{uri}"' for prefix, uri in STORAGE_NAMESPACES.items()) + ">"
_WRAPPER_CLOSE = "</wst-root>"
NS_DECL_RE = re.compile(r'\s+xmlns:(?:' + "|".join(STORAGE_NAMESPACES) + r')="[^"]*"')
ENTITY_OR_CDATA_RE = re.compile(r"(<!\[CDATA\[.*?\]\]>)|&([A-Za-z][A-Za-z0-9]*);", re.DOTALL)
XML_ENTITIES = frozenset({"amp", "lt", "gt", "quot", "apos"})
CODE_FENCE_RE = re.compile(r"```[A-Za-z0-9_+-]*[ \t]*\n(?P<body>.*?)\n?[ \t]*```", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced block, or the text unchanged when there is none."""
    match = CODE_FENCE_RE.search(text or "")
    if match is None:
        return text or ""
    return match.group("body")


def _numeric_entities(text: str) -> str:
    def _sub(match):
        if match.group(1) is not None:
            return match.group(1)
        name = match.group(2)
        if name in XML_ENTITIES or name not in name2codepoint:
            return match.group(0)
        return f"&#{name2codepoint[name]};"

    return ENTITY_OR_CDATA_RE.sub(_sub, text)


def parse_storage_xml(text: str, keep_blank_text: bool = False):
    parser = etree.XMLParser(strip_cdata=False, resolve_entities=False, remove_blank_text=not keep_blank_text)
    return etree.fromstring(_WRAPPER_OPEN + _numeric_entities(text) + _WRAPPER_CLOSE, parser)


def format_storage(text: str, indent: str = "    ") -> str:
    if not (text or "").strip():
        return text
    try:
        root = parse_storage_xml(text)
    except etree.XMLSyntaxError as exc:
        log_event(logging.WARNING, "format_failed", error=exc)
        return text

    parts = []
    if root.text and root.text.strip():
        parts.append(root.text.strip())
    for child in root:
        tail = child.tail
        child.tail = None
        if isinstance(child.tag, str):
            etree.indent(child, space=indent)
        parts.append(NS_DECL_RE.sub("", etree.tostring(child, encoding="unicode")))
        if tail and tail.strip():
            parts.append(tail.strip())
    return "\n".join(parts) + "\n"


def validate_storage(text: str) -> list:
    if not (text or "").strip():
        return ["document is empty"]
    warnings = []
    try:
        parse_storage_xml(text, keep_blank_text=True)
    except etree.XMLSyntaxError as exc:
        warnings.append(f"not well-formed XML: {exc}")
    try:
        find_macro_spans(text)
    except ParseFailure as exc:
        warnings.append(f"unbalanced macro markup at offset {exc.position}: {exc}")
    return warnings
