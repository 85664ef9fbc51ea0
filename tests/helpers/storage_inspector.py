from __future__ import annotations

import re
from dataclasses import dataclass

import lxml.html

from wsc.codec import find_macro_spans
from wsc.surfaces import protect_placeholders

MACRO_OPEN_RE = re.compile(r'<ac:structured-macro\b[^>]*?ac:name="([^"]*)"')
HEADING_TAGS = ("h1", "h2", "h3", "h4", "h5", "h6")


@dataclass(frozen=True)
class TableShape:
    rows: int
    cells_per_row: tuple

    def to_dict(self) -> dict:
        return {"rows": self.rows, "cells_per_row": list(self.cells_per_row)}


@dataclass(frozen=True)
class StructureSnapshot:
    tables: tuple
    headings: tuple
    paragraphs: int
    list_items: int
    emphasis: int
    max_depth: int
    macros: tuple

    def to_dict(self) -> dict:
        return {
            "tables": [table.to_dict() for table in self.tables],
            "headings": list(self.headings),
            "paragraphs": self.paragraphs,
            "list_items": self.list_items,
            "emphasis": self.emphasis,
            "max_depth": self.max_depth,
            "macros": list(self.macros),
        }


def _drop_spans(text: str, spans) -> str:
    out = []
    pos = 0
    for start, end in spans:
        out.append(text[pos:start])
        pos = end
    out.append(text[pos:])
    return "".join(out)


def _depth(element, level=0) -> int:
    children = [child for child in element if isinstance(child.tag, str)]
    if not children:
        return level
    return max(_depth(child, level + 1) for child in children)


def inspect_markup(text: str) -> StructureSnapshot:
    """Structural counts of storage or surface markup, ignoring macro internals."""
    macros = tuple(MACRO_OPEN_RE.findall(text))
    stripped = _drop_spans(text, find_macro_spans(text))
    stripped, _ = protect_placeholders(stripped)
    root = lxml.html.fragment_fromstring(stripped or "<p></p>", create_parent="div")
    tables = []
    for table in root.iter("table"):
        rows = [row for row in table.iter("tr")]
        tables.append(TableShape(len(rows), tuple(len(row.findall("td")) + len(row.findall("th")) for row in rows)))
    headings = tuple(
        f"{element.tag}:{element.text_content().strip()}" for element in root.iter(*HEADING_TAGS)
    )
    return StructureSnapshot(
        tables=tuple(tables),
        headings=headings,
        paragraphs=sum(1 for _ in root.iter("p")),
        list_items=sum(1 for _ in root.iter("li")),
        emphasis=sum(1 for _ in root.iter("strong", "em", "b", "i")),
        max_depth=_depth(root),
        macros=macros,
    )
