from __future__ import annotations

import inspect
import logging
import re
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

import lxml.html
from lxml import etree

from . import events as ev
from .config import CONTEXT_CHARS, MIN_SELECTION_CHARS, log_event
from .errors import ReplacementNotFound, SelectionStateError
from .formatter import strip_code_fences
from .surfaces import SLOT_TAG, protect_placeholders, restore_placeholders, serialize_children, serialize_markup

ALLOWED_TAGS = frozenset(
    {
        "h1", "h2", "h3", "h4", "h5", "h6",
        "p", "strong", "b", "em", "i", "u", "s", "strike", "sub", "sup",
        "ul", "ol", "li",
        "table", "thead", "tbody", "tr", "td", "th",
        "br", "hr", "a", "img", "code", "pre", "blockquote", "div", "span",
    }
)
DROP_WITH_CONTENT_TAGS = frozenset({"script", "style", "iframe", "object", "embed", "noscript", "template", "head"})
STRIPPED_ATTRS = frozenset({"style", "class", "id"})
URL_ATTRS = frozenset({"href", "src"})
BLOCK_TAGS = frozenset(
    {
        "p", "div", "h1", "h2", "h3", "h4", "h5", "h6", "li", "ul", "ol", "blockquote", "pre",
        "table", "thead", "tbody", "tfoot", "tr", "td", "th", "br", "hr",
    }
)
# Never split through these; ranges crossing them are rewritten chunk by chunk.
UNSPLITTABLE_TAGS = frozenset({"table", "thead", "tbody", "tfoot", "tr", "td", "th", SLOT_TAG})
INLINE_CONTAINERS = frozenset({"p", "h1", "h2", "h3", "h4", "h5", "h6", "li", "td", "th", "span", "strong", "em"})
MARKER_TAG = "wst-marker"


class SelectionState(Enum):
    IDLE = "idle"
    SELECTED = "selected"
    AWAITING_EXTERNAL_EDIT = "awaiting-external-edit"
    READY_TO_APPLY = "ready-to-apply"
    APPLIED = "applied"
    CANCELLED = "cancelled"


def _tag(element) -> str:
    return element.tag.lower() if isinstance(element.tag, str) else ""


def _remove_keep_tail(element) -> None:
    parent = element.getparent()
    if parent is None:
        return
    if element.tail:
        previous = element.getprevious()
        if previous is not None:
            previous.tail = (previous.tail or "") + element.tail
        else:
            parent.text = (parent.text or "") + element.tail
    parent.remove(element)


def sanitize_fragment(fragment: str) -> str:
    """Reduce an externally produced fragment to allow-listed structural markup."""
    text = strip_code_fences(fragment)
    if not text.strip():
        return ""
    container = lxml.html.fragment_fromstring(text, create_parent="div")
    for element in list(container.iterdescendants()):
        if not isinstance(element.tag, str) or _tag(element) in DROP_WITH_CONTENT_TAGS:
            _remove_keep_tail(element)
    for element in list(container.iterdescendants()):
        if _tag(element) not in ALLOWED_TAGS:
            element.drop_tag()
            continue
        for name in list(element.attrib):
            lname = name.lower()
            value = element.attrib[name]
            if lname in STRIPPED_ATTRS or lname.startswith("on"):
                del element.attrib[name]
            elif lname in URL_ATTRS and value.strip().lower().startswith("javascript:"):
                del element.attrib[name]
    return serialize_children(container)


def fragment_text(fragment: str) -> str:
    if not fragment.strip():
        return ""
    return lxml.html.fragment_fromstring(fragment, create_parent="div").text_content()


@dataclass(frozen=True)
class TextRef:
    element: object
    attr: str

    def value(self) -> str:
        return getattr(self.element, self.attr) or ""


@dataclass(frozen=True)
class _Chunk:
    start: int
    end: int
    ref: TextRef | None = None
    slot: bool = False


@dataclass(frozen=True)
class DocumentRange:
    start_ref: TextRef
    start_offset: int
    end_ref: TextRef
    end_offset: int
    flat_start: int
    flat_end: int


@dataclass(frozen=True)
class SelectionAnchor:
    document_range: DocumentRange
    captured_text: str
    is_multi_node: bool


@dataclass
class UndoRecord:
    container: object
    saved: object
    is_root: bool = False


@dataclass
class ReplacementTransaction:
    anchor: SelectionAnchor
    incoming_fragment: str
    applied_at: datetime
    strategy: str
    snapshot: UndoRecord = field(repr=False, default=None)


@dataclass(frozen=True)
class EditRequest:
    selected_text: str
    surrounding_context: str
    user_instruction: str

    def to_dict(self) -> dict:
        return {
            "selected_text": self.selected_text,
            "surrounding_context": self.surrounding_context,
            "user_instruction": self.user_instruction,
        }


@dataclass(frozen=True)
class EditResponse:
    success: bool
    edited_text: str = ""
    error: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "EditResponse":
        return cls(
            success=bool(data.get("success")),
            edited_text=data.get("edited_text") or "",
            error=data.get("error"),
        )


@dataclass(frozen=True)
class EditTicket:
    generation: int
    request: EditRequest


def _squash(text: str) -> str:
    return " ".join((text or "").split())


class SurfaceTree:
    """Mutable HTML tree of a surface, with macro placeholders held out of reach."""

    def __init__(self, surface_html: str):
        protected, placeholders = protect_placeholders(surface_html)
        self.placeholders = [surface_html[item.start:item.end] for item in placeholders]
        if protected.strip():
            self.root = lxml.html.fragment_fromstring(protected, create_parent="div")
        else:
            self.root = lxml.html.Element("div")

    def to_html(self) -> str:
        return restore_placeholders(serialize_markup(self.root), self.placeholders)

    def chunks(self) -> list:
        chunks = []
        pos = 0

        def add(ref, length):
            nonlocal pos
            chunks.append(_Chunk(pos, pos + length, ref))
            pos += length

        def walk(element):
            nonlocal pos
            if not isinstance(element.tag, str):
                if element.tail:
                    add(TextRef(element, "tail"), len(element.tail))
                return
            if _tag(element) == SLOT_TAG:
                chunks.append(_Chunk(pos, pos, slot=True))
            block = element is not self.root and _tag(element) in BLOCK_TAGS
            if block:
                add(None, 1)
            if element.text:
                add(TextRef(element, "text"), len(element.text))
            for child in element:
                walk(child)
            if block:
                add(None, 1)
            if element is not self.root and element.tail:
                add(TextRef(element, "tail"), len(element.tail))

        walk(self.root)
        return chunks

    def text(self, chunks=None) -> str:
        chunks = self.chunks() if chunks is None else chunks
        return "".join("\n" if chunk.ref is None else chunk.ref.value() for chunk in chunks if not chunk.slot)

    def range_from_offsets(self, start: int, end: int, chunks=None):
        chunks = self.chunks() if chunks is None else chunks
        first = next((c for c in chunks if c.ref is not None and c.start <= start < c.end), None)
        last = next((c for c in chunks if c.ref is not None and c.start < end <= c.end), None)
        if first is None or last is None or start >= end:
            return None
        if any(c.slot and start < c.start < end for c in chunks):
            return None
        return DocumentRange(
            start_ref=first.ref,
            start_offset=start - first.start,
            end_ref=last.ref,
            end_offset=end - last.start,
            flat_start=start,
            flat_end=end,
        )

    def find_range(self, text: str, occurrence: int = 0):
        words = (text or "").split()
        if not words:
            return None
        pattern = re.compile(r"\s+".join(re.escape(word) for word in words))
        chunks = self.chunks()
        flat = self.text(chunks)
        for index, match in enumerate(pattern.finditer(flat)):
            if index == occurrence:
                return self.range_from_offsets(match.start(), match.end(), chunks)
        return None

    def range_text(self, document_range: DocumentRange):
        """Current text between the range ends, or None when either end left the tree."""
        chunks = self.chunks()
        start_index = end_index = None
        for index, chunk in enumerate(chunks):
            if chunk.ref is None:
                continue
            if start_index is None and chunk.ref == document_range.start_ref:
                start_index = index
            if chunk.ref == document_range.end_ref:
                end_index = index
        if start_index is None or end_index is None or end_index < start_index:
            return None
        if start_index == end_index:
            return document_range.start_ref.value()[document_range.start_offset:document_range.end_offset]
        parts = [document_range.start_ref.value()[document_range.start_offset:]]
        for chunk in chunks[start_index + 1:end_index]:
            if chunk.slot:
                continue
            parts.append("\n" if chunk.ref is None else chunk.ref.value())
        parts.append(document_range.end_ref.value()[:document_range.end_offset])
        return "".join(parts)

    def position_container(self, ref: TextRef):
        return ref.element if ref.attr == "text" else ref.element.getparent()

    def common_container(self, first, second):
        ancestors = [first] + list(first.iterancestors())
        second_chain = {id(node) for node in [second] + list(second.iterancestors())}
        for node in ancestors:
            if id(node) in second_chain:
                return node
        return self.root

    def snapshot(self, container) -> UndoRecord:
        return UndoRecord(container=container, saved=deepcopy(container), is_root=container is self.root)

    def restore(self, record: UndoRecord) -> None:
        if record.is_root:
            self.root = deepcopy(record.saved)
            return
        parent = record.container.getparent()
        if parent is None:
            raise SelectionStateError("edited region is no longer part of the surface")
        parent.replace(record.container, deepcopy(record.saved))

    def swap_text(self, document_range: DocumentRange, text: str) -> None:
        ref = document_range.start_ref
        value = ref.value()
        setattr(ref.element, ref.attr, value[:document_range.start_offset] + text + value[document_range.end_offset:])

    def _insert_marker(self, ref: TextRef, offset: int):
        marker = etree.Element(MARKER_TAG)
        value = ref.value()
        if ref.attr == "text":
            ref.element.text = value[:offset]
            ref.element.insert(0, marker)
        else:
            ref.element.tail = value[:offset]
            parent = ref.element.getparent()
            parent.insert(parent.index(ref.element) + 1, marker)
        marker.tail = value[offset:] or None
        return marker

    def _split_path(self, node, container):
        path = []
        parent = node.getparent()
        while parent is not None and parent is not container:
            path.append(parent)
            parent = parent.getparent()
        return path

    def can_swap_subtree(self, document_range: DocumentRange) -> bool:
        start_parent = self.position_container(document_range.start_ref)
        end_parent = self.position_container(document_range.end_ref)
        if start_parent is None or end_parent is None:
            return False
        container = self.common_container(start_parent, end_parent)
        for parent in (start_parent, end_parent):
            node = parent
            while node is not None and node is not container:
                if _tag(node) in UNSPLITTABLE_TAGS:
                    return False
                node = node.getparent()
        return True

    def swap_subtree(self, document_range: DocumentRange, fragment: str) -> None:
        end_marker = self._insert_marker(document_range.end_ref, document_range.end_offset)
        start_marker = self._insert_marker(document_range.start_ref, document_range.start_offset)
        container = self.common_container(start_marker.getparent(), end_marker.getparent())
        touched = []

        # Split start side: the marker and everything after it move into a right-hand clone.
        node = start_marker
        while node.getparent() is not container:
            parent = node.getparent()
            right = parent.makeelement(parent.tag, dict(parent.attrib))
            for sibling in [node] + list(node.itersiblings()):
                right.append(sibling)
            right.tail = parent.tail
            parent.tail = None
            grand = parent.getparent()
            grand.insert(grand.index(parent) + 1, right)
            touched.extend([parent, right])
            node = right
        start_top = node

        # Split end side: the marker and everything before it move into a left-hand clone.
        node = end_marker
        while node.getparent() is not container:
            parent = node.getparent()
            left = parent.makeelement(parent.tag, dict(parent.attrib))
            left.text = parent.text
            parent.text = node.tail
            node.tail = None
            for sibling in list(node.itersiblings(preceding=True))[::-1] + [node]:
                left.append(sibling)
            grand = parent.getparent()
            grand.insert(grand.index(parent), left)
            touched.extend([parent, left])
            node = left
        end_top = node

        kept_tail = end_top.tail
        end_top.tail = None
        first = container.index(start_top)
        last = container.index(end_top)
        for element in list(container)[first:last + 1]:
            container.remove(element)

        leading, elements = self._parse_fragment(fragment, container)
        for offset, element in enumerate(elements):
            container.insert(first + offset, element)
        self._append_text_before(container, first, leading)
        if elements:
            elements[-1].tail = (elements[-1].tail or "") + (kept_tail or "")
        else:
            self._append_text_before(container, first, kept_tail)

        for element in touched:
            if element.getparent() is None:
                continue
            if len(element) == 0 and not (element.text or "").strip():
                _remove_keep_tail(element)

    def _append_text_before(self, container, index: int, text) -> None:
        if not text:
            return
        if index == 0:
            container.text = (container.text or "") + text
        else:
            previous = container[index - 1]
            previous.tail = (previous.tail or "") + text

    def _parse_fragment(self, fragment: str, container):
        if not fragment.strip():
            return fragment, []
        parts = lxml.html.fragments_fromstring(fragment)
        leading = ""
        if parts and isinstance(parts[0], str):
            leading = parts.pop(0)
        # A lone paragraph dropped into inline context is unwrapped.
        if (
            len(parts) == 1
            and _tag(parts[0]) == "p"
            and not leading.strip()
            and _tag(container) in INLINE_CONTAINERS
        ):
            paragraph = parts[0]
            leading = paragraph.text or ""
            tail = paragraph.tail or ""
            parts = list(paragraph)
            if parts:
                parts[-1].tail = (parts[-1].tail or "") + tail
            else:
                leading += tail
        return leading, parts

    def swap_chunks(self, document_range: DocumentRange, text: str) -> None:
        """Rewrite the covered part of every text chunk in place; the first chunk takes ``text``."""
        refs = [chunk.ref for chunk in self.chunks() if chunk.ref is not None]
        first = refs.index(document_range.start_ref)
        last = refs.index(document_range.end_ref)
        for position, ref in enumerate(refs[first:last + 1], start=first):
            value = ref.value()
            start = document_range.start_offset if position == first else 0
            end = document_range.end_offset if position == last else len(value)
            insert = text if position == first else ""
            setattr(ref.element, ref.attr, (value[:start] + insert + value[end:]) or None)


class SelectionReplacer:
    """Select, request, review and apply a scoped replacement in a live surface."""

    def __init__(self, surface_html: str, commit=None, events=None, min_chars=None, context_chars=None):
        self.tree = SurfaceTree(surface_html)
        self.commit = commit
        self.events = events if events is not None else ev.EventChannel()
        self.min_chars = MIN_SELECTION_CHARS if min_chars is None else min_chars
        self.context_chars = CONTEXT_CHARS if context_chars is None else context_chars
        self.state = SelectionState.IDLE
        self.anchor = None
        self.candidate = None
        self.transaction = None
        self.generation = 0

    @property
    def surface(self) -> str:
        return self.tree.to_html()

    def reload(self, surface_html: str) -> None:
        self.close()
        self.tree = SurfaceTree(surface_html)

    def _require(self, *states) -> None:
        if self.state not in states:
            allowed = ", ".join(state.value for state in states)
            raise SelectionStateError(f"operation needs state {allowed}; current state is {self.state.value}")

    def _supersede(self) -> None:
        if self.state is SelectionState.AWAITING_EXTERNAL_EDIT:
            self.events.emit(ev.EDIT_DISCARDED, "pending edit cancelled by a new selection", level="info")
        if self.state in (
            SelectionState.SELECTED,
            SelectionState.AWAITING_EXTERNAL_EDIT,
            SelectionState.READY_TO_APPLY,
        ):
            self.state = SelectionState.CANCELLED
        self.generation += 1
        self.candidate = None

    def _capture(self, document_range):
        if document_range is None:
            return None
        flat = self.tree.text()
        captured = flat[document_range.flat_start:document_range.flat_end]
        if len(captured.strip()) < self.min_chars:
            return None
        self._supersede()
        self.anchor = SelectionAnchor(
            document_range=document_range,
            captured_text=captured,
            is_multi_node=document_range.start_ref != document_range.end_ref or "\n" in captured,
        )
        self.transaction = None
        self.state = SelectionState.SELECTED
        log_event(logging.DEBUG, "selection_captured", chars=len(captured), multi=self.anchor.is_multi_node)
        return self.anchor

    def select(self, text: str, occurrence: int = 0):
        """Select the ``occurrence``-th match of ``text``. Short or unmatched selections are ignored."""
        if len((text or "").strip()) < self.min_chars:
            return None
        return self._capture(self.tree.find_range(text, occurrence))

    def select_range(self, start: int, end: int):
        return self._capture(self.tree.range_from_offsets(start, end))

    def surrounding_context(self) -> str:
        flat = self.tree.text()
        document_range = self.anchor.document_range
        start = max(0, document_range.flat_start - self.context_chars)
        end = min(len(flat), document_range.flat_end + self.context_chars)
        return _squash(flat[start:end])

    def begin_edit(self, instruction: str) -> EditTicket:
        self._require(SelectionState.SELECTED, SelectionState.READY_TO_APPLY)
        self.candidate = None
        self.state = SelectionState.AWAITING_EXTERNAL_EDIT
        request = EditRequest(
            selected_text=self.anchor.captured_text,
            surrounding_context=self.surrounding_context(),
            user_instruction=instruction,
        )
        return EditTicket(self.generation, request)

    def receive_edit(self, ticket: EditTicket, response: EditResponse) -> bool:
        if ticket.generation != self.generation or self.state is not SelectionState.AWAITING_EXTERNAL_EDIT:
            self.events.emit(ev.EDIT_DISCARDED, "late edit response ignored", level="info", generation=ticket.generation)
            return False
        if not response.success or not (response.edited_text or "").strip():
            self.state = SelectionState.SELECTED
            self.events.emit(ev.EDIT_FAILED, response.error or "edit service returned no text")
            return False
        return self.propose(response.edited_text)

    def propose(self, fragment: str) -> bool:
        self._require(
            SelectionState.SELECTED,
            SelectionState.AWAITING_EXTERNAL_EDIT,
            SelectionState.READY_TO_APPLY,
        )
        self.candidate = sanitize_fragment(fragment)
        self.state = SelectionState.READY_TO_APPLY
        return True

    def run_edit(self, instruction: str, client) -> bool:
        ticket = self.begin_edit(instruction)
        try:
            response = client(ticket.request)
        except Exception as exc:
            response = EditResponse(success=False, error=str(exc))
        return self.receive_edit(ticket, response)

    async def run_edit_async(self, instruction: str, client) -> bool:
        ticket = self.begin_edit(instruction)
        try:
            response = client(ticket.request)
            if inspect.isawaitable(response):
                response = await response
        except Exception as exc:
            response = EditResponse(success=False, error=str(exc))
        return self.receive_edit(ticket, response)

    def _range_intact(self) -> bool:
        current = self.tree.range_text(self.anchor.document_range)
        return current is not None and _squash(current) == _squash(self.anchor.captured_text)

    def _swap(self, document_range: DocumentRange, fragment: str):
        if document_range.start_ref == document_range.end_ref:
            snapshot = self.tree.snapshot(self.tree.position_container(document_range.start_ref))
            self.tree.swap_text(document_range, fragment_text(fragment))
            return "single-node", snapshot
        if self.tree.can_swap_subtree(document_range):
            start_parent = self.tree.position_container(document_range.start_ref)
            end_parent = self.tree.position_container(document_range.end_ref)
            snapshot = self.tree.snapshot(self.tree.common_container(start_parent, end_parent))
            self.tree.swap_subtree(document_range, fragment)
            return "subtree", snapshot
        # Ranges through tables keep their cells; only the covered text changes.
        snapshot = self.tree.snapshot(self.tree.root)
        self.tree.swap_chunks(document_range, fragment_text(fragment))
        return "in-place", snapshot

    def apply(self) -> ReplacementTransaction:
        self._require(SelectionState.READY_TO_APPLY)
        fragment = self.candidate or ""
        document_range = self.anchor.document_range
        try:
            if not self._range_intact():
                captured = self.anchor.captured_text
                document_range = self.tree.find_range(captured)
                if document_range is None:
                    raise ReplacementNotFound(captured)
                log_event(logging.INFO, "selection_relocated", chars=len(captured))
            strategy, snapshot = self._swap(document_range, fragment)
        except ReplacementNotFound as exc:
            self.state = SelectionState.CANCELLED
            self.events.report(exc)
            raise

        self.transaction = ReplacementTransaction(
            anchor=self.anchor,
            incoming_fragment=fragment,
            applied_at=datetime.now(timezone.utc),
            strategy=strategy,
            snapshot=snapshot,
        )
        self.state = SelectionState.APPLIED
        self._commit()
        self.events.emit(ev.REPLACEMENT_APPLIED, "replacement applied", level="info", strategy=strategy)
        return self.transaction

    def decline(self) -> None:
        self._require(
            SelectionState.SELECTED,
            SelectionState.AWAITING_EXTERNAL_EDIT,
            SelectionState.READY_TO_APPLY,
        )
        self.generation += 1
        self.candidate = None
        self.state = SelectionState.CANCELLED

    def undo(self) -> None:
        self._require(SelectionState.APPLIED)
        if self.transaction is None or self.transaction.snapshot is None:
            raise SelectionStateError("nothing to undo")
        self.tree.restore(self.transaction.snapshot)
        self.transaction = None
        self.state = SelectionState.CANCELLED
        self._commit()
        self.events.emit(ev.REPLACEMENT_UNDONE, "replacement undone", level="info")

    def close(self) -> None:
        if self.state is SelectionState.AWAITING_EXTERNAL_EDIT:
            self.events.emit(ev.EDIT_DISCARDED, "edit panel closed with a request in flight", level="info")
        self.generation += 1
        self.anchor = None
        self.candidate = None
        self.transaction = None
        self.state = SelectionState.IDLE

    def _commit(self) -> None:
        if self.commit is not None:
            self.commit(self.tree.to_html())
