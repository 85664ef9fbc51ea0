from __future__ import annotations

import logging

from . import events as ev
from .codec import MarkupSegment, parse_or_fail, serialize
from .config import log_event
from .diagrams import DiagramRegistry, RenderResult, render_diagrams, render_diagrams_async, validate_diagram_source
from .errors import DiagramMismatch, ParseFailure
from .formatter import validate_storage
from .selection import SelectionReplacer
from .snapshot import VersionSnapshot
from .surfaces import PreviewAdapter, make_adapter

HTML_MODES = ("rich", "preview")


class EditSession:
    """One open document: its segments, diagram registry, surfaces and render results."""

    def __init__(self, storage_text: str = "", title: str = "", events=None):
        self.title = title
        self.events = events if events is not None else ev.EventChannel()
        self.registry = DiagramRegistry()
        self.renders = {}
        self._rendered_sources = {}
        self.segments = []
        self.plain_only = False
        self._storage_text = ""
        self._adapters = {}
        self.load(storage_text)

    @property
    def storage_text(self) -> str:
        return self._storage_text

    @property
    def diagrams(self) -> list:
        return self.registry.records()

    def load(self, storage_text: str) -> None:
        previous = {self._rendered_sources.get(key): result for key, result in self.renders.items()}
        try:
            self.segments = parse_or_fail(storage_text)
            self.plain_only = False
        except ParseFailure as exc:
            self.events.report(exc, position=exc.position)
            self.segments = [MarkupSegment(storage_text)] if storage_text else []
            self.plain_only = True
        self._storage_text = storage_text
        adapters = self._adapters
        self._adapters = {}
        self.registry.register(self.segments)
        # Keep render output for diagrams whose source did not change.
        self.renders = {}
        self._rendered_sources = {}
        for record in self.registry:
            result = previous.get(record.code)
            if result is not None:
                self.renders[record.id] = RenderResult(record.id, result.output, result.error)
                self._rendered_sources[record.id] = record.code
        # Adapters already handed out are re-rendered from the new text.
        for mode, adapter in adapters.items():
            if self.plain_only and mode != "plain":
                continue
            self._adapters[mode] = adapter
            self.adapter(mode).to_surface(self.segments)

    def adapter(self, mode: str):
        if self.plain_only and mode != "plain":
            raise ValueError(f"document could not be parsed; only the plain surface is available (asked for {mode!r})")
        adapter = self._adapters.get(mode)
        if adapter is None:
            adapter = make_adapter(mode, self.registry, self.events)
            self._adapters[mode] = adapter
        if isinstance(adapter, PreviewAdapter):
            adapter.set_renders(self.renders)
        return adapter

    def to_surface(self, mode: str = "rich", renders=None) -> str:
        if renders is not None:
            self.renders = dict(renders)
            self._rendered_sources = {key: self.registry.get(key).code for key in self.renders if key in self.registry}
        return self.adapter(mode).to_surface(self.segments)

    def commit(self, mode: str, content: str) -> str:
        """Merge an edited surface back into storage text. The last commit wins."""
        segments = self.adapter(mode).from_surface(content)
        segments, mismatches = self.registry.apply_all(segments)
        for exc in mismatches:
            self.events.report(exc)
        self.load(serialize(segments))
        return self.storage_text

    def update_diagram(self, diagram_id: str, code: str) -> bool:
        record = self.registry.update_code(diagram_id, code)
        ok, reason = validate_diagram_source(code)
        if not ok:
            log_event(logging.WARNING, "diagram_source_suspect", diagram_id=diagram_id, reason=reason)
        try:
            segments = self.registry.apply(self.segments, diagram_id)
        except DiagramMismatch as exc:
            record.code = record.original_code
            self.events.report(exc)
            return False
        self.load(serialize(segments))
        return True

    def render_diagrams(self, renderer) -> dict:
        self._rendered_sources = {record.id: record.code for record in self.registry}
        self.renders = render_diagrams(self.registry.records(), renderer, self.events)
        return self.renders

    async def render_diagrams_async(self, renderer) -> dict:
        self._rendered_sources = {record.id: record.code for record in self.registry}
        self.renders = await render_diagrams_async(self.registry.records(), renderer, self.events)
        return self.renders

    def replacer(self, mode: str = "preview", **kwargs) -> SelectionReplacer:
        if mode not in HTML_MODES:
            raise ValueError(f"selection replacement needs an HTML surface ({', '.join(HTML_MODES)}), not {mode!r}")
        surface = self.to_surface(mode)
        return SelectionReplacer(
            surface,
            commit=lambda content: self.commit(mode, content),
            events=self.events,
            **kwargs,
        )

    def snapshot(self) -> VersionSnapshot:
        return VersionSnapshot.capture(self.title, self.storage_text)

    @classmethod
    def from_snapshot(cls, snapshot: VersionSnapshot, events=None) -> "EditSession":
        return cls(snapshot.storage_text, title=snapshot.title, events=events)

    def validate(self) -> list:
        warnings = validate_storage(self.storage_text)
        for warning in warnings:
            self.events.emit(ev.DOCUMENT_INVALID, warning)
        return warnings

    def round_trip_ok(self) -> bool:
        return serialize(self.segments) == self.storage_text
