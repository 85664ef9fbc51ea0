"""Storage-format transcoding and diagram synchronization for wiki pages."""

from .codec import MacroSegment, MarkupSegment, parse, parse_or_fail, serialize
from .diagrams import DiagramRecord, DiagramRegistry, register
from .errors import (
    DiagramMismatch,
    ParseFailure,
    RenderFailure,
    ReplacementNotFound,
    SelectionStateError,
    StorageSyncError,
)
from .events import EventChannel, Notice
from .selection import SelectionReplacer, SelectionState
from .session import EditSession
from .snapshot import VersionSnapshot
from .surfaces import PlainTextAdapter, PreviewAdapter, RichTextAdapter

__all__ = [
    "DiagramMismatch",
    "DiagramRecord",
    "DiagramRegistry",
    "EditSession",
    "EventChannel",
    "MacroSegment",
    "MarkupSegment",
    "Notice",
    "ParseFailure",
    "PlainTextAdapter",
    "PreviewAdapter",
    "RenderFailure",
    "ReplacementNotFound",
    "RichTextAdapter",
    "SelectionReplacer",
    "SelectionState",
    "SelectionStateError",
    "StorageSyncError",
    "VersionSnapshot",
    "parse",
    "parse_or_fail",
    "register",
    "serialize",
]
