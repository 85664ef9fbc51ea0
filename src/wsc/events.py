from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .config import log_event

PARSE_FAILURE = "parse-failure"
DIAGRAM_MISMATCH = "diagram-mismatch"
RENDER_FAILURE = "render-failure"
REPLACEMENT_NOT_FOUND = "replacement-not-found"
REPLACEMENT_APPLIED = "replacement-applied"
REPLACEMENT_UNDONE = "replacement-undone"
EDIT_FAILED = "edit-failed"
EDIT_DISCARDED = "edit-discarded"
DOCUMENT_INVALID = "document-invalid"

_LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


@dataclass(frozen=True)
class Notice:
    kind: str
    message: str
    level: str = "warning"
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "level": self.level, "details": dict(self.details)}


class EventChannel:
    """Delivers notices to subscribers in registration order."""

    def __init__(self):
        self._subscribers = []
        self.history: list[Notice] = []

    def subscribe(self, callback):
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, kind: str, message: str, level: str = "warning", **details) -> Notice:
        notice = Notice(kind=kind, message=message, level=level, details=details)
        self.history.append(notice)
        log_event(_LEVELS.get(level, logging.WARNING), kind.replace("-", "_"), message=message, **details)
        for callback in list(self._subscribers):
            try:
                callback(notice)
            except Exception as exc:
                log_event(logging.ERROR, "subscriber_failed", kind=kind, error=exc)
        return notice

    def report(self, exc, **details) -> Notice:
        kind = getattr(exc, "kind", "storage-error")
        diagram_id = getattr(exc, "diagram_id", None)
        if diagram_id is not None:
            details.setdefault("diagram_id", diagram_id)
        return self.emit(kind, str(exc), **details)

    def kinds(self) -> list[str]:
        return [notice.kind for notice in self.history]
