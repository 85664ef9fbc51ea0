from __future__ import annotations


class StorageSyncError(Exception):
    """Base class for every recoverable storage/sync failure."""

    kind = "storage-error"


class ParseFailure(StorageSyncError, ValueError):
    kind = "parse-failure"

    def __init__(self, message: str, position: int | None = None):
        super().__init__(message)
        self.position = position


class DiagramMismatch(StorageSyncError):
    kind = "diagram-mismatch"

    def __init__(self, diagram_id: str, message: str):
        super().__init__(f"{diagram_id}: {message}")
        self.diagram_id = diagram_id


class RenderFailure(StorageSyncError):
    kind = "render-failure"

    def __init__(self, message: str, diagram_id: str | None = None):
        super().__init__(message)
        self.diagram_id = diagram_id


class ReplacementNotFound(StorageSyncError):
    kind = "replacement-not-found"

    def __init__(self, captured_text: str):
        preview = captured_text if len(captured_text) <= 60 else captured_text[:57] + "..."
        super().__init__(f"selected text is no longer present: {preview!r}")
        self.captured_text = captured_text


class SelectionStateError(RuntimeError):
    """Raised when a selection operation is called in the wrong state."""
